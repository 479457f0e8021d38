import datetime as dt

import pytest
import requests
from kiteconnect import exceptions as kite_exceptions
from prometheus_client import CollectorRegistry

from engine.broker import BrokerError, BrokerPositions, KiteBroker, OrderRequest
from engine.config import BrokerConfig, ConfirmationConfig, ConfirmationPolicy
from engine.confirmation import OrderConfirmationEngine
from engine.metrics import EngineMetrics
from persistence import SQLiteStore


class FakeKite:
    """Stands in for KiteSession; ``failures`` are raised one per call before succeeding."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.calls = 0
        self.placed = []
        self.token = None

    def set_access_token(self, token):
        self.token = token

    def _maybe_fail(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)

    def place_order(self, variety, **params):
        self._maybe_fail()
        self.placed.append((variety, params))
        return "240110000000001"

    def order_history(self, order_id):
        self._maybe_fail()
        return [
            {"order_id": order_id, "status": "OPEN", "tradingsymbol": "NIFTY24JAN2524500CE", "exchange": "NFO", "quantity": 75, "filled_quantity": 0},
            {
                "order_id": order_id,
                "status": "COMPLETE",
                "tradingsymbol": "NIFTY24JAN2524500CE",
                "exchange": "NFO",
                "transaction_type": "BUY",
                "quantity": 75,
                "filled_quantity": 75,
                "pending_quantity": 0,
                "average_price": 212.35,
                "status_message": None,
            },
            "garbage",
        ]

    def positions(self):
        self._maybe_fail()
        return {
            "net": [
                {"tradingsymbol": "NIFTY24JAN2524500CE", "exchange": "NFO", "product": "MIS", "quantity": 75, "average_price": 200, "last_price": 212.5, "pnl": 937.5}
            ],
            "day": [],
        }

    def quote(self, keys):
        self._maybe_fail()
        return {key: {"last_price": 212.5, "oi": 125000} for key in keys}

    def instruments(self, exchange):
        self._maybe_fail()
        return [
            {
                "instrument_token": 12345,
                "tradingsymbol": "NIFTY24JAN2524500CE",
                "name": "NIFTY",
                "exchange": exchange,
                "segment": "NFO-OPT",
                "instrument_type": "CE",
                "expiry": dt.date(2024, 1, 25),
                "strike": 24500.0,
                "lot_size": 75,
            }
        ]


def _broker(session, **kwargs):
    config = BrokerConfig(rest_timeout=1.0, retries=3, retry_backoff=0.0)
    return KiteBroker(config=config, session=session, **kwargs)


def _request():
    return OrderRequest(
        exchange="NFO",
        tradingsymbol="NIFTY24JAN2524500CE",
        transaction_type="buy",
        quantity=75,
        tag="TB_0000SIG1_bot1_and_more",
    )


@pytest.mark.asyncio
async def test_place_order_sends_kite_params():
    session = FakeKite()
    ack = await _broker(session).place_order("regular", _request())
    assert ack.order_id == "240110000000001"
    [(variety, params)] = session.placed
    assert variety == "regular"
    assert params["transaction_type"] == "BUY"
    assert params["product"] == "MIS"
    assert params["order_type"] == "MARKET"
    assert len(params["tag"]) == 20


@pytest.mark.asyncio
async def test_order_placement_is_never_retried():
    session = FakeKite(failures=[kite_exceptions.NetworkException("connection reset")])
    with pytest.raises(BrokerError) as err:
        await _broker(session).place_order("regular", _request())
    assert err.value.code == "network"
    assert session.calls == 1
    assert session.placed == []


@pytest.mark.asyncio
async def test_reads_retry_transient_errors():
    registry = CollectorRegistry()
    metrics = EngineMetrics(registry)
    session = FakeKite(failures=[kite_exceptions.NetworkException("reset"), kite_exceptions.DataException("bad gateway")])
    history = await _broker(session, metrics=metrics).get_order_history("ORD1")
    assert session.calls == 3
    assert [o.status for o in history] == ["OPEN", "COMPLETE"]
    assert history[-1].filled_quantity == 75
    assert history[-1].average_price == pytest.approx(212.35)
    assert registry.get_sample_value("rest_retries_total", {"endpoint": "history"}) == pytest.approx(2)


@pytest.mark.asyncio
async def test_exhausted_retries_surface_network_error():
    session = FakeKite(failures=[kite_exceptions.NetworkException("down")] * 3)
    with pytest.raises(BrokerError) as err:
        await _broker(session).get_positions()
    assert err.value.code == "network"
    assert "after 3 attempts" in str(err.value)


@pytest.mark.asyncio
async def test_rejections_are_not_retried():
    session = FakeKite(failures=[kite_exceptions.InputException("Invalid order id")])
    with pytest.raises(BrokerError) as err:
        await _broker(session).get_order_history("nope")
    assert err.value.code == "rejected"
    assert session.calls == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    session = FakeKite(failures=[kite_exceptions.GeneralException("bad request", code=400)])
    with pytest.raises(BrokerError) as err:
        await _broker(session).get_quote(["NFO:NIFTY24JAN2524500CE"])
    assert err.value.code == "api_error"
    assert err.value.status == 400
    assert session.calls == 1


@pytest.mark.asyncio
async def test_token_error_halts_once_and_notifies():
    registry = CollectorRegistry()
    halted = []

    async def on_halt(reason):
        halted.append(reason)

    session = FakeKite(failures=[kite_exceptions.TokenException("Incorrect api_key or access_token")] * 2)
    broker = _broker(session, metrics=EngineMetrics(registry), auth_halt_callback=on_halt)
    for _ in range(2):
        with pytest.raises(BrokerError) as err:
            await broker.get_positions()
        assert err.value.needs_reauth
    assert halted == ["AUTH"]
    assert broker.auth_halted
    assert registry.get_sample_value("auth_failures_total") == pytest.approx(2)

    broker.update_access_token("fresh-token")
    assert session.token == "fresh-token"
    assert not broker.auth_halted


@pytest.mark.asyncio
async def test_responses_are_parsed_into_typed_records():
    broker = _broker(FakeKite())
    positions = await broker.get_positions()
    assert isinstance(positions, BrokerPositions)
    [net] = positions.net
    assert net.quantity == 75
    assert net.mark_price == pytest.approx(212.5)
    assert positions.day == ()

    quotes = await broker.get_quote(["NFO:NIFTY24JAN2524500CE", "NFO:NIFTY24JAN2524500CE"])
    quote = quotes["NFO:NIFTY24JAN2524500CE"]
    assert quote.tradingsymbol == "NIFTY24JAN2524500CE"
    assert quote.open_interest == 125000
    assert quote.implied_volatility is None

    [instrument] = await broker.get_instruments("NFO")
    assert instrument.expiry == dt.date(2024, 1, 25)
    assert instrument.strike == pytest.approx(24500.0)
    assert instrument.lot_size == 75


@pytest.mark.asyncio
async def test_empty_order_id_is_a_rejection():
    class NoId(FakeKite):
        def place_order(self, variety, **params):
            return ""

    with pytest.raises(BrokerError) as err:
        await _broker(NoId()).place_order("regular", _request())
    assert err.value.code == "rejected"


@pytest.mark.asyncio
async def test_requests_errors_are_retried_and_typed():
    session = FakeKite(failures=[requests.exceptions.ConnectionError("connection reset by peer")])
    history = await _broker(session).get_order_history("ORD1")
    assert session.calls == 2
    assert history[-1].status == "COMPLETE"

    session = FakeKite(failures=[requests.exceptions.ReadTimeout("read timed out")] * 3)
    with pytest.raises(BrokerError) as err:
        await _broker(session).get_positions()
    assert err.value.code == "timeout"


@pytest.mark.asyncio
async def test_connection_drop_while_polling_keeps_confirming(tmp_path):
    class FlakyKite(FakeKite):
        def place_order(self, variety, **params):
            self.placed.append((variety, params))
            return "240110000000001"

    session = FlakyKite(failures=[requests.exceptions.ConnectionError("connection reset by peer")] * 3)
    store = SQLiteStore(tmp_path / "confirm.sqlite", run_id="flaky")
    policy = ConfirmationPolicy(max_wait_seconds=30.0, poll_interval=0.0, max_attempts=5)
    sleeps = []

    async def no_sleep(seconds):
        sleeps.append(seconds)

    engine = OrderConfirmationEngine(
        _broker(session),
        store,
        config=ConfirmationConfig(default=policy, by_order_type={"MARKET": policy}, error_backoff_cap=10.0),
        sleep=no_sleep,
        clock=lambda: 0.0,
    )
    result = await engine.place_and_confirm(_request())
    assert result.executed
    assert result.executed_qty == 75
    actions = [row["action"] for row in store.list_order_history(result.order_state_id)]
    assert actions == ["ORDER_INITIATED", "ORDER_PLACED", "POLL_ERROR", "EXECUTION_CONFIRMED"]
    store.close()
