from pathlib import Path
from typing import List, Optional

import pytest

from engine.broker import BrokerError, BrokerOrder, OrderAck, OrderRequest
from engine.config import ConfirmationConfig, ConfirmationPolicy
from engine.confirmation import ConfirmationStatus, ExecutionResult, OrderConfirmationEngine, classify_rejection
from engine.errors import FailureCode
from persistence import SQLiteStore


def _order(status: str, filled: int = 0, *, qty: int = 75, price: float = 101.5, message: Optional[str] = None) -> BrokerOrder:
    return BrokerOrder(
        order_id="ORD1",
        status=status,
        tradingsymbol="NIFTY24JAN2524650CE",
        exchange="NFO",
        transaction_type="BUY",
        quantity=qty,
        filled_quantity=filled,
        pending_quantity=qty - filled,
        average_price=price if filled else 0.0,
        status_message=message,
    )


class ScriptedBroker:
    """Returns one scripted order-history response per poll; the last one repeats."""

    def __init__(self, script: List[object], place_error: Optional[BaseException] = None):
        self.script = list(script)
        self.place_error = place_error
        self.placed: List[OrderRequest] = []
        self.polls = 0

    async def place_order(self, variety: str, request: OrderRequest) -> OrderAck:
        if self.place_error is not None:
            raise self.place_error
        self.placed.append(request)
        return OrderAck(order_id="ORD1")

    async def get_order_history(self, order_id: str) -> List[BrokerOrder]:
        self.polls += 1
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        return [step] if step is not None else []


class Sleeps:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _engine(tmp_path: Path, broker: ScriptedBroker, *, max_attempts: int = 5, sleeps: Optional[Sleeps] = None):
    store = SQLiteStore(tmp_path / "confirm.sqlite", run_id="confirm")
    policy = ConfirmationPolicy(max_wait_seconds=30.0, poll_interval=1.5, max_attempts=max_attempts)
    config = ConfirmationConfig(default=policy, by_order_type={"MARKET": policy}, error_backoff_cap=10.0)
    engine = OrderConfirmationEngine(broker, store, config=config, sleep=sleeps or Sleeps(), clock=lambda: 0.0)
    return engine, store


def _request(qty: int = 75) -> OrderRequest:
    return OrderRequest(exchange="NFO", tradingsymbol="NIFTY24JAN2524650CE", transaction_type="BUY", quantity=qty)


def _actions(store: SQLiteStore, state_id: str) -> List[str]:
    return [row["action"] for row in store.list_order_history(state_id)]


@pytest.mark.asyncio
async def test_complete_fill_is_confirmed_and_dispatched(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN"), _order("COMPLETE", 75)])
    engine, store = _engine(tmp_path, broker)
    fills: List[ExecutionResult] = []

    async def on_fill(result: ExecutionResult) -> None:
        fills.append(result)

    result = await engine.place_and_confirm(_request(), execution_id="EXE1", context={"user_id": "u1"}, fill_handler=on_fill)
    assert result.success and result.executed
    assert result.status == "COMPLETE"
    assert result.executed_qty == 75
    assert result.executed_price == pytest.approx(101.5)
    assert result.attempts == 2
    assert not result.quantity_mismatch
    assert [f.broker_order_id for f in fills] == ["ORD1"]

    row = store.get_order_state(result.order_state_id)
    assert row["confirmation_status"] == ConfirmationStatus.CONFIRMED.value
    assert row["placement_status"] == "PLACED"
    assert row["context"] == {"user_id": "u1"}
    assert _actions(store, result.order_state_id) == ["ORDER_INITIATED", "ORDER_PLACED", "EXECUTION_CONFIRMED"]


@pytest.mark.asyncio
async def test_complete_with_different_quantity_flags_mismatch(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("COMPLETE", 50, qty=50)])
    engine, _ = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request(75))
    assert result.executed
    assert result.status == "COMPLETE_MISMATCH"
    assert result.quantity_mismatch
    assert result.pending_qty == 25


@pytest.mark.asyncio
async def test_rejected_order_fails_with_reason(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("REJECTED", message="Insufficient funds. Required margin is 9000")])
    engine, store = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert not result.success and not result.executed
    assert result.status == "REJECTED"
    assert result.failure_code is FailureCode.INSUFFICIENT_FUNDS
    assert "Insufficient funds" in result.error
    assert store.get_order_state(result.order_state_id)["confirmation_status"] == "FAILED"


@pytest.mark.asyncio
async def test_cancelled_after_partial_fill_keeps_filled_part(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("CANCELLED", 30)])
    engine, _ = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert result.executed
    assert result.status == "CANCELLED_PARTIAL"
    assert result.executed_qty == 30
    assert result.quantity_mismatch


@pytest.mark.asyncio
async def test_partial_fill_above_threshold_is_accepted(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN", 30), _order("OPEN", 60)])
    engine, _ = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert result.executed
    assert result.status == "PARTIAL_FILL_ACCEPTED"
    assert result.executed_qty == 60


@pytest.mark.asyncio
async def test_timeout_leaves_order_pending_for_monitor(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN")])
    sleeps = Sleeps()
    engine, store = _engine(tmp_path, broker, max_attempts=3, sleeps=sleeps)
    result = await engine.place_and_confirm(_request())
    assert result.success and not result.executed
    assert result.pending
    assert result.status == "TIMEOUT_OPEN"
    assert result.failure_code is FailureCode.TIMEOUT
    assert broker.polls == 3
    assert sleeps.calls == [1.5, 1.5, 1.5]
    row = store.get_order_state(result.order_state_id)
    assert row["confirmation_status"] == "PENDING"
    assert [r["id"] for r in store.list_pending_order_states()] == [result.order_state_id]
    assert _actions(store, result.order_state_id)[-1] == "EXECUTION_PENDING"


@pytest.mark.asyncio
async def test_transient_poll_error_backs_off_then_confirms(tmp_path: Path) -> None:
    broker = ScriptedBroker([BrokerError(code="network", message="reset"), _order("COMPLETE", 75)])
    sleeps = Sleeps()
    engine, _ = _engine(tmp_path, broker, sleeps=sleeps)
    result = await engine.place_and_confirm(_request())
    assert result.executed
    assert sleeps.calls == [3.0]


@pytest.mark.asyncio
async def test_untyped_poll_error_is_recorded_and_polling_continues(tmp_path: Path) -> None:
    broker = ScriptedBroker([ConnectionResetError("connection reset by peer"), _order("COMPLETE", 75)])
    sleeps = Sleeps()
    engine, store = _engine(tmp_path, broker, sleeps=sleeps)
    result = await engine.place_and_confirm(_request())
    assert result.executed
    assert broker.polls == 2
    assert sleeps.calls == [3.0]
    assert _actions(store, result.order_state_id) == ["ORDER_INITIATED", "ORDER_PLACED", "POLL_ERROR", "EXECUTION_CONFIRMED"]


@pytest.mark.asyncio
async def test_auth_failure_during_polling_keeps_order_pending(tmp_path: Path) -> None:
    broker = ScriptedBroker([BrokerError(code="auth", message="token expired")])
    engine, store = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert result.status == "AUTH_REQUIRED"
    assert result.failure_code is FailureCode.NEEDS_REAUTH
    assert result.broker_order_id == "ORD1"
    assert store.get_order_state(result.order_state_id)["confirmation_status"] == "PENDING"


@pytest.mark.asyncio
async def test_placement_rejection_is_recorded(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN")], place_error=BrokerError(code="rejected", message="Markets are closed right now"))
    engine, store = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert not result.success
    assert result.status == "PLACEMENT_FAILED"
    assert result.failure_code is FailureCode.ORDER_REJECTED
    assert broker.polls == 0
    row = store.get_order_state(result.order_state_id)
    assert row["confirmation_status"] == "FAILED"
    assert _actions(store, result.order_state_id) == ["ORDER_INITIATED", "EXCEPTION"]


@pytest.mark.asyncio
async def test_placement_network_error_is_a_placement_error(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN")], place_error=BrokerError(code="network", message="connection reset"))
    engine, _ = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    assert result.status == "PLACEMENT_ERROR"
    assert result.failure_code is FailureCode.BROKER_ERROR


@pytest.mark.asyncio
async def test_fill_handler_failure_flags_manual_review(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("COMPLETE", 75)])
    engine, store = _engine(tmp_path, broker)

    async def broken(result: ExecutionResult) -> None:
        raise RuntimeError("db locked")

    result = await engine.place_and_confirm(_request(), fill_handler=broken)
    assert result.executed
    assert result.failure_code is FailureCode.INTERNAL
    assert "position update failed" in result.error
    row = store.get_order_state(result.order_state_id)
    assert row["manual_review"] == 1
    assert row["confirmation_status"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_check_once_on_terminal_order_does_not_poll(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("COMPLETE", 75)])
    engine, _ = _engine(tmp_path, broker)
    result = await engine.place_and_confirm(_request())
    polls = broker.polls
    again = await engine.check_once(result.order_state_id)
    assert again.executed
    assert again.executed_qty == 75
    assert broker.polls == polls


@pytest.mark.asyncio
async def test_confirm_existing_resumes_pending_order(tmp_path: Path) -> None:
    broker = ScriptedBroker([_order("OPEN")])
    engine, _ = _engine(tmp_path, broker, max_attempts=2)
    pending = await engine.place_and_confirm(_request())
    assert pending.pending
    broker.script = [_order("COMPLETE", 75)]
    resumed = await engine.confirm_existing(pending.order_state_id)
    assert resumed.executed
    assert resumed.attempts == 3


def test_classify_rejection_wording() -> None:
    assert classify_rejection("Margin exceeds available funds") is FailureCode.INSUFFICIENT_FUNDS
    assert classify_rejection("RMS: blocked instrument") is FailureCode.ORDER_REJECTED
    assert classify_rejection(None) is FailureCode.ORDER_REJECTED
