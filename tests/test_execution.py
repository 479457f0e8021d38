from pathlib import Path
from typing import List, Optional

import pytest

from engine.broker import BrokerOrder, OrderAck, OrderRequest
from engine.config import ConfirmationConfig, ConfirmationPolicy
from engine.confirmation import ExecutionResult, OrderConfirmationEngine
from engine.execution import PURPOSE_EXIT, EntryIntent, TradeExecutor, build_order_tag, entry_position_id
from engine.ledger import ExitReason, PositionLedger, PositionSide, PositionStatus
from persistence import SQLiteStore

SYMBOL = "NIFTY24JAN2524650CE"


class InstantFillBroker:
    """Every order fills completely on the first poll at ``fill_price``."""

    def __init__(self, fill_price: float = 101.0):
        self.fill_price = fill_price
        self.requests: List[OrderRequest] = []

    async def place_order(self, variety: str, request: OrderRequest) -> OrderAck:
        self.requests.append(request)
        return OrderAck(order_id=f"ORD{len(self.requests)}")

    async def get_order_history(self, order_id: str) -> List[BrokerOrder]:
        request = self.requests[int(order_id[3:]) - 1]
        return [
            BrokerOrder(
                order_id=order_id,
                status="COMPLETE",
                tradingsymbol=request.tradingsymbol,
                exchange=request.exchange,
                transaction_type=request.transaction_type,
                quantity=request.quantity,
                filled_quantity=request.quantity,
                pending_quantity=0,
                average_price=self.fill_price,
            )
        ]


class ScheduleRecorder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    async def schedule_position_exit(self, position_id: str, exit_time: Optional[str] = None, *, user_id=None, symbol=None):
        self.calls.append((position_id, exit_time, user_id, symbol))
        return None


async def _no_sleep(seconds: float) -> None:
    return None


def _setup(tmp_path: Path, broker: Optional[InstantFillBroker] = None):
    store = SQLiteStore(tmp_path / "exec.sqlite", run_id="exec")
    ledger = PositionLedger(store)
    broker = broker or InstantFillBroker()
    policy = ConfirmationPolicy(max_wait_seconds=30.0, poll_interval=1.0, max_attempts=3)
    confirmation = OrderConfirmationEngine(
        broker,
        store,
        config=ConfirmationConfig(default=policy, by_order_type={"MARKET": policy}),
        sleep=_no_sleep,
        clock=lambda: 0.0,
    )
    scheduler = ScheduleRecorder()
    executor = TradeExecutor(confirmation, ledger, scheduler=scheduler)
    return executor, ledger, broker, scheduler


def _intent(**overrides) -> EntryIntent:
    params = dict(
        user_id="u1",
        symbol=SYMBOL,
        quantity=75,
        bot_id="bot-alpha",
        signal_id="SIG-2024-000123",
        auto_exit_time="15:10",
    )
    params.update(overrides)
    return EntryIntent(**params)


def test_order_tag_fits_broker_limit() -> None:
    tag = build_order_tag("SIG-2024-000123", "bot-alpha")
    assert tag == "TB_4-000123_lpha"
    assert len(tag) <= 20
    assert build_order_tag(None, None) == "TB_manual_none"


def test_entry_position_id_prefers_signal() -> None:
    assert entry_position_id("SIG1", "ORD9") == "SIG1_ORD9"
    assert entry_position_id(None, "ORD9") == "POS_ORD9"


@pytest.mark.asyncio
async def test_entry_fill_opens_position_and_arms_exit(tmp_path: Path) -> None:
    executor, ledger, broker, scheduler = _setup(tmp_path)
    result = await executor.execute_entry(_intent())
    assert result.executed

    [request] = broker.requests
    assert request.transaction_type == "BUY"
    assert request.product == "MIS"
    assert request.tag == "TB_4-000123_lpha"

    position = ledger.get_position("SIG-2024-000123_ORD1")
    assert position is not None
    assert position.status is PositionStatus.OPEN
    assert position.entry_qty == 75
    assert position.entry_price == pytest.approx(101.0)
    assert position.bot_id == "bot-alpha"
    assert scheduler.calls == [("SIG-2024-000123_ORD1", "15:10", "u1", SYMBOL)]


@pytest.mark.asyncio
async def test_positional_entry_is_not_scheduled(tmp_path: Path) -> None:
    executor, ledger, _, scheduler = _setup(tmp_path)
    await executor.execute_entry(_intent(is_intraday=False))
    assert len(ledger.get_open_positions()) == 1
    assert scheduler.calls == []


@pytest.mark.asyncio
async def test_short_entry_sells_and_exit_buys(tmp_path: Path) -> None:
    executor, ledger, broker, _ = _setup(tmp_path)
    await executor.execute_entry(_intent(side=PositionSide.SHORT))
    position = ledger.get_open_positions()[0]
    assert position.side is PositionSide.SHORT
    await executor.execute_exit(position)
    assert [r.transaction_type for r in broker.requests] == ["SELL", "BUY"]
    assert ledger.get_position(position.position_id).status is PositionStatus.CLOSED


@pytest.mark.asyncio
async def test_partial_exit_then_auto_square_off(tmp_path: Path) -> None:
    broker = InstantFillBroker(fill_price=110.0)
    executor, ledger, _, _ = _setup(tmp_path, broker)
    position = await ledger.create_position(
        position_id="P1",
        user_id="u1",
        symbol=SYMBOL,
        exchange="NFO",
        side="LONG",
        entry_price=100.0,
        entry_qty=75,
    )
    await executor.execute_exit(position, 25, "SIGNAL")
    partial = ledger.get_position("P1")
    assert partial.status is PositionStatus.PARTIAL
    assert partial.remaining_qty == 50

    result = await executor.auto_square_off(partial, partial.remaining_qty)
    assert result.executed
    closed = ledger.get_position("P1")
    assert closed.status is PositionStatus.CLOSED
    assert [e.reason for e in closed.exits] == [ExitReason.SIGNAL, ExitReason.AUTO_SQUARE_OFF]
    assert closed.realized_pnl == pytest.approx(750.0)


@pytest.mark.asyncio
async def test_exit_fill_is_clamped_to_remaining(tmp_path: Path) -> None:
    executor, ledger, _, _ = _setup(tmp_path)
    await ledger.create_position(
        position_id="P1", user_id="u1", symbol=SYMBOL, exchange="NFO", side="LONG", entry_price=100.0, entry_qty=75
    )
    fill = ExecutionResult(
        success=True,
        executed=True,
        status="COMPLETE_MISMATCH",
        broker_order_id="X1",
        executed_qty=100,
        executed_price=105.0,
        purpose=PURPOSE_EXIT,
        position_id="P1",
        context={"reason": "SIGNAL"},
    )
    closed = await executor.handle_fill(fill)
    assert closed.status is PositionStatus.CLOSED
    assert closed.total_exit_qty == 75

    again = await executor.handle_fill(fill)
    assert again.total_exit_qty == 75


@pytest.mark.asyncio
async def test_unfilled_results_are_ignored(tmp_path: Path) -> None:
    executor, ledger, _, _ = _setup(tmp_path)
    pending = ExecutionResult(success=True, executed=False, status="TIMEOUT_OPEN", broker_order_id="X1")
    assert await executor.handle_fill(pending) is None
    assert ledger.get_open_positions() == []
