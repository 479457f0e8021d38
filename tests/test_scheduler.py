import asyncio
import datetime as dt
from pathlib import Path
from typing import List, Optional

import pytest

from engine.broker import BrokerError, BrokerPosition, BrokerPositions
from engine.config import SchedulerConfig
from engine.confirmation import ExecutionResult
from engine.ledger import PositionLedger, PositionStatus
from engine.scheduler import ExecutionMethod, ExitScheduler, ExitStatus
from engine.time_machine import travel, utc_now
from engine.validation import PositionValidator
from persistence import SQLiteStore

SYMBOL = "NIFTY24JAN2524650CE"
MORNING = "2024-01-10T10:00:00+05:30"


class PositionBook:
    def __init__(self) -> None:
        self.net: List[BrokerPosition] = []
        self.error: Optional[BrokerError] = None

    def hold(self, symbol: str = SYMBOL, qty: int = 75) -> None:
        self.net.append(
            BrokerPosition(
                tradingsymbol=symbol,
                exchange="NFO",
                product="MIS",
                quantity=qty,
                average_price=100.0,
                last_price=110.0,
                close_price=0.0,
                pnl=750.0,
            )
        )

    async def get_positions(self) -> BrokerPositions:
        if self.error is not None:
            raise self.error
        return BrokerPositions(net=tuple(self.net))


class ExitRecorder:
    def __init__(self, ledger: PositionLedger, outcome: str = "executed"):
        self.ledger = ledger
        self.outcome = outcome
        self.calls: List[tuple[str, int]] = []

    async def __call__(self, position, quantity: int) -> ExecutionResult:
        self.calls.append((position.position_id, quantity))
        if self.outcome == "executed":
            await self.ledger.update_position_with_exit(position.position_id, quantity=quantity, price=110.0, reason="AUTO_SQUARE_OFF")
            return ExecutionResult(success=True, executed=True, status="COMPLETE", executed_qty=quantity, executed_price=110.0)
        if self.outcome == "pending":
            return ExecutionResult(success=True, executed=False, status="TIMEOUT_OPEN")
        return ExecutionResult(success=False, executed=False, status="REJECTED", error="RMS: blocked")


class Harness:
    def __init__(self, tmp_path: Path, *, process_id: str = "proc-A", outcome: str = "executed", bind: bool = True):
        self.store = SQLiteStore(tmp_path / "sched.sqlite", run_id="sched", process_id=process_id)
        self.ledger = PositionLedger(self.store)
        self.book = PositionBook()
        self.validator = PositionValidator(self.book, self.store)
        self.executor = ExitRecorder(self.ledger, outcome)
        self.scheduler = self.new_scheduler(process_id)
        if bind:
            self.ledger.bind_exit_canceller(self.scheduler.cancel_position_exit)

    def new_scheduler(self, process_id: str) -> ExitScheduler:
        return ExitScheduler(
            self.store,
            self.ledger,
            self.validator,
            self.executor,
            config=SchedulerConfig(health_check_interval=3600, stall_threshold_seconds=300),
            process_id=process_id,
        )

    async def open(self, position_id: str = "P1", qty: int = 75, symbol: str = SYMBOL):
        self.book.hold(symbol, qty)
        return await self.ledger.create_position(
            position_id=position_id,
            user_id="u1",
            symbol=symbol,
            exchange="NFO",
            side="LONG",
            entry_price=100.0,
            entry_qty=qty,
            auto_exit_time="15:15",
        )

    def actions(self, position_id: str) -> List[str]:
        return [row["action"] for row in self.store.list_exit_audit(position_id)]

    def status(self, position_id: str) -> str:
        return self.store.get_scheduled_exit(position_id)["status"]


async def _settle(harness: Harness, position_id: str) -> None:
    for _ in range(100):
        if harness.status(position_id) not in {"PENDING", "EXECUTING"}:
            return
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_schedule_is_idempotent_per_position(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        first = await h.scheduler.schedule_position_exit("P1", "15:15", user_id="u1", symbol=SYMBOL)
        second = await h.scheduler.schedule_position_exit("P1", "15:20", user_id="u1", symbol=SYMBOL)
        assert first.cancelled and not first.armed
        assert second.armed
        assert h.scheduler.get_handle("P1") is second
        pending = h.scheduler.get_pending_exits()
        assert len(pending) == 1
        assert pending[0]["exit_time"] == "15:20"
        assert pending[0]["armed"] is True
        assert h.actions("P1") == ["SCHEDULED", "RESCHEDULED"]
        await h.scheduler.shutdown()
    assert h.status("P1") == "PENDING"


@pytest.mark.asyncio
async def test_handle_cancel_only_disarms_timer(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        handle = await h.scheduler.schedule_position_exit("P1")
        assert handle.fire_at.strftime("%H:%M") == "15:15"
        assert handle.cancel()
        assert not handle.cancel()
        assert h.scheduler.get_handle("P1") is None
        assert h.status("P1") == "PENDING"
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_timer_fires_and_squares_off(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel("2024-01-10T15:14:59.900000+05:30"):
        await h.open()
        handle = await h.scheduler.schedule_position_exit("P1", "15:15")
        assert handle.method is ExecutionMethod.AUTO_TIMEOUT
        await _settle(h, "P1")
        entry = h.scheduler.get_scheduled_exit("P1")
        assert entry.status is ExitStatus.COMPLETED
        assert entry.execution_method is ExecutionMethod.AUTO_TIMEOUT
        assert entry.attempts == 1
        assert h.executor.calls == [("P1", 75)]
        assert h.ledger.get_position("P1").status is PositionStatus.CLOSED
        assert h.actions("P1") == ["SCHEDULED", "EXECUTION_STARTED", "EXECUTION_COMPLETED"]
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_past_exit_time_executes_immediately(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel("2024-01-10T15:30:00+05:30"):
        await h.open()
        handle = await h.scheduler.schedule_position_exit("P1", "15:15")
        assert handle.method is ExecutionMethod.IMMEDIATE_EXECUTION
        await handle.task
        entry = h.scheduler.get_scheduled_exit("P1")
        assert entry.status is ExitStatus.COMPLETED
        assert entry.execution_method is ExecutionMethod.IMMEDIATE_EXECUTION
        assert h.scheduler.get_handle("P1") is None


@pytest.mark.asyncio
async def test_cancel_reaches_immediate_exit_before_it_runs(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel("2024-01-10T15:30:00+05:30"):
        await h.open("A", symbol="NIFTY24JAN2524600CE")
        await h.open("B", symbol="NIFTY24JAN2524650CE")
        first = await h.scheduler.schedule_position_exit("A", "15:15")
        second = await h.scheduler.schedule_position_exit("B", "15:15")
        assert h.scheduler.get_handle("A") is first
        assert all(row["armed"] for row in h.scheduler.get_pending_exits())
        assert await h.scheduler.cancel_position_exit("A", "operator")
        assert await h.scheduler.emergency_stop("market halt") == 1
        await asyncio.gather(first.task, second.task, return_exceptions=True)
        assert first.task.cancelled() and second.task.cancelled()
        assert h.executor.calls == []
        assert (h.status("A"), h.status("B")) == ("CANCELLED", "CANCELLED")
        assert h.scheduler.get_status()["armed_timers"] == 0
        assert h.ledger.get_position("A").status is PositionStatus.OPEN
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_restart_recovers_overdue_and_rearms_future_exits(tmp_path: Path) -> None:
    h = Harness(tmp_path, bind=False)
    with travel(MORNING) as clock:
        await h.open("DUE1", symbol="NIFTY24JAN2524600CE")
        await h.open("DUE2", symbol="NIFTY24JAN2524650CE")
        await h.open("LATE", symbol="NIFTY24JAN2524700CE")
        await h.open("GONE", symbol="NIFTY24JAN2524750CE")
        for pid in ("DUE1", "DUE2", "GONE"):
            await h.scheduler.schedule_position_exit(pid, "15:15")
        await h.scheduler.schedule_position_exit("LATE", "15:45")
        await h.scheduler.shutdown()
        await h.ledger.close_externally("GONE", reconciliation_type="EXTERNAL_MANUAL_EXIT")

        clock.set("2024-01-10T15:20:00+05:30")
        restarted = h.new_scheduler("proc-B")
        summary = await restarted.initialize(start_health_check=False)
        assert summary == {"pending": 4, "restarted": 4, "rescheduled": 1, "cancelled": 1, "overdue": 2}

        for pid in ("DUE1", "DUE2"):
            entry = restarted.get_scheduled_exit(pid)
            assert entry.status is ExitStatus.COMPLETED
            assert entry.execution_method is ExecutionMethod.RESTART_RECOVERY
            assert entry.process_id == "proc-B"
            assert h.actions(pid)[-4:] == ["RESTART_DETECTED", "OVERDUE_DETECTED", "EXECUTION_STARTED", "EXECUTION_COMPLETED"]
        assert h.status("GONE") == "CANCELLED"
        assert "AUTO_CANCELLED" in h.actions("GONE")
        assert h.status("LATE") == "PENDING"
        assert h.actions("LATE")[-1] == "RESCHEDULED_AFTER_RESTART"
        assert restarted.get_handle("LATE").method is ExecutionMethod.RESTART_RECOVERY
        assert sorted(call[0] for call in h.executor.calls) == ["DUE1", "DUE2"]

        again = await restarted.initialize(start_health_check=False)
        assert again == summary
        await restarted.shutdown()


@pytest.mark.asyncio
async def test_closing_position_cancels_scheduled_exit(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        handle = await h.scheduler.schedule_position_exit("P1")
        await h.ledger.update_position_with_exit("P1", quantity=75, price=120.0, reason="SIGNAL")
        assert h.status("P1") == "CANCELLED"
        assert not handle.armed
        assert h.actions("P1")[-1] == "CANCELLED"
        assert not await h.scheduler.cancel_position_exit("P1")
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_position_missing_at_broker_completes_without_order(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        h.book.net.clear()
        await h.scheduler.schedule_position_exit("P1")
        entry = await h.scheduler.execute_auto_exit("P1")
        assert entry.status is ExitStatus.COMPLETED
        assert entry.execution_method is ExecutionMethod.MANUAL_TRIGGER
        assert entry.execution_details["reason"] == "Position externally closed"
        assert h.executor.calls == []
        assert h.ledger.get_position("P1").status is PositionStatus.OPEN
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_broker_validation_error_fails_exit(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        h.book.error = BrokerError(code="network", message="gateway timeout")
        await h.scheduler.schedule_position_exit("P1")
        entry = await h.scheduler.execute_auto_exit("P1")
        assert entry.status is ExitStatus.FAILED
        assert "Broker validation failed" in entry.last_error
        assert h.actions("P1")[-1] == "EXECUTION_FAILED"
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_rejected_exit_order_fails_and_pending_order_completes(tmp_path: Path) -> None:
    h = Harness(tmp_path, outcome="failed")
    with travel(MORNING):
        await h.open()
        await h.scheduler.schedule_position_exit("P1")
        failed = await h.scheduler.execute_auto_exit("P1")
        assert failed.status is ExitStatus.FAILED
        assert failed.last_error == "RMS: blocked"

        h.executor.outcome = "pending"
        await h.scheduler.schedule_position_exit("P1")
        assert h.status("P1") == "PENDING"
        assert h.scheduler.get_scheduled_exit("P1").attempts == 0
        pending = await h.scheduler.execute_auto_exit("P1")
        assert pending.status is ExitStatus.COMPLETED
        assert pending.execution_details["order_pending"] is True
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_execute_only_claims_pending_rows(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        await h.scheduler.schedule_position_exit("P1")
        await h.scheduler.execute_auto_exit("P1")
        await h.scheduler.execute_auto_exit("P1")
        assert h.executor.calls == [("P1", 75)]
        assert h.actions("P1").count("EXECUTION_STARTED") == 1
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_schedule_skipped_while_executing(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        await h.scheduler.schedule_position_exit("P1")
        h.store.transition_scheduled_exit("P1", to_status="EXECUTING", from_statuses=["PENDING"])
        assert await h.scheduler.schedule_position_exit("P1", "15:25") is None
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_emergency_stop_cancels_everything(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open("A", symbol="NIFTY24JAN2524600CE")
        await h.open("B", symbol="NIFTY24JAN2524650CE")
        first = await h.scheduler.schedule_position_exit("A")
        await h.scheduler.schedule_position_exit("B")
        assert await h.scheduler.emergency_stop("market halt") == 2
        assert {h.status("A"), h.status("B")} == {"CANCELLED"}
        assert not first.armed
        assert h.scheduler.get_status()["armed_timers"] == 0
        assert h.actions("B")[-1] == "EMERGENCY_STOP"
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_health_check_fails_stalled_execution(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        await h.scheduler.schedule_position_exit("P1")
        h.scheduler.get_handle("P1").cancel()
        h.store.transition_scheduled_exit(
            "P1",
            to_status="EXECUTING",
            from_statuses=["PENDING"],
            fields={"last_attempt_at": utc_now() - dt.timedelta(minutes=10), "process_id": "dead-proc"},
        )
        summary = await h.scheduler.health_check()
        assert summary["stalled"] == 1
        assert h.status("P1") == "FAILED"
        assert "stalled" in h.store.get_scheduled_exit("P1")["last_error"]
        assert h.actions("P1")[-1] == "STALLED_DETECTED"
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_health_check_drops_timer_for_closed_position(tmp_path: Path) -> None:
    h = Harness(tmp_path, bind=False)
    with travel(MORNING):
        await h.open()
        handle = await h.scheduler.schedule_position_exit("P1")
        await h.ledger.update_position_with_exit("P1", quantity=75, price=101.0, reason="SIGNAL")
        assert handle.armed
        summary = await h.scheduler.health_check()
        assert summary["stale"] == 1
        assert not handle.armed
        assert h.status("P1") == "CANCELLED"
        await h.scheduler.shutdown()


@pytest.mark.asyncio
async def test_health_check_rearms_rows_without_timer(tmp_path: Path) -> None:
    h = Harness(tmp_path)
    with travel(MORNING):
        await h.open()
        await h.scheduler.schedule_position_exit("P1")
        await h.scheduler.shutdown()
        other = h.new_scheduler("proc-B")
        summary = await other.health_check()
        assert summary == {"stalled": 0, "stale": 0, "rearmed": 1}
        assert other.get_handle("P1").armed
        await other.shutdown()
