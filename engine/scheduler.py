from __future__ import annotations

import asyncio
import datetime as dt
import os
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from engine.alerts import notify_incident
from engine.config import IST, SchedulerConfig, parse_time_of_day
from engine.confirmation import ExecutionResult
from engine.ledger import Position, PositionLedger, PositionStatus
from engine.logging_utils import get_logger
from engine.metrics import EngineMetrics
from engine.time_machine import now as engine_now, utc_now
from engine.validation import PositionValidator
from persistence import SQLiteStore


class ExitStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_EXIT_STATUSES = (ExitStatus.COMPLETED.value, ExitStatus.FAILED.value, ExitStatus.CANCELLED.value)


class ExecutionMethod(str, Enum):
    AUTO_TIMEOUT = "AUTO_TIMEOUT"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    RESTART_RECOVERY = "RESTART_RECOVERY"
    IMMEDIATE_EXECUTION = "IMMEDIATE_EXECUTION"


ExitExecutor = Callable[[Position, int], Awaitable[ExecutionResult]]


def default_process_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _parse_ts(value: Any) -> Optional[dt.datetime]:
    if not value:
        return None
    if isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class ScheduledExit:
    position_id: str
    user_id: Optional[str]
    symbol: Optional[str]
    exit_time: str
    scheduled_for_date: dt.date
    status: ExitStatus
    attempts: int = 0
    last_attempt_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    execution_method: Optional[ExecutionMethod] = None
    execution_details: Optional[Dict[str, Any]] = None
    process_id: Optional[str] = None
    scheduler_version: Optional[str] = None

    @property
    def target(self) -> dt.datetime:
        return dt.datetime.combine(self.scheduled_for_date, parse_time_of_day(self.exit_time), tzinfo=IST)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "ScheduledExit":
        method = row.get("execution_method")
        return ScheduledExit(
            position_id=row["position_id"],
            user_id=row.get("user_id"),
            symbol=row.get("symbol"),
            exit_time=row["exit_time"],
            scheduled_for_date=dt.date.fromisoformat(str(row["scheduled_for_date"])),
            status=ExitStatus(row["status"]),
            attempts=int(row.get("attempts") or 0),
            last_attempt_at=_parse_ts(row.get("last_attempt_at")),
            last_error=row.get("last_error"),
            execution_method=ExecutionMethod(method) if method else None,
            execution_details=row.get("execution_details"),
            process_id=row.get("process_id"),
            scheduler_version=row.get("scheduler_version"),
        )


@dataclass
class ExitHandle:
    """Cancellation handle for one armed exit; returned by ``schedule_position_exit``."""

    position_id: str
    fire_at: dt.datetime
    method: ExecutionMethod
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None
    _on_cancel: Optional[Callable[["ExitHandle"], None]] = field(default=None, repr=False)
    _cancelled: bool = False

    @property
    def armed(self) -> bool:
        if self._cancelled:
            return False
        if self.timer is not None:
            return not self.timer.cancelled()
        return self.task is not None and not self.task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Disarm the in-memory timer; the durable row is left for the scheduler to settle."""

        if self._cancelled:
            return False
        self._cancelled = True
        if self.timer is not None:
            self.timer.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()
        if self._on_cancel is not None:
            self._on_cancel(self)
        return True


class ExitScheduler:
    """
    Durable intraday auto square-off.

    Every state change lands in the ``scheduled_exits`` table first (guarded by a
    conditional status transition), and the in-memory timers are only a cache
    of what the table says. :meth:`initialize` rebuilds that cache after a restart
    and executes anything whose time passed while the process was down;
    :meth:`health_check` force-fails stalled executions and drops timers that no
    longer match the table or the ledger.
    """

    def __init__(
        self,
        store: SQLiteStore,
        ledger: PositionLedger,
        validator: PositionValidator,
        exit_executor: ExitExecutor,
        *,
        config: Optional[SchedulerConfig] = None,
        process_id: Optional[str] = None,
        metrics: Optional[EngineMetrics] = None,
        clock: Callable[[], dt.datetime] = lambda: engine_now(IST),
    ):
        self._store = store
        self._ledger = ledger
        self._validator = validator
        self._exit_executor = exit_executor
        self._cfg = config or SchedulerConfig()
        self.process_id = process_id or store.process_id or default_process_id()
        self._metrics = metrics
        self._clock = clock
        self._timers: Dict[str, ExitHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._executing: Set[str] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._last_init: Dict[str, Any] = {}
        self._logger = get_logger("ExitScheduler", process_id=self.process_id)

    # -------------------------------------------------------------- lifecycle
    async def initialize(self, *, start_health_check: bool = True) -> Dict[str, Any]:
        """Restart detection, reschedule, overdue sweep, then start the health loop."""

        if self._initialized:
            return dict(self._last_init)
        current = self._now()
        pending = self._store.list_scheduled_exits([ExitStatus.PENDING.value])
        if pending and self._metrics:
            self._metrics.inc_scheduler_restart()
        summary = {"pending": len(pending), "restarted": 0, "rescheduled": 0, "cancelled": 0, "overdue": 0}
        overdue: List[str] = []
        for row in pending:
            entry = ScheduledExit.from_row(row)
            pid = entry.position_id
            if entry.process_id != self.process_id:
                self._audit(pid, "RESTART_DETECTED", previous_process_id=entry.process_id, scheduler_version=self._cfg.version)
                summary["restarted"] += 1
                self._logger.log_event(30, "scheduler_restart_detected", position_id=pid, previous_process_id=entry.process_id)
            position = self._ledger.get_position(pid)
            if position is None or position.status is PositionStatus.CLOSED:
                if self._store.transition_scheduled_exit(
                    pid,
                    to_status=ExitStatus.CANCELLED.value,
                    from_statuses=[ExitStatus.PENDING.value],
                    fields={"last_error": "Position no longer open", "process_id": self.process_id},
                ):
                    self._audit(pid, "AUTO_CANCELLED", reason="Position no longer open")
                    summary["cancelled"] += 1
                continue
            self._store.transition_scheduled_exit(
                pid,
                to_status=ExitStatus.PENDING.value,
                from_statuses=[ExitStatus.PENDING.value],
                fields={"process_id": self.process_id, "scheduler_version": self._cfg.version},
            )
            if entry.target <= current:
                self._audit(pid, "OVERDUE_DETECTED", target=entry.target.isoformat(), now=current.isoformat())
                overdue.append(pid)
            else:
                self._arm(pid, entry.target, ExecutionMethod.RESTART_RECOVERY)
                self._audit(pid, "RESCHEDULED_AFTER_RESTART", target=entry.target.isoformat())
                summary["rescheduled"] += 1
        summary["overdue"] = len(overdue)
        if overdue:
            await asyncio.gather(*(self.execute_auto_exit(pid, ExecutionMethod.RESTART_RECOVERY) for pid in overdue))
        if start_health_check and self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())
        self._initialized = True
        self._last_init = summary
        self._update_gauge()
        self._logger.log_event(20, "scheduler_initialized", **summary)
        return dict(summary)

    async def shutdown(self) -> None:
        """Disarm timers and stop the health loop; PENDING rows stay for the next process."""

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        for handle in list(self._timers.values()):
            handle.cancel()
        self._timers.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._initialized = False
        self._update_gauge()
        self._logger.log_event(20, "scheduler_shutdown")

    # ------------------------------------------------------------- scheduling
    async def schedule_position_exit(
        self,
        position_id: str,
        exit_time: Optional[str | dt.time] = None,
        *,
        user_id: Optional[str] = None,
        symbol: Optional[str] = None,
    ) -> Optional[ExitHandle]:
        """Create or move the PENDING exit for ``position_id`` and arm its timer."""

        target_time = parse_time_of_day(exit_time) if exit_time is not None else self._cfg.default_exit_time
        hhmm = target_time.strftime("%H:%M")
        current = self._now()
        target = dt.datetime.combine(current.date(), target_time, tzinfo=IST)
        fields = {
            "exit_time": hhmm,
            "scheduled_for_date": current.date().isoformat(),
            "process_id": self.process_id,
            "scheduler_version": self._cfg.version,
        }
        with self._store.atomic():
            row = self._store.get_scheduled_exit(position_id)
            if row is None:
                self._store.insert_scheduled_exit(
                    {
                        "position_id": position_id,
                        "user_id": user_id,
                        "symbol": symbol,
                        "status": ExitStatus.PENDING.value,
                        "attempts": 0,
                        **fields,
                    }
                )
                self._audit(position_id, "SCHEDULED", exit_time=hhmm, target=target.isoformat())
            elif row["status"] == ExitStatus.PENDING.value:
                self._store.transition_scheduled_exit(
                    position_id,
                    to_status=ExitStatus.PENDING.value,
                    from_statuses=[ExitStatus.PENDING.value],
                    fields=fields,
                )
                self._audit(position_id, "RESCHEDULED", previous_exit_time=row["exit_time"], exit_time=hhmm)
            elif row["status"] == ExitStatus.EXECUTING.value:
                self._logger.log_event(30, "exit_schedule_skipped", position_id=position_id, reason="executing")
                return None
            else:
                reopened = dict(fields)
                reopened.update({"attempts": 0, "last_error": None, "execution_method": None, "execution_details": None})
                if user_id:
                    reopened["user_id"] = user_id
                if symbol:
                    reopened["symbol"] = symbol
                self._store.transition_scheduled_exit(
                    position_id,
                    to_status=ExitStatus.PENDING.value,
                    from_statuses=TERMINAL_EXIT_STATUSES,
                    fields=reopened,
                )
                self._audit(position_id, "SCHEDULED", exit_time=hhmm, previous_status=row["status"])
        self._logger.log_event(20, "exit_scheduled", position_id=position_id, exit_time=hhmm, symbol=symbol, target=target.isoformat())
        if target <= current:
            return self._spawn_immediate(position_id, target)
        return self._arm(position_id, target, ExecutionMethod.AUTO_TIMEOUT)

    def _arm(self, position_id: str, target: dt.datetime, method: ExecutionMethod) -> ExitHandle:
        self._disarm(position_id)
        loop = asyncio.get_running_loop()
        delay = max((target - self._now()).total_seconds(), 0.0)
        handle = ExitHandle(position_id=position_id, fire_at=target, method=method, _on_cancel=self._forget)
        handle.timer = loop.call_later(delay, self._on_timer, handle)
        self._timers[position_id] = handle
        self._update_gauge()
        return handle

    def _spawn_immediate(self, position_id: str, target: dt.datetime) -> ExitHandle:
        self._disarm(position_id)
        handle = ExitHandle(
            position_id=position_id,
            fire_at=target,
            method=ExecutionMethod.IMMEDIATE_EXECUTION,
            _on_cancel=self._forget,
        )
        handle.task = self._spawn(self.execute_auto_exit(position_id, ExecutionMethod.IMMEDIATE_EXECUTION))
        # Tracked until the task claims the row so cancel and emergency stop reach it.
        self._timers[position_id] = handle
        self._update_gauge()
        return handle

    def _on_timer(self, handle: ExitHandle) -> None:
        if self._timers.get(handle.position_id) is handle:
            del self._timers[handle.position_id]
        self._update_gauge()
        if handle.cancelled:
            return
        handle.task = self._spawn(self.execute_auto_exit(handle.position_id, handle.method))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _forget(self, handle: ExitHandle) -> None:
        if self._timers.get(handle.position_id) is handle:
            del self._timers[handle.position_id]
            self._update_gauge()

    def _disarm(self, position_id: str) -> bool:
        handle = self._timers.pop(position_id, None)
        if handle is None:
            return False
        handle.cancel()
        self._update_gauge()
        return True

    # -------------------------------------------------------------- execution
    async def execute_auto_exit(
        self,
        position_id: str,
        method: ExecutionMethod | str = ExecutionMethod.MANUAL_TRIGGER,
    ) -> Optional[ScheduledExit]:
        method = ExecutionMethod(method)
        if position_id in self._executing:
            self._logger.log_event(30, "exit_already_executing", position_id=position_id)
            return self.get_scheduled_exit(position_id)
        claimed = self._store.transition_scheduled_exit(
            position_id,
            to_status=ExitStatus.EXECUTING.value,
            from_statuses=[ExitStatus.PENDING.value],
            fields={"last_attempt_at": utc_now(), "execution_method": method.value, "process_id": self.process_id},
            increment_attempts=True,
        )
        if not claimed:
            self._logger.log_event(20, "exit_not_claimable", position_id=position_id, method=method.value)
            return self.get_scheduled_exit(position_id)
        self._executing.add(position_id)
        handle = self._timers.get(position_id)
        if handle is not None:
            if handle.timer is not None:
                self._disarm(position_id)
            else:
                # Immediate handle owns the running task; closing the position must not cancel it.
                self._forget(handle)
        self._audit(position_id, "EXECUTION_STARTED", method=method.value)
        self._logger.log_event(20, "auto_exit_started", position_id=position_id, method=method.value)
        try:
            await self._run_exit(position_id)
        except Exception as exc:
            self._logger.log_event(40, "auto_exit_exception", position_id=position_id, error=str(exc))
            self._finish(position_id, ExitStatus.FAILED, error=str(exc), outcome="error")
        finally:
            self._executing.discard(position_id)
        return self.get_scheduled_exit(position_id)

    async def _run_exit(self, position_id: str) -> None:
        position = self._ledger.get_position(position_id)
        if position is None or position.status is PositionStatus.CLOSED:
            self._finish(position_id, ExitStatus.COMPLETED, details={"reason": "Position already closed"}, outcome="already_closed")
            return
        validation = await self._validator.validate(position)
        if validation.error:
            self._finish(position_id, ExitStatus.FAILED, error=f"Broker validation failed: {validation.error}", outcome="validation_error")
            return
        if not validation.exists:
            self._finish(
                position_id,
                ExitStatus.COMPLETED,
                details={"reason": "Position externally closed", "broker_qty": 0},
                outcome="externally_closed",
            )
            return
        result = await self._exit_executor(position, abs(validation.quantity))
        if result.executed:
            self._finish(position_id, ExitStatus.COMPLETED, details=result.as_dict(), outcome="completed")
        elif result.pending:
            # Exit order is live at the broker; the order monitor records the fill.
            self._finish(position_id, ExitStatus.COMPLETED, details={**result.as_dict(), "order_pending": True}, outcome="order_pending")
        else:
            self._finish(
                position_id,
                ExitStatus.FAILED,
                error=result.error or result.status,
                details=result.as_dict(),
                outcome="order_failed",
            )

    def _finish(
        self,
        position_id: str,
        status: ExitStatus,
        *,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        outcome: str,
    ) -> None:
        fields: Dict[str, Any] = {"execution_details": details or {}}
        if error:
            fields["last_error"] = error
        moved = self._store.transition_scheduled_exit(
            position_id,
            to_status=status.value,
            from_statuses=[ExitStatus.EXECUTING.value],
            fields=fields,
        )
        if not moved:
            # The health check already force-failed this row.
            self._logger.log_event(30, "exit_finish_skipped", position_id=position_id, status=status.value, outcome=outcome)
            return
        action = "EXECUTION_COMPLETED" if status is ExitStatus.COMPLETED else "EXECUTION_FAILED"
        self._audit(position_id, action, outcome=outcome, error=error)
        if self._metrics:
            self._metrics.inc_auto_exit(outcome)
        level = 20 if status is ExitStatus.COMPLETED else 40
        self._logger.log_event(level, "auto_exit_finished", position_id=position_id, status=status.value, outcome=outcome, error=error)
        if status is ExitStatus.FAILED:
            notify_incident("ERROR", "Auto square-off failed", f"position={position_id} error={error}", tags=["scheduler"])

    # ----------------------------------------------------------- cancellation
    async def cancel_position_exit(self, position_id: str, reason: str = "Cancelled") -> bool:
        self._disarm(position_id)
        cancelled = self._store.transition_scheduled_exit(
            position_id,
            to_status=ExitStatus.CANCELLED.value,
            from_statuses=[ExitStatus.PENDING.value],
            fields={"last_error": reason, "process_id": self.process_id},
        )
        if cancelled:
            self._audit(position_id, "CANCELLED", reason=reason)
            self._logger.log_event(20, "exit_cancelled", position_id=position_id, reason=reason)
        return cancelled

    async def emergency_stop(self, reason: str = "Emergency stop") -> int:
        """Disarm every timer in this process and cancel every PENDING row."""

        for position_id in list(self._timers):
            self._disarm(position_id)
        count = 0
        for row in self._store.list_scheduled_exits([ExitStatus.PENDING.value]):
            pid = row["position_id"]
            if self._store.transition_scheduled_exit(
                pid,
                to_status=ExitStatus.CANCELLED.value,
                from_statuses=[ExitStatus.PENDING.value],
                fields={"last_error": reason, "process_id": self.process_id},
            ):
                self._audit(pid, "EMERGENCY_STOP", reason=reason)
                count += 1
        self._logger.log_event(40, "scheduler_emergency_stop", cancelled=count, reason=reason)
        notify_incident("CRITICAL", "Auto-exit emergency stop", f"{count} scheduled exits cancelled: {reason}", tags=["scheduler"])
        return count

    # ---------------------------------------------------------------- health
    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cfg.health_check_interval)
            try:
                await self.health_check()
            except Exception as exc:
                self._logger.log_event(40, "scheduler_health_check_failed", error=str(exc))

    async def health_check(self) -> Dict[str, int]:
        stalled = self._fail_stalled()
        stale = self._drop_stale_timers()
        rearmed = 0
        overdue: List[str] = []
        current = self._now()
        for row in self._store.list_scheduled_exits([ExitStatus.PENDING.value]):
            pid = row["position_id"]
            if pid in self._timers or pid in self._executing:
                continue
            position = self._ledger.get_position(pid)
            if position is None or position.status is PositionStatus.CLOSED:
                if self._store.transition_scheduled_exit(
                    pid,
                    to_status=ExitStatus.CANCELLED.value,
                    from_statuses=[ExitStatus.PENDING.value],
                    fields={"last_error": "Position no longer open"},
                ):
                    self._audit(pid, "AUTO_CANCELLED", reason="Position no longer open")
                    stale += 1
                continue
            entry = ScheduledExit.from_row(row)
            if entry.target <= current:
                self._audit(pid, "OVERDUE_DETECTED", target=entry.target.isoformat(), now=current.isoformat())
                overdue.append(pid)
            else:
                self._arm(pid, entry.target, ExecutionMethod.AUTO_TIMEOUT)
            rearmed += 1
        for pid in overdue:
            self._spawn(self.execute_auto_exit(pid, ExecutionMethod.AUTO_TIMEOUT))
        self._update_gauge()
        if self._metrics:
            self._metrics.beat()
        summary = {"stalled": stalled, "stale": stale, "rearmed": rearmed}
        if any(summary.values()):
            self._logger.log_event(20, "scheduler_health_check", **summary)
        return summary

    def _fail_stalled(self) -> int:
        threshold = dt.timedelta(seconds=self._cfg.stall_threshold_seconds)
        current = utc_now()
        count = 0
        for row in self._store.list_scheduled_exits([ExitStatus.EXECUTING.value]):
            started = _parse_ts(row.get("last_attempt_at"))
            if started is None or current - started < threshold:
                continue
            pid = row["position_id"]
            error = f"Execution stalled for {int((current - started).total_seconds())}s"
            if not self._store.transition_scheduled_exit(
                pid,
                to_status=ExitStatus.FAILED.value,
                from_statuses=[ExitStatus.EXECUTING.value],
                fields={"last_error": error},
            ):
                continue
            count += 1
            self._audit(pid, "STALLED_DETECTED", started_at=started.isoformat(), owner=row.get("process_id"))
            if self._metrics:
                self._metrics.inc_stalled_exit()
            self._logger.log_event(40, "scheduled_exit_stalled", position_id=pid, error=error, owner=row.get("process_id"))
            notify_incident("ERROR", "Stalled auto-exit force-failed", f"position={pid} {error}", tags=["scheduler"])
        return count

    def _drop_stale_timers(self) -> int:
        count = 0
        for pid, handle in list(self._timers.items()):
            row = self._store.get_scheduled_exit(pid)
            position = self._ledger.get_position(pid)
            row_live = row is not None and row["status"] == ExitStatus.PENDING.value
            position_open = position is not None and position.is_active
            if row_live and position_open:
                continue
            self._disarm(pid)
            count += 1
            if row_live and not position_open:
                if self._store.transition_scheduled_exit(
                    pid,
                    to_status=ExitStatus.CANCELLED.value,
                    from_statuses=[ExitStatus.PENDING.value],
                    fields={"last_error": "Position no longer open"},
                ):
                    self._audit(pid, "AUTO_CANCELLED", reason="Position no longer open")
            self._logger.log_event(30, "stale_exit_timer_dropped", position_id=pid, row_status=row["status"] if row else None)
        return count

    # --------------------------------------------------------------- queries
    def get_scheduled_exit(self, position_id: str) -> Optional[ScheduledExit]:
        row = self._store.get_scheduled_exit(position_id)
        return ScheduledExit.from_row(row) if row else None

    def get_pending_exits(self) -> List[Dict[str, Any]]:
        pending = []
        for row in self._store.list_scheduled_exits([ExitStatus.PENDING.value, ExitStatus.EXECUTING.value]):
            entry = ScheduledExit.from_row(row)
            handle = self._timers.get(entry.position_id)
            pending.append(
                {
                    "position_id": entry.position_id,
                    "user_id": entry.user_id,
                    "symbol": entry.symbol,
                    "exit_time": entry.exit_time,
                    "target": entry.target.isoformat(),
                    "status": entry.status.value,
                    "attempts": entry.attempts,
                    "armed": bool(handle and handle.armed),
                    "process_id": entry.process_id,
                }
            )
        return pending

    def get_status(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in ExitStatus}
        for row in self._store.list_scheduled_exits():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return {
            "process_id": self.process_id,
            "version": self._cfg.version,
            "initialized": self._initialized,
            "health_check_running": self._health_task is not None and not self._health_task.done(),
            "armed_timers": len(self._timers),
            "executing": sorted(self._executing),
            "counts": counts,
            "next_exits": sorted(h.fire_at.isoformat() for h in self._timers.values())[:5],
        }

    def get_handle(self, position_id: str) -> Optional[ExitHandle]:
        return self._timers.get(position_id)

    # ---------------------------------------------------------------- helpers
    def _now(self) -> dt.datetime:
        current = self._clock()
        return current if current.tzinfo else current.replace(tzinfo=IST)

    def _audit(self, position_id: str, action: str, **details: Any) -> None:
        self._store.append_exit_audit(
            position_id,
            action,
            process_id=self.process_id,
            details={key: value for key, value in details.items() if value is not None},
        )

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_armed_exits(len(self._timers))


__all__ = [
    "ExecutionMethod",
    "ExitExecutor",
    "ExitHandle",
    "ExitScheduler",
    "ExitStatus",
    "ScheduledExit",
    "TERMINAL_EXIT_STATUSES",
    "default_process_id",
]
