from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any, Dict, Mapping, Optional

from engine.broker import BrokerError
from engine.confirmation import FillHandler, OrderConfirmationEngine
from engine.config import MonitorConfig
from engine.logging_utils import RateLimitedLogger, get_logger
from engine.metrics import EngineMetrics
from engine.time_machine import utc_now
from persistence import SQLiteStore


class OrderMonitor:
    """
    Background fallback for orders whose confirmation came back pending.

    Each cycle checks one batch of PENDING order states against the broker:
    filled orders are confirmed and handed to the fill handler, dead orders are
    failed, and orders that are missing or have been working longer than the
    maximum age are flagged for manual review.
    """

    def __init__(
        self,
        confirmation: OrderConfirmationEngine,
        store: SQLiteStore,
        *,
        fill_handler: Optional[FillHandler] = None,
        config: Optional[MonitorConfig] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self._confirmation = confirmation
        self._store = store
        self._fill_handler = fill_handler
        self._cfg = config or MonitorConfig()
        self._metrics = metrics
        self._task: Optional[asyncio.Task] = None
        self._auth_blocked = False
        self._logger = get_logger("OrderMonitor")
        self._noisy = RateLimitedLogger(self._logger, min_interval_seconds=60.0)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        self._logger.log_event(20, "order_monitor_started", interval=self._cfg.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._logger.log_event(20, "order_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                self._logger.log_event(40, "order_monitor_cycle_failed", error=str(exc))
            await asyncio.sleep(self._cfg.interval_seconds)

    async def run_once(self) -> Dict[str, int]:
        rows = self._store.list_pending_order_states(limit=self._cfg.batch_size)
        summary = {"checked": 0, "confirmed": 0, "failed": 0, "manual_review": 0, "pending": 0, "errors": 0}
        for row in rows:
            summary["checked"] += 1
            outcome = await self._check(row)
            summary[outcome] += 1
            if outcome == "errors" and self._auth_blocked:
                break
        if self._metrics:
            self._metrics.inc_monitor_cycle()
        if summary["checked"]:
            self._logger.log_event(20, "order_monitor_cycle", **summary)
        return summary

    async def _check(self, row: Mapping[str, Any]) -> str:
        state_id = row["id"]
        self._auth_blocked = False
        try:
            result = await self._confirmation.check_once(state_id)
        except BrokerError as exc:
            if exc.needs_reauth:
                self._auth_blocked = True
                self._noisy.log_event(40, "order_monitor_auth_required", "auth", error=str(exc))
                return "errors"
            if exc.code == "rejected":
                # Kite answers an unknown order id with an input error.
                self._flag(state_id, "MONITOR_NOT_FOUND", f"Order not found at broker: {exc}")
                return "manual_review"
            self._noisy.log_event(30, "order_monitor_fetch_failed", state_id, order_state_id=state_id, error=str(exc))
            return "errors"
        if result.executed:
            if not result.duplicate:
                self._store.append_order_history(state_id, "MONITOR_CONFIRMED", {"status": result.status, "executed_qty": result.executed_qty})
                await self._confirmation.dispatch_fill(result, self._fill_handler)
            return "confirmed"
        if not result.success:
            self._store.append_order_history(state_id, "MONITOR_FAILED", {"status": result.status, "error": result.error})
            return "failed"
        if result.status == "NOT_FOUND":
            self._flag(state_id, "MONITOR_NOT_FOUND", "Order not found at broker")
            return "manual_review"
        if self._age(row) > dt.timedelta(seconds=self._cfg.max_order_age_seconds):
            self._flag(state_id, "MONITOR_STALE", f"Order still {result.status} after {int(self._age(row).total_seconds())}s")
            return "manual_review"
        return "pending"

    def _flag(self, state_id: str, action: str, reason: str) -> None:
        self._store.update_order_state(state_id, {"manual_review": True, "error": reason})
        self._store.append_order_history(state_id, action, {"reason": reason})
        self._logger.log_event(30, "order_manual_review", order_state_id=state_id, action=action, reason=reason)

    @staticmethod
    def _age(row: Mapping[str, Any]) -> dt.timedelta:
        created = dt.datetime.fromisoformat(str(row["created_at"]))
        if created.tzinfo is None:
            created = created.replace(tzinfo=dt.timezone.utc)
        return utc_now() - created


__all__ = ["OrderMonitor"]
