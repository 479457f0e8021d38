from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from engine.config import IST, ReconciliationConfig
from engine.ledger import PositionLedger, PositionStatus
from engine.logging_utils import get_logger
from engine.metrics import EngineMetrics
from engine.time_machine import now as engine_now
from engine.validation import PositionValidator
from persistence import SQLiteStore

EXTERNAL_MANUAL_EXIT = "EXTERNAL_MANUAL_EXIT"


class ReconciliationAction(str, Enum):
    KEEP_OPEN = "KEEP_OPEN"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    RECONCILE_CLOSED = "RECONCILE_CLOSED"


class BrokerStatus(str, Enum):
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ReconciliationResult:
    position_id: str
    symbol: str
    user_id: str
    ledger_status: str
    ledger_qty: int
    broker_status: BrokerStatus
    broker_qty: int
    action: ReconciliationAction
    reason: str
    broker_price: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "user_id": self.user_id,
            "ledger_status": self.ledger_status,
            "ledger_qty": self.ledger_qty,
            "broker_status": self.broker_status.value,
            "broker_qty": self.broker_qty,
            "action": self.action.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ReconciliationExecution:
    dry_run: bool
    closed: List[str] = field(default_factory=list)
    would_close: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


class PositionReconciler:
    """Compares open ledger positions with broker positions; writes only when not in dry-run."""

    def __init__(
        self,
        ledger: PositionLedger,
        validator: PositionValidator,
        store: SQLiteStore,
        *,
        config: Optional[ReconciliationConfig] = None,
        metrics: Optional[EngineMetrics] = None,
    ):
        self._ledger = ledger
        self._validator = validator
        self._store = store
        self._cfg = config or ReconciliationConfig()
        self._metrics = metrics
        self._logger = get_logger("PositionReconciler")

    async def reconcile(self, user_id: Optional[str] = None) -> List[ReconciliationResult]:
        positions = self._ledger.get_open_positions(user_id=user_id)
        validations = await asyncio.gather(*(self._validator.validate(p) for p in positions))
        results: List[ReconciliationResult] = []
        for position, check in zip(positions, validations):
            if check.error:
                broker_status, action = BrokerStatus.ERROR, ReconciliationAction.MANUAL_REVIEW
                reason = f"Broker check failed: {check.error}"
            elif not check.exists:
                broker_status, action = BrokerStatus.NOT_EXISTS, ReconciliationAction.RECONCILE_CLOSED
                reason = "Position not found at broker; likely closed outside the engine"
            elif abs(check.quantity) == position.remaining_qty:
                broker_status, action = BrokerStatus.EXISTS, ReconciliationAction.KEEP_OPEN
                reason = "Broker quantity matches ledger"
            else:
                broker_status, action = BrokerStatus.EXISTS, ReconciliationAction.MANUAL_REVIEW
                reason = f"Quantity mismatch: ledger {position.remaining_qty}, broker {abs(check.quantity)}"
            result = ReconciliationResult(
                position_id=position.position_id,
                symbol=position.symbol,
                user_id=position.user_id,
                ledger_status=position.status.value,
                ledger_qty=position.remaining_qty,
                broker_status=broker_status,
                broker_qty=abs(check.quantity),
                action=action,
                reason=reason,
                broker_price=check.price,
            )
            results.append(result)
            if self._metrics:
                self._metrics.inc_reconciliation(action.value)
            self._logger.log_event(
                20 if action is ReconciliationAction.KEEP_OPEN else 30,
                "reconciliation_result",
                **result.as_dict(),
            )
        return results

    async def execute(self, results: Sequence[ReconciliationResult], dry_run: Optional[bool] = None) -> ReconciliationExecution:
        """Apply RECONCILE_CLOSED recommendations. Nothing is written unless ``dry_run`` is False."""

        dry = self._cfg.dry_run if dry_run is None else bool(dry_run)
        execution = ReconciliationExecution(dry_run=dry)
        for result in results:
            if result.action is not ReconciliationAction.RECONCILE_CLOSED:
                execution.skipped.append(result.position_id)
                continue
            if dry:
                self._record(result, new_status=None, dry_run=True)
                self._logger.log_event(20, "reconciliation_dry_run", position_id=result.position_id, action=result.action.value)
                execution.would_close.append(result.position_id)
                continue
            try:
                updated = await self._ledger.close_externally(
                    result.position_id,
                    reconciliation_type=EXTERNAL_MANUAL_EXIT,
                    price=result.broker_price,
                    audit=lambda _position, result=result: self._record(result, new_status=PositionStatus.CLOSED.value, dry_run=False),
                )
            except Exception as exc:
                execution.errors[result.position_id] = str(exc)
                self._logger.log_event(40, "reconciliation_write_failed", position_id=result.position_id, error=str(exc))
                continue
            if updated is None:
                execution.skipped.append(result.position_id)
                continue
            execution.closed.append(result.position_id)
        self._logger.log_event(
            20,
            "reconciliation_executed",
            dry_run=dry,
            closed=len(execution.closed),
            would_close=len(execution.would_close),
            skipped=len(execution.skipped),
            errors=len(execution.errors),
        )
        return execution

    def _record(self, result: ReconciliationResult, *, new_status: Optional[str], dry_run: bool) -> None:
        self._store.record_reconciliation(
            position_id=result.position_id,
            action=result.action.value,
            broker_status=result.broker_status.value,
            previous_status=result.ledger_status,
            new_status=new_status,
            ledger_qty=result.ledger_qty,
            broker_qty=result.broker_qty,
            reason=result.reason,
            dry_run=dry_run,
        )

    def generate_report(self, results: Sequence[ReconciliationResult], *, generated_at: Optional[dt.datetime] = None) -> str:
        stamp = (generated_at or engine_now(IST)).strftime("%Y-%m-%d %H:%M:%S %Z")
        counts = {action: 0 for action in ReconciliationAction}
        for result in results:
            counts[result.action] += 1
        lines = [
            f"Position reconciliation report ({stamp})",
            f"Positions checked: {len(results)}",
            f"  Keep open:        {counts[ReconciliationAction.KEEP_OPEN]}",
            f"  Manual review:    {counts[ReconciliationAction.MANUAL_REVIEW]}",
            f"  Reconcile closed: {counts[ReconciliationAction.RECONCILE_CLOSED]}",
        ]
        flagged = [r for r in results if r.action is not ReconciliationAction.KEEP_OPEN]
        if flagged:
            lines.append("")
            lines.append("Details:")
            for result in flagged:
                lines.append(
                    f"- {result.position_id} {result.symbol} [{result.action.value}] "
                    f"ledger={result.ledger_qty} broker={result.broker_qty} ({result.broker_status.value}): {result.reason}"
                )
        return "\n".join(lines)


__all__ = [
    "BrokerStatus",
    "EXTERNAL_MANUAL_EXIT",
    "PositionReconciler",
    "ReconciliationAction",
    "ReconciliationExecution",
    "ReconciliationResult",
]
