from __future__ import annotations

import asyncio
import datetime as dt
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from engine.config import IST, LedgerConfig
from engine.logging_utils import get_logger
from engine.metrics import EngineMetrics
from engine.time_machine import utc_now
from persistence import SQLiteStore


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


ACTIVE_STATUSES = (PositionStatus.OPEN.value, PositionStatus.PARTIAL.value)


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1

    @property
    def entry_transaction(self) -> str:
        return "BUY" if self is PositionSide.LONG else "SELL"

    @property
    def exit_transaction(self) -> str:
        return "SELL" if self is PositionSide.LONG else "BUY"


class ExitReason(str, Enum):
    SIGNAL = "SIGNAL"
    AUTO_SQUARE_OFF = "AUTO_SQUARE_OFF"
    EMERGENCY = "EMERGENCY"
    MANUAL = "MANUAL"
    EXTERNAL = "EXTERNAL"


class LedgerError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


def _parse_ts(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class ExitExecution:
    quantity: int
    price: float
    time: dt.datetime
    order_id: Optional[str]
    reason: ExitReason
    pnl: float

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "ExitExecution":
        return ExitExecution(
            quantity=int(row["quantity"]),
            price=float(row["price"]),
            time=_parse_ts(row["exit_time"]) or utc_now(),
            order_id=row.get("order_id"),
            reason=ExitReason(row["reason"]),
            pnl=float(row["pnl"]),
        )


@dataclass
class Position:
    position_id: str
    user_id: str
    symbol: str
    exchange: str
    side: PositionSide
    entry_price: float
    entry_qty: int
    entry_time: dt.datetime
    status: PositionStatus = PositionStatus.OPEN
    remaining_qty: int = 0
    avg_price: float = 0.0
    bot_id: Optional[str] = None
    allocation_id: Optional[str] = None
    signal_id: Optional[str] = None
    entry_order_id: Optional[str] = None
    instrument_type: str = "OPTIONS"
    exits: List[ExitExecution] = field(default_factory=list)
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    current_price: Optional[float] = None
    is_intraday: bool = True
    auto_exit_time: Optional[str] = None
    reconciliation_type: Optional[str] = None
    closed_at: Optional[dt.datetime] = None
    version: int = 0

    @property
    def total_exit_qty(self) -> int:
        return sum(e.quantity for e in self.exits)

    @property
    def is_active(self) -> bool:
        return self.status is not PositionStatus.CLOSED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Position":
        return cls(
            position_id=row["position_id"],
            user_id=row["user_id"],
            bot_id=row.get("bot_id"),
            allocation_id=row.get("allocation_id"),
            signal_id=row.get("signal_id"),
            symbol=row["symbol"],
            exchange=row["exchange"],
            instrument_type=row.get("instrument_type") or "OPTIONS",
            side=PositionSide(row["side"]),
            entry_price=float(row["entry_price"]),
            entry_qty=int(row["entry_qty"]),
            entry_time=_parse_ts(row["entry_time"]) or utc_now(),
            entry_order_id=row.get("entry_order_id"),
            status=PositionStatus(row["status"]),
            remaining_qty=int(row["remaining_qty"]),
            avg_price=float(row["avg_price"]),
            exits=[ExitExecution.from_row(e) for e in row.get("exits") or []],
            realized_pnl=float(row.get("realized_pnl") or 0.0),
            unrealized_pnl=float(row.get("unrealized_pnl") or 0.0),
            current_price=row.get("current_price"),
            is_intraday=bool(row.get("is_intraday", 1)),
            auto_exit_time=row.get("auto_exit_time"),
            reconciliation_type=row.get("reconciliation_type"),
            closed_at=_parse_ts(row.get("closed_at")),
            version=int(row.get("version") or 0),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "allocation_id": self.allocation_id,
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "exchange": self.exchange,
            "instrument_type": self.instrument_type,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "entry_qty": self.entry_qty,
            "entry_time": self.entry_time.astimezone(dt.timezone.utc),
            "entry_order_id": self.entry_order_id,
            "status": self.status.value,
            "remaining_qty": self.remaining_qty,
            "avg_price": self.avg_price,
            "total_exit_qty": self.total_exit_qty,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "current_price": self.current_price,
            "is_intraday": self.is_intraday,
            "auto_exit_time": self.auto_exit_time,
            "reconciliation_type": self.reconciliation_type,
        }


ExitCanceller = Callable[[str, str], Awaitable[Any]]


def new_position_id() -> str:
    return f"POS_{int(utc_now().timestamp() * 1000)}_{secrets.token_hex(4)}"


class PositionLedger:
    """
    Durable position records driven by confirmed executions.

    Exits for one position are serialized by a per-position lock and committed with
    an optimistic version check, so a scheduler exit, a signal exit and a
    reconciliation pass racing on the same row cannot lose updates. Closing a
    position writes CLOSED first; cancelling its scheduled exit afterwards is best
    effort and the scheduler health check sweeps up anything left behind.
    """

    def __init__(
        self,
        store: SQLiteStore,
        *,
        config: Optional[LedgerConfig] = None,
        metrics: Optional[EngineMetrics] = None,
        exit_canceller: Optional[ExitCanceller] = None,
    ):
        self._store = store
        self._cfg = config or LedgerConfig()
        self._metrics = metrics
        self._exit_canceller = exit_canceller
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = get_logger("PositionLedger")

    def bind_exit_canceller(self, canceller: Optional[ExitCanceller]) -> None:
        self._exit_canceller = canceller

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    def _forget_lock(self, position_id: str) -> None:
        # Closed positions take no further exits; waiters keep their own reference.
        self._locks.pop(position_id, None)

    # ------------------------------------------------------------------ create
    async def create_position(
        self,
        *,
        user_id: str,
        symbol: str,
        exchange: str,
        side: PositionSide | str,
        entry_price: float,
        entry_qty: int,
        entry_order_id: Optional[str] = None,
        entry_time: Optional[dt.datetime] = None,
        position_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        allocation_id: Optional[str] = None,
        signal_id: Optional[str] = None,
        instrument_type: str = "OPTIONS",
        is_intraday: bool = True,
        auto_exit_time: Optional[str] = None,
    ) -> Position:
        if int(entry_qty) <= 0:
            raise LedgerError("invalid_qty", f"entry_qty must be positive; got {entry_qty!r}")
        if float(entry_price) < 0:
            raise LedgerError("invalid_price", f"entry_price must be >= 0; got {entry_price!r}")
        position = Position(
            position_id=position_id or new_position_id(),
            user_id=user_id,
            bot_id=bot_id,
            allocation_id=allocation_id,
            signal_id=signal_id,
            symbol=symbol,
            exchange=exchange,
            instrument_type=instrument_type,
            side=PositionSide(side),
            entry_price=float(entry_price),
            entry_qty=int(entry_qty),
            entry_time=entry_time or utc_now(),
            entry_order_id=entry_order_id,
            status=PositionStatus.OPEN,
            remaining_qty=int(entry_qty),
            avg_price=float(entry_price),
            is_intraday=is_intraday,
            auto_exit_time=auto_exit_time if is_intraday else None,
        )
        async with self._lock_for(position.position_id):
            inserted = self._store.insert_position(position.to_row())
        if not inserted:
            # Same confirmed fill delivered twice (confirmation + monitor); keep the first.
            existing = self.get_position(position.position_id)
            if existing is None:
                raise LedgerError("insert_failed", f"Position {position.position_id} could not be stored")
            self._logger.log_event(20, "position_exists", position_id=position.position_id)
            return existing
        self._logger.log_event(
            20,
            "position_created",
            position_id=position.position_id,
            symbol=symbol,
            side=position.side.value,
            qty=position.entry_qty,
            price=position.entry_price,
            intraday=is_intraday,
        )
        self._record_event("created")
        return position

    # ------------------------------------------------------------------- exits
    async def update_position_with_exit(
        self,
        position_id: str,
        *,
        quantity: int,
        price: float,
        reason: ExitReason | str,
        order_id: Optional[str] = None,
        exit_time: Optional[dt.datetime] = None,
    ) -> Position:
        quantity = int(quantity)
        if quantity <= 0:
            raise LedgerError("invalid_qty", f"exit quantity must be positive; got {quantity!r}")
        reason = ExitReason(reason)
        stamp = exit_time or utc_now()
        async with self._lock_for(position_id):
            position = self._require(position_id)
            if position.status is PositionStatus.CLOSED:
                raise LedgerError("already_closed", f"Position {position_id} is already closed")
            if position.total_exit_qty + quantity > position.entry_qty:
                raise LedgerError(
                    "overfill",
                    f"Exit of {quantity} exceeds remaining {position.remaining_qty} on {position_id}",
                )
            pnl = quantity * (float(price) - position.avg_price) * position.side.sign
            execution = ExitExecution(quantity=quantity, price=float(price), time=stamp, order_id=order_id, reason=reason, pnl=pnl)
            exited = position.total_exit_qty + quantity
            status = PositionStatus.CLOSED if exited == position.entry_qty else PositionStatus.PARTIAL
            fields: Dict[str, Any] = {
                "status": status.value,
                "remaining_qty": position.entry_qty - exited,
                "total_exit_qty": exited,
                "realized_pnl": position.realized_pnl + pnl,
            }
            if status is PositionStatus.CLOSED:
                fields["closed_at"] = stamp.astimezone(dt.timezone.utc)
                fields["unrealized_pnl"] = 0.0
            exit_row = {
                "quantity": quantity,
                "price": float(price),
                "exit_time": stamp.astimezone(dt.timezone.utc),
                "order_id": order_id,
                "reason": reason.value,
                "pnl": pnl,
            }
            if not self._store.apply_position_exit(position_id, expected_version=position.version, fields=fields, exit_row=exit_row):
                raise LedgerError("conflict", f"Position {position_id} changed concurrently; retry the exit")
            updated = self._require(position_id)
            if status is PositionStatus.CLOSED:
                self._forget_lock(position_id)
        self._logger.log_event(
            20,
            "position_exit_recorded",
            position_id=position_id,
            qty=quantity,
            price=float(price),
            reason=reason.value,
            pnl=round(pnl, 2),
            status=status.value,
            remaining=updated.remaining_qty,
        )
        self._record_event("closed" if status is PositionStatus.CLOSED else "partial_exit")
        if status is PositionStatus.CLOSED and updated.is_intraday:
            await self._cancel_scheduled_exit(position_id, f"Position closed ({reason.value})")
        return updated

    async def close_externally(
        self,
        position_id: str,
        *,
        reconciliation_type: str,
        price: Optional[float] = None,
        audit: Optional[Callable[[Position], None]] = None,
    ) -> Optional[Position]:
        """
        Close a position that was squared off outside the engine.

        The remaining quantity is booked as one EXTERNAL exit at ``price`` (the
        average price when the broker gave none). ``audit`` runs inside the same
        transaction as the close; if it raises, the close is rolled back.
        """

        async with self._lock_for(position_id):
            position = self.get_position(position_id)
            if position is None or position.status is PositionStatus.CLOSED:
                return None
            stamp = utc_now()
            exit_price = float(price) if price is not None else position.avg_price
            quantity = position.remaining_qty
            pnl = quantity * (exit_price - position.avg_price) * position.side.sign
            fields: Dict[str, Any] = {
                "status": PositionStatus.CLOSED.value,
                "remaining_qty": 0,
                "total_exit_qty": position.entry_qty,
                "realized_pnl": position.realized_pnl + pnl,
                "unrealized_pnl": 0.0,
                "current_price": exit_price,
                "reconciliation_type": reconciliation_type,
                "closed_at": stamp,
            }
            exit_row = {
                "quantity": quantity,
                "price": exit_price,
                "exit_time": stamp,
                "order_id": None,
                "reason": ExitReason.EXTERNAL.value,
                "pnl": pnl,
            }
            with self._store.atomic():
                if not self._store.apply_position_exit(position_id, expected_version=position.version, fields=fields, exit_row=exit_row):
                    raise LedgerError("conflict", f"Position {position_id} changed concurrently")
                updated = self._require(position_id)
                if audit is not None:
                    audit(updated)
            self._forget_lock(position_id)
        self._logger.log_event(
            30,
            "position_closed_externally",
            position_id=position_id,
            reconciliation_type=reconciliation_type,
            qty=quantity,
            price=exit_price,
        )
        self._record_event("closed_external")
        if updated.is_intraday:
            await self._cancel_scheduled_exit(position_id, f"Position closed externally ({reconciliation_type})")
        return updated

    async def _cancel_scheduled_exit(self, position_id: str, reason: str) -> None:
        if not self._exit_canceller:
            return
        try:
            await self._exit_canceller(position_id, reason)
        except Exception as exc:
            self._logger.log_event(30, "scheduled_exit_cancel_failed", position_id=position_id, error=str(exc))

    # ----------------------------------------------------------------- queries
    def get_position(self, position_id: str) -> Optional[Position]:
        row = self._store.get_position(position_id)
        return Position.from_row(row) if row else None

    def _require(self, position_id: str) -> Position:
        position = self.get_position(position_id)
        if position is None:
            raise LedgerError("not_found", f"Position {position_id} not found")
        return position

    def get_open_positions(self, user_id: Optional[str] = None, bot_id: Optional[str] = None) -> List[Position]:
        rows = self._store.list_positions(statuses=ACTIVE_STATUSES, user_id=user_id, bot_id=bot_id)
        positions = [Position.from_row(row) for row in rows]
        if self._metrics and user_id is None and bot_id is None:
            self._metrics.set_open_positions(len(positions))
        return positions

    def get_intraday_positions_for_auto_exit(self) -> List[Position]:
        rows = self._store.list_positions(statuses=ACTIVE_STATUSES, intraday=True)
        return [Position.from_row(row) for row in rows if row.get("auto_exit_time")]

    async def update_unrealized_pnl(self, position_id: str, current_price: float) -> Optional[Position]:
        async with self._lock_for(position_id):
            position = self.get_position(position_id)
            if position is None or position.status is PositionStatus.CLOSED:
                return None
            unrealized = position.remaining_qty * (float(current_price) - position.avg_price) * position.side.sign
            if not self._store.update_position(
                position_id,
                {"unrealized_pnl": unrealized, "current_price": float(current_price)},
                allowed_statuses=ACTIVE_STATUSES,
            ):
                return None
            return self._require(position_id)

    def purge_closed_positions(self, days_old: Optional[int] = None) -> int:
        days = self._cfg.retention_days if days_old is None else int(days_old)
        cutoff = utc_now() - dt.timedelta(days=days)
        removed = self._store.purge_closed_positions(cutoff)
        self._logger.log_event(20, "positions_purged", removed=removed, cutoff=cutoff.astimezone(IST).isoformat())
        return removed

    def _record_event(self, event: str) -> None:
        if self._metrics:
            self._metrics.inc_position_event(event)


__all__ = [
    "ACTIVE_STATUSES",
    "ExitExecution",
    "ExitReason",
    "LedgerError",
    "Position",
    "PositionLedger",
    "PositionSide",
    "PositionStatus",
    "new_position_id",
]
