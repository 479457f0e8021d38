from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from engine.alerts import notify_incident
from engine.broker import OrderRequest
from engine.confirmation import ExecutionResult, OrderConfirmationEngine
from engine.config import LedgerConfig
from engine.ledger import ExitReason, LedgerError, Position, PositionLedger, PositionSide, PositionStatus
from engine.logging_utils import get_logger
from engine.time_machine import utc_now

PURPOSE_ENTRY = "ENTRY"
PURPOSE_EXIT = "EXIT"


def build_order_tag(signal_id: Optional[str], bot_id: Optional[str]) -> str:
    """Broker order tag ``TB_<last 8 of signal>_<last 4 of bot>`` (Kite caps tags at 20 chars)."""

    signal_part = (signal_id or "manual")[-8:]
    bot_part = (bot_id or "none")[-4:]
    return f"TB_{signal_part}_{bot_part}"


def entry_position_id(signal_id: Optional[str], order_id: str) -> str:
    return f"{signal_id}_{order_id}" if signal_id else f"POS_{order_id}"


def new_execution_id() -> str:
    return f"EXE_{int(utc_now().timestamp() * 1000)}_{secrets.token_hex(3)}"


@dataclass(frozen=True)
class EntryIntent:
    user_id: str
    symbol: str
    quantity: int
    exchange: str = "NFO"
    side: PositionSide = PositionSide.LONG
    bot_id: Optional[str] = None
    allocation_id: Optional[str] = None
    signal_id: Optional[str] = None
    instrument_type: str = "OPTIONS"
    is_intraday: bool = True
    auto_exit_time: Optional[str] = None

    def as_context(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "allocation_id": self.allocation_id,
            "signal_id": self.signal_id,
            "side": self.side.value,
            "instrument_type": self.instrument_type,
            "is_intraday": self.is_intraday,
            "auto_exit_time": self.auto_exit_time,
        }


class TradeExecutor:
    """Turns confirmed fills into ledger entries and exits, and arms intraday square-offs."""

    def __init__(
        self,
        confirmation: OrderConfirmationEngine,
        ledger: PositionLedger,
        *,
        scheduler: Optional[Any] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self._confirmation = confirmation
        self._ledger = ledger
        self._scheduler = scheduler
        self._cfg = config or LedgerConfig()
        self._logger = get_logger("TradeExecutor")

    def bind_scheduler(self, scheduler: Any) -> None:
        self._scheduler = scheduler

    async def execute_entry(self, intent: EntryIntent, *, execution_id: Optional[str] = None) -> ExecutionResult:
        request = OrderRequest(
            exchange=intent.exchange,
            tradingsymbol=intent.symbol,
            transaction_type=intent.side.entry_transaction,
            quantity=int(intent.quantity),
            product=self._cfg.product,
            order_type="MARKET",
            tag=build_order_tag(intent.signal_id, intent.bot_id),
        )
        self._logger.log_event(20, "entry_requested", symbol=intent.symbol, qty=intent.quantity, signal_id=intent.signal_id, bot_id=intent.bot_id)
        return await self._confirmation.place_and_confirm(
            request,
            execution_id=execution_id or new_execution_id(),
            purpose=PURPOSE_ENTRY,
            context=intent.as_context(),
            fill_handler=self.handle_fill,
        )

    async def execute_exit(
        self,
        position: Position,
        quantity: Optional[int] = None,
        reason: ExitReason | str = ExitReason.SIGNAL,
        *,
        execution_id: Optional[str] = None,
    ) -> ExecutionResult:
        reason = ExitReason(reason)
        qty = int(quantity if quantity is not None else position.remaining_qty)
        request = OrderRequest(
            exchange=position.exchange,
            tradingsymbol=position.symbol,
            transaction_type=position.side.exit_transaction,
            quantity=qty,
            product=self._cfg.product,
            order_type="MARKET",
            tag=build_order_tag(position.signal_id, position.bot_id),
        )
        self._logger.log_event(20, "exit_requested", position_id=position.position_id, qty=qty, reason=reason.value)
        return await self._confirmation.place_and_confirm(
            request,
            execution_id=execution_id or new_execution_id(),
            purpose=PURPOSE_EXIT,
            position_id=position.position_id,
            context={"reason": reason.value, "user_id": position.user_id},
            fill_handler=self.handle_fill,
        )

    async def auto_square_off(self, position: Position, quantity: int) -> ExecutionResult:
        return await self.execute_exit(position, quantity, ExitReason.AUTO_SQUARE_OFF)

    async def close_position(self, position_id: str, reason: ExitReason | str = ExitReason.MANUAL) -> ExecutionResult:
        """Operator close of one position at market for its remaining quantity."""

        position = self._ledger.get_position(position_id)
        if position is None:
            raise LedgerError("not_found", f"Position {position_id} not found")
        if not position.is_active:
            raise LedgerError("already_closed", f"Position {position_id} is already closed")
        return await self.execute_exit(position, reason=reason)

    async def emergency_square_off(self, user_id: Optional[str] = None, bot_id: Optional[str] = None) -> Dict[str, ExecutionResult]:
        """Place market exits for every open position of a user or bot, concurrently."""

        positions = self._ledger.get_open_positions(user_id=user_id, bot_id=bot_id)
        self._logger.log_event(40, "emergency_square_off", user_id=user_id, bot_id=bot_id, positions=len(positions))
        if not positions:
            return {}
        results = await asyncio.gather(*(self.execute_exit(p, reason=ExitReason.EMERGENCY) for p in positions))
        outcome = dict(zip((p.position_id for p in positions), results))
        failed = sorted(pid for pid, result in outcome.items() if not result.executed)
        notify_incident(
            "CRIT",
            "Emergency square-off",
            f"user={user_id} bot={bot_id} positions={len(positions)} unfilled={failed}",
            tags=["ops", "emergency"],
        )
        return outcome

    async def handle_fill(self, result: ExecutionResult) -> Optional[Position]:
        """Record a confirmed fill; runs inline after confirmation and from the order monitor."""

        if not result.executed or not result.broker_order_id:
            return None
        if result.purpose == PURPOSE_EXIT:
            return await self._record_exit(result)
        return await self._record_entry(result)

    async def _record_entry(self, result: ExecutionResult) -> Position:
        ctx = result.context
        request = result.request
        if request is None:
            raise LedgerError("missing_request", f"Fill {result.broker_order_id} has no order request")
        position = await self._ledger.create_position(
            position_id=entry_position_id(ctx.get("signal_id"), result.broker_order_id or ""),
            user_id=ctx.get("user_id") or "unknown",
            bot_id=ctx.get("bot_id"),
            allocation_id=ctx.get("allocation_id"),
            signal_id=ctx.get("signal_id"),
            symbol=request.tradingsymbol,
            exchange=request.exchange,
            side=ctx.get("side") or PositionSide.LONG.value,
            entry_price=float(result.executed_price or 0.0),
            entry_qty=result.executed_qty,
            entry_order_id=result.broker_order_id,
            instrument_type=ctx.get("instrument_type") or "OPTIONS",
            is_intraday=bool(ctx.get("is_intraday", True)),
            auto_exit_time=ctx.get("auto_exit_time"),
        )
        if position.is_intraday and self._scheduler is not None and position.is_active:
            await self._scheduler.schedule_position_exit(
                position.position_id,
                position.auto_exit_time,
                user_id=position.user_id,
                symbol=position.symbol,
            )
        return position

    async def _record_exit(self, result: ExecutionResult) -> Optional[Position]:
        position_id = result.position_id
        if not position_id:
            raise LedgerError("missing_position", f"Exit fill {result.broker_order_id} is not linked to a position")
        position = self._ledger.get_position(position_id)
        if position is None or position.status is PositionStatus.CLOSED:
            self._logger.log_event(30, "exit_fill_for_closed_position", position_id=position_id, order_id=result.broker_order_id)
            return position
        qty = min(result.executed_qty, position.remaining_qty)
        if qty != result.executed_qty:
            self._logger.log_event(
                30,
                "exit_fill_clamped",
                position_id=position_id,
                executed_qty=result.executed_qty,
                remaining=position.remaining_qty,
            )
        return await self._ledger.update_position_with_exit(
            position_id,
            quantity=qty,
            price=float(result.executed_price or 0.0),
            reason=result.context.get("reason") or ExitReason.SIGNAL.value,
            order_id=result.broker_order_id,
        )


__all__ = [
    "EntryIntent",
    "PURPOSE_ENTRY",
    "PURPOSE_EXIT",
    "TradeExecutor",
    "build_order_tag",
    "entry_position_id",
    "new_execution_id",
]
