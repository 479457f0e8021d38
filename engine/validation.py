from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Iterable, Optional

from engine.broker import BrokerError, BrokerGateway, BrokerPosition
from engine.ledger import Position
from engine.logging_utils import get_logger
from engine.time_machine import utc_now
from persistence import SQLiteStore


@dataclass(frozen=True)
class PositionValidationResult:
    position_id: str
    exists: bool
    quantity: int
    price: Optional[float]
    pnl: Optional[float]
    validated_at: dt.datetime
    error: Optional[str] = None
    source: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def find_broker_position(position: Position, candidates: Iterable[BrokerPosition]) -> Optional[BrokerPosition]:
    for row in candidates:
        if row.tradingsymbol == position.symbol and row.exchange == position.exchange and row.quantity != 0:
            return row
    return None


class PositionValidator:
    """Checks a ledger position against the broker's net, then day, positions."""

    def __init__(self, broker: BrokerGateway, store: Optional[SQLiteStore] = None):
        self._broker = broker
        self._store = store
        self._logger = get_logger("PositionValidator")

    async def validate(self, position: Position) -> PositionValidationResult:
        stamp = utc_now()
        try:
            book = await self._broker.get_positions()
        except BrokerError as exc:
            result = PositionValidationResult(
                position_id=position.position_id,
                exists=False,
                quantity=0,
                price=None,
                pnl=None,
                validated_at=stamp,
                error=f"{exc.code}: {exc}",
            )
            self._logger.log_event(30, "position_validation_failed", position_id=position.position_id, error=result.error)
            self._record(result)
            return result

        match, source = find_broker_position(position, book.net), "net"
        if match is None:
            match, source = find_broker_position(position, book.day), "day"
        if match is None:
            result = PositionValidationResult(
                position_id=position.position_id,
                exists=False,
                quantity=0,
                price=None,
                pnl=None,
                validated_at=stamp,
            )
        else:
            result = PositionValidationResult(
                position_id=position.position_id,
                exists=True,
                quantity=match.quantity,
                price=match.mark_price,
                pnl=match.pnl,
                validated_at=stamp,
                source=source,
            )
        self._logger.log_event(
            20,
            "position_validated",
            position_id=position.position_id,
            symbol=position.symbol,
            exists=result.exists,
            broker_qty=result.quantity,
            source=result.source,
        )
        self._record(result)
        return result

    def _record(self, result: PositionValidationResult) -> None:
        if self._store is None:
            return
        self._store.record_validation(
            result.position_id,
            exists=result.exists,
            broker_qty=result.quantity,
            broker_price=result.price,
            broker_pnl=result.pnl,
            error=result.error,
            ts=result.validated_at,
        )


__all__ = ["PositionValidationResult", "PositionValidator", "find_broker_position"]
