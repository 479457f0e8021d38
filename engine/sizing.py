from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SizingMode(str, Enum):
    RISK_PERCENTAGE = "RISK_PERCENTAGE"
    FIXED_QUANTITY = "FIXED_QUANTITY"


def risk_fraction(value: float) -> float:
    """Normalize a risk percentage (5.0 -> 0.05); non-positive input yields 0."""

    v = float(value or 0.0)
    if v <= 0:
        return 0.0
    return v / 100.0


@dataclass(frozen=True)
class PositionSize:
    lots: int
    amount: float
    can_trade: bool
    quantity: int = 0
    premium_per_lot: float = 0.0
    min_capital_required: Optional[float] = None


def premium_per_lot(premium: float, lot_size: int) -> float:
    lot = int(lot_size or 0)
    if lot <= 0:
        raise ValueError(f"lot_size must be positive; got {lot_size!r}")
    return float(premium) * lot


def min_capital_for_one_lot(risk_pct: float, per_lot: float) -> float:
    rf = risk_fraction(risk_pct)
    if rf <= 0:
        return math.inf
    return float(math.ceil(per_lot / rf))


def calculate_position_size(capital: float, risk_pct: float, per_lot: float, lot_size: int = 1) -> PositionSize:
    """Risk-percentage sizing: lots = floor(capital x risk% / premium-per-lot)."""

    capital = float(capital or 0.0)
    per_lot = float(per_lot or 0.0)
    if capital <= 0 or per_lot <= 0:
        return PositionSize(lots=0, amount=0.0, can_trade=False, premium_per_lot=per_lot)
    risk_amount = capital * risk_fraction(risk_pct)
    lots = max(int(math.floor(risk_amount / per_lot)), 0)
    can_trade = lots >= 1
    return PositionSize(
        lots=lots,
        amount=lots * per_lot,
        can_trade=can_trade,
        quantity=lots * max(int(lot_size or 1), 1),
        premium_per_lot=per_lot,
        min_capital_required=None if can_trade else min_capital_for_one_lot(risk_pct, per_lot),
    )


def fixed_quantity_size(capital: float, lots: int, per_lot: float, lot_size: int = 1) -> PositionSize:
    """Fixed lots bypass risk sizing but still require capital >= lots x premium-per-lot."""

    lots = int(lots or 0)
    required = lots * float(per_lot or 0.0)
    can_trade = lots >= 1 and float(capital or 0.0) >= required
    return PositionSize(
        lots=lots,
        amount=required,
        can_trade=can_trade,
        quantity=lots * max(int(lot_size or 1), 1),
        premium_per_lot=float(per_lot or 0.0),
        min_capital_required=None if can_trade else required,
    )


__all__ = [
    "PositionSize",
    "SizingMode",
    "calculate_position_size",
    "fixed_quantity_size",
    "min_capital_for_one_lot",
    "premium_per_lot",
    "risk_fraction",
]
