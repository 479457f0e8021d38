from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

from engine.config import IST
from engine.time_machine import now as engine_now

MIN_TIME_TO_EXPIRY_YEARS = 1.0 / 365.0
DEFAULT_RISK_FREE_RATE = 0.065
PRICE_TOLERANCE = 0.01
MIN_VEGA = 0.001

CALL_TOKENS = {"CALL", "CE", "C"}
PUT_TOKENS = {"PUT", "PE", "P"}
BULLISH_ACTIONS = {"BUY", "LONG", "ENTRY_LONG"}
BEARISH_ACTIONS = {"SELL", "SHORT", "SELL_SHORT", "SHORT_SELL", "ENTRY_SHORT"}


@dataclass(frozen=True)
class OptionsContract:
    """Candidate option leg for one trade decision; ``delta`` is the absolute delta."""

    symbol: str
    strike: int
    expiry: dt.date
    option_type: str
    premium: float = 0.0
    open_interest: int = 0
    delta: float = 0.0
    implied_volatility: Optional[float] = None
    lot_size: int = 0
    instrument_token: Optional[int] = None
    exchange: str = "NFO"


# ---------------------------------------------------------------------- strikes
def calculate_atm_strike(spot: float, step: int = 50) -> int:
    """Round ``spot`` to the nearest ``step`` with halves rounded up (18525 -> 18550)."""

    if step <= 0:
        raise ValueError(f"step must be positive; got {step!r}")
    spot = float(spot)
    if not math.isfinite(spot) or spot <= 0:
        raise ValueError(f"spot must be a positive number; got {spot!r}")
    # round() is banker's rounding; the boundary must always go up.
    return int(math.floor(spot / step + 0.5)) * step


def generate_strike_prices(atm: int, step: int = 50, each_side: int = 3) -> List[int]:
    if each_side < 0:
        raise ValueError(f"each_side must be >= 0; got {each_side!r}")
    atm = int(atm)
    return [atm + offset * step for offset in range(-each_side, each_side + 1)]


# ---------------------------------------------------------------------- expiries
def _coerce_date(value: object) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.astimezone(IST).date() if value.tzinfo else value.date()
    if isinstance(value, dt.date):
        return value
    text = str(value or "").strip()
    if not text:
        raise ValueError("expiry must be a date or ISO string")
    return dt.date.fromisoformat(text[:10])


def _next_month(today: dt.date) -> tuple[int, int]:
    if today.month == 12:
        return today.year + 1, 1
    return today.year, today.month + 1


def select_expiry(
    expiries: Iterable[object],
    today: Optional[dt.date] = None,
    buffer_days: int = 5,
) -> Optional[dt.date]:
    """
    Month-end expiry selection.

    Picks the last expiry of the current calendar month when it is at least
    ``buffer_days`` away, otherwise the last expiry of the next calendar month.
    Returns ``None`` when neither month has a usable expiry.
    """

    today = today or engine_now(IST).date()
    dates = sorted({_coerce_date(value) for value in expiries})
    current = [d for d in dates if (d.year, d.month) == (today.year, today.month) and d >= today]
    if current:
        month_end = current[-1]
        if (month_end - today).days >= buffer_days:
            return month_end
    following = [d for d in dates if (d.year, d.month) == _next_month(today)]
    if following:
        return following[-1]
    return None


# ---------------------------------------------------------------------- option type
def get_option_type(action: str, side: Optional[str] = None, *, bearish_option_type: str = "CE") -> str:
    """
    Map a signal to the option leg that is bought.

    Explicit CALL/PUT tokens in ``side`` or ``action`` win. Bullish actions buy
    calls. Bearish actions buy ``bearish_option_type``: the configured policy
    defaults to CE, matching how live bots were trading, and can be switched to
    PE without code changes.
    """

    bearish = str(bearish_option_type or "CE").upper()
    if bearish not in {"CE", "PE"}:
        raise ValueError(f"bearish_option_type must be CE or PE; got {bearish_option_type!r}")
    tokens = [str(token or "").strip().upper() for token in (side, action)]
    for token in tokens:
        if token in CALL_TOKENS:
            return "CE"
        if token in PUT_TOKENS:
            return "PE"
    for token in tokens:
        if token in BULLISH_ACTIONS:
            return "CE"
        if token in BEARISH_ACTIONS:
            return bearish
    raise ValueError(f"Cannot derive option type from action={action!r} side={side!r}")


# ---------------------------------------------------------------------- black-scholes
def norm_cdf(x: float) -> float:
    """Standard normal CDF via Abramowitz-Stegun 7.1.26 (abs error < 7.5e-8)."""

    a1, a2, a3, a4, a5 = 0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429
    p = 0.3275911
    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + p * z)
    erf = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-z * z)
    return 0.5 * (1.0 + sign * erf)


def norm_pdf(x: float) -> float:
    return math.exp(-0.5 * x * x) / math.sqrt(2.0 * math.pi)


def time_to_expiry_years(expiry: dt.date | dt.datetime, now: Optional[dt.datetime] = None) -> float:
    """Years until 15:30 IST on expiry day, floored at one day."""

    current = now or engine_now(IST)
    if isinstance(expiry, dt.datetime):
        expiry_ts = expiry if expiry.tzinfo else expiry.replace(tzinfo=IST)
    else:
        expiry_ts = dt.datetime.combine(_coerce_date(expiry), dt.time(15, 30), tzinfo=IST)
    seconds = (expiry_ts - current).total_seconds()
    return max(seconds / (365.0 * 86400.0), MIN_TIME_TO_EXPIRY_YEARS)


def _d1_d2(spot: float, strike: float, t: float, rate: float, vol: float) -> tuple[float, float]:
    if spot <= 0 or strike <= 0:
        raise ValueError(f"spot and strike must be positive; got spot={spot!r} strike={strike!r}")
    t = max(float(t), MIN_TIME_TO_EXPIRY_YEARS)
    vol = max(float(vol), 1e-9)
    sqrt_t = math.sqrt(t)
    d1 = (math.log(spot / strike) + (rate + 0.5 * vol * vol) * t) / (vol * sqrt_t)
    return d1, d1 - vol * sqrt_t


def black_scholes_price(spot: float, strike: float, t: float, vol: float, option_type: str, rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    d1, d2 = _d1_d2(spot, strike, t, rate, vol)
    discount = math.exp(-rate * max(t, MIN_TIME_TO_EXPIRY_YEARS))
    if option_type.upper() == "CE":
        return spot * norm_cdf(d1) - strike * discount * norm_cdf(d2)
    return strike * discount * norm_cdf(-d2) - spot * norm_cdf(-d1)


def black_scholes_vega(spot: float, strike: float, t: float, vol: float, rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    d1, _ = _d1_d2(spot, strike, t, rate, vol)
    return spot * norm_pdf(d1) * math.sqrt(max(t, MIN_TIME_TO_EXPIRY_YEARS))


def black_scholes_delta(spot: float, strike: float, t: float, vol: float, option_type: str, rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    """Signed delta: calls in (0, 1), puts in (-1, 0)."""

    d1, _ = _d1_d2(spot, strike, t, rate, vol)
    if option_type.upper() == "CE":
        return norm_cdf(d1)
    return norm_cdf(d1) - 1.0


def implied_volatility(
    premium: float,
    spot: float,
    strike: float,
    t: float,
    option_type: str,
    *,
    rate: float = DEFAULT_RISK_FREE_RATE,
    initial: float = 0.15,
    max_iterations: int = 20,
    vol_min: float = 0.01,
    vol_max: float = 2.0,
) -> float:
    """Newton-Raphson IV; stops on price error < 0.01 or vega < 0.001."""

    vol = min(max(float(initial), vol_min), vol_max)
    for _ in range(max(int(max_iterations), 1)):
        price = black_scholes_price(spot, strike, t, vol, option_type, rate)
        diff = price - float(premium)
        if abs(diff) < PRICE_TOLERANCE:
            break
        vega = black_scholes_vega(spot, strike, t, vol, rate)
        if vega < MIN_VEGA:
            break
        vol = min(max(vol - diff / vega, vol_min), vol_max)
    return vol


def estimate_delta(
    *,
    spot: float,
    strike: float,
    expiry: dt.date,
    option_type: str,
    premium: Optional[float] = None,
    iv: Optional[float] = None,
    rate: float = DEFAULT_RISK_FREE_RATE,
    default_volatility: float = 0.15,
    max_iterations: int = 20,
    vol_min: float = 0.01,
    vol_max: float = 2.0,
    now: Optional[dt.datetime] = None,
) -> tuple[float, float]:
    """Return ``(signed_delta, volatility_used)`` preferring broker IV over a solved one."""

    t = time_to_expiry_years(expiry, now)
    if iv is not None and iv > 0:
        # Kite reports IV in percent.
        vol = float(iv) / 100.0 if iv > vol_max else float(iv)
    elif premium is not None and premium > 0:
        vol = implied_volatility(
            premium,
            spot,
            strike,
            t,
            option_type,
            rate=rate,
            initial=default_volatility,
            max_iterations=max_iterations,
            vol_min=vol_min,
            vol_max=vol_max,
        )
    else:
        vol = default_volatility
    return black_scholes_delta(spot, strike, t, vol, option_type, rate), vol


# ---------------------------------------------------------------------- selection
def select_best_contract(contracts: Sequence[OptionsContract], min_delta: float = 0.6) -> Optional[OptionsContract]:
    """Highest delta at or above ``min_delta``; ties go to the larger open interest."""

    eligible = [c for c in contracts if c.delta >= min_delta]
    if not eligible:
        return None
    return max(eligible, key=lambda c: (c.delta, c.open_interest))


def highest_delta(contracts: Sequence[OptionsContract]) -> float:
    return max((c.delta for c in contracts), default=0.0)


def with_market_data(contract: OptionsContract, *, premium: float, open_interest: int, delta: float, iv: Optional[float]) -> OptionsContract:
    return replace(contract, premium=float(premium), open_interest=int(open_interest), delta=abs(float(delta)), implied_volatility=iv)


__all__ = [
    "OptionsContract",
    "black_scholes_delta",
    "black_scholes_price",
    "black_scholes_vega",
    "calculate_atm_strike",
    "estimate_delta",
    "generate_strike_prices",
    "get_option_type",
    "highest_delta",
    "implied_volatility",
    "norm_cdf",
    "norm_pdf",
    "select_best_contract",
    "select_expiry",
    "time_to_expiry_years",
    "with_market_data",
]
