from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from engine.broker import BrokerError, BrokerGateway, BrokerInstrument
from engine.config import IST, OptionsConfig
from engine.errors import ConfigValidationError, EngineError, FailureCode, SignalValidationError, failure_from_exception
from engine.execution import EntryIntent, TradeExecutor
from engine.ledger import ExitReason, PositionLedger
from engine.logging_utils import get_logger
from engine.options import (
    BEARISH_ACTIONS,
    BULLISH_ACTIONS,
    OptionsContract,
    calculate_atm_strike,
    estimate_delta,
    generate_strike_prices,
    get_option_type,
    highest_delta,
    select_best_contract,
    select_expiry,
    with_market_data,
)
from engine.sizing import PositionSize, SizingMode, calculate_position_size, fixed_quantity_size, premium_per_lot
from engine.time_machine import now as engine_now

EXIT_ACTIONS = {"EXIT", "CLOSE", "SQUARE_OFF"}
MAX_FIXED_LOTS = 100


@dataclass(frozen=True)
class OptionsBotConfig:
    capital: float
    risk_percentage: float
    delta_threshold: float = 0.6
    lot_size: int = 75
    sizing_mode: SizingMode = SizingMode.RISK_PERCENTAGE
    fixed_lots: Optional[int] = None
    user_id: str = "default"
    bot_id: Optional[str] = None
    allocation_id: Optional[str] = None
    is_intraday: bool = True
    auto_exit_time: Optional[str] = None

    @staticmethod
    def from_dict(payload: Mapping[str, Any], *, defaults: Optional[OptionsConfig] = None) -> "OptionsBotConfig":
        base = defaults or OptionsConfig()
        mode = str(payload.get("sizing_mode") or payload.get("position_sizing_method") or SizingMode.RISK_PERCENTAGE.value).upper()
        try:
            sizing_mode = SizingMode(mode)
        except ValueError as exc:
            raise ConfigValidationError(f"Unknown position sizing method {mode!r}") from exc
        fixed = payload.get("fixed_lots", payload.get("fixed_quantity"))
        try:
            return OptionsBotConfig(
                capital=float(payload.get("capital", 0) or 0),
                risk_percentage=float(payload.get("risk_percentage", payload.get("risk_pct", 0)) or 0),
                delta_threshold=float(payload.get("delta_threshold", base.delta_threshold)),
                lot_size=int(payload.get("lot_size", base.lot_size)),
                sizing_mode=sizing_mode,
                fixed_lots=int(fixed) if fixed not in (None, "") else None,
                user_id=str(payload.get("user_id") or "default"),
                bot_id=payload.get("bot_id"),
                allocation_id=payload.get("allocation_id"),
                is_intraday=bool(payload.get("is_intraday", True)),
                auto_exit_time=payload.get("auto_exit_time"),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigValidationError(f"Invalid options bot configuration: {exc}") from exc


def validate_options_bot_config(config: OptionsBotConfig, *, expected_lot_size: Optional[int] = None) -> None:
    """Raise :class:`ConfigValidationError` when the bot configuration cannot trade."""

    if config.capital <= 0:
        raise ConfigValidationError("Capital must be greater than 0")
    if config.risk_percentage <= 0 or config.risk_percentage > 100:
        raise ConfigValidationError("Risk percentage must be between 0 and 100")
    if config.delta_threshold < 0.1 or config.delta_threshold > 1.0:
        raise ConfigValidationError("Delta threshold must be between 0.1 and 1.0")
    if config.lot_size <= 0:
        raise ConfigValidationError("Lot size must be greater than 0")
    if expected_lot_size is not None and config.lot_size != expected_lot_size:
        raise ConfigValidationError(f"Options lot size must be {expected_lot_size}; got {config.lot_size}")
    if config.sizing_mode is SizingMode.FIXED_QUANTITY:
        if not config.fixed_lots or config.fixed_lots <= 0:
            raise ConfigValidationError("Fixed quantity must be greater than 0 when using FIXED_QUANTITY mode")
        if config.fixed_lots > MAX_FIXED_LOTS:
            raise ConfigValidationError(f"Fixed quantity cannot exceed {MAX_FIXED_LOTS} lots")


@dataclass(frozen=True)
class OptionsSignal:
    action: str
    price: float
    symbol: str = "NIFTY"
    side: Optional[str] = None
    signal_id: Optional[str] = None
    timestamp: Optional[dt.datetime] = None

    @property
    def is_exit(self) -> bool:
        return self.action in EXIT_ACTIONS


def parse_signal(payload: Mapping[str, Any]) -> OptionsSignal:
    """Validate a webhook-style ``{action, price, symbol}`` payload."""

    action = str(payload.get("action") or "").strip().upper()
    raw_price = payload.get("price")
    if not action or raw_price in (None, ""):
        raise SignalValidationError("Missing required fields: action, price")
    if isinstance(raw_price, bool):
        raise SignalValidationError("Invalid price value")
    try:
        price = float(raw_price)
    except (TypeError, ValueError) as exc:
        raise SignalValidationError("Invalid price value") from exc
    if not math.isfinite(price) or price <= 0:
        raise SignalValidationError("Invalid price value")
    if action not in BULLISH_ACTIONS | BEARISH_ACTIONS | EXIT_ACTIONS:
        raise SignalValidationError(f"Invalid action {action!r}")
    side = payload.get("side")
    stamp = payload.get("timestamp")
    if isinstance(stamp, str) and stamp:
        try:
            stamp = dt.datetime.fromisoformat(stamp)
        except ValueError as exc:
            raise SignalValidationError(f"Invalid timestamp {stamp!r}") from exc
    signal_id = payload.get("signal_id") or payload.get("id")
    return OptionsSignal(
        action=action,
        price=price,
        symbol=str(payload.get("symbol") or "NIFTY").upper(),
        side=str(side).upper() if side else None,
        signal_id=str(signal_id) if signal_id else None,
        timestamp=stamp if isinstance(stamp, dt.datetime) else None,
    )


@dataclass(frozen=True)
class OptionsBotResult:
    success: bool
    selected_contract: Optional[OptionsContract] = None
    position_size: Optional[PositionSize] = None
    execution_details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    failure_code: Optional[FailureCode] = None

    def as_dict(self) -> Dict[str, Any]:
        contract = self.selected_contract
        size = self.position_size
        return {
            "success": self.success,
            "selected_contract": None
            if contract is None
            else {
                "symbol": contract.symbol,
                "strike": contract.strike,
                "expiry": contract.expiry.isoformat(),
                "option_type": contract.option_type,
                "premium": contract.premium,
                "delta": round(contract.delta, 4),
                "open_interest": contract.open_interest,
            },
            "position_size": None
            if size is None
            else {
                "lots": size.lots,
                "quantity": size.quantity,
                "total_investment": size.amount,
                "min_capital_required": size.min_capital_required,
            },
            "execution_details": self.execution_details,
            "error": self.error,
            "failure_code": self.failure_code.value if self.failure_code else None,
        }


def _rupees(value: float) -> str:
    return f"₹{value:,.0f}"


class OptionsBot:
    """End-to-end options entry: contract selection, sizing, confirmed order, ledger + auto-exit."""

    def __init__(
        self,
        broker: BrokerGateway,
        executor: TradeExecutor,
        ledger: PositionLedger,
        *,
        options_config: Optional[OptionsConfig] = None,
    ):
        self._broker = broker
        self._executor = executor
        self._ledger = ledger
        self._cfg = options_config or OptionsConfig()
        self._instrument_cache: Optional[Tuple[dt.date, List[BrokerInstrument]]] = None
        self._logger = get_logger("OptionsBot")

    async def execute(self, signal: OptionsSignal | Mapping[str, Any], config: OptionsBotConfig) -> OptionsBotResult:
        try:
            parsed = signal if isinstance(signal, OptionsSignal) else parse_signal(signal)
            validate_options_bot_config(config, expected_lot_size=self._cfg.lot_size)
            if parsed.is_exit:
                return await self._exit_open_positions(parsed, config)
            return await self._enter(parsed, config)
        except EngineError as exc:
            self._logger.log_event(30, "options_bot_rejected", code=exc.code.value, error=str(exc), bot_id=config.bot_id)
            return OptionsBotResult(success=False, error=str(exc), failure_code=exc.code)
        except BrokerError as exc:
            code = failure_from_exception(exc)
            self._logger.log_event(40, "options_bot_broker_error", code=code.value, error=str(exc), bot_id=config.bot_id)
            return OptionsBotResult(success=False, error=str(exc), failure_code=code)

    async def _enter(self, signal: OptionsSignal, config: OptionsBotConfig) -> OptionsBotResult:
        atm = calculate_atm_strike(signal.price, self._cfg.strike_step)
        strikes = generate_strike_prices(atm, self._cfg.strike_step, self._cfg.strikes_each_side)
        option_type = get_option_type(signal.action, signal.side, bearish_option_type=self._cfg.bearish_option_type)
        self._logger.log_event(20, "options_bot_signal", action=signal.action, price=signal.price, atm=atm, option_type=option_type, bot_id=config.bot_id)

        instruments = await self._option_instruments()
        today = engine_now(IST).date()
        expiry = select_expiry({row.expiry for row in instruments if row.expiry}, today, self._cfg.expiry_buffer_days)
        if expiry is None:
            raise EngineError(FailureCode.NO_CONTRACT, "No suitable expiry dates found")
        candidates = self.find_contracts(instruments, strikes, expiry, option_type)
        if not candidates:
            raise EngineError(
                FailureCode.NO_CONTRACT,
                f"No {self._cfg.underlying} {option_type} options found for the selected strikes on expiry {expiry.isoformat()}",
            )
        priced = await self._with_quotes(candidates, signal.price)
        best = select_best_contract(priced, config.delta_threshold)
        if best is None:
            raise EngineError(
                FailureCode.NO_CONTRACT,
                f"No suitable options contract found (minimum delta {config.delta_threshold} required, "
                f"highest found: {highest_delta(priced):.3f})",
            )
        if best.premium <= 0:
            raise EngineError(FailureCode.NO_CONTRACT, f"No live premium for {best.symbol}")
        size = self._size(best, config)
        self._logger.log_event(
            20,
            "options_contract_selected",
            symbol=best.symbol,
            strike=best.strike,
            expiry=best.expiry.isoformat(),
            delta=round(best.delta, 4),
            premium=best.premium,
            lots=size.lots,
            quantity=size.quantity,
        )
        signal_id = signal.signal_id or f"SIG_{int(engine_now(IST).timestamp() * 1000)}"
        result = await self._executor.execute_entry(
            EntryIntent(
                user_id=config.user_id,
                bot_id=config.bot_id,
                allocation_id=config.allocation_id,
                signal_id=signal_id,
                symbol=best.symbol,
                exchange=best.exchange,
                quantity=size.quantity,
                is_intraday=config.is_intraday,
                auto_exit_time=config.auto_exit_time,
            )
        )
        details = {
            "order_id": result.broker_order_id,
            "order_state_id": result.order_state_id,
            "status": result.status,
            "executed": result.executed,
            "execution_price": result.executed_price,
            "executed_qty": result.executed_qty,
            "execution_time": engine_now(IST).isoformat(),
            "signal_id": signal_id,
        }
        if not result.success:
            return OptionsBotResult(
                success=False,
                selected_contract=best,
                position_size=size,
                execution_details=details,
                error=f"Order placement failed: {result.error}",
                failure_code=result.failure_code,
            )
        return OptionsBotResult(success=True, selected_contract=best, position_size=size, execution_details=details, error=result.error)

    def _size(self, contract: OptionsContract, config: OptionsBotConfig) -> PositionSize:
        per_lot = premium_per_lot(contract.premium, config.lot_size)
        if config.sizing_mode is SizingMode.FIXED_QUANTITY:
            size = fixed_quantity_size(config.capital, config.fixed_lots or 0, per_lot, config.lot_size)
            if not size.can_trade:
                raise EngineError(
                    FailureCode.INSUFFICIENT_FUNDS,
                    f"Insufficient capital for fixed quantity {size.lots} lots. Required: {_rupees(size.amount)}, "
                    f"Available: {_rupees(config.capital)}. Reduce quantity or increase allocated amount.",
                    {"min_capital_required": size.min_capital_required},
                )
            return size
        size = calculate_position_size(config.capital, config.risk_percentage, per_lot, config.lot_size)
        if not size.can_trade:
            raise EngineError(
                FailureCode.INSUFFICIENT_FUNDS,
                f"Insufficient capital for minimum position size. Required: {_rupees(size.min_capital_required or 0)} "
                f"(at {config.risk_percentage:g}% risk for 1 lot). Current: {_rupees(config.capital)}",
                {"min_capital_required": size.min_capital_required},
            )
        return size

    async def _exit_open_positions(self, signal: OptionsSignal, config: OptionsBotConfig) -> OptionsBotResult:
        positions = self._ledger.get_open_positions(user_id=config.user_id, bot_id=config.bot_id)
        if not positions:
            return OptionsBotResult(success=True, execution_details={"exits": [], "message": "No open positions"})
        exits: List[Dict[str, Any]] = []
        failures: List[str] = []
        for position in positions:
            result = await self._executor.execute_exit(position, reason=ExitReason.SIGNAL)
            exits.append({"position_id": position.position_id, **result.as_dict()})
            if not result.success:
                failures.append(f"{position.position_id}: {result.error}")
        if failures:
            return OptionsBotResult(
                success=False,
                execution_details={"exits": exits},
                error="Exit failed for " + "; ".join(failures),
                failure_code=FailureCode.ORDER_REJECTED,
            )
        return OptionsBotResult(success=True, execution_details={"exits": exits})

    # -------------------------------------------------------------- market data
    async def _option_instruments(self) -> List[BrokerInstrument]:
        today = engine_now(IST).date()
        if self._instrument_cache and self._instrument_cache[0] == today:
            return self._instrument_cache[1]
        rows = await self._broker.get_instruments(self._cfg.exchange)
        underlying = self._cfg.underlying.upper()
        options = [row for row in rows if row.name == underlying and row.instrument_type in {"CE", "PE"}]
        self._instrument_cache = (today, options)
        self._logger.log_event(20, "option_instruments_loaded", total=len(rows), options=len(options))
        return options

    def find_contracts(
        self,
        instruments: Sequence[BrokerInstrument],
        strikes: Sequence[int],
        expiry: dt.date,
        option_type: str,
    ) -> List[OptionsContract]:
        wanted = {int(s) for s in strikes}
        contracts = []
        for row in instruments:
            if row.expiry != expiry or row.instrument_type != option_type or int(row.strike) not in wanted:
                continue
            contracts.append(
                OptionsContract(
                    symbol=row.tradingsymbol,
                    strike=int(row.strike),
                    expiry=expiry,
                    option_type=option_type,
                    lot_size=row.lot_size or self._cfg.lot_size,
                    instrument_token=row.instrument_token,
                    exchange=row.exchange or self._cfg.exchange,
                )
            )
        return sorted(contracts, key=lambda c: c.strike)

    async def _with_quotes(self, contracts: Sequence[OptionsContract], spot: float) -> List[OptionsContract]:
        keys = {f"{c.exchange}:{c.symbol}": c for c in contracts}
        quotes = await self._broker.get_quote(list(keys))
        priced = []
        for key, contract in keys.items():
            quote = quotes.get(key)
            if quote is None or quote.last_price <= 0:
                continue
            delta, vol = estimate_delta(
                spot=spot,
                strike=contract.strike,
                expiry=contract.expiry,
                option_type=contract.option_type,
                premium=quote.last_price,
                iv=quote.implied_volatility,
                rate=self._cfg.risk_free_rate,
                default_volatility=self._cfg.default_volatility,
                max_iterations=self._cfg.iv_max_iterations,
                vol_min=self._cfg.iv_min,
                vol_max=self._cfg.iv_max,
            )
            priced.append(with_market_data(contract, premium=quote.last_price, open_interest=quote.open_interest, delta=delta, iv=vol))
        return priced


__all__ = [
    "EXIT_ACTIONS",
    "OptionsBot",
    "OptionsBotConfig",
    "OptionsBotResult",
    "OptionsSignal",
    "parse_signal",
    "validate_options_bot_config",
]
