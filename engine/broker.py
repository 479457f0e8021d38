from __future__ import annotations

import asyncio
import datetime as dt
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

import requests
from kiteconnect import exceptions as kite_exceptions

from brokerage.kite_client import CredentialError, KiteConfig, KiteSession
from engine.alerts import notify_incident
from engine.config import IST, BrokerConfig
from engine.logging_utils import get_logger
from engine.metrics import EngineMetrics

VARIETY_REGULAR = "regular"


class BrokerError(Exception):
    """Broker failure; ``code == "auth"`` means the session must be re-authorized."""

    def __init__(self, *, code: str, message: str, status: Optional[int] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.context = context or {}

    @property
    def needs_reauth(self) -> bool:
        return self.code == "auth"


# --------------------------------------------------------------------- coercion
def _float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _date(value: Any) -> Optional[dt.date]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    try:
        return dt.date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _timestamp(value: Any) -> Optional[dt.datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        ts = value
    else:
        try:
            ts = dt.datetime.fromisoformat(str(value))
        except ValueError:
            return None
    return ts if ts.tzinfo else ts.replace(tzinfo=IST)


# --------------------------------------------------------------------- typed views
@dataclass(frozen=True)
class BrokerProfile:
    user_id: str
    user_name: str
    email: str
    broker: str
    exchanges: tuple[str, ...] = ()

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerProfile":
        return BrokerProfile(
            user_id=_str(payload.get("user_id")),
            user_name=_str(payload.get("user_name")),
            email=_str(payload.get("email")),
            broker=_str(payload.get("broker") or "ZERODHA"),
            exchanges=tuple(_str(e) for e in payload.get("exchanges") or ()),
        )


@dataclass(frozen=True)
class BrokerMargins:
    available_cash: float
    live_balance: float
    net: float
    utilised: float

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerMargins":
        equity = payload.get("equity", payload) or {}
        available = equity.get("available") or {}
        utilised = equity.get("utilised") or {}
        return BrokerMargins(
            available_cash=_float(available.get("cash")),
            live_balance=_float(available.get("live_balance", available.get("cash"))),
            net=_float(equity.get("net")),
            utilised=_float(utilised.get("debits")),
        )


@dataclass(frozen=True)
class BrokerHolding:
    tradingsymbol: str
    exchange: str
    quantity: int
    average_price: float
    last_price: float
    pnl: float

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerHolding":
        return BrokerHolding(
            tradingsymbol=_str(payload.get("tradingsymbol")),
            exchange=_str(payload.get("exchange")),
            quantity=_int(payload.get("quantity")),
            average_price=_float(payload.get("average_price")),
            last_price=_float(payload.get("last_price")),
            pnl=_float(payload.get("pnl")),
        )


@dataclass(frozen=True)
class BrokerPosition:
    tradingsymbol: str
    exchange: str
    product: str
    quantity: int
    average_price: float
    last_price: float
    close_price: float
    pnl: float

    @property
    def mark_price(self) -> float:
        return self.last_price or self.close_price

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerPosition":
        qty_raw = payload.get("quantity")
        if qty_raw is None:
            qty_raw = payload.get("net_quantity")
        return BrokerPosition(
            tradingsymbol=_str(payload.get("tradingsymbol")),
            exchange=_str(payload.get("exchange")),
            product=_str(payload.get("product")),
            quantity=_int(qty_raw),
            average_price=_float(payload.get("average_price")),
            last_price=_float(payload.get("last_price")),
            close_price=_float(payload.get("close_price")),
            pnl=_float(payload.get("pnl")),
        )


@dataclass(frozen=True)
class BrokerPositions:
    net: tuple[BrokerPosition, ...] = ()
    day: tuple[BrokerPosition, ...] = ()

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerPositions":
        def _parse(rows: Any) -> tuple[BrokerPosition, ...]:
            return tuple(BrokerPosition.from_payload(row) for row in rows or () if isinstance(row, Mapping))

        return BrokerPositions(net=_parse(payload.get("net")), day=_parse(payload.get("day")))


@dataclass(frozen=True)
class BrokerOrder:
    order_id: str
    status: str
    tradingsymbol: str
    exchange: str
    transaction_type: str
    quantity: int
    filled_quantity: int
    pending_quantity: int
    average_price: float
    price: float = 0.0
    order_type: str = ""
    product: str = ""
    status_message: Optional[str] = None
    tag: Optional[str] = None
    order_timestamp: Optional[dt.datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerOrder":
        return BrokerOrder(
            order_id=_str(payload.get("order_id")),
            status=_str(payload.get("status")).upper(),
            tradingsymbol=_str(payload.get("tradingsymbol")),
            exchange=_str(payload.get("exchange")),
            transaction_type=_str(payload.get("transaction_type")).upper(),
            quantity=_int(payload.get("quantity")),
            filled_quantity=_int(payload.get("filled_quantity")),
            pending_quantity=_int(payload.get("pending_quantity")),
            average_price=_float(payload.get("average_price")),
            price=_float(payload.get("price")),
            order_type=_str(payload.get("order_type")).upper(),
            product=_str(payload.get("product")).upper(),
            status_message=_str(payload.get("status_message")) or None,
            tag=_str(payload.get("tag")) or None,
            order_timestamp=_timestamp(payload.get("order_timestamp")),
            raw=dict(payload),
        )


@dataclass(frozen=True)
class BrokerTrade:
    trade_id: str
    order_id: str
    tradingsymbol: str
    exchange: str
    transaction_type: str
    quantity: int
    average_price: float
    fill_timestamp: Optional[dt.datetime] = None

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerTrade":
        return BrokerTrade(
            trade_id=_str(payload.get("trade_id")),
            order_id=_str(payload.get("order_id")),
            tradingsymbol=_str(payload.get("tradingsymbol")),
            exchange=_str(payload.get("exchange")),
            transaction_type=_str(payload.get("transaction_type")).upper(),
            quantity=_int(payload.get("quantity")),
            average_price=_float(payload.get("average_price")),
            fill_timestamp=_timestamp(payload.get("fill_timestamp")),
        )


@dataclass(frozen=True)
class BrokerQuote:
    instrument: str
    tradingsymbol: str
    last_price: float
    open_interest: int
    implied_volatility: Optional[float] = None
    instrument_token: Optional[int] = None

    @staticmethod
    def from_payload(instrument: str, payload: Mapping[str, Any]) -> "BrokerQuote":
        iv_raw = payload.get("implied_volatility", payload.get("iv"))
        token = payload.get("instrument_token")
        symbol = _str(payload.get("tradingsymbol"))
        if not symbol and ":" in instrument:
            symbol = instrument.split(":", 1)[1]
        return BrokerQuote(
            instrument=instrument,
            tradingsymbol=symbol,
            last_price=_float(payload.get("last_price")),
            open_interest=_int(payload.get("oi")),
            implied_volatility=_float(iv_raw) if iv_raw not in (None, "") else None,
            instrument_token=_int(token) if token is not None else None,
        )


@dataclass(frozen=True)
class BrokerInstrument:
    instrument_token: int
    tradingsymbol: str
    name: str
    exchange: str
    segment: str
    instrument_type: str
    expiry: Optional[dt.date]
    strike: float
    lot_size: int
    tick_size: float = 0.05

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "BrokerInstrument":
        return BrokerInstrument(
            instrument_token=_int(payload.get("instrument_token")),
            tradingsymbol=_str(payload.get("tradingsymbol")),
            name=_str(payload.get("name")).upper(),
            exchange=_str(payload.get("exchange")).upper(),
            segment=_str(payload.get("segment")).upper(),
            instrument_type=_str(payload.get("instrument_type")).upper(),
            expiry=_date(payload.get("expiry")),
            strike=_float(payload.get("strike")),
            lot_size=_int(payload.get("lot_size")),
            tick_size=_float(payload.get("tick_size"), 0.05),
        )


@dataclass(frozen=True)
class OrderRequest:
    exchange: str
    tradingsymbol: str
    transaction_type: str
    quantity: int
    product: str = "MIS"
    order_type: str = "MARKET"
    validity: str = "DAY"
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    tag: Optional[str] = None

    def as_params(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "tradingsymbol": self.tradingsymbol,
            "transaction_type": self.transaction_type.upper(),
            "quantity": int(self.quantity),
            "product": self.product,
            "order_type": self.order_type,
            "validity": self.validity,
            "price": self.price,
            "trigger_price": self.trigger_price,
            "tag": self.tag[:20] if self.tag else None,
        }


@dataclass(frozen=True)
class OrderAck:
    order_id: str
    status: str = "PLACED"


class BrokerGateway(Protocol):
    async def place_order(self, variety: str, request: OrderRequest) -> OrderAck: ...

    async def get_orders(self) -> List[BrokerOrder]: ...

    async def get_order_history(self, order_id: str) -> List[BrokerOrder]: ...

    async def get_trades(self) -> List[BrokerTrade]: ...

    async def get_positions(self) -> BrokerPositions: ...

    async def get_quote(self, instruments: Sequence[str]) -> Dict[str, BrokerQuote]: ...

    async def get_instruments(self, exchange: str) -> List[BrokerInstrument]: ...

    async def get_margins(self) -> BrokerMargins: ...

    async def get_profile(self) -> BrokerProfile: ...

    async def get_holdings(self) -> List[BrokerHolding]: ...


class TokenBucket:
    def __init__(self, rate_per_sec: float, burst: int):
        self._rate = max(rate_per_sec, 0.1)
        self._capacity = max(1, burst)
        self._tokens = float(self._capacity)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        while True:
            async with self._lock:
                now = time.monotonic()
                elapsed = now - self._updated
                self._updated = now
                self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return self._tokens
                wait_for = (1.0 - self._tokens) / self._rate
            await asyncio.sleep(max(wait_for, 0.0))


_REJECTION_ERRORS = (kite_exceptions.OrderException, kite_exceptions.InputException)
_RETRYABLE_ERRORS = (kite_exceptions.NetworkException, kite_exceptions.DataException, requests.RequestException)


class KiteBroker:
    """Kite Connect gateway with rate limits, retries and typed responses."""

    def __init__(
        self,
        *,
        config: BrokerConfig,
        session: Optional[KiteSession] = None,
        credentials: Optional[KiteConfig] = None,
        metrics: Optional[EngineMetrics] = None,
        auth_halt_callback: Optional[Callable[[str], Union[None, Awaitable[None]]]] = None,
    ):
        self._cfg = config
        if session is None:
            if credentials is None:
                raise CredentialError("KiteBroker needs either a session or credentials")
            session = KiteSession(credentials)
        self._session = session
        self._metrics = metrics
        self._auth_halt_cb = auth_halt_callback
        self._logger = get_logger("KiteBroker")
        limits = config.rate_limits
        self._rate_limits = {
            "orders": TokenBucket(limits.orders.rate_per_sec, limits.orders.burst),
            "quotes": TokenBucket(limits.quotes.rate_per_sec, limits.quotes.burst),
            "history": TokenBucket(limits.history.rate_per_sec, limits.history.burst),
        }
        self._auth_halted = False

    @property
    def auth_halted(self) -> bool:
        return self._auth_halted

    def update_access_token(self, token: str) -> None:
        self._session.set_access_token(token)
        self._auth_halted = False
        self._logger.log_event(20, "broker_token_updated")

    # ------------------------------------------------------------------ orders
    async def place_order(self, variety: str, request: OrderRequest) -> OrderAck:
        context = {
            "symbol": request.tradingsymbol,
            "side": request.transaction_type,
            "qty": request.quantity,
            "order_type": request.order_type,
            "tag": request.tag,
        }
        # Order placement is not idempotent at the broker; a retried POST could double-fill.
        order_id = await self._rest_call(
            "orders",
            "place_order",
            lambda session: session.place_order(variety or VARIETY_REGULAR, **request.as_params()),
            context=context,
            retries=1,
        )
        if not order_id:
            raise BrokerError(code="rejected", message="Broker returned no order id", context=context)
        return OrderAck(order_id=str(order_id))

    async def get_orders(self) -> List[BrokerOrder]:
        rows = await self._rest_call("history", "orders", lambda session: session.orders())
        return [BrokerOrder.from_payload(row) for row in rows or [] if isinstance(row, Mapping)]

    async def get_order_history(self, order_id: str) -> List[BrokerOrder]:
        rows = await self._rest_call(
            "history",
            "order_history",
            lambda session: session.order_history(order_id),
            context={"order_id": order_id},
        )
        return [BrokerOrder.from_payload(row) for row in rows or [] if isinstance(row, Mapping)]

    async def get_trades(self) -> List[BrokerTrade]:
        rows = await self._rest_call("history", "trades", lambda session: session.trades())
        return [BrokerTrade.from_payload(row) for row in rows or [] if isinstance(row, Mapping)]

    # --------------------------------------------------------------- portfolio
    async def get_positions(self) -> BrokerPositions:
        payload = await self._rest_call("history", "positions", lambda session: session.positions())
        return BrokerPositions.from_payload(payload or {})

    async def get_holdings(self) -> List[BrokerHolding]:
        rows = await self._rest_call("history", "holdings", lambda session: session.holdings())
        return [BrokerHolding.from_payload(row) for row in rows or [] if isinstance(row, Mapping)]

    async def get_margins(self) -> BrokerMargins:
        payload = await self._rest_call("history", "margins", lambda session: session.margins())
        return BrokerMargins.from_payload(payload or {})

    async def get_profile(self) -> BrokerProfile:
        payload = await self._rest_call("history", "profile", lambda session: session.profile())
        return BrokerProfile.from_payload(payload or {})

    # ------------------------------------------------------------- market data
    async def get_quote(self, instruments: Sequence[str]) -> Dict[str, BrokerQuote]:
        keys = list(dict.fromkeys(instruments))
        if not keys:
            return {}
        payload = await self._rest_call(
            "quotes",
            "quote",
            lambda session: session.quote(keys),
            context={"count": len(keys)},
        )
        quotes: Dict[str, BrokerQuote] = {}
        for key, row in (payload or {}).items():
            if isinstance(row, Mapping):
                quotes[key] = BrokerQuote.from_payload(key, row)
        return quotes

    async def get_instruments(self, exchange: str) -> List[BrokerInstrument]:
        rows = await self._rest_call(
            "history",
            "instruments",
            lambda session: session.instruments(exchange),
            context={"exchange": exchange},
        )
        return [BrokerInstrument.from_payload(row) for row in rows or [] if isinstance(row, Mapping)]

    # ------------------------------------------------------------------ helpers
    async def _rest_call(
        self,
        endpoint: str,
        action: str,
        fn: Callable[[KiteSession], Any],
        *,
        context: Optional[dict[str, Any]] = None,
        retries: Optional[int] = None,
    ) -> Any:
        attempts = max(int(retries or self._cfg.retries), 1)
        backoff = self._cfg.retry_backoff
        ctx = {key: value for key, value in (context or {}).items() if value is not None}
        last_exc: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            tokens_left = await self._rate_limits[endpoint].acquire()
            if self._metrics:
                self._metrics.set_ratelimit_tokens(endpoint, tokens_left)
            started = time.perf_counter()
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, self._session), timeout=self._cfg.rest_timeout)
            except CredentialError as exc:
                await self._handle_auth_failure(action, ctx, str(exc))
                raise BrokerError(code="auth", message=str(exc), status=403, context=ctx) from exc
            except kite_exceptions.TokenException as exc:
                await self._handle_auth_failure(action, ctx, str(exc))
                raise BrokerError(code="auth", message=str(exc), status=getattr(exc, "code", 403), context=ctx) from exc
            except _REJECTION_ERRORS as exc:
                raise BrokerError(code="rejected", message=str(exc), status=getattr(exc, "code", 400), context=ctx) from exc
            except (asyncio.TimeoutError, *_RETRYABLE_ERRORS) as exc:
                last_exc = exc
            except kite_exceptions.KiteException as exc:
                status = getattr(exc, "code", None)
                if not self._should_retry(status):
                    raise BrokerError(code="api_error", message=str(exc), status=status, context=ctx) from exc
                last_exc = exc
            finally:
                if self._metrics:
                    self._metrics.observe_broker_latency(action, (time.perf_counter() - started) * 1000.0)
            if attempt < attempts:
                if self._metrics:
                    self._metrics.inc_rest_retry(endpoint)
                self._logger.log_event(30, "broker_retry", action=action, attempt=attempt, error=str(last_exc), **ctx)
                await asyncio.sleep(backoff + random.uniform(0, backoff))
                backoff *= 2
        code = "timeout" if isinstance(last_exc, (asyncio.TimeoutError, requests.Timeout)) else "network"
        raise BrokerError(code=code, message=f"{action} failed after {attempts} attempts: {last_exc}", context=ctx) from last_exc

    @staticmethod
    def _should_retry(status: Optional[int]) -> bool:
        if status is None:
            return True
        if status in {408, 425, 429}:
            return True
        return 500 <= status < 600

    async def _handle_auth_failure(self, action: str, context: dict[str, Any], detail: str) -> None:
        if self._metrics:
            self._metrics.inc_auth_failure()
        if self._auth_halted:
            return
        self._auth_halted = True
        self._logger.log_event(40, "broker_auth_failed", action=action, detail=detail, **context)
        notify_incident("ERROR", "Kite session needs re-authorization", f"action={action} {detail}", tags=["auth"])
        if self._auth_halt_cb:
            result = self._auth_halt_cb("AUTH")
            if asyncio.iscoroutine(result):
                await result


__all__ = [
    "BrokerError",
    "BrokerGateway",
    "BrokerHolding",
    "BrokerInstrument",
    "BrokerMargins",
    "BrokerOrder",
    "BrokerPosition",
    "BrokerPositions",
    "BrokerProfile",
    "BrokerQuote",
    "BrokerTrade",
    "KiteBroker",
    "OrderAck",
    "OrderRequest",
    "TokenBucket",
    "VARIETY_REGULAR",
]
