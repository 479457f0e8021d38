from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from engine.alerts import notify_incident
from engine.broker import VARIETY_REGULAR, BrokerError, BrokerGateway, BrokerOrder, OrderRequest
from engine.config import ConfirmationConfig, ConfirmationPolicy
from engine.errors import FailureCode, failure_from_exception, remedy_for
from engine.logging_utils import get_logger
from engine.metrics import EngineMetrics
from engine.time_machine import utc_now
from persistence import SQLiteStore


class PlacementStatus(str, Enum):
    PLACED = "PLACED"
    PLACEMENT_FAILED = "PLACEMENT_FAILED"
    PLACEMENT_ERROR = "PLACEMENT_ERROR"


class ConfirmationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# Kite order lifecycle buckets.
COMPLETE_STATUSES = {"COMPLETE"}
WORKING_STATUSES = {"OPEN", "TRIGGER PENDING"}
DEAD_STATUSES = {"CANCELLED", "REJECTED"}
_INSUFFICIENT_FUNDS_MARKERS = ("insufficient", "margin exceeds", "funds")


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one placement + confirmation; ``success and not executed`` means pending."""

    success: bool
    executed: bool
    status: str
    order_state_id: Optional[str] = None
    broker_order_id: Optional[str] = None
    requested_qty: int = 0
    executed_qty: int = 0
    executed_price: Optional[float] = None
    pending_qty: int = 0
    attempts: int = 0
    wait_ms: int = 0
    quantity_mismatch: bool = False
    duplicate: bool = False
    error: Optional[str] = None
    failure_code: Optional[FailureCode] = None
    execution_id: Optional[str] = None
    purpose: str = "ENTRY"
    position_id: Optional[str] = None
    request: Optional[OrderRequest] = None
    context: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def pending(self) -> bool:
        return self.success and not self.executed

    @property
    def remedy(self) -> Optional[str]:
        return remedy_for(self.failure_code) if self.failure_code else None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "executed": self.executed,
            "status": self.status,
            "order_state_id": self.order_state_id,
            "broker_order_id": self.broker_order_id,
            "requested_qty": self.requested_qty,
            "executed_qty": self.executed_qty,
            "executed_price": self.executed_price,
            "pending_qty": self.pending_qty,
            "attempts": self.attempts,
            "wait_ms": self.wait_ms,
            "quantity_mismatch": self.quantity_mismatch,
            "error": self.error,
            "failure_code": self.failure_code.value if self.failure_code else None,
        }


FillHandler = Callable[[ExecutionResult], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[Any]]


def new_order_state_id() -> str:
    return f"OS_{int(utc_now().timestamp() * 1000)}_{secrets.token_hex(4)}"


def request_from_order_state(row: Mapping[str, Any]) -> OrderRequest:
    return OrderRequest(
        exchange=row["exchange"],
        tradingsymbol=row["symbol"],
        transaction_type=row["transaction_type"],
        quantity=int(row["quantity"]),
        product=row["product"],
        order_type=row["order_type"],
        validity=row["validity"],
        price=row.get("price"),
        trigger_price=row.get("trigger_price"),
        tag=row.get("tag"),
    )


def classify_rejection(message: Optional[str]) -> FailureCode:
    text = (message or "").lower()
    if any(marker in text for marker in _INSUFFICIENT_FUNDS_MARKERS):
        return FailureCode.INSUFFICIENT_FUNDS
    return FailureCode.ORDER_REJECTED


class OrderConfirmationEngine:
    """
    Place an order and poll the broker until it reaches a terminal state.

    An OrderState row is written before the placement call and after every poll,
    so a crash at any point leaves a trail the background monitor can resume from.
    Broker errors never escape :meth:`place_and_confirm`; they come back as an
    :class:`ExecutionResult` with a failure code.
    """

    def __init__(
        self,
        broker: BrokerGateway,
        store: SQLiteStore,
        *,
        config: Optional[ConfirmationConfig] = None,
        metrics: Optional[EngineMetrics] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._broker = broker
        self._store = store
        self._cfg = config or ConfirmationConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._logger = get_logger("OrderConfirmationEngine")

    def policy_for(self, order_type: str) -> ConfirmationPolicy:
        return self._cfg.policy_for(order_type)

    # --------------------------------------------------------------- placement
    async def place_and_confirm(
        self,
        request: OrderRequest,
        *,
        execution_id: Optional[str] = None,
        purpose: str = "ENTRY",
        position_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        fill_handler: Optional[FillHandler] = None,
    ) -> ExecutionResult:
        state_id = new_order_state_id()
        ctx = dict(context or {})
        self._store.insert_order_state(
            {
                "id": state_id,
                "execution_id": execution_id,
                "position_id": position_id,
                "purpose": purpose,
                "symbol": request.tradingsymbol,
                "exchange": request.exchange,
                "transaction_type": request.transaction_type.upper(),
                "quantity": int(request.quantity),
                "price": request.price,
                "trigger_price": request.trigger_price,
                "order_type": request.order_type,
                "product": request.product,
                "validity": request.validity,
                "tag": request.tag,
                "confirmation_status": ConfirmationStatus.PENDING.value,
                "pending_qty": int(request.quantity),
                "context": ctx,
            }
        )
        self._store.append_order_history(
            state_id,
            "ORDER_INITIATED",
            {"symbol": request.tradingsymbol, "side": request.transaction_type, "qty": request.quantity, "purpose": purpose},
        )
        base = ExecutionResult(
            success=False,
            executed=False,
            status="INITIATED",
            order_state_id=state_id,
            requested_qty=int(request.quantity),
            execution_id=execution_id,
            purpose=purpose,
            position_id=position_id,
            request=request,
            context=ctx,
        )
        started = self._clock()
        try:
            ack = await self._broker.place_order(VARIETY_REGULAR, request)
        except BrokerError as exc:
            return self._placement_failed(base, exc)
        except Exception as exc:
            self._logger.log_event(40, "order_placement_exception", order_state_id=state_id, error=str(exc))
            return self._placement_failed(base, exc)

        self._store.update_order_state(
            state_id,
            {"broker_order_id": ack.order_id, "placement_status": PlacementStatus.PLACED.value},
        )
        self._store.append_order_history(state_id, "ORDER_PLACED", {"order_id": ack.order_id})
        if self._metrics:
            self._metrics.inc_orders_placed(request.transaction_type)
        self._logger.log_event(
            20,
            "order_placed",
            order_state_id=state_id,
            order_id=ack.order_id,
            symbol=request.tradingsymbol,
            side=request.transaction_type,
            qty=request.quantity,
            purpose=purpose,
        )
        result = await self._poll_until_terminal(
            replace(base, success=True, status="PLACED", broker_order_id=ack.order_id),
            self.policy_for(request.order_type),
            started=started,
            prior_attempts=0,
        )
        return await self.dispatch_fill(result, fill_handler)

    def _placement_failed(self, base: ExecutionResult, exc: BaseException) -> ExecutionResult:
        code = failure_from_exception(exc)
        if code is FailureCode.ORDER_REJECTED:
            code = classify_rejection(str(exc))
        placement = (
            PlacementStatus.PLACEMENT_FAILED
            if code in {FailureCode.ORDER_REJECTED, FailureCode.INSUFFICIENT_FUNDS}
            else PlacementStatus.PLACEMENT_ERROR
        )
        self._store.update_order_state(
            base.order_state_id,  # type: ignore[arg-type]
            {
                "placement_status": placement.value,
                "confirmation_status": ConfirmationStatus.FAILED.value,
                "error": str(exc),
                "failure_code": code.value,
                "pending_qty": 0,
            },
        )
        self._store.append_order_history(base.order_state_id, "EXCEPTION", {"error": str(exc), "failure_code": code.value})  # type: ignore[arg-type]
        if self._metrics:
            self._metrics.inc_orders_failed(code.value)
        self._logger.log_event(
            40 if code is not FailureCode.ORDER_REJECTED else 30,
            "order_placement_failed",
            order_state_id=base.order_state_id,
            failure_code=code.value,
            error=str(exc),
        )
        return replace(base, success=False, status=placement.value, error=str(exc), failure_code=code)

    # ------------------------------------------------------------ confirmation
    async def confirm_existing(self, order_state_id: str, *, fill_handler: Optional[FillHandler] = None) -> ExecutionResult:
        """Resume confirmation for a previously placed order (restart or manual retry)."""

        base = self._base_from_row(order_state_id)
        if self._is_terminal(order_state_id):
            return base
        row = self._store.get_order_state(order_state_id) or {}
        result = await self._poll_until_terminal(
            base,
            self.policy_for(row.get("order_type") or "MARKET"),
            started=self._clock(),
            prior_attempts=int(row.get("attempts") or 0),
        )
        return await self.dispatch_fill(result, fill_handler)

    async def check_once(self, order_state_id: str) -> ExecutionResult:
        """Fetch the broker order once and apply the outcome; non-terminal results come back pending."""

        base = self._base_from_row(order_state_id)
        if self._is_terminal(order_state_id):
            return base
        row = self._store.get_order_state(order_state_id) or {}
        attempts = int(row.get("attempts") or 0) + 1
        if self._metrics:
            self._metrics.inc_confirmation_poll()
        history = await self._broker.get_order_history(base.broker_order_id or "")
        order = history[-1] if history else None
        if order is None:
            self._store.update_order_state(order_state_id, {"attempts": attempts})
            return replace(base, status="NOT_FOUND", attempts=attempts)
        policy = self.policy_for(row.get("order_type") or "MARKET")
        outcome = self._evaluate(base, order, policy, attempts=attempts, wait_ms=int(row.get("total_wait_ms") or 0))
        if outcome is not None:
            return outcome
        self._store.update_order_state(
            order_state_id,
            {
                "attempts": attempts,
                "final_status": order.status,
                "executed_qty": order.filled_quantity,
                "pending_qty": order.pending_quantity,
                "raw_payload": order.raw,
            },
        )
        return replace(base, status=order.status, attempts=attempts, executed_qty=order.filled_quantity)

    async def _poll_until_terminal(
        self,
        base: ExecutionResult,
        policy: ConfirmationPolicy,
        *,
        started: float,
        prior_attempts: int,
    ) -> ExecutionResult:
        state_id = base.order_state_id or ""
        order_id = base.broker_order_id or ""
        deadline = started + policy.max_wait_seconds
        attempts = prior_attempts
        polls = 0
        last_status: Optional[str] = None
        while polls < policy.max_attempts and self._clock() < deadline:
            polls += 1
            attempts += 1
            if self._metrics:
                self._metrics.inc_confirmation_poll()
            wait_ms = int((self._clock() - started) * 1000)
            try:
                history = await self._broker.get_order_history(order_id)
            except Exception as exc:
                if isinstance(exc, BrokerError) and exc.needs_reauth:
                    return self._auth_interrupted(base, exc, attempts=attempts, wait_ms=wait_ms)
                self._store.append_order_history(state_id, "POLL_ERROR", {"error": str(exc), "attempt": attempts})
                self._store.update_order_state(state_id, {"attempts": attempts, "total_wait_ms": wait_ms, "error": str(exc)})
                self._logger.log_event(30, "confirmation_poll_error", order_state_id=state_id, order_id=order_id, error=str(exc), attempt=attempts)
                await self._sleep(min(policy.poll_interval * 2, self._cfg.error_backoff_cap))
                continue
            order = history[-1] if history else None
            if order is not None:
                last_status = order.status
                outcome = self._evaluate(base, order, policy, attempts=attempts, wait_ms=wait_ms)
                if outcome is not None:
                    if outcome.executed and self._metrics:
                        self._metrics.observe_confirmation_ms(wait_ms)
                    return outcome
                self._store.update_order_state(
                    state_id,
                    {
                        "attempts": attempts,
                        "total_wait_ms": wait_ms,
                        "final_status": order.status,
                        "executed_qty": order.filled_quantity,
                        "pending_qty": order.pending_quantity,
                        "raw_payload": order.raw,
                    },
                )
            else:
                self._store.update_order_state(state_id, {"attempts": attempts, "total_wait_ms": wait_ms})
            await self._sleep(policy.poll_interval)
        return self._timed_out(base, last_status, attempts=attempts, wait_ms=int((self._clock() - started) * 1000))

    def _evaluate(
        self,
        base: ExecutionResult,
        order: BrokerOrder,
        policy: ConfirmationPolicy,
        *,
        attempts: int,
        wait_ms: int,
    ) -> Optional[ExecutionResult]:
        """Apply one broker order snapshot; returns None while the order is still working."""

        requested = base.requested_qty
        if order.status in COMPLETE_STATUSES:
            filled = order.filled_quantity or order.quantity or requested
            mismatch = filled != requested
            status = "COMPLETE_MISMATCH" if mismatch else "COMPLETE"
            return self._confirmed(base, order, status, filled, attempts=attempts, wait_ms=wait_ms, mismatch=mismatch)
        if order.status in WORKING_STATUSES:
            if policy.partial_fill_acceptable and requested > 0 and order.filled_quantity > 0:
                if order.filled_quantity / requested >= policy.partial_fill_threshold:
                    return self._confirmed(
                        base,
                        order,
                        "PARTIAL_FILL_ACCEPTED",
                        order.filled_quantity,
                        attempts=attempts,
                        wait_ms=wait_ms,
                        mismatch=False,
                    )
            return None
        if order.status in DEAD_STATUSES:
            if order.filled_quantity > 0:
                # Cancelled after a partial fill: the filled part is real exposure.
                return self._confirmed(
                    base,
                    order,
                    f"{order.status}_PARTIAL",
                    order.filled_quantity,
                    attempts=attempts,
                    wait_ms=wait_ms,
                    mismatch=True,
                )
            return self._failed(base, order, attempts=attempts, wait_ms=wait_ms)
        return None

    def _confirmed(
        self,
        base: ExecutionResult,
        order: BrokerOrder,
        status: str,
        filled: int,
        *,
        attempts: int,
        wait_ms: int,
        mismatch: bool,
    ) -> ExecutionResult:
        state_id = base.order_state_id or ""
        pending = max(base.requested_qty - filled, 0)
        updated = self._store.update_order_state(
            state_id,
            {
                "confirmation_status": ConfirmationStatus.CONFIRMED.value,
                "executed_qty": filled,
                "executed_price": order.average_price,
                "pending_qty": pending,
                "attempts": attempts,
                "total_wait_ms": wait_ms,
                "final_status": status,
                "raw_payload": order.raw,
            },
            only_if_confirmation=[ConfirmationStatus.PENDING.value],
        )
        if not updated:
            # Another flow (poller vs monitor) confirmed it first; report what is stored.
            return replace(self._base_from_row(state_id), duplicate=True)
        self._store.append_order_history(
            state_id,
            "EXECUTION_CONFIRMED",
            {"status": status, "executed_qty": filled, "executed_price": order.average_price, "attempts": attempts},
        )
        if self._metrics:
            self._metrics.inc_orders_confirmed()
        self._logger.log_event(
            30 if mismatch else 20,
            "order_confirmed",
            order_state_id=state_id,
            order_id=base.broker_order_id,
            status=status,
            executed_qty=filled,
            requested_qty=base.requested_qty,
            price=order.average_price,
            attempts=attempts,
        )
        return replace(
            base,
            success=True,
            executed=True,
            status=status,
            executed_qty=filled,
            executed_price=order.average_price,
            pending_qty=pending,
            attempts=attempts,
            wait_ms=wait_ms,
            quantity_mismatch=mismatch,
        )

    def _failed(self, base: ExecutionResult, order: BrokerOrder, *, attempts: int, wait_ms: int) -> ExecutionResult:
        state_id = base.order_state_id or ""
        message = order.status_message or f"Order {order.status.lower()}"
        code = classify_rejection(message)
        updated = self._store.update_order_state(
            state_id,
            {
                "confirmation_status": ConfirmationStatus.FAILED.value,
                "attempts": attempts,
                "total_wait_ms": wait_ms,
                "final_status": order.status,
                "pending_qty": 0,
                "error": message,
                "failure_code": code.value,
                "raw_payload": order.raw,
            },
            only_if_confirmation=[ConfirmationStatus.PENDING.value],
        )
        if not updated:
            return self._base_from_row(state_id)
        self._store.append_order_history(state_id, "EXECUTION_FAILED", {"status": order.status, "message": message})
        if self._metrics:
            self._metrics.inc_orders_failed(code.value)
        self._logger.log_event(30, "order_failed", order_state_id=state_id, order_id=base.broker_order_id, status=order.status, error=message)
        return replace(base, success=False, executed=False, status=order.status, attempts=attempts, wait_ms=wait_ms, error=message, failure_code=code)

    def _timed_out(self, base: ExecutionResult, last_status: Optional[str], *, attempts: int, wait_ms: int) -> ExecutionResult:
        state_id = base.order_state_id or ""
        status = f"TIMEOUT_{(last_status or 'UNKNOWN').replace(' ', '_')}"
        self._store.update_order_state(state_id, {"attempts": attempts, "total_wait_ms": wait_ms, "final_status": status})
        self._store.append_order_history(state_id, "EXECUTION_PENDING", {"status": status, "attempts": attempts})
        if self._metrics:
            self._metrics.inc_orders_pending()
        self._logger.log_event(30, "order_confirmation_timeout", order_state_id=state_id, order_id=base.broker_order_id, status=status, wait_ms=wait_ms)
        return replace(base, success=True, executed=False, status=status, attempts=attempts, wait_ms=wait_ms, failure_code=FailureCode.TIMEOUT)

    def _auth_interrupted(self, base: ExecutionResult, exc: BrokerError, *, attempts: int, wait_ms: int) -> ExecutionResult:
        # The order is live at the broker; leave it PENDING for the monitor once re-authorized.
        state_id = base.order_state_id or ""
        self._store.update_order_state(
            state_id,
            {
                "attempts": attempts,
                "total_wait_ms": wait_ms,
                "error": str(exc),
                "failure_code": FailureCode.NEEDS_REAUTH.value,
            },
        )
        self._store.append_order_history(state_id, "EXCEPTION", {"error": str(exc), "failure_code": FailureCode.NEEDS_REAUTH.value})
        self._logger.log_event(40, "confirmation_auth_failed", order_state_id=state_id, order_id=base.broker_order_id, error=str(exc))
        return replace(
            base,
            success=False,
            executed=False,
            status="AUTH_REQUIRED",
            attempts=attempts,
            wait_ms=wait_ms,
            error=str(exc),
            failure_code=FailureCode.NEEDS_REAUTH,
        )

    async def dispatch_fill(self, result: ExecutionResult, fill_handler: Optional[FillHandler]) -> ExecutionResult:
        if not (result.executed and fill_handler) or result.duplicate:
            return result
        try:
            await fill_handler(result)
        except Exception as exc:
            state_id = result.order_state_id or ""
            self._store.update_order_state(state_id, {"manual_review": True, "error": f"fill handler failed: {exc}"})
            self._store.append_order_history(state_id, "EXCEPTION", {"stage": "fill_handler", "error": str(exc)})
            self._logger.log_event(40, "fill_handler_failed", order_state_id=state_id, order_id=result.broker_order_id, error=str(exc))
            notify_incident(
                "ERROR",
                "Confirmed fill not recorded",
                f"order={result.broker_order_id} symbol={result.request.tradingsymbol if result.request else '?'} error={exc}",
                tags=["ledger"],
            )
            return replace(result, error=f"Order executed but position update failed: {exc}", failure_code=FailureCode.INTERNAL)
        return result

    # ------------------------------------------------------------------ helpers
    def _is_terminal(self, order_state_id: str) -> bool:
        row = self._store.get_order_state(order_state_id) or {}
        return row.get("confirmation_status") in {ConfirmationStatus.CONFIRMED.value, ConfirmationStatus.FAILED.value}

    def _base_from_row(self, order_state_id: str) -> ExecutionResult:
        row = self._store.get_order_state(order_state_id)
        if row is None:
            raise KeyError(f"Unknown order state {order_state_id}")
        confirmation = row.get("confirmation_status") or ConfirmationStatus.PENDING.value
        executed = confirmation == ConfirmationStatus.CONFIRMED.value
        failure = row.get("failure_code")
        status = row.get("final_status") or ("PLACED" if confirmation == ConfirmationStatus.PENDING.value else confirmation)
        return ExecutionResult(
            success=confirmation != ConfirmationStatus.FAILED.value,
            executed=executed,
            status=status,
            order_state_id=order_state_id,
            broker_order_id=row.get("broker_order_id"),
            requested_qty=int(row["quantity"]),
            executed_qty=int(row.get("executed_qty") or 0),
            executed_price=row.get("executed_price"),
            pending_qty=int(row.get("pending_qty") or 0),
            attempts=int(row.get("attempts") or 0),
            wait_ms=int(row.get("total_wait_ms") or 0),
            error=row.get("error"),
            failure_code=FailureCode(failure) if failure else None,
            execution_id=row.get("execution_id"),
            purpose=row.get("purpose") or "ENTRY",
            position_id=row.get("position_id"),
            request=request_from_order_state(row),
            context=dict(row.get("context") or {}),
        )

    def order_history(self, order_state_id: str) -> List[Dict[str, Any]]:
        return self._store.list_order_history(order_state_id)


__all__ = [
    "COMPLETE_STATUSES",
    "ConfirmationStatus",
    "DEAD_STATUSES",
    "ExecutionResult",
    "FillHandler",
    "OrderConfirmationEngine",
    "PlacementStatus",
    "WORKING_STATUSES",
    "classify_rejection",
    "new_order_state_id",
    "request_from_order_state",
]
