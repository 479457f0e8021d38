from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional


class FailureCode(str, Enum):
    NEEDS_REAUTH = "needs_reauth"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NO_CONTRACT = "no_contract"
    INVALID_CONFIG = "invalid_config"
    INVALID_SIGNAL = "invalid_signal"
    ORDER_REJECTED = "order_rejected"
    BROKER_ERROR = "broker_error"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


_REMEDIES: Dict[FailureCode, str] = {
    FailureCode.NEEDS_REAUTH: "Broker session expired or missing; re-authorize the Zerodha account",
    FailureCode.INSUFFICIENT_FUNDS: "Insufficient funds for the minimum tradable quantity",
    FailureCode.NO_CONTRACT: "No tradable options contract met the selection criteria",
    FailureCode.INVALID_CONFIG: "Bot configuration is invalid",
    FailureCode.INVALID_SIGNAL: "Trade signal payload is invalid",
    FailureCode.ORDER_REJECTED: "Order was rejected by the broker",
    FailureCode.BROKER_ERROR: "Broker request failed; retry later",
    FailureCode.TIMEOUT: "Order confirmation timed out; order is being monitored",
    FailureCode.INTERNAL: "Unexpected internal error",
}


def remedy_for(code: FailureCode | str) -> str:
    try:
        return _REMEDIES[FailureCode(code)]
    except ValueError:
        return _REMEDIES[FailureCode.INTERNAL]


class EngineError(Exception):
    """Base for errors that carry a user-facing failure code."""

    def __init__(self, code: FailureCode, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = FailureCode(code)
        self.context = context or {}

    @property
    def remedy(self) -> str:
        return remedy_for(self.code)


class ConfigValidationError(EngineError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(FailureCode.INVALID_CONFIG, message, context)


class SignalValidationError(EngineError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(FailureCode.INVALID_SIGNAL, message, context)


def failure_from_exception(exc: BaseException) -> FailureCode:
    """Classify an arbitrary exception into a failure code."""

    if isinstance(exc, EngineError):
        return exc.code
    code = getattr(exc, "code", None)
    if code == "auth":
        return FailureCode.NEEDS_REAUTH
    if code == "rejected":
        return FailureCode.ORDER_REJECTED
    if code == "insufficient_funds":
        return FailureCode.INSUFFICIENT_FUNDS
    if isinstance(exc, asyncio.TimeoutError) or code == "timeout":
        return FailureCode.TIMEOUT
    if code is not None:
        return FailureCode.BROKER_ERROR
    return FailureCode.INTERNAL


__all__ = [
    "ConfigValidationError",
    "EngineError",
    "FailureCode",
    "SignalValidationError",
    "failure_from_exception",
    "remedy_for",
]
