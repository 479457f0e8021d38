from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from kiteconnect import KiteConnect

LOG = logging.getLogger(__name__)


class CredentialError(RuntimeError):
    """Raised when Kite credentials are unavailable or incomplete."""


@dataclass(frozen=True)
class KiteConfig:
    api_key: str
    access_token: Optional[str] = None
    api_secret: Optional[str] = None
    timeout: float = 7.0


def _read_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    text = value.strip()
    return text or None


def load_kite_credentials(secrets: Optional[object] = None, *, timeout: float = 7.0) -> KiteConfig:
    """
    Load Kite Connect credentials from a secrets object or the environment.

    Required:
        - KITE_API_KEY
    Optional:
        - KITE_ACCESS_TOKEN (calls fail with an auth error until present)
        - KITE_API_SECRET
    """

    api_key = getattr(secrets, "kite_api_key", None) or _read_env("KITE_API_KEY")
    if not api_key:
        raise CredentialError("KITE_API_KEY not set; export it before running the engine.")
    return KiteConfig(
        api_key=api_key,
        access_token=getattr(secrets, "kite_access_token", None) or _read_env("KITE_ACCESS_TOKEN"),
        api_secret=getattr(secrets, "kite_api_secret", None) or _read_env("KITE_API_SECRET"),
        timeout=timeout,
    )


class KiteSession:
    """Blocking Kite Connect facade; the async broker runs each call in a worker thread."""

    def __init__(self, config: KiteConfig, client_factory: Optional[Callable[..., Any]] = None):
        self.config = config
        factory = client_factory or KiteConnect
        self.kite = factory(api_key=config.api_key, timeout=int(config.timeout))
        if config.access_token:
            self.kite.set_access_token(config.access_token)

    def _require_token(self) -> None:
        if not self.config.access_token:
            raise CredentialError("Access token required")

    def set_access_token(self, token: str) -> None:
        self.config = KiteConfig(
            api_key=self.config.api_key,
            access_token=token,
            api_secret=self.config.api_secret,
            timeout=self.config.timeout,
        )
        self.kite.set_access_token(token)

    def profile(self) -> Dict[str, Any]:
        self._require_token()
        return self.kite.profile()

    def margins(self, segment: Optional[str] = None) -> Dict[str, Any]:
        self._require_token()
        return self.kite.margins(segment) if segment else self.kite.margins()

    def holdings(self) -> List[Dict[str, Any]]:
        self._require_token()
        return self.kite.holdings()

    def positions(self) -> Dict[str, Any]:
        self._require_token()
        return self.kite.positions()

    def orders(self) -> List[Dict[str, Any]]:
        self._require_token()
        return self.kite.orders()

    def order_history(self, order_id: str) -> List[Dict[str, Any]]:
        self._require_token()
        return self.kite.order_history(order_id)

    def trades(self) -> List[Dict[str, Any]]:
        self._require_token()
        return self.kite.trades()

    def instruments(self, exchange: Optional[str] = None) -> List[Dict[str, Any]]:
        self._require_token()
        return self.kite.instruments(exchange) if exchange else self.kite.instruments()

    def quote(self, instruments: Sequence[str]) -> Dict[str, Any]:
        self._require_token()
        return self.kite.quote(list(instruments))

    def place_order(self, variety: str, **params: Any) -> str:
        self._require_token()
        clean = {key: value for key, value in params.items() if value is not None}
        LOG.debug("kite place_order variety=%s params=%s", variety, clean)
        return self.kite.place_order(variety=variety, **clean)


__all__ = ["CredentialError", "KiteConfig", "KiteSession", "load_kite_credentials"]
