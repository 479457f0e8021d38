from __future__ import annotations

import datetime as dt
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that emits one compact JSON object per event, merged with bound context."""

    def log_event(self, level: int, event: str, **fields: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        stamp = dt.datetime.now(dt.timezone.utc).isoformat()
        payload: Dict[str, Any] = {"event": event, "ts": stamp, "logger": self.logger.name}
        if self.extra:
            payload.update(self.extra)
        payload.update(fields)
        message = json.dumps(payload, default=str, separators=(",", ":"))
        self.logger.log(level, message)

    def bind(self, **context: Any) -> "StructuredLogger":
        merged = dict(self.extra or {})
        merged.update(context)
        return StructuredLogger(self.logger, merged)


def configure_logging(level: str = "INFO", *, filename: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if filename:
        handlers.append(logging.FileHandler(filename, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


def get_logger(name: str, level: Optional[str] = None, **context: Any) -> StructuredLogger:
    if level:
        configure_logging(level)
    base = logging.getLogger(name)
    return StructuredLogger(base, dict(context))


class RateLimitedLogger:
    """Rate-limit noisy events per (event, key) pair."""

    def __init__(self, logger: StructuredLogger, min_interval_seconds: float = 1.0):
        self._logger = logger
        self._interval = max(min_interval_seconds, 0.0)
        self._last: Dict[Tuple[str, str], float] = {}
        self.suppressed = 0

    def log_event(self, level: int, event: str, key: str, **fields: Any) -> bool:
        now = time.monotonic()
        marker = (event, key)
        last_ts = self._last.get(marker)
        if last_ts is not None and self._interval > 0 and (now - last_ts) < self._interval:
            self.suppressed += 1
            return False
        self._last[marker] = now
        self._logger.log_event(level, event, **fields)
        return True


__all__ = ["RateLimitedLogger", "StructuredLogger", "configure_logging", "get_logger"]
