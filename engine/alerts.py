from __future__ import annotations

import os
import time
from typing import Callable, Dict, Iterable, Optional

import requests

from engine.logging_utils import get_logger

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40, "CRIT": 50, "CRITICAL": 50}
_LOG = get_logger("alerts")

Transport = Callable[[str, Dict[str, object]], None]


def _level_value(level: str) -> int:
    return _LEVELS.get(str(level).upper(), 30)


class AlertService:
    """Slack / Telegram incident fan-out, throttled per alert title."""

    def __init__(
        self,
        throttle_seconds: float = 30.0,
        min_level: str = "WARN",
        transport: Optional[Transport] = None,
    ):
        self.throttle_seconds = max(throttle_seconds, 0.0)
        self.min_level = _level_value(min_level)
        self._last_sent: Dict[str, float] = {}
        self._transport = transport or self._http_post
        self.slack_url = os.getenv("SLACK_WEBHOOK_URL")
        self.telegram_token = os.getenv("TELEGRAM_BOT_TOKEN")
        self.telegram_chat = os.getenv("TELEGRAM_CHAT_ID")

    @property
    def has_channels(self) -> bool:
        return bool(self.slack_url or (self.telegram_token and self.telegram_chat))

    def notify(self, level: str, title: str, body: str, tags: Optional[Iterable[str]] = None) -> bool:
        if _level_value(level) < self.min_level:
            return False
        now = time.monotonic()
        last = self._last_sent.get(title)
        if last is not None and now - last < self.throttle_seconds:
            return False
        tag_list = [str(tag) for tag in tags or []]
        sent = False
        if self.slack_url:
            sent |= self._send_slack(level, title, body, tag_list)
        if self.telegram_token and self.telegram_chat:
            sent |= self._send_telegram(level, title, body, tag_list)
        if sent:
            self._last_sent[title] = now
        return sent

    def _send_slack(self, level: str, title: str, body: str, tags: list[str]) -> bool:
        data: Dict[str, object] = {"text": f"*{title}* ({level})\n{body}"}
        if tags:
            data["attachments"] = [{"text": ", ".join(tags)}]
        return self._post_json(self.slack_url, data)

    def _send_telegram(self, level: str, title: str, body: str, tags: list[str]) -> bool:
        url = f"https://api.telegram.org/bot{self.telegram_token}/sendMessage"
        text = f"{title} [{level}]\n{body}"
        if tags:
            text += f"\nTags: {', '.join(tags)}"
        return self._post_json(url, {"chat_id": self.telegram_chat, "text": text})

    def _post_json(self, url: Optional[str], data: Dict[str, object]) -> bool:
        if not url:
            return False
        try:
            self._transport(url, data)
        except (requests.RequestException, OSError) as exc:
            _LOG.log_event(30, "alert_delivery_failed", error=str(exc))
            return False
        return True

    @staticmethod
    def _http_post(url: str, data: Dict[str, object]) -> None:
        resp = requests.post(url, json=data, timeout=5)
        resp.raise_for_status()


_DEFAULT_SERVICE: Optional[AlertService] = None


def configure_alerts(throttle_seconds: float = 30.0, min_level: str = "WARN", transport: Optional[Transport] = None) -> AlertService:
    global _DEFAULT_SERVICE
    _DEFAULT_SERVICE = AlertService(throttle_seconds=throttle_seconds, min_level=min_level, transport=transport)
    return _DEFAULT_SERVICE


def notify_incident(level: str, title: str, body: str, tags: Optional[Iterable[str]] = None) -> bool:
    service = _DEFAULT_SERVICE or configure_alerts()
    return service.notify(level, title, body, tags)


__all__ = ["AlertService", "configure_alerts", "notify_incident"]
