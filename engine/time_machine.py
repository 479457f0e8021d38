from __future__ import annotations

import contextlib
import datetime as dt
from typing import Callable, Iterator, Optional

_NowCallable = Callable[[], dt.datetime]


def _default_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


_active_now: _NowCallable = _default_now


class FrozenClock:
    """Manually advanced clock handed out by :func:`travel`."""

    def __init__(self, start: dt.datetime) -> None:
        self._current = start

    def __call__(self) -> dt.datetime:
        return self._current

    def advance(self, delta: dt.timedelta | float) -> dt.datetime:
        if not isinstance(delta, dt.timedelta):
            delta = dt.timedelta(seconds=float(delta))
        self._current = self._current + delta
        return self._current

    def set(self, value: dt.datetime | str) -> dt.datetime:
        self._current = _coerce_ts(value)
        return self._current


def now(tz: Optional[dt.tzinfo] = None) -> dt.datetime:
    """Return the current engine timestamp honoring any active travel."""

    current = _active_now()
    if tz:
        if current.tzinfo is None:
            current = current.replace(tzinfo=tz)
        else:
            current = current.astimezone(tz)
    return current


def utc_now() -> dt.datetime:
    return now(dt.timezone.utc)


@contextlib.contextmanager
def travel(frozen: dt.datetime | str) -> Iterator[FrozenClock]:
    """
    Freeze the engine clock at ``frozen`` while the context is active.

    The yielded :class:`FrozenClock` can be advanced to simulate the passage of
    time (scheduler overdue sweeps, stall detection). Only the engine's own
    ``now()`` helper is patched; the event loop clock keeps running.
    """

    clock = FrozenClock(_coerce_ts(frozen))
    global _active_now
    prev = _active_now
    _active_now = clock
    try:
        yield clock
    finally:
        _active_now = prev


def _coerce_ts(value: dt.datetime | str) -> dt.datetime:
    if isinstance(value, dt.datetime):
        ts = value
    else:
        ts = dt.datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.timezone.utc)
    return ts


__all__ = ["FrozenClock", "now", "utc_now", "travel"]
