from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 0.3
_UNSET = object()


class ThrottledUpdate:
    """Leading-edge immediate, trailing-edge deferred update with a fixed window.

    The first value after a quiet period is applied at once. Values arriving
    inside the window replace any pending value, and one deferred call applies
    the latest of them when the window closes.
    """

    def __init__(
        self,
        apply: Callable[[Any], None],
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._apply = apply
        self.window_seconds = window_seconds
        self._clock = clock
        self._last_applied_at: float | None = None
        self._pending: Any = _UNSET
        self._handle: asyncio.TimerHandle | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not _UNSET

    def push(self, value: Any) -> None:
        now = self._clock()
        if self._last_applied_at is None or now - self._last_applied_at >= self.window_seconds:
            self._cancel_timer()
            self._pending = _UNSET
            self._emit(value, now)
            return

        self._pending = value
        if self._handle is None:
            delay = self.window_seconds - (now - self._last_applied_at)
            self._handle = asyncio.get_running_loop().call_later(max(0.0, delay), self._fire)

    def flush(self) -> None:
        self._cancel_timer()
        if self._pending is _UNSET:
            return
        value = self._pending
        self._pending = _UNSET
        self._emit(value, self._clock())

    def cancel(self) -> None:
        self._cancel_timer()
        self._pending = _UNSET

    def _fire(self) -> None:
        self._handle = None
        if self._pending is _UNSET:
            return
        value = self._pending
        self._pending = _UNSET
        self._emit(value, self._clock())

    def _emit(self, value: Any, now: float) -> None:
        self._last_applied_at = now
        self._apply(value)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class ProgressReconciler:
    """Keyed set of throttled updates so live text and status lines pace independently."""

    def __init__(self, *, window_seconds: float = DEFAULT_WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._channels: dict[str, ThrottledUpdate] = {}
        self.closed = False

    def channel(self, name: str, apply: Callable[[Any], None]) -> ThrottledUpdate:
        existing = self._channels.get(name)
        if existing is not None:
            existing.cancel()
        throttle = ThrottledUpdate(apply, window_seconds=self.window_seconds, clock=self._clock)
        self._channels[name] = throttle
        return throttle

    def push(self, name: str, value: Any) -> None:
        throttle = self._channels.get(name)
        if throttle is None:
            if self.closed:
                logger.debug("Dropping update for closed reconciler channel=%s", name)
                return
            raise KeyError(f"Unknown progress channel: {name}")
        throttle.push(value)

    def flush(self, name: str | None = None) -> None:
        targets = [self._channels[name]] if name is not None and name in self._channels else []
        if name is None:
            targets = list(self._channels.values())
        for throttle in targets:
            throttle.flush()

    def cancel_all(self) -> None:
        for throttle in self._channels.values():
            throttle.cancel()
        self._channels.clear()

    def close(self) -> None:
        """Cancel everything and ignore pushes from work still finishing."""
        self.closed = True
        self.cancel_all()
