"""Keyed debounce primitive built on the event loop's timers."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, Hashable, TypeVar

LOGGER = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class KeyedDebouncer(Generic[K]):
    """Runs ``callback(key)`` once a key has been quiet for ``delay`` seconds.

    Every :meth:`trigger` for a key restarts that key's timer; different keys
    are independent. The callback runs synchronously on the loop; schedule a
    task from it for async work.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[K], None],
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self._delay = delay
        self._callback = callback
        self._loop = loop
        self._timers: dict[K, asyncio.TimerHandle] = {}
        self._closed = False

    @property
    def delay(self) -> float:
        return self._delay

    def trigger(self, key: K) -> None:
        """(Re)start the quiescence timer for ``key``."""

        if self._closed:
            return
        loop = self._loop or asyncio.get_running_loop()
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = loop.call_later(self._delay, self._fire, key)

    def cancel(self, key: K) -> bool:
        """Drop the pending timer for ``key``; returns ``True`` if one existed."""

        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending(self, key: K) -> bool:
        return key in self._timers

    def __len__(self) -> int:
        return len(self._timers)

    def close(self) -> None:
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        try:
            self._callback(key)
        except Exception:
            LOGGER.exception("Debounced callback failed for %r", key)


__all__ = ["KeyedDebouncer"]
