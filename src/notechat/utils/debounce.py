"""Instance-owned debounce handle bound to the running asyncio loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

LOGGER = logging.getLogger(__name__)


class Debouncer:
    """Coalesces bursts of calls into one trailing invocation.

    Each owner keeps its own handle, so two stores never cancel each other's
    pending writes. Without a running loop the callback fires immediately.
    """

    def __init__(self, callback: Callable[[], None], delay: float) -> None:
        self._callback = callback
        self._delay = max(0.0, float(delay))
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._fire()
            return
        if self._delay == 0:
            self.cancel()
            self._fire()
            return
        self.cancel()
        self._handle = loop.call_later(self._delay, self._fire)

    def flush(self) -> None:
        """Run a pending invocation now."""

        if self._handle is None:
            return
        self.cancel()
        self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        try:
            self._callback()
        except Exception:
            LOGGER.exception("Debounced callback %r failed", self._callback)
