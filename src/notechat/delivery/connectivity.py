"""Online/offline signal and an optional HTTP health probe feeding it."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx

LOGGER = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivitySignal:
    """External online/offline event source.

    The host application (or :class:`HttpConnectivityProbe`) reports state via
    :meth:`set_online`; listeners only hear about actual changes.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        LOGGER.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                LOGGER.exception("Connectivity listener %r failed", listener)

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def listener_count(self) -> int:
        return len(self._listeners)


class HttpConnectivityProbe:
    """Polls a health endpoint and reports reachability to a signal."""

    def __init__(
        self,
        signal: ConnectivitySignal,
        url: str,
        *,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._signal = signal
        self._url = url
        self._interval = max(0.1, float(interval))
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task[None] | None = None

    async def check(self) -> bool:
        """Probe once and update the signal; returns the observed state."""

        client = self._ensure_client()
        try:
            response = await client.get(self._url, timeout=self._timeout)
        except httpx.HTTPError as exc:
            LOGGER.debug("Health probe %s failed: %s", self._url, exc)
            online = False
        else:
            online = response.status_code < 500
        self._signal.set_online(online)
        return online

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client


__all__ = ["ConnectivityListener", "ConnectivitySignal", "HttpConnectivityProbe"]
