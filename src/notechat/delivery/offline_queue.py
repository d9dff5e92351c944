"""Durable queue of messages waiting for connectivity.

Messages written while offline (or whose delivery exhausted its retries) are
parked here and persisted immediately. When the connectivity signal reports
that the service is reachable again the queue drains itself, one conversation
at a time in enqueue order, handing each confirmed message back to the
message sink.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from ..chat.message_model import Message, PendingId, QueuedEntry
from ..events import ConnectivityChanged, EventBus, MessageQueued, QueueFlushed, RetryScheduled
from ..services.persistence import KeyValueStore
from .connectivity import ConnectivitySignal
from .retry import RetryEngine

LOGGER = logging.getLogger(__name__)

QUEUE_STORAGE_KEY = "offline-queue"

Deliver = Callable[[QueuedEntry], Awaitable[Message]]


class MessageSink(Protocol):
    """Receiver of redelivery outcomes (implemented by ``MessageStore``)."""

    def confirm_message(self, conversation_id: str, temp_id: str, server_message: Message) -> Any:
        ...

    def mark_message_failed(self, conversation_id: str, temp_id: str, *, error: str = "") -> Any:
        ...


@dataclass(slots=True)
class FlushReport:
    """Outcome of one drain of the queue."""

    delivered: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0


class OfflineQueue:
    """Persists undelivered messages and redelivers them when back online."""

    def __init__(
        self,
        *,
        storage: KeyValueStore,
        signal: ConnectivitySignal,
        deliver: Deliver,
        sink: MessageSink,
        retry: RetryEngine | None = None,
        event_bus: EventBus | None = None,
        auto_flush: bool = True,
    ) -> None:
        self._storage = storage
        self._signal = signal
        self._deliver = deliver
        self._sink = sink
        self._retry = retry or RetryEngine()
        self._bus = event_bus
        self._auto_flush = auto_flush
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._in_flight: set[tuple[str, str]] = set()
        self._entries: list[QueuedEntry] = self._load()
        self._dispose_signal = signal.subscribe(self._handle_connectivity)
        if self._entries:
            LOGGER.info("Restored %d queued message(s)", len(self._entries))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._signal.online

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    def is_delivering(self, conversation_id: str, temp_id: str) -> bool:
        """Whether a drain is sending the message carrying ``temp_id`` right now."""

        return (conversation_id, temp_id) in self._in_flight

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, conversation_id: str, message: Message) -> QueuedEntry:
        """Durably append ``message``; re-enqueueing the same temp id is a no-op."""

        if not isinstance(message.id, PendingId):
            raise ValueError("Only unconfirmed messages can be queued")
        existing = self._find(conversation_id, message.id.temp_id)
        if existing is not None:
            return existing
        entry = QueuedEntry(conversation_id=conversation_id, message=message)
        self._entries.append(entry)
        self._persist()
        LOGGER.info(
            "Queued message %s for %s (%d waiting)",
            message.id,
            conversation_id,
            len(self._entries),
        )
        self._publish(
            MessageQueued(
                conversation_id=conversation_id,
                temp_id=message.id.temp_id,
                queue_size=len(self._entries),
            )
        )
        return entry

    def get_queued_messages(self, conversation_id: str | None = None) -> list[QueuedEntry]:
        if conversation_id is None:
            return list(self._entries)
        return [entry for entry in self._entries if entry.conversation_id == conversation_id]

    def remove(self, entry_id: str) -> bool:
        for index, entry in enumerate(self._entries):
            if entry.entry_id == entry_id:
                self._entries.pop(index)
                self._persist()
                return True
        return False

    def discard_message(self, conversation_id: str, temp_id: str) -> bool:
        """Drop the entry carrying ``temp_id`` (user deleted or resent it).

        Returns ``False`` when there is no such entry or when its delivery is
        already under way; the drain owns that entry until it settles.
        """

        entry = self._find(conversation_id, temp_id)
        if entry is None:
            return False
        if self.is_delivering(conversation_id, temp_id):
            LOGGER.debug("Not discarding %s: delivery in progress", temp_id)
            return False
        return self.remove(entry.entry_id)

    def clear(self, conversation_id: str | None = None) -> int:
        before = len(self._entries)
        if conversation_id is None:
            self._entries = []
        else:
            self._entries = [entry for entry in self._entries if entry.conversation_id != conversation_id]
        removed = before - len(self._entries)
        if removed:
            self._persist()
        return removed

    def on_connectivity_change(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Subscribe to connectivity flips; ``callback`` first receives the current state."""

        dispose = self._signal.subscribe(callback)
        callback(self._signal.online)
        return dispose

    async def flush(self) -> FlushReport | None:
        """Drain the queue; returns ``None`` when another drain is already running."""

        if self._lock.locked():
            LOGGER.debug("Flush already in progress; skipping")
            return None
        async with self._lock:
            if not self._signal.online:
                return FlushReport(skipped=len(self._entries), remaining=len(self._entries))
            report = await self._drain()
        report.remaining = len(self._entries)
        LOGGER.info(
            "Queue flush finished: %d delivered, %d failed, %d skipped",
            report.delivered,
            report.failed,
            report.skipped,
        )
        self._publish(QueueFlushed(delivered=report.delivered, failed=report.failed, remaining=report.remaining))
        return report

    async def close(self) -> None:
        self._dispose_signal()
        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def _drain(self) -> FlushReport:
        report = FlushReport()
        by_conversation: dict[str, list[QueuedEntry]] = {}
        for entry in self._entries:
            by_conversation.setdefault(entry.conversation_id, []).append(entry)

        for conversation_id, entries in by_conversation.items():
            for position, entry in enumerate(entries):
                if not self._signal.online:
                    report.skipped += len(entries) - position
                    continue
                if entry not in self._entries:
                    continue
                delivered = await self._redeliver(entry)
                if delivered:
                    report.delivered += 1
                    continue
                report.failed += 1
                report.skipped += len(entries) - position - 1
                LOGGER.debug("Holding %d later message(s) for %s", len(entries) - position - 1, conversation_id)
                break
        return report

    async def _redeliver(self, entry: QueuedEntry) -> bool:
        temp_id = entry.message.id.temp_id  # type: ignore[union-attr]

        def on_backoff(attempt: Any) -> None:
            self._publish(RetryScheduled(conversation_id=entry.conversation_id, attempt=attempt))

        key = (entry.conversation_id, temp_id)
        self._in_flight.add(key)
        try:
            confirmed = await self._retry.with_retry(lambda: self._deliver(entry), on_backoff=on_backoff)
        except Exception as exc:
            entry.attempts += 1
            entry.last_error = str(exc)
            self._persist()
            LOGGER.warning("Redelivery of %s failed: %s", temp_id, exc)
            try:
                self._sink.mark_message_failed(entry.conversation_id, temp_id, error=str(exc))
            except LookupError:
                LOGGER.debug("Message %s is no longer displayed", temp_id)
            return False
        finally:
            self._in_flight.discard(key)

        # Removal and confirmation happen without an intervening await.
        if entry in self._entries:
            self._entries.remove(entry)
            self._persist()
        try:
            self._sink.confirm_message(entry.conversation_id, temp_id, confirmed)
        except LookupError:
            LOGGER.warning("Delivered message %s is no longer displayed in %s", temp_id, entry.conversation_id)
        return True

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _handle_connectivity(self, online: bool) -> None:
        self._publish(ConnectivityChanged(online=online))
        if online and self._auto_flush and self._entries:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running loop; flush deferred until requested")
            return
        task = loop.create_task(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _find(self, conversation_id: str, temp_id: str) -> QueuedEntry | None:
        for entry in self._entries:
            if entry.conversation_id == conversation_id and entry.message.temp_id == temp_id:
                return entry
        return None

    def _load(self) -> list[QueuedEntry]:
        raw = self._storage.get(QUEUE_STORAGE_KEY, [])
        if not isinstance(raw, list):
            LOGGER.warning("Ignoring malformed offline queue payload")
            return []
        entries: list[QueuedEntry] = []
        for item in raw:
            try:
                entries.append(QueuedEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Dropping unreadable queued entry: %s", exc)
        return entries

    def _persist(self) -> None:
        self._storage.set(QUEUE_STORAGE_KEY, [entry.to_dict() for entry in self._entries])

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


__all__ = ["Deliver", "FlushReport", "MessageSink", "OfflineQueue", "QUEUE_STORAGE_KEY"]
