"""Authoritative per-conversation message lists with optimistic updates.

The store is the only writer of conversation message lists. Optimistic
messages are appended with a :class:`PendingId`; confirmation swaps the entry
for the server copy at the same index, so ordering never shifts when the
server answers. A capped, recency-ordered slice of conversations is persisted
through a :class:`KeyValueStore` with debounced writes.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Iterable, Mapping, Sequence

from ..events import EventBus, MessageAdded, MessageConfirmed, MessageFailed
from ..services.persistence import KeyValueStore
from ..utils.debounce import Debouncer
from .message_model import (
    ConfirmedId,
    ConversationCache,
    Message,
    MessageId,
    MessageStatus,
    PendingId,
)

LOGGER = logging.getLogger(__name__)

PERSISTENCE_KEY = "chat-messages"
DEFAULT_MAX_CACHED_CONVERSATIONS = 50
DEFAULT_MAX_PERSISTED_CONVERSATIONS = 10


class MessageStoreError(Exception):
    """Base class for invalid store operations."""


class UnknownMessageError(MessageStoreError, LookupError):
    """No message with the requested id exists in the conversation."""


class DuplicateMessageError(MessageStoreError):
    """The id is already present in the conversation."""


class InvalidTransitionError(MessageStoreError):
    """The requested status change is not allowed from the current status."""


class MessageStore:
    """Owns every conversation's message list and its transitions.

    Status transitions:
        pending -> sent      via :meth:`confirm_message`
        pending -> failed    via :meth:`mark_message_failed`
        failed  -> sent      via :meth:`confirm_message` when a queued
                             redelivery of that message is accepted
        sent    -> (none)
    """

    def __init__(
        self,
        *,
        storage: KeyValueStore | None = None,
        event_bus: EventBus | None = None,
        max_cached_conversations: int = DEFAULT_MAX_CACHED_CONVERSATIONS,
        max_persisted_conversations: int = DEFAULT_MAX_PERSISTED_CONVERSATIONS,
        persist_debounce: float = 0.5,
    ) -> None:
        self._storage = storage
        self._bus = event_bus
        self._max_persisted = max(0, int(max_persisted_conversations))
        self._max_cached = max(1, int(max_cached_conversations), self._max_persisted)
        self._caches: OrderedDict[str, ConversationCache] = OrderedDict()
        self._debouncer = Debouncer(self.flush_persistence, persist_debounce)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def cache(self, conversation_id: str) -> ConversationCache:
        """Return the conversation's cache, creating it and marking it most recent."""

        if not conversation_id:
            raise ValueError("conversation_id is required")
        cache = self._caches.get(conversation_id)
        if cache is None:
            cache = ConversationCache(conversation_id=conversation_id)
            self._caches[conversation_id] = cache
        self._caches.move_to_end(conversation_id)
        self._evict_overflow()
        return cache

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._caches

    def conversation_ids(self) -> list[str]:
        """Conversation ids from least to most recently touched."""

        return list(self._caches)

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Return a copy of the ordered message list."""

        cache = self._caches.get(conversation_id)
        if cache is None:
            return []
        return list(cache.messages)

    def find_message(self, conversation_id: str, message_id: MessageId | str) -> Message | None:
        cache = self._caches.get(conversation_id)
        if cache is None:
            return None
        index = _index_of(cache.messages, message_id)
        return cache.messages[index] if index is not None else None

    def unconfirmed_messages(self, conversation_id: str) -> list[Message]:
        return [message for message in self.get_messages(conversation_id) if not message.is_confirmed]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def add_optimistic_message(self, conversation_id: str, message: Message) -> Message:
        """Append ``message`` as pending; it is visible before any network I/O."""

        if not isinstance(message.id, PendingId):
            message = Message.pending(message.role, message.content, metadata=message.metadata)
        elif message.status is not MessageStatus.PENDING:
            message = message.with_status(MessageStatus.PENDING)
        cache = self.cache(conversation_id)
        if _index_of(cache.messages, message.id) is not None:
            raise DuplicateMessageError(f"Temporary id {message.id} already present in {conversation_id}")
        cache.messages.append(message)
        LOGGER.debug("Optimistic message %s added to %s", message.id, conversation_id)
        self._changed()
        self._publish(MessageAdded(conversation_id=conversation_id, message=message))
        return message

    def confirm_message(
        self,
        conversation_id: str,
        temp_id: str | PendingId,
        server_message: Message | Mapping[str, Any],
    ) -> Message:
        """Replace the pending entry in place with its server-confirmed copy."""

        confirmed = _as_confirmed(server_message)
        cache = self.cache(conversation_id)
        index = _index_of(cache.messages, _pending(temp_id))
        if index is None:
            raise UnknownMessageError(f"No message with temporary id {temp_id} in {conversation_id}")
        current = cache.messages[index]
        if current.status is MessageStatus.SENT:  # pragma: no cover - PendingId excludes SENT
            raise InvalidTransitionError(f"Message {temp_id} is already sent")
        existing = _index_of(cache.messages, confirmed.id)
        if existing is not None:
            # The server copy already arrived (e.g. via a page load); keep it once.
            LOGGER.warning(
                "Server id %s already present in %s; dropping temporary entry %s",
                confirmed.server_id,
                conversation_id,
                temp_id,
            )
            cache.messages.pop(index)
            confirmed = cache.messages[existing if existing < index else existing - 1]
        else:
            cache.messages[index] = confirmed
        LOGGER.debug("Message %s confirmed as %s in %s", temp_id, confirmed.server_id, conversation_id)
        self._changed()
        self._publish(
            MessageConfirmed(conversation_id=conversation_id, temp_id=str(_pending(temp_id)), message=confirmed)
        )
        return confirmed

    def mark_message_failed(
        self, conversation_id: str, temp_id: str | PendingId, *, error: str = ""
    ) -> Message:
        """Flag the pending entry as failed; it stays visible for retry or delete."""

        cache = self.cache(conversation_id)
        index = _index_of(cache.messages, _pending(temp_id))
        if index is None:
            raise UnknownMessageError(f"No message with temporary id {temp_id} in {conversation_id}")
        current = cache.messages[index]
        if current.status is MessageStatus.FAILED:
            return current
        failed = current.with_status(MessageStatus.FAILED)
        if error:
            failed.metadata["error"] = error
        cache.messages[index] = failed
        self._changed()
        self._publish(MessageFailed(conversation_id=conversation_id, temp_id=str(_pending(temp_id)), error=error))
        return failed

    def append_confirmed_message(self, conversation_id: str, message: Message | Mapping[str, Any]) -> Message:
        """Append a message the server already holds (e.g. a streamed reply)."""

        confirmed = _as_confirmed(message)
        cache = self.cache(conversation_id)
        if _index_of(cache.messages, confirmed.id) is not None:
            raise DuplicateMessageError(f"Message {confirmed.server_id} already present in {conversation_id}")
        cache.messages.append(confirmed)
        self._changed()
        self._publish(MessageAdded(conversation_id=conversation_id, message=confirmed))
        return confirmed

    def remove_message(self, conversation_id: str, message_id: MessageId | str) -> bool:
        """Delete a message (typically a failed one the user dismissed)."""

        cache = self._caches.get(conversation_id)
        if cache is None:
            return False
        index = _index_of(cache.messages, message_id)
        if index is None:
            return False
        cache.messages.pop(index)
        self._changed()
        return True

    def replace_history(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """Replace the list with freshly loaded server history.

        Unconfirmed local messages are kept at the tail so pending sends survive
        a reload of the newest page.
        """

        cache = self.cache(conversation_id)
        loaded = _dedupe(messages)
        pending = [message for message in cache.messages if not message.is_confirmed]
        cache.messages = loaded + pending
        self._changed()

    def prepend_history(self, conversation_id: str, messages: Sequence[Message]) -> int:
        """Insert an older page ahead of the current list; returns how many were added."""

        cache = self.cache(conversation_id)
        known = {message.id for message in cache.messages}
        older = [message for message in _dedupe(messages) if message.id not in known]
        if not older:
            return 0
        cache.messages = older + cache.messages
        self._changed()
        return len(older)

    def clear(self, conversation_id: str) -> None:
        cache = self._caches.get(conversation_id)
        if cache is None:
            return
        cache.reset()
        self._changed()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """Load the persisted slice; returns the number of conversations restored."""

        if self._storage is None:
            return 0
        payload = self._storage.get(PERSISTENCE_KEY)
        if not isinstance(payload, Mapping):
            return 0
        order = payload.get("recent")
        conversations = payload.get("conversations")
        if not isinstance(order, list) or not isinstance(conversations, Mapping):
            return 0
        restored = 0
        for conversation_id in order:
            entries = conversations.get(conversation_id)
            if not isinstance(conversation_id, str) or not isinstance(entries, list):
                continue
            messages: list[Message] = []
            for entry in entries:
                try:
                    messages.append(Message.from_dict(entry))
                except (KeyError, TypeError, ValueError) as exc:
                    LOGGER.warning("Dropping unreadable cached message in %s: %s", conversation_id, exc)
            cache = self.cache(conversation_id)
            cache.messages = _dedupe(messages)
            restored += 1
        LOGGER.debug("Restored %d cached conversation(s)", restored)
        return restored

    def flush_persistence(self) -> None:
        """Write the most recently touched conversations now."""

        self._debouncer.cancel()
        if self._storage is None:
            return
        recent = list(self._caches)[-self._max_persisted:] if self._max_persisted else []
        payload = {
            "recent": recent,
            "conversations": {
                conversation_id: [message.to_dict() for message in self._caches[conversation_id].messages]
                for conversation_id in recent
            },
        }
        self._storage.set(PERSISTENCE_KEY, payload)

    def close(self) -> None:
        if self._debouncer.pending:
            self.flush_persistence()

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    def _changed(self) -> None:
        if self._storage is not None:
            self._debouncer.schedule()

    def _evict_overflow(self) -> None:
        while len(self._caches) > self._max_cached:
            evicted, _ = self._caches.popitem(last=False)
            LOGGER.debug("Evicted conversation %s from message cache", evicted)

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)


def _pending(temp_id: str | PendingId) -> PendingId:
    return temp_id if isinstance(temp_id, PendingId) else PendingId(str(temp_id))


def _matches(message: Message, message_id: MessageId | str) -> bool:
    if isinstance(message_id, (PendingId, ConfirmedId)):
        return message.id == message_id
    return str(message.id) == message_id


def _index_of(messages: Sequence[Message], message_id: MessageId | str) -> int | None:
    for index, message in enumerate(messages):
        if _matches(message, message_id):
            return index
    return None


def _as_confirmed(message: Message | Mapping[str, Any]) -> Message:
    if isinstance(message, Message):
        if not isinstance(message.id, ConfirmedId):
            raise InvalidTransitionError("Server message must carry a server-assigned id")
        return message
    return Message.from_server(message)


def _dedupe(messages: Iterable[Message]) -> list[Message]:
    seen: set[MessageId] = set()
    result: list[Message] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        result.append(message)
    return result


__all__ = [
    "DuplicateMessageError",
    "InvalidTransitionError",
    "MessageStore",
    "MessageStoreError",
    "PERSISTENCE_KEY",
    "UnknownMessageError",
]
