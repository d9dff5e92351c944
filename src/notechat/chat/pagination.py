"""Backward cursor pagination of conversation history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Protocol

from ..delivery.errors import DeliveryError
from ..delivery.retry import RetryEngine
from ..events import EventBus, NoticePosted
from .message_model import Message

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .message_store import MessageStore

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class CursorError(RuntimeError):
    """The server handed back a cursor that was already issued for this conversation."""


@dataclass(slots=True)
class MessagePage:
    """One window of history, oldest message first."""

    messages: list[Message] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class HistorySource(Protocol):
    def list_messages(
        self, conversation_id: str, *, cursor: str | None = None, limit: int = DEFAULT_PAGE_SIZE
    ) -> Awaitable[MessagePage]:
        ...


class PaginationController:
    """Loads the newest window of a conversation and pages backwards on demand.

    State lives on the conversation's :class:`ConversationCache` so the cursor,
    ``has_more``, the loading flag and the message list are always reset together.
    """

    def __init__(
        self,
        store: MessageStore,
        source: HistorySource,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        retry: RetryEngine | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._store = store
        self._source = source
        self._page_size = page_size
        self._retry = retry
        self._bus = event_bus

    @property
    def page_size(self) -> int:
        return self._page_size

    def has_more(self, conversation_id: str) -> bool:
        return self._store.cache(conversation_id).has_more

    def is_loading_more(self, conversation_id: str) -> bool:
        return self._store.cache(conversation_id).is_loading_more

    async def load_initial(self, conversation_id: str) -> int:
        """Fetch the newest page and make it the conversation's history."""

        cache = self._store.cache(conversation_id)
        try:
            page = await self._fetch(conversation_id, None)
        except Exception as exc:
            LOGGER.warning("Failed to load history for %s: %s", conversation_id, exc)
            cache.has_more = False
            cache.next_cursor = None
            return 0
        cache.issued_cursors = set()
        self._apply_cursor(conversation_id, page)
        self._store.replace_history(conversation_id, page.messages)
        LOGGER.debug(
            "Loaded %d message(s) for %s (has_more=%s)",
            len(page.messages),
            conversation_id,
            cache.has_more,
        )
        return len(page.messages)

    async def load_more(self, conversation_id: str) -> int:
        """Prepend the next older page; returns how many messages were added."""

        cache = self._store.cache(conversation_id)
        if not cache.has_more or cache.is_loading_more:
            return 0
        cursor = cache.next_cursor
        cache.is_loading_more = True
        try:
            page = await self._fetch(conversation_id, cursor)
        except Exception as exc:
            LOGGER.warning("Failed to load older messages for %s: %s", conversation_id, exc)
            self._notice(exc)
            return 0
        finally:
            cache.is_loading_more = False

        if page.next_cursor is not None and page.next_cursor in cache.issued_cursors:
            cache.has_more = False
            raise CursorError(f"Cursor {page.next_cursor!r} was already issued for {conversation_id}")
        self._apply_cursor(conversation_id, page)
        added = self._store.prepend_history(conversation_id, page.messages)
        LOGGER.debug("Prepended %d message(s) to %s", added, conversation_id)
        return added

    def clear(self, conversation_id: str) -> None:
        self._store.clear(conversation_id)

    async def _fetch(self, conversation_id: str, cursor: str | None) -> MessagePage:
        def operation() -> Awaitable[MessagePage]:
            return self._source.list_messages(conversation_id, cursor=cursor, limit=self._page_size)

        if self._retry is None:
            return await operation()
        return await self._retry.with_retry(operation)

    def _apply_cursor(self, conversation_id: str, page: MessagePage) -> None:
        cache = self._store.cache(conversation_id)
        cache.has_more = bool(page.has_more and page.next_cursor)
        cache.next_cursor = page.next_cursor if cache.has_more else None
        if cache.next_cursor is not None:
            cache.issued_cursors.add(cache.next_cursor)

    def _notice(self, exc: BaseException) -> None:
        if self._bus is None:
            return
        details = exc.to_dict() if isinstance(exc, DeliveryError) else {"error": str(exc)}
        self._bus.publish(
            NoticePosted(
                message="Couldn't load older messages.",
                level="warning",
                action="retry",
                details=details,
            )
        )


__all__ = [
    "CursorError",
    "DEFAULT_PAGE_SIZE",
    "HistorySource",
    "MessagePage",
    "PaginationController",
]
