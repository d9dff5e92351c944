"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Iterable, Sequence

from notechat.ai.client import TOOL_CALL_DONE, AIStreamEvent
from notechat.chat.message_model import Message, QueuedEntry
from notechat.chat.pagination import MessagePage


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class BlockingSleep:
    """Backoff sleep that never finishes on its own; used to test cancellation."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def __call__(self, seconds: float) -> None:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def confirmed(server_id: str, content: str = "", role: str = "user") -> Message:
    return Message.from_server({"id": server_id, "role": role, "content": content or f"message {server_id}"})


class FakeMessagesAPI:
    """In-memory persistence API assigning ``srv-N`` ids.

    ``failures`` are raised (in order) before any message is accepted;
    ``fail_with`` is raised on every call while set. Setting ``hold_deliveries``
    parks queue redeliveries until that event is set.
    """

    def __init__(self, *, failures: Iterable[BaseException] = (), history: Sequence[Message] = ()) -> None:
        self.failures: deque[BaseException] = deque(failures)
        self.fail_with: BaseException | None = None
        self.calls: list[tuple[str, Message]] = []
        self.saved: list[Message] = []
        self.history = list(history)
        self.closed = False
        self._counter = 0
        self.hold_deliveries: asyncio.Event | None = None
        self.delivery_started = asyncio.Event()

    async def create_message(self, conversation_id: str, message: Message) -> Message:
        self.calls.append((conversation_id, message))
        if self.fail_with is not None:
            raise self.fail_with
        if self.failures:
            raise self.failures.popleft()
        self._counter += 1
        saved = Message.from_server(
            {
                "id": f"srv-{self._counter}",
                "role": message.role,
                "content": message.content,
                "createdAt": message.created_at.isoformat(),
            }
        )
        self.saved.append(saved)
        return saved

    async def deliver_entry(self, entry: QueuedEntry) -> Message:
        self.delivery_started.set()
        if self.hold_deliveries is not None:
            await self.hold_deliveries.wait()
        return await self.create_message(entry.conversation_id, entry.message)

    async def list_messages(
        self, conversation_id: str, *, cursor: str | None = None, limit: int = 50
    ) -> MessagePage:
        end = int(cursor) if cursor else len(self.history)
        start = max(0, end - limit)
        return MessagePage(
            messages=self.history[start:end],
            has_more=start > 0,
            next_cursor=str(start) if start > 0 else None,
        )

    async def aclose(self) -> None:
        self.closed = True


def tool_event(name: str, arguments: str = "{}", call_id: str | None = None) -> AIStreamEvent:
    return AIStreamEvent(type=TOOL_CALL_DONE, tool_name=name, tool_arguments=arguments, tool_call_id=call_id)


class FakeAIClient:
    """Scripted completion stream.

    Each entry in ``replies`` is one streamed reply: strings become text deltas
    and ``AIStreamEvent`` items are yielded as-is. ``failures`` are raised
    before the first chunk; ``fail_after`` raises once that many chunks went out.
    """

    def __init__(self, *replies: Sequence[Any]) -> None:
        self.replies: deque[Sequence[Any]] = deque(replies)
        self.failures: deque[BaseException] = deque()
        self.fail_after: int | None = None
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def stream_chat(self, messages: Iterable[Any], **kwargs: Any):
        self.calls.append({"messages": list(messages), **kwargs})
        if self.failures:
            raise self.failures.popleft()
        reply = self.replies.popleft() if self.replies else ["Sure."]
        text = []
        for index, item in enumerate(reply):
            if self.fail_after is not None and index == self.fail_after:
                raise ConnectionError("stream dropped")
            if isinstance(item, AIStreamEvent):
                yield item
                continue
            text.append(item)
            yield AIStreamEvent(type="content.delta", content=item)
        yield AIStreamEvent(type="content.done", content="".join(text))

    async def aclose(self) -> None:
        self.closed = True
