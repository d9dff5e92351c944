"""Conversation-level coordination of delivery, streaming, and tool calls.

The orchestrator is the surface the chat UI talks to. It composes the message
store, offline queue, retry engine, completion client, and tool gates, and it
reports every state change through the event bus. Exchanges run as tasks so
``stop()`` can cancel an in-flight request along with any pending backoff.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Mapping, Sequence

from ..ai.client import AIClient
from ..ai.note_tools import NoteToolExecutor, openai_tools
from ..ai.tool_gate import ToolCallGate, ToolExecutorFn
from ..delivery.connectivity import ConnectivitySignal, HttpConnectivityProbe
from ..delivery.errors import DeliveryError, RetryExhaustedError, ToolExecutionError
from ..delivery.offline_queue import OfflineQueue
from ..delivery.retry import RetryEngine
from ..events import (
    EventBus,
    NoticePosted,
    RetryScheduled,
    StreamChunk,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
)
from ..services.messages_api import MessagesAPI
from ..services.persistence import JsonFileStore, KeyValueStore
from ..services.settings import Settings
from .message_model import (
    Message,
    RetryAttempt,
    ToolCall,
    TurnState,
)
from .message_store import MessageStore
from .pagination import PaginationController

LOGGER = logging.getLogger(__name__)

QUEUED_NOTICE = "You're offline. Your message will be sent when you're back online."
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant integrated into a note-taking application. "
    "You help users organize thoughts, develop ideas, and create meaningful notes. "
    "Be concise but thorough. Use markdown formatting for clarity."
)


@dataclass(slots=True)
class SubmitForm:
    """Composer contents submitted by the user."""

    input: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, form: "SubmitForm | Mapping[str, Any] | str") -> "SubmitForm":
        if isinstance(form, SubmitForm):
            return form
        if isinstance(form, str):
            return cls(input=form)
        metadata = form.get("metadata")
        return cls(
            input=str(form.get("input") or ""),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


class ChatOrchestrator:
    """Coordinates message delivery and assistant replies for the active conversation.

    Events Emitted:
        - RetryScheduled: Before each backoff sleep
        - StreamChunk: For each streamed text delta
        - TurnCompleted / TurnFailed / TurnCanceled: At the end of an exchange
        - NoticePosted: For queued messages, exhausted retries, and tool failures
    """

    def __init__(
        self,
        conversation_id: str,
        *,
        store: MessageStore,
        queue: OfflineQueue,
        retry: RetryEngine,
        ai_client: AIClient,
        messages_api: MessagesAPI,
        signal: ConnectivitySignal,
        event_bus: EventBus,
        pagination: PaginationController | None = None,
        tool_executor: ToolExecutorFn | None = None,
        tools: Sequence[Any] | None = None,
        system_prompt: str | None = DEFAULT_SYSTEM_PROMPT,
        probe: HttpConnectivityProbe | None = None,
        resources: Iterable[Any] = (),
    ) -> None:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        self._conversation_id = conversation_id
        self._store = store
        self._queue = queue
        self._retry = retry
        self._ai = ai_client
        self._api = messages_api
        self._signal = signal
        self._bus = event_bus
        self._pagination = pagination
        self._tool_executor = tool_executor
        self._tools = list(tools) if tools is not None else (openai_tools() if tool_executor else [])
        self._system_prompt = system_prompt
        self._probe = probe
        self._resources = list(resources)
        self._gates: Dict[str, ToolCallGate] = {}
        self._pending_tools: Dict[str, Deque[ToolCall]] = {}
        self._task: asyncio.Task[Any] | None = None
        self._current_turn: TurnState | None = None
        self._stopped: set[asyncio.Task[Any]] = set()
        self._retry_state: RetryAttempt | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def is_online(self) -> bool:
        return self._signal.online

    @property
    def messages(self) -> List[Message]:
        return self._store.get_messages(self._conversation_id)

    @property
    def retry_state(self) -> RetryAttempt | None:
        """The most recent backoff, cleared once an exchange succeeds."""

        return self._retry_state

    @property
    def current_turn(self) -> TurnState | None:
        return self._current_turn

    @property
    def gate(self) -> ToolCallGate:
        return self._gate(self._conversation_id)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore cached state, re-show queued messages, and start connectivity probing."""

        self._store.restore()
        for entry in self._queue.get_queued_messages():
            if self._store.find_message(entry.conversation_id, entry.message.id) is None:
                self._store.add_optimistic_message(entry.conversation_id, entry.message)
        if self._pagination is not None:
            await self._pagination.load_initial(self._conversation_id)
        if self._probe is not None:
            self._probe.start()
        if self.is_online and len(self._queue):
            await self._queue.flush()

    async def close(self) -> None:
        await self.stop()
        for gate in self._gates.values():
            await gate.wait_idle()
        if self._probe is not None:
            await self._probe.stop()
        await self._queue.close()
        self._store.close()
        for resource in self._resources:
            await resource.aclose()

    async def switch_conversation(self, conversation_id: str) -> List[Message]:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        if conversation_id == self._conversation_id:
            return self.messages
        await self.stop()
        self._conversation_id = conversation_id
        self._retry_state = None
        if self._pagination is not None:
            await self._pagination.load_initial(conversation_id)
        return self.messages

    async def load_more(self) -> int:
        if self._pagination is None:
            return 0
        return await self._pagination.load_more(self._conversation_id)

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def append(self, message: Message | str) -> Message:
        """Send a user message and stream the assistant's reply.

        Offline, the message is shown as pending and queued with no network
        call. Online, it is persisted through the retry engine, confirmed in
        place, and followed by a streamed reply. Exhausted retries queue the
        message, mark it failed, and re-raise :class:`RetryExhaustedError`.
        """

        conversation_id = self._conversation_id
        if isinstance(message, str):
            message = Message.pending("user", message)
        if self.is_online and self.is_running():
            raise RuntimeError("An exchange is already in progress")
        optimistic = self._store.add_optimistic_message(conversation_id, message)
        if not self.is_online:
            return self._park(conversation_id, optimistic)
        turn = TurnState.start(conversation_id, optimistic.id)
        return await self._run_turn(turn, self._send_and_reply(turn, optimistic))

    async def submit(self, form: SubmitForm | Mapping[str, Any] | str) -> Message | None:
        """Send the composer input; blank input is ignored."""

        submitted = SubmitForm.coerce(form)
        text = submitted.input.strip()
        if not text:
            return None
        return await self.append(Message.pending("user", text, metadata=submitted.metadata))

    async def reload(self) -> Message | None:
        """Regenerate the reply to the latest confirmed user message.

        The previous reply is replaced only once the new one is stored; a
        failure leaves confirmed history untouched.
        """

        conversation_id = self._conversation_id
        history = self._store.get_messages(conversation_id)
        anchor = _last_index(history, lambda item: item.role == "user" and item.is_confirmed)
        if anchor is None:
            LOGGER.debug("Nothing to reload in %s", conversation_id)
            return None
        if self.is_running():
            raise RuntimeError("An exchange is already in progress")
        previous = [item.id for item in history[anchor + 1:] if item.role == "assistant" and item.is_confirmed]
        turn = TurnState.start(conversation_id, history[anchor].id)
        return await self._run_turn(turn, self._reply(turn, history[: anchor + 1], replace=previous))

    async def retry(self) -> Message | None:
        """Resend the most recent undelivered user message."""

        conversation_id = self._conversation_id
        history = self._store.get_messages(conversation_id)
        index = _last_index(history, lambda item: item.role == "user" and not item.is_confirmed)
        if index is None:
            return None
        if self.is_running():
            raise RuntimeError("An exchange is already in progress")
        stale = history[index]
        temp_id = stale.temp_id or ""
        if self._queue.is_delivering(conversation_id, temp_id):
            LOGGER.info("Message %s is already being redelivered; not retrying", temp_id)
            return None
        # Drop both copies first so the message is never delivered twice.
        self._queue.discard_message(conversation_id, temp_id)
        self._store.remove_message(conversation_id, stale.id)
        LOGGER.info("Retrying message %s in %s", temp_id, conversation_id)
        return await self.append(Message.pending(stale.role, stale.content, metadata=stale.metadata))

    async def stop(self) -> None:
        """Cancel the in-flight exchange, including any pending backoff sleep."""

        task = self._task
        if task is None or task.done():
            return
        self._stopped.add(task)
        task.cancel()
        await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Tool Calls
    # ------------------------------------------------------------------

    async def confirm_tool_call(self) -> ToolCall:
        """Confirm the pending proposal and run it; failures stay on the call."""

        gate = self.gate
        call = gate.confirm()
        if self._tool_executor is None:
            raise RuntimeError("No tool executor configured")
        try:
            await gate.execute(self._tool_executor)
        except ToolExecutionError as exc:
            self._bus.publish(
                NoticePosted(
                    message=f"Couldn't {call.tool_name.replace('_', ' ')}: {call.error}",
                    level="error",
                    details=exc.to_dict(),
                )
            )
        return call

    def deny_tool_call(self, tool_call_id: str | None = None) -> ToolCall | None:
        """Deny the proposal; pass the id the user saw so a repeat click is a no-op."""

        return self.gate.deny(tool_call_id)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _run_turn(self, turn: TurnState, work: Awaitable[Message]) -> Message:
        self._current_turn = turn
        task = asyncio.get_running_loop().create_task(work)
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task not in self._stopped:
                raise
            current = self._store.find_message(turn.conversation_id, turn.message_id) if turn.message_id else None
            if current is None:
                raise
            return current
        finally:
            self._stopped.discard(task)
            if self._task is task:
                self._task = None

    async def _send_and_reply(self, turn: TurnState, optimistic: Message) -> Message:
        conversation_id = turn.conversation_id
        temp_id = optimistic.id.temp_id  # type: ignore[union-attr]
        try:
            try:
                saved = await self._retry.with_retry(
                    lambda: self._api.create_message(conversation_id, optimistic),
                    on_backoff=self._backoff_handler(conversation_id),
                )
            except RetryExhaustedError as exc:
                self._store.mark_message_failed(conversation_id, temp_id, error=str(exc.last_error or exc))
                self._queue.enqueue(conversation_id, optimistic)
                self._bus.publish(
                    NoticePosted(
                        message=f"Failed to send message after {exc.attempts} attempts.",
                        level="error",
                        action="retry",
                        details=exc.to_dict(),
                    )
                )
                raise
            except Exception as exc:
                self._store.mark_message_failed(conversation_id, temp_id, error=str(exc))
                self._bus.publish(NoticePosted(message=_describe(exc), level="error", details=_details(exc)))
                raise
            except asyncio.CancelledError:
                # Stopped before the server accepted it; leave it retryable.
                self._store.mark_message_failed(conversation_id, temp_id, error="canceled")
                raise
            confirmed = self._store.confirm_message(conversation_id, temp_id, saved)
            turn.message_id = confirmed.id
        except asyncio.CancelledError:
            self._finish_canceled(turn)
            raise
        except Exception as exc:
            self._finish_failed(turn, exc)
            raise
        await self._reply(turn, self._store.get_messages(conversation_id))
        return confirmed

    async def _reply(
        self,
        turn: TurnState,
        history: Sequence[Message],
        *,
        replace: Sequence[Any] = (),
    ) -> Message:
        conversation_id = turn.conversation_id
        chunks: List[str] = []
        payload = self._build_history(history)
        try:
            stream = self._retry.with_streaming_retry(
                lambda: self._ai.stream_chat(payload, conversation_id=conversation_id, tools=self._tools or None),
                on_backoff=self._backoff_handler(conversation_id),
            )
            async with aclosing(stream):
                async for event in stream:
                    if event.is_text:
                        chunks.append(event.content or "")
                        self._bus.publish(
                            StreamChunk(
                                conversation_id=conversation_id,
                                turn_id=turn.turn_id,
                                content=event.content or "",
                            )
                        )
                    elif event.is_tool_call:
                        self._propose_tool_call(conversation_id, event.to_tool_call())
            response_text = "".join(chunks)
            draft = Message.pending("assistant", response_text)
            saved = await self._retry.with_retry(
                lambda: self._api.create_message(conversation_id, draft),
                on_backoff=self._backoff_handler(conversation_id),
            )
        except asyncio.CancelledError:
            self._finish_canceled(turn)
            raise
        except Exception as exc:
            self._finish_failed(turn, exc)
            self._bus.publish(
                NoticePosted(message=_describe(exc), level="error", action="reload", details=_details(exc))
            )
            raise
        for message_id in replace:
            self._store.remove_message(conversation_id, message_id)
        reply = self._store.append_confirmed_message(conversation_id, saved)
        turn.mark_completed(response_text)
        self._retry_state = None
        LOGGER.debug("Turn %s completed with %d chars", turn.turn_id, len(response_text))
        self._bus.publish(
            TurnCompleted(conversation_id=conversation_id, turn_id=turn.turn_id, response_text=response_text)
        )
        return reply

    def _park(self, conversation_id: str, message: Message) -> Message:
        self._queue.enqueue(conversation_id, message)
        self._bus.publish(NoticePosted(message=QUEUED_NOTICE, level="info", dismissible=True))
        return message

    def _build_history(self, history: Sequence[Message]) -> List[Dict[str, str]]:
        payload = [item.as_chat_message() for item in history if item.is_confirmed and item.content]
        if self._system_prompt:
            payload.insert(0, {"role": "system", "content": self._system_prompt})
        return payload

    def _backoff_handler(self, conversation_id: str) -> Callable[[RetryAttempt], None]:
        def handle(attempt: RetryAttempt) -> None:
            self._retry_state = attempt
            self._bus.publish(RetryScheduled(conversation_id=conversation_id, attempt=attempt))

        return handle

    def _gate(self, conversation_id: str) -> ToolCallGate:
        gate = self._gates.get(conversation_id)
        if gate is None:
            gate = ToolCallGate(conversation_id, event_bus=self._bus)
            gate.on_change(lambda call: self._advance_tool_queue(conversation_id, call))
            self._gates[conversation_id] = gate
        return gate

    def _propose_tool_call(self, conversation_id: str, call: ToolCall) -> None:
        gate = self._gate(conversation_id)
        if gate.is_busy:
            self._pending_tools.setdefault(conversation_id, deque()).append(call)
            LOGGER.debug("Tool call %s waiting behind %s", call.tool_call_id, gate.current)
            return
        gate.propose(call)

    def _advance_tool_queue(self, conversation_id: str, call: ToolCall) -> None:
        if call.is_open:
            return
        waiting = self._pending_tools.get(conversation_id)
        if waiting:
            self._gate(conversation_id).propose(waiting.popleft())

    def _finish_canceled(self, turn: TurnState) -> None:
        turn.mark_canceled()
        LOGGER.debug("Turn %s canceled", turn.turn_id)
        self._bus.publish(TurnCanceled(conversation_id=turn.conversation_id, turn_id=turn.turn_id))

    def _finish_failed(self, turn: TurnState, exc: BaseException) -> None:
        turn.mark_failed(str(exc))
        LOGGER.warning("Turn %s failed: %s", turn.turn_id, exc)
        self._bus.publish(TurnFailed(conversation_id=turn.conversation_id, turn_id=turn.turn_id, error=str(exc)))


def build_orchestrator(
    settings: Settings,
    conversation_id: str,
    *,
    storage: KeyValueStore | None = None,
    signal: ConnectivitySignal | None = None,
    event_bus: EventBus | None = None,
) -> ChatOrchestrator:
    """Compose the default object graph from ``settings``."""

    bus = event_bus or EventBus()
    signal = signal or ConnectivitySignal()
    storage = storage or JsonFileStore(Path(settings.data_dir) if settings.data_dir else None)
    retry = RetryEngine(settings.retry_options())
    headers = dict(settings.default_headers) or None
    messages_api = MessagesAPI(settings.api_base_url, timeout=settings.request_timeout, headers=headers)
    ai_client = AIClient(settings.client_settings())
    executor = NoteToolExecutor(settings.api_base_url, timeout=settings.request_timeout)
    store = MessageStore(
        storage=storage,
        event_bus=bus,
        max_cached_conversations=settings.max_cached_conversations,
        max_persisted_conversations=settings.max_persisted_conversations,
        persist_debounce=settings.persist_debounce_seconds,
    )
    queue = OfflineQueue(
        storage=storage,
        signal=signal,
        deliver=messages_api.deliver_entry,
        sink=store,
        retry=retry,
        event_bus=bus,
    )
    pagination = PaginationController(
        store,
        messages_api,
        page_size=settings.page_size,
        retry=retry,
        event_bus=bus,
    )
    probe = (
        HttpConnectivityProbe(signal, settings.health_check_url, interval=settings.health_check_interval)
        if settings.health_check_url
        else None
    )
    return ChatOrchestrator(
        conversation_id,
        store=store,
        queue=queue,
        retry=retry,
        ai_client=ai_client,
        messages_api=messages_api,
        signal=signal,
        event_bus=bus,
        pagination=pagination,
        tool_executor=executor,
        probe=probe,
        resources=(messages_api, ai_client, executor),
    )


def _last_index(messages: Sequence[Message], predicate: Callable[[Message], bool]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if predicate(messages[index]):
            return index
    return None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, DeliveryError):
        return exc.message
    return str(exc) or type(exc).__name__


def _details(exc: BaseException) -> Dict[str, Any]:
    if isinstance(exc, DeliveryError):
        return exc.to_dict()
    return {"error": type(exc).__name__, "message": str(exc)}


__all__ = ["ChatOrchestrator", "SubmitForm", "build_orchestrator", "QUEUED_NOTICE"]
