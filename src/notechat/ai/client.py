"""Streaming reply client for OpenAI-compatible chat endpoints.

Each call to :meth:`AIClient.stream_chat` opens exactly one streamed request.
Nothing here retries: :mod:`notechat.delivery.retry` decides whether a reply
may be re-requested, because that depends on whether text already reached the
user.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, cast

from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from ..chat.message_model import ToolCall

LOGGER = logging.getLogger(__name__)

TOOL_CALL_DONE = "tool_calls.function.arguments.done"


@dataclass(slots=True)
class ClientSettings:
    """Connection and sampling options for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True)
class AIStreamEvent:
    """One reply event, reduced to the fields the chat cares about."""

    type: str
    content: str | None = None
    parsed: Any | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None

    @property
    def is_text(self) -> bool:
        return self.type == "content.delta" and bool(self.content)

    @property
    def is_tool_call(self) -> bool:
        return self.type == TOOL_CALL_DONE and bool(self.tool_name)

    def to_tool_call(self) -> ToolCall:
        """Build the proposal the tool gate will ask the user about."""

        if not self.is_tool_call:
            raise ValueError(f"Event {self.type!r} does not describe a tool call")
        if isinstance(self.parsed, Mapping):
            args = dict(self.parsed)
        else:
            args = _decode_arguments(self.tool_arguments)
        proposal = ToolCall(tool_name=str(self.tool_name), args=args)
        if self.tool_call_id:
            proposal.tool_call_id = self.tool_call_id
        return proposal


def _text_delta(event: Any) -> AIStreamEvent | None:
    delta = getattr(event, "delta", None)
    return AIStreamEvent(type="content.delta", content=str(delta)) if delta else None


def _text_done(event: Any) -> AIStreamEvent:
    return AIStreamEvent(
        type="content.done",
        content=getattr(event, "content", None),
        parsed=getattr(event, "parsed", None),
    )


def _refusal(event: Any) -> AIStreamEvent:
    return AIStreamEvent(type="refusal.done", content=getattr(event, "refusal", None))


def _tool_call(event: Any) -> AIStreamEvent:
    return AIStreamEvent(
        type=TOOL_CALL_DONE,
        tool_name=getattr(event, "name", None),
        tool_index=getattr(event, "index", None),
        tool_arguments=getattr(event, "arguments", None),
        parsed=getattr(event, "parsed_arguments", None),
        tool_call_id=getattr(event, "id", None) or getattr(event, "tool_call_id", None),
    )


# Raw chunks and partial tool-argument deltas are not surfaced.
_EVENT_BUILDERS: Dict[str, Callable[[Any], AIStreamEvent | None]] = {
    "content.delta": _text_delta,
    "content.done": _text_done,
    "refusal.done": _refusal,
    TOOL_CALL_DONE: _tool_call,
}


class AIClient:
    """Streams assistant replies through ``AsyncOpenAI``."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else _open_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        conversation_id: str | None = None,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        temperature: float | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Yield reply events for ``messages``, oldest first."""

        history: List[ChatCompletionMessageParam] = [
            cast(ChatCompletionMessageParam, dict(message)) for message in messages
        ]
        if not history:
            raise ValueError("At least one message is required to start a chat")

        request = self._request(history, conversation_id, tools, temperature, metadata)
        request.update(extra_params)
        LOGGER.debug(
            "Requesting reply from %s (conversation=%s, messages=%d)",
            self._settings.model,
            conversation_id,
            len(history),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(request)

        async with self._client.chat.completions.stream(**request) as stream:
            async for raw in stream:
                builder = _EVENT_BUILDERS.get(getattr(raw, "type", None) or "")
                event = builder(raw) if builder is not None else None
                if event is not None:
                    yield event

    def _request(
        self,
        history: List[ChatCompletionMessageParam],
        conversation_id: str | None,
        tools: Iterable[ChatCompletionToolParam] | None,
        temperature: float | None,
        metadata: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {"model": self._settings.model, "messages": history}

        tags = {**(self._settings.metadata or {}), **(metadata or {})}
        if conversation_id:
            tags.setdefault("conversation_id", conversation_id)
        if tags:
            request["metadata"] = tags

        tool_list = list(tools) if tools else []
        if tool_list:
            request["tools"] = tool_list

        sampling = self._settings.temperature if temperature is None else temperature
        if sampling is not None:
            request["temperature"] = sampling
        return request

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            LOGGER.debug("Reply request:\n%s", json.dumps(payload, ensure_ascii=False, indent=2))
        except (TypeError, ValueError):
            LOGGER.debug("Reply request (unserializable): %r", payload)

    async def aclose(self) -> None:
        """Release the HTTP connections held by the OpenAI client."""

        close = getattr(self._client, "close", None)
        if close is not None and inspect.isawaitable(outcome := close()):
            await outcome


def _open_client(settings: ClientSettings) -> AsyncOpenAI:
    # Retries are owned by RetryEngine, never by the SDK.
    return AsyncOpenAI(
        api_key=settings.api_key,
        base_url=settings.base_url,
        organization=settings.organization,
        timeout=settings.request_timeout,
        default_headers=dict(settings.default_headers) if settings.default_headers else None,
        max_retries=0,
    )


def _decode_arguments(raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Ignoring tool call with malformed JSON arguments: %r", raw[:200])
        return {}
    return decoded if isinstance(decoded, dict) else {}


__all__ = ["AIClient", "AIStreamEvent", "ClientSettings", "TOOL_CALL_DONE"]
