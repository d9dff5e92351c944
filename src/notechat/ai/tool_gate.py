"""Confirmation gate for AI-proposed note actions.

The assistant may propose an action (create a note, edit a selection, ...);
nothing runs until the user confirms it. One gate exists per conversation and
holds at most one unresolved call, so two actions never run concurrently.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Union

from ..chat.message_model import ToolCall, ToolCallState
from ..delivery.errors import ToolExecutionError
from ..events import EventBus, ToolCallChanged

LOGGER = logging.getLogger(__name__)

ToolExecutorFn = Callable[[str, Mapping[str, Any]], Union[Awaitable[Any], Any]]
ToolCallListener = Callable[[ToolCall], None]

_TRANSITIONS: dict[ToolCallState, frozenset[ToolCallState]] = {
    ToolCallState.PROPOSED: frozenset({ToolCallState.CONFIRMED, ToolCallState.DENIED}),
    ToolCallState.CONFIRMED: frozenset({ToolCallState.EXECUTING}),
    ToolCallState.EXECUTING: frozenset({ToolCallState.COMPLETED, ToolCallState.FAILED}),
    ToolCallState.DENIED: frozenset(),
    ToolCallState.COMPLETED: frozenset(),
    ToolCallState.FAILED: frozenset(),
}


class ToolCallStateError(RuntimeError):
    """Raised when a tool call is asked to make an illegal transition."""


class ToolCallBusyError(ToolCallStateError):
    """Raised when a proposal arrives while another call is unresolved."""


class ToolCallGate:
    """Serializes proposed -> confirmed -> executing -> completed/failed for one conversation."""

    def __init__(self, conversation_id: str, *, event_bus: EventBus | None = None) -> None:
        self._conversation_id = conversation_id
        self._bus = event_bus
        self._current: ToolCall | None = None
        self._last_resolved: ToolCall | None = None
        self._history: list[ToolCall] = []
        self._listeners: list[ToolCallListener] = []
        self._task: asyncio.Task[Any] | None = None

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def current(self) -> ToolCall | None:
        return self._current

    @property
    def is_busy(self) -> bool:
        return self._current is not None and self._current.is_open

    @property
    def history(self) -> list[ToolCall]:
        return list(self._history)

    def on_change(self, listener: ToolCallListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def propose(self, tool_call: ToolCall) -> ToolCall:
        if self.is_busy:
            raise ToolCallBusyError(
                f"Tool call {self._current.tool_call_id} is still {self._current.state.value}"  # type: ignore[union-attr]
            )
        if tool_call.state is not ToolCallState.PROPOSED:
            raise ToolCallStateError(f"Cannot propose a call in state {tool_call.state.value}")
        self._current = tool_call
        LOGGER.debug("Tool call %s proposed: %s", tool_call.tool_call_id, tool_call.tool_name)
        self._notify(tool_call)
        return tool_call

    def confirm(self) -> ToolCall:
        call = self._require_current()
        self._transition(call, ToolCallState.CONFIRMED)
        return call

    def deny(self, tool_call_id: str | None = None) -> ToolCall | None:
        """Reject the proposal; repeated calls after a denial do nothing.

        Pass ``tool_call_id`` to name the proposal being rejected. A call that
        is already resolved is returned unchanged, so a second deny cannot
        land on the proposal that replaced it.
        """

        if tool_call_id is not None:
            settled = self._find_resolved(tool_call_id)
            if settled is not None:
                return settled
        call = self._current
        if call is not None and tool_call_id is not None and call.tool_call_id != tool_call_id:
            raise ToolCallStateError(f"Tool call {tool_call_id} is not awaiting a decision")
        if call is None:
            if self._last_resolved is not None and self._last_resolved.state is ToolCallState.DENIED:
                return self._last_resolved
            return None
        if call.state is ToolCallState.DENIED:
            return call
        self._transition(call, ToolCallState.DENIED)
        self._resolve(call)
        return call

    async def execute(self, executor: ToolExecutorFn) -> Any:
        """Run the confirmed call; cancelling the caller does not interrupt the action."""

        call = self._require_current()
        if call.state is not ToolCallState.CONFIRMED:
            raise ToolCallStateError(f"Tool call {call.tool_call_id} must be confirmed before execution")
        self._transition(call, ToolCallState.EXECUTING)
        task = asyncio.get_running_loop().create_task(self._run(call, executor))
        task.add_done_callback(_consume_exception)
        self._task = task
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait for a running action (possibly detached by cancellation) to finish."""

        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _run(self, call: ToolCall, executor: ToolExecutorFn) -> Any:
        try:
            outcome = executor(call.tool_name, dict(call.args))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            call.error = str(exc) or type(exc).__name__
            self._transition(call, ToolCallState.FAILED)
            self._resolve(call)
            LOGGER.warning("Tool call %s (%s) failed: %s", call.tool_call_id, call.tool_name, exc)
            raise ToolExecutionError(
                message=f"{call.tool_name} failed: {call.error}",
                tool_name=call.tool_name,
                cause=exc,
                details={"tool_call_id": call.tool_call_id},
            ) from exc
        call.result = outcome
        self._transition(call, ToolCallState.COMPLETED)
        self._resolve(call)
        return outcome

    def _find_resolved(self, tool_call_id: str) -> ToolCall | None:
        for call in reversed(self._history):
            if call.tool_call_id == tool_call_id:
                return call
        return None

    def _require_current(self) -> ToolCall:
        if self._current is None:
            raise ToolCallStateError("No tool call is awaiting a decision")
        return self._current

    def _transition(self, call: ToolCall, target: ToolCallState) -> None:
        if target not in _TRANSITIONS[call.state]:
            raise ToolCallStateError(
                f"Tool call {call.tool_call_id} cannot move from {call.state.value} to {target.value}"
            )
        call.state = target
        self._notify(call)

    def _resolve(self, call: ToolCall) -> None:
        if self._current is call:
            self._current = None
        self._last_resolved = call
        self._history.append(call)

    def _notify(self, call: ToolCall) -> None:
        for listener in list(self._listeners):
            try:
                listener(call)
            except Exception:
                LOGGER.exception("Tool call listener %r failed", listener)
        if self._bus is not None:
            self._bus.publish(ToolCallChanged(conversation_id=self._conversation_id, tool_call=call))


def _consume_exception(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


__all__ = [
    "ToolCallBusyError",
    "ToolCallGate",
    "ToolCallListener",
    "ToolCallStateError",
    "ToolExecutorFn",
]
