"""Event bus infrastructure for decoupled delivery notifications.

Components publish what happened to messages, the queue, connectivity and
tool calls; presentation code subscribes without the components knowing who
listens. ``subscribe`` hands back a disposer so teardown stays with whoever
registered the handler.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

    from .chat.message_model import Message, RetryAttempt, ToolCall

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]

# Returned by subscribe(); calling it removes the handler
Disposer = Callable[[], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class MessageQueued(Event):
            conversation_id: str
            temp_id: str
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Message Events
# =============================================================================


@dataclass(slots=True)
class MessageAdded(Event):
    """Emitted when an optimistic or confirmed message enters a conversation.

    Attributes:
        conversation_id: The conversation the message belongs to.
        message: The message as it now appears in the list.
    """

    conversation_id: str
    message: "Message"


@dataclass(slots=True)
class MessageConfirmed(Event):
    """Emitted when a pending message is replaced by its server copy.

    Attributes:
        conversation_id: The conversation the message belongs to.
        temp_id: The temporary id that was replaced.
        message: The confirmed message now occupying the same position.
    """

    conversation_id: str
    temp_id: str
    message: "Message"


@dataclass(slots=True)
class MessageFailed(Event):
    """Emitted when delivery of a pending message gives up.

    Attributes:
        conversation_id: The conversation the message belongs to.
        temp_id: The temporary id of the failed message.
        error: A description of the last error.
    """

    conversation_id: str
    temp_id: str
    error: str = ""


@dataclass(slots=True)
class MessageQueued(Event):
    """Emitted when a message is parked in the offline queue."""

    conversation_id: str
    temp_id: str
    queue_size: int


@dataclass(slots=True)
class QueueFlushed(Event):
    """Emitted after a drain of the offline queue completes.

    Attributes:
        delivered: Number of entries confirmed by the server.
        failed: Number of entries whose redelivery gave up.
        remaining: Number of entries still queued.
    """

    delivered: int
    failed: int
    remaining: int


# =============================================================================
# Delivery Events
# =============================================================================


@dataclass(slots=True)
class ConnectivityChanged(Event):
    """Emitted when the online/offline flag flips."""

    online: bool


@dataclass(slots=True)
class RetryScheduled(Event):
    """Emitted before each backoff sleep so the UI can show a countdown."""

    conversation_id: str
    attempt: "RetryAttempt"


@dataclass(slots=True)
class StreamChunk(Event):
    """Emitted for each text delta streamed from the completion service."""

    conversation_id: str
    turn_id: str
    content: str


_QUIET_EVENT_TYPES.add(StreamChunk)


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted when an exchange finishes and the reply is stored."""

    conversation_id: str
    turn_id: str
    response_text: str


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when an exchange fails terminally."""

    conversation_id: str
    turn_id: str
    error: str


@dataclass(slots=True)
class TurnCanceled(Event):
    """Emitted when the user stops an in-flight exchange."""

    conversation_id: str
    turn_id: str


@dataclass(slots=True)
class ToolCallChanged(Event):
    """Emitted on every tool call state transition."""

    conversation_id: str
    tool_call: "ToolCall"


@dataclass(slots=True)
class NoticePosted(Event):
    """Emitted when a notice should be shown to the user.

    Attributes:
        message: The notice text.
        level: ``info``, ``warning`` or ``error``.
        dismissible: Whether the user can close the notice.
        action: Optional affordance such as ``"retry"``.
        details: Extra structured data (e.g. the serialized error).
    """

    message: str
    level: str = "info"
    dismissible: bool = True
    action: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class EventBus(Generic[E]):
    """Synchronous typed pub/sub for delivery notifications.

    Handlers run on the publishing call, in subscription order. Bound methods
    are referenced weakly so a discarded view or controller unsubscribes
    itself; functions and lambdas stay registered until disposed.

    Example::

        bus = EventBus()
        dispose = bus.subscribe(MessageQueued, lambda event: print(event.temp_id))
        bus.publish(MessageQueued(conversation_id="c1", temp_id="temp-1", queue_size=1))
        dispose()

    Not thread-safe; publish from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_Subscription]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> Disposer:
        """Register ``handler`` for ``event_type`` and return its disposer.

        The disposer removes exactly this registration and may be called
        any number of times.
        """
        subscription = _Subscription(handler)
        self._handlers[event_type].append(subscription)
        logger.debug("Subscribed %s to %s", subscription.label, event_type.__name__)

        def dispose() -> None:
            self._discard(event_type, lambda candidate: candidate is subscription)

        return dispose

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the earliest registration of ``handler``; unknown handlers are ignored."""
        if self._discard(event_type, lambda candidate: candidate.resolve() == handler):
            logger.debug("Unsubscribed %s from %s", _describe(handler), event_type.__name__)

    def publish(self, event: E) -> None:
        """Deliver ``event`` to every live handler of its exact type.

        A handler that raises is logged; the rest still receive the event.
        """
        event_type = type(event)
        registered = self._handlers.get(event_type)
        verbose = event_type not in _QUIET_EVENT_TYPES
        if not registered:
            if verbose:
                logger.debug("No handlers for %s", event_type.__name__)
            return
        if verbose:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(registered))

        # Iterate a copy: handlers may dispose themselves mid-publish.
        for subscription in tuple(registered):
            handler = subscription.resolve()
            if handler is None:
                if subscription in registered:
                    registered.remove(subscription)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Handler %s failed on %s", subscription.label, event_type.__name__)

    def clear(self) -> None:
        """Drop every registration."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Count registrations, for one event type or across all of them."""
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(map(len, self._handlers.values()))

    def _discard(self, event_type: type[Event], predicate: Callable[["_Subscription"], bool]) -> bool:
        registered = self._handlers.get(event_type)
        if not registered:
            return False
        for index, candidate in enumerate(registered):
            if predicate(candidate):
                del registered[index]
                return True
        return False


class _Subscription:
    """One registration; bound methods go through ``WeakMethod``."""

    __slots__ = ("_target", "_weak", "label")

    def __init__(self, handler: Handler) -> None:
        self.label = _describe(handler)
        self._weak = inspect.ismethod(handler)
        self._target: Any = WeakMethod(handler) if self._weak else handler

    def resolve(self) -> Handler | None:
        return self._target() if self._weak else self._target


def _describe(handler: Handler) -> str:
    owner = getattr(handler, "__self__", None)
    if owner is not None and hasattr(handler, "__func__"):
        return f"{type(owner).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    # Core infrastructure
    "Disposer",
    "Event",
    "EventBus",
    "Handler",
    # Message events
    "MessageAdded",
    "MessageConfirmed",
    "MessageFailed",
    "MessageQueued",
    "QueueFlushed",
    # Delivery events
    "ConnectivityChanged",
    "RetryScheduled",
    "StreamChunk",
    "TurnCompleted",
    "TurnFailed",
    "TurnCanceled",
    "ToolCallChanged",
    "NoticePosted",
]
