"""Chat message, queue, and tool call data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Mapping, Optional, Union


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return _utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


ChatRole = Literal["user", "assistant", "system"]


@dataclass(frozen=True, slots=True)
class PendingId:
    """Client-generated identity of a message the server has not accepted yet."""

    temp_id: str

    @classmethod
    def generate(cls) -> "PendingId":
        return cls(f"temp-{uuid.uuid4().hex[:12]}")

    def __str__(self) -> str:
        return self.temp_id


@dataclass(frozen=True, slots=True)
class ConfirmedId:
    """Server-assigned identity of a persisted message."""

    server_id: str

    def __str__(self) -> str:
        return self.server_id


MessageId = Union[PendingId, ConfirmedId]


def message_id_to_dict(message_id: MessageId) -> Dict[str, str]:
    if isinstance(message_id, PendingId):
        return {"pending": message_id.temp_id}
    return {"confirmed": message_id.server_id}


def message_id_from_value(value: Any) -> MessageId:
    """Rebuild a tagged id from its serialized form."""

    if isinstance(value, (PendingId, ConfirmedId)):
        return value
    if isinstance(value, Mapping):
        if "pending" in value:
            return PendingId(str(value["pending"]))
        if "confirmed" in value:
            return ConfirmedId(str(value["confirmed"]))
    raise ValueError(f"Unrecognized message id payload: {value!r}")


class MessageStatus(Enum):
    """Delivery status of a message.

    Values:
        PENDING: Shown optimistically, not yet accepted by the server.
        SENT: Accepted by the server and carrying its id.
        FAILED: Delivery gave up; still visible for manual retry or delete.
    """

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(slots=True)
class Message:
    """Represents a row inside a conversation's message list."""

    id: MessageId
    role: ChatRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)
    status: MessageStatus = MessageStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status is MessageStatus.SENT and not isinstance(self.id, ConfirmedId):
            raise ValueError("Sent messages must carry a server-assigned id")
        if self.status is not MessageStatus.SENT and not isinstance(self.id, PendingId):
            raise ValueError(f"{self.status.value} messages must carry a temporary id")

    @classmethod
    def pending(cls, role: ChatRole, content: str, *, metadata: Mapping[str, Any] | None = None) -> "Message":
        """Create an optimistic message with a fresh temporary id."""

        return cls(
            id=PendingId.generate(),
            role=role,
            content=content,
            metadata=dict(metadata or {}),
        )

    @classmethod
    def from_server(cls, payload: Mapping[str, Any]) -> "Message":
        """Build a confirmed message from a persistence API payload."""

        server_id = payload.get("id")
        if not server_id:
            raise ValueError("Server message payload is missing an id")
        role = str(payload.get("role") or "assistant")
        if role not in ("user", "assistant", "system"):
            role = "assistant"
        metadata = payload.get("metadata")
        return cls(
            id=ConfirmedId(str(server_id)),
            role=role,  # type: ignore[arg-type]
            content=str(payload.get("content") or ""),
            created_at=_parse_timestamp(payload.get("createdAt") or payload.get("created_at")),
            status=MessageStatus.SENT,
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    @property
    def temp_id(self) -> Optional[str]:
        return self.id.temp_id if isinstance(self.id, PendingId) else None

    @property
    def server_id(self) -> Optional[str]:
        return self.id.server_id if isinstance(self.id, ConfirmedId) else None

    @property
    def is_confirmed(self) -> bool:
        return self.status is MessageStatus.SENT

    def with_status(self, status: MessageStatus) -> "Message":
        return replace(self, status=status, metadata=dict(self.metadata))

    def as_chat_message(self) -> Dict[str, str]:
        """Return the role/content mapping sent to the completion service."""

        return {"role": self.role, "content": self.content}

    def to_payload(self) -> Dict[str, Any]:
        """Serialize the message body for the persistence API."""

        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }
        if self.temp_id:
            payload["tempId"] = self.temp_id
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for local persistence."""

        return {
            "id": message_id_to_dict(self.id),
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        metadata = payload.get("metadata")
        return cls(
            id=message_id_from_value(payload.get("id")),
            role=payload.get("role", "user"),
            content=str(payload.get("content") or ""),
            created_at=_parse_timestamp(payload.get("created_at")),
            status=MessageStatus(payload.get("status", MessageStatus.PENDING.value)),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )


@dataclass(slots=True)
class ConversationCache:
    """Per-conversation message list plus its backward pagination state."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    next_cursor: str | None = None
    # Unknown until load_initial has seen the newest page.
    has_more: bool = False
    is_loading_more: bool = False
    issued_cursors: set[str] = field(default_factory=set)

    def reset(self) -> None:
        self.messages = []
        self.next_cursor = None
        self.has_more = False
        self.is_loading_more = False
        self.issued_cursors = set()


@dataclass(slots=True)
class QueuedEntry:
    """A message waiting for redelivery once the service is reachable."""

    conversation_id: str
    message: Message
    enqueued_at: datetime = field(default_factory=_utcnow)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    last_error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "conversation_id": self.conversation_id,
            "message": self.message.to_dict(),
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "QueuedEntry":
        return cls(
            conversation_id=str(payload["conversation_id"]),
            message=Message.from_dict(payload["message"]),
            enqueued_at=_parse_timestamp(payload.get("enqueued_at")),
            entry_id=str(payload.get("entry_id") or uuid.uuid4().hex),
            attempts=int(payload.get("attempts") or 0),
            last_error=payload.get("last_error"),
        )


@dataclass(slots=True)
class RetryAttempt:
    """Progress of an operation that is currently being retried."""

    attempt: int
    max_attempts: int
    next_delay_ms: float
    last_error: BaseException | None = None

    @property
    def next_retry_in_seconds(self) -> float:
        return self.next_delay_ms / 1000.0


class ToolCallState(Enum):
    """Lifecycle of an AI-proposed action.

    Values:
        PROPOSED: Waiting for the user to confirm or deny.
        CONFIRMED: Approved, not yet running.
        DENIED: Rejected by the user (terminal).
        EXECUTING: The action is running and cannot be cancelled.
        COMPLETED: The action finished (terminal).
        FAILED: The action raised (terminal).
    """

    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_OPEN_TOOL_STATES = frozenset({ToolCallState.PROPOSED, ToolCallState.CONFIRMED, ToolCallState.EXECUTING})


@dataclass(slots=True)
class ToolCall:
    """Structured action request reported by the completion stream."""

    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    state: ToolCallState = ToolCallState.PROPOSED
    result: Any | None = None
    error: str | None = None
    tool_call_id: str = field(default_factory=lambda: f"call-{uuid.uuid4().hex[:8]}")

    @property
    def is_open(self) -> bool:
        """True while the call still occupies its conversation's gate."""

        return self.state in _OPEN_TOOL_STATES

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "args": dict(self.args),
            "state": self.state.value,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error:
            payload["error"] = self.error
        return payload


class TurnStatus(Enum):
    """Lifecycle of one send-and-reply exchange."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(slots=True)
class TurnState:
    """Tracks an exchange from user message delivery to the stored reply.

    Attributes:
        turn_id: Unique identifier for this exchange.
        conversation_id: Conversation the exchange belongs to.
        message_id: Current id of the user message (pending until confirmed).
        status: Current status of the exchange.
        response_text: Accumulated assistant text.
        error: Error message if the exchange failed.
    """

    turn_id: str
    conversation_id: str
    message_id: MessageId | None = None
    status: TurnStatus = TurnStatus.RUNNING
    response_text: str = ""
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @classmethod
    def start(cls, conversation_id: str, message_id: MessageId | None = None) -> "TurnState":
        return cls(turn_id=f"turn-{uuid.uuid4().hex[:8]}", conversation_id=conversation_id, message_id=message_id)

    @property
    def is_running(self) -> bool:
        return self.status is TurnStatus.RUNNING

    def mark_completed(self, response_text: str) -> None:
        self.status = TurnStatus.COMPLETED
        self.response_text = response_text
        self.completed_at = _utcnow()

    def mark_failed(self, error: str) -> None:
        self.status = TurnStatus.FAILED
        self.error = error
        self.completed_at = _utcnow()

    def mark_canceled(self) -> None:
        self.status = TurnStatus.CANCELED
        self.completed_at = _utcnow()


__all__ = [
    "ChatRole",
    "ConfirmedId",
    "ConversationCache",
    "Message",
    "MessageId",
    "MessageStatus",
    "PendingId",
    "QueuedEntry",
    "RetryAttempt",
    "ToolCall",
    "ToolCallState",
    "TurnState",
    "TurnStatus",
    "message_id_from_value",
    "message_id_to_dict",
]
