"""Error taxonomy for message delivery.

Every failure that crosses the delivery layer is normalized into one of the
classes below so retry policy, queueing, and user notices can be decided from
the error type alone instead of string matching on messages.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx
import openai


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes surfaced to callers and notices."""

    NETWORK = "network_error"
    SERVER = "server_error"
    CLIENT = "client_error"
    RATE_LIMIT = "rate_limit"
    PARTIAL_STREAM = "partial_stream_failure"
    RETRY_EXHAUSTED = "retry_exhausted"
    TOOL_EXECUTION = "tool_execution_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass(eq=False)
class DeliveryError(Exception):
    """Base exception class for all delivery errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error identifier.
        details: Additional structured error information.
    """

    message: str
    code: str = ErrorCode.NETWORK
    details: dict[str, Any] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for notices and telemetry."""
        result: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


@dataclass(eq=False)
class NetworkError(DeliveryError):
    """The remote end was unreachable or the attempt timed out."""

    message: str = "Network request failed"
    code: str = field(default=ErrorCode.NETWORK)

    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class ServerError(DeliveryError):
    """The server answered with a 5xx status."""

    message: str = "Server error"
    code: str = field(default=ErrorCode.SERVER)
    status: int = 500

    retryable: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        return result


@dataclass(eq=False)
class ClientError(DeliveryError):
    """The server rejected the request (auth, validation); never retried."""

    message: str = "Request rejected"
    code: str = field(default=ErrorCode.CLIENT)
    status: int = 400

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        return result


@dataclass(eq=False)
class RateLimitError(DeliveryError):
    """The server asked us to slow down.

    ``retry_after`` is in seconds when the server supplied a hint.
    """

    message: str = "Too many requests. Please wait a moment and try again."
    code: str = field(default=ErrorCode.RATE_LIMIT)
    retry_after: float | None = None

    retryable: ClassVar[bool] = True

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


@dataclass(eq=False)
class PartialStreamError(DeliveryError):
    """A stream failed after output was already delivered downstream."""

    message: str = "Streaming failed after partial data received"
    code: str = field(default=ErrorCode.PARTIAL_STREAM)
    chunks_delivered: int = 0
    cause: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["chunks_delivered"] = self.chunks_delivered
        return result


@dataclass(eq=False)
class RetryExhaustedError(DeliveryError):
    """All attempts failed with retryable errors."""

    message: str = "Retries exhausted"
    code: str = field(default=ErrorCode.RETRY_EXHAUSTED)
    attempts: int = 0
    last_error: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        if self.last_error is not None:
            result["last_error"] = str(self.last_error)
        return result


@dataclass(eq=False)
class ToolExecutionError(DeliveryError):
    """A confirmed tool action failed; scoped to that single tool call."""

    message: str = "Tool execution failed"
    code: str = field(default=ErrorCode.TOOL_EXECUTION)
    tool_name: str = ""
    cause: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["tool_name"] = self.tool_name
        return result


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------

def error_for_status(status: int, message: str | None = None, *, retry_after: float | None = None) -> DeliveryError:
    """Return the taxonomy error matching an HTTP status code."""
    text = message or f"HTTP error! status: {status}"
    if status == 429:
        return RateLimitError(message=text, retry_after=retry_after, details={"status": status})
    if 500 <= status < 600:
        return ServerError(message=text, status=status)
    if 400 <= status < 500:
        return ClientError(message=text, status=status)
    return NetworkError(message=text, details={"status": status})


def classify_exception(exc: BaseException) -> BaseException:
    """Map third-party exceptions onto the delivery taxonomy.

    Exceptions that are already delivery errors, and exceptions that have no
    mapping, are returned unchanged.
    """
    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return NetworkError(message=f"Request timed out: {exc}" if str(exc) else "Request timed out")
    # openai's connection errors subclass APIError, so check them first.
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError)):
        return NetworkError(message=str(exc) or "Unable to reach completion service")
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(message=str(exc), retry_after=retry_after_seconds(exc.response))
    if isinstance(exc, openai.APIStatusError):
        return error_for_status(exc.status_code, str(exc), retry_after=retry_after_seconds(exc.response))
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(
            exc.response.status_code,
            str(exc),
            retry_after=retry_after_seconds(exc.response),
        )
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return NetworkError(message=str(exc) or type(exc).__name__)
    if isinstance(exc, ConnectionError):
        return NetworkError(message=str(exc) or type(exc).__name__)
    return exc


def is_retryable(exc: BaseException) -> bool:
    """Return True when ``exc`` is worth another attempt."""
    classified = classify_exception(exc)
    if isinstance(classified, DeliveryError):
        return classified.retryable
    return False


def retry_after_seconds(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


__all__ = [
    "ErrorCode",
    "DeliveryError",
    "NetworkError",
    "ServerError",
    "ClientError",
    "RateLimitError",
    "PartialStreamError",
    "RetryExhaustedError",
    "ToolExecutionError",
    "classify_exception",
    "error_for_status",
    "is_retryable",
    "retry_after_seconds",
]
