"""Retry, connectivity, and offline redelivery primitives."""

from .connectivity import ConnectivitySignal, HttpConnectivityProbe
from .errors import (
    ClientError,
    DeliveryError,
    ErrorCode,
    NetworkError,
    PartialStreamError,
    RateLimitError,
    RetryExhaustedError,
    ServerError,
    ToolExecutionError,
)
from .offline_queue import FlushReport, OfflineQueue
from .retry import RetryEngine, RetryOptions

__all__ = [
    "ClientError",
    "ConnectivitySignal",
    "DeliveryError",
    "ErrorCode",
    "FlushReport",
    "HttpConnectivityProbe",
    "NetworkError",
    "OfflineQueue",
    "PartialStreamError",
    "RateLimitError",
    "RetryEngine",
    "RetryExhaustedError",
    "RetryOptions",
    "ServerError",
    "ToolExecutionError",
]
