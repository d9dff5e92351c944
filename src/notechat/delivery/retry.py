"""Bounded retry with exponential backoff and per-attempt timeouts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..chat.message_model import RetryAttempt
from .errors import (
    NetworkError,
    PartialStreamError,
    RateLimitError,
    RetryExhaustedError,
    classify_exception,
    is_retryable,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryOptions:
    """Retry policy. Delays and timeouts are expressed in milliseconds."""

    max_retries: int = 3
    initial_delay: float = 1000.0
    max_delay: float = 10000.0
    backoff_factor: float = 2.0
    timeout: float | None = 30000.0
    on_retry: Callable[[BaseException, int], Any] | None = None
    on_backoff: Callable[[RetryAttempt], Any] | None = None
    should_retry: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def delay_for(self, attempt: int) -> float:
        """Return the backoff in ms that follows failed attempt ``attempt`` (1-indexed)."""

        try:
            delay = self.initial_delay * self.backoff_factor ** (attempt - 1)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


class _BackoffWait:
    """tenacity wait strategy honoring server rate-limit hints."""

    def __init__(self, options: RetryOptions) -> None:
        self._exponential = wait_exponential(
            multiplier=options.initial_delay / 1000.0,
            exp_base=options.backoff_factor,
            max=options.max_delay / 1000.0,
        )

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._exponential(retry_state)
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(error, RateLimitError) and error.retry_after:
            return max(delay, error.retry_after)
        return delay


def _retrying(options: RetryOptions) -> AsyncRetrying:
    def should_retry(exc: BaseException) -> bool:
        if isinstance(exc, PartialStreamError):
            return False
        return bool(options.should_retry(exc))

    def before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        next_action = retry_state.next_action
        delay_ms = (next_action.sleep if next_action is not None else 0.0) * 1000.0
        attempt = retry_state.attempt_number
        LOGGER.warning(
            "Attempt %s/%s failed (%s); retrying in %.0fms",
            attempt,
            options.max_retries,
            error,
            delay_ms,
        )
        if error is not None and options.on_retry is not None:
            options.on_retry(error, attempt)
        if options.on_backoff is not None:
            options.on_backoff(
                RetryAttempt(
                    attempt=attempt,
                    max_attempts=options.max_retries,
                    next_delay_ms=delay_ms,
                    last_error=error,
                )
            )

    return AsyncRetrying(
        stop=stop_after_attempt(max(1, options.max_retries)),
        wait=_BackoffWait(options),
        retry=retry_if_exception(should_retry),
        before_sleep=before_sleep,
        sleep=options.sleep,
    )


def _exhausted(err: RetryError, label: str) -> RetryExhaustedError:
    last_attempt = err.last_attempt
    last_error = last_attempt.exception()
    attempts = last_attempt.attempt_number
    return RetryExhaustedError(
        message=f"{label} after {attempts} attempts: {last_error}",
        attempts=attempts,
        last_error=last_error,
    )


def _timeout_seconds(options: RetryOptions) -> float | None:
    if options.timeout is None or options.timeout <= 0:
        return None
    return options.timeout / 1000.0


async def _await_with_timeout(awaitable: Awaitable[T], timeout: float | None) -> T:
    # Unbounded: a TimeoutError from inside the operation goes to classify_exception.
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise NetworkError(message=f"Request timeout after {timeout * 1000:.0f}ms") from exc


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails terminally, or exhausts the policy.

    Each attempt races the operation against ``options.timeout``. Failures are
    normalized through :func:`classify_exception`; non-retryable errors are
    raised straight away, retryable ones are retried after the backoff delay.
    Running out of attempts raises :class:`RetryExhaustedError`.
    """

    opts = options or RetryOptions()
    timeout = _timeout_seconds(opts)
    try:
        async for attempt in _retrying(opts):
            with attempt:
                try:
                    return await _await_with_timeout(operation(), timeout)
                except Exception as exc:
                    classified = classify_exception(exc)
                    if classified is exc:
                        raise
                    raise classified from exc
    except RetryError as err:
        raise _exhausted(err, "Failed") from err.last_attempt.exception()
    raise AssertionError("unreachable")  # pragma: no cover


async def with_streaming_retry(
    operation: Callable[[], AsyncIterable[T]],
    options: RetryOptions | None = None,
) -> AsyncIterator[T]:
    """Stream chunks from ``operation`` with retries limited to the pre-output phase.

    Once a chunk has been yielded downstream, any later failure raises
    :class:`PartialStreamError`; a retry would duplicate content the consumer
    has already seen. The timeout applies to each wait for the next chunk.
    """

    opts = options or RetryOptions()
    timeout = _timeout_seconds(opts)
    iterator, first = await _open_stream(operation, opts, timeout)
    if first is _EXHAUSTED:
        return
    delivered = 1
    try:
        yield first
        while True:
            try:
                chunk = await _await_with_timeout(iterator.__anext__(), timeout)
            except StopAsyncIteration:
                return
            except Exception as exc:
                LOGGER.warning("Stream failed after %s chunk(s): %s", delivered, exc)
                raise PartialStreamError(chunks_delivered=delivered, cause=exc) from exc
            delivered += 1
            yield chunk
    finally:
        await _close_iterator(iterator)


_EXHAUSTED = object()


async def _open_stream(
    operation: Callable[[], AsyncIterable[T]],
    options: RetryOptions,
    timeout: float | None,
) -> tuple[AsyncIterator[T], Any]:
    """Start the stream and wait for its first chunk, retrying per policy."""

    try:
        async for attempt in _retrying(options):
            with attempt:
                iterator = operation().__aiter__()
                try:
                    first = await _await_with_timeout(iterator.__anext__(), timeout)
                except StopAsyncIteration:
                    await _close_iterator(iterator)
                    return iterator, _EXHAUSTED
                except Exception as exc:
                    await _close_iterator(iterator)
                    classified = classify_exception(exc)
                    if classified is exc:
                        raise
                    raise classified from exc
                return iterator, first
    except RetryError as err:
        raise _exhausted(err, "Streaming failed") from err.last_attempt.exception()
    raise AssertionError("unreachable")  # pragma: no cover


async def _close_iterator(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # pragma: no cover - best effort cleanup
        LOGGER.debug("Failed to close stream iterator", exc_info=True)


class RetryEngine:
    """Holds a default policy and applies it to operations and streams."""

    def __init__(self, options: RetryOptions | None = None) -> None:
        self._options = options or RetryOptions()

    @property
    def options(self) -> RetryOptions:
        return self._options

    def configure(self, **overrides: Any) -> RetryOptions:
        """Return the default policy with ``overrides`` applied (None values ignored)."""

        filtered = {key: value for key, value in overrides.items() if value is not None}
        if not filtered:
            return self._options
        return replace(self._options, **filtered)

    async def with_retry(self, operation: Callable[[], Awaitable[T]], **overrides: Any) -> T:
        return await with_retry(operation, self.configure(**overrides))

    def with_streaming_retry(
        self, operation: Callable[[], AsyncIterable[T]], **overrides: Any
    ) -> AsyncIterator[T]:
        return with_streaming_retry(operation, self.configure(**overrides))


__all__ = ["RetryEngine", "RetryOptions", "with_retry", "with_streaming_retry"]
