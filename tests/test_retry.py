"""Tests for :mod:`notechat.delivery.retry`."""

from __future__ import annotations

import asyncio

import pytest

from notechat.chat.message_model import RetryAttempt
from notechat.delivery.errors import (
    ClientError,
    NetworkError,
    PartialStreamError,
    RateLimitError,
    RetryExhaustedError,
    ServerError,
)
from notechat.delivery.retry import RetryEngine, RetryOptions, with_retry, with_streaming_retry
from tests.helpers import RecordingSleep


class _Flaky:
    """Operation failing with ``errors`` in order before returning ``value``."""

    def __init__(self, *errors: BaseException, value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


# =============================================================================
# with_retry
# =============================================================================


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success_without_sleeping(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky()

        result = await with_retry(operation, RetryOptions(sleep=sleep))

        assert result == "ok"
        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_backoff_doubles_then_exhausts(self) -> None:
        """Three network failures sleep 1000ms then 2000ms and report three attempts."""
        sleep = RecordingSleep()
        backoffs: list[RetryAttempt] = []
        operation = _Flaky(NetworkError(), NetworkError(), NetworkError())
        options = RetryOptions(max_retries=3, initial_delay=1000, sleep=sleep, on_backoff=backoffs.append)

        with pytest.raises(RetryExhaustedError) as excinfo:
            await with_retry(operation, options)

        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, NetworkError)
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]
        assert [attempt.next_delay_ms for attempt in backoffs] == [1000.0, 2000.0]
        assert [attempt.attempt for attempt in backoffs] == [1, 2]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(ServerError(status=503), NetworkError(), value="done")

        result = await with_retry(operation, RetryOptions(max_retries=3, sleep=sleep))

        assert result == "done"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(ClientError(message="bad request", status=400))

        with pytest.raises(ClientError):
            await with_retry(operation, RetryOptions(sleep=sleep))

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_unknown_exceptions_propagate_unchanged(self) -> None:
        operation = _Flaky(KeyError("missing"))

        with pytest.raises(KeyError):
            await with_retry(operation, RetryOptions(sleep=RecordingSleep()))

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_classified_as_network(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(ConnectionResetError("reset"))

        assert await with_retry(operation, RetryOptions(sleep=sleep)) == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_delay_is_capped_at_max_delay(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(*[NetworkError() for _ in range(4)])
        options = RetryOptions(max_retries=5, initial_delay=1000, max_delay=3000, sleep=sleep)

        await with_retry(operation, options)

        assert sleep.delays == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_rate_limit_hint_extends_the_delay(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(RateLimitError(retry_after=5.0))

        await with_retry(operation, RetryOptions(sleep=sleep))

        assert sleep.delays == [5.0]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_network_failure(self) -> None:
        sleep = RecordingSleep()
        calls = 0

        async def slow() -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)
            return "late"

        with pytest.raises(RetryExhaustedError) as excinfo:
            await with_retry(slow, RetryOptions(max_retries=2, timeout=10, sleep=sleep))

        assert calls == 2
        assert isinstance(excinfo.value.last_error, NetworkError)
        assert "timeout" in excinfo.value.last_error.message.lower()

    @pytest.mark.asyncio
    async def test_operation_timeout_without_overall_timeout_is_retried(self) -> None:
        sleep = RecordingSleep()
        operation = _Flaky(TimeoutError("read timed out"))

        assert await with_retry(operation, RetryOptions(max_retries=2, timeout=None, sleep=sleep)) == "ok"
        assert operation.calls == 2

        with pytest.raises(RetryExhaustedError) as excinfo:
            await with_retry(_Flaky(TimeoutError()), RetryOptions(max_retries=1, timeout=None, sleep=sleep))

        assert isinstance(excinfo.value.last_error, NetworkError)

    @pytest.mark.asyncio
    async def test_on_retry_receives_error_and_attempt(self) -> None:
        seen: list[tuple[str, int]] = []
        operation = _Flaky(NetworkError(message="down"))
        options = RetryOptions(sleep=RecordingSleep(), on_retry=lambda exc, attempt: seen.append((type(exc).__name__, attempt)))

        await with_retry(operation, options)

        assert seen == [("NetworkError", 1)]

    def test_delay_for_matches_backoff_schedule(self) -> None:
        options = RetryOptions(initial_delay=1000, backoff_factor=2, max_delay=10000)

        assert [options.delay_for(attempt) for attempt in (1, 2, 3, 4, 5)] == [1000, 2000, 4000, 8000, 10000]


# =============================================================================
# with_streaming_retry
# =============================================================================


class _Streams:
    """Stream factory; each call consumes one scripted behaviour."""

    def __init__(self, *scripts: tuple[list[str], BaseException | None, int | None]) -> None:
        self.scripts = list(scripts)
        self.calls = 0
        self.closed = 0

    def __call__(self):
        self.calls += 1
        chunks, error, fail_at = self.scripts.pop(0)
        return self._generate(chunks, error, fail_at)

    async def _generate(self, chunks: list[str], error: BaseException | None, fail_at: int | None):
        try:
            for index, chunk in enumerate(chunks):
                if error is not None and index == fail_at:
                    raise error
                yield chunk
            if error is not None and fail_at is None:
                raise error
        finally:
            self.closed += 1


async def _collect(stream) -> list[str]:
    return [chunk async for chunk in stream]


class TestWithStreamingRetry:
    @pytest.mark.asyncio
    async def test_yields_chunks_in_order(self) -> None:
        streams = _Streams((["a", "b", "c"], None, None))

        chunks = await _collect(with_streaming_retry(streams, RetryOptions(sleep=RecordingSleep())))

        assert chunks == ["a", "b", "c"]
        assert streams.calls == 1

    @pytest.mark.asyncio
    async def test_retries_failures_before_first_chunk(self) -> None:
        sleep = RecordingSleep()
        streams = _Streams(
            (["a"], NetworkError(), 0),
            (["a"], ServerError(status=502), 0),
            (["a", "b"], None, None),
        )

        chunks = await _collect(with_streaming_retry(streams, RetryOptions(max_retries=3, sleep=sleep)))

        assert chunks == ["a", "b"]
        assert streams.calls == 3
        assert sleep.delays == [1.0, 2.0]
        assert streams.closed == 3

    @pytest.mark.asyncio
    async def test_failure_after_output_raises_partial_stream_error(self) -> None:
        streams = _Streams((["a", "b", "c"], NetworkError(), 2), (["x"], None, None))
        received: list[str] = []

        with pytest.raises(PartialStreamError) as excinfo:
            async for chunk in with_streaming_retry(streams, RetryOptions(sleep=RecordingSleep())):
                received.append(chunk)

        assert received == ["a", "b"]
        assert excinfo.value.chunks_delivered == 2
        assert streams.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_before_output(self) -> None:
        streams = _Streams(*[([], NetworkError(), None) for _ in range(3)])

        with pytest.raises(RetryExhaustedError) as excinfo:
            await _collect(with_streaming_retry(streams, RetryOptions(max_retries=3, sleep=RecordingSleep())))

        assert excinfo.value.attempts == 3

    @pytest.mark.asyncio
    async def test_empty_stream_completes_without_output(self) -> None:
        streams = _Streams(([], None, None))

        assert await _collect(with_streaming_retry(streams, RetryOptions(sleep=RecordingSleep()))) == []

    @pytest.mark.asyncio
    async def test_closing_consumer_closes_underlying_stream(self) -> None:
        streams = _Streams((["a", "b", "c"], None, None))
        stream = with_streaming_retry(streams, RetryOptions(sleep=RecordingSleep()))

        assert await stream.__anext__() == "a"
        await stream.aclose()

        assert streams.closed == 1


# =============================================================================
# RetryEngine
# =============================================================================


class TestRetryEngine:
    def test_configure_ignores_none_overrides(self) -> None:
        engine = RetryEngine(RetryOptions(max_retries=4))

        assert engine.configure(max_retries=None) is engine.options
        assert engine.configure(max_retries=2).max_retries == 2
        assert engine.options.max_retries == 4

    @pytest.mark.asyncio
    async def test_per_call_overrides(self) -> None:
        sleep = RecordingSleep()
        engine = RetryEngine(RetryOptions(max_retries=5, sleep=sleep))
        operation = _Flaky(NetworkError(), NetworkError())

        with pytest.raises(RetryExhaustedError) as excinfo:
            await engine.with_retry(operation, max_retries=2)

        assert excinfo.value.attempts == 2
