"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from notechat.delivery.connectivity import ConnectivitySignal
from notechat.delivery.retry import RetryEngine, RetryOptions
from notechat.events import EventBus
from notechat.services.persistence import MemoryStore
from tests.helpers import RecordingSleep


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def storage() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def signal() -> ConnectivitySignal:
    return ConnectivitySignal(online=True)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def retry(sleep: RecordingSleep) -> RetryEngine:
    return RetryEngine(RetryOptions(max_retries=3, initial_delay=1000, max_delay=10000, sleep=sleep))


@pytest.fixture
def recorded(bus: EventBus):
    """Collect every published event of the requested types."""

    def _record(*event_types: type) -> list:
        received: list = []
        for event_type in event_types:
            bus.subscribe(event_type, received.append)
        return received

    return _record
