"""Shared fixtures: in-memory store, fake collaborators and recording transports."""

from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from healthstream.config import AppConfig, InsightConfig, StreamConfig
from healthstream.domain.models import User
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.snapshot_store import InMemorySnapshotStore
from tests.fakes import FakeInsightGenerator, RecordingTransport


@pytest.fixture
def fake_generator() -> FakeInsightGenerator:
    return FakeInsightGenerator()


@pytest.fixture
def insight_requester(fake_generator: FakeInsightGenerator) -> InsightRequester:
    return InsightRequester(fake_generator, InsightConfig(timeout_seconds=1.0))


@pytest.fixture
def store() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
async def seeded_store(store: InMemorySnapshotStore) -> InMemorySnapshotStore:
    await store.add_user(User(id="U1", username="alice"))
    await store.add_user(User(id="U2", username="bob"))
    return store


@pytest.fixture
def transport_factory() -> Callable[..., RecordingTransport]:
    return RecordingTransport


@pytest.fixture
def fast_config() -> AppConfig:
    """Config with cadences short enough for unit tests."""
    return AppConfig(
        environment="development",
        stream=StreamConfig(min_cadence_ms=10, default_cadence_ms=50, user_cadence_ms=50),
    )


@pytest.fixture
def noon() -> datetime:
    return datetime(2026, 3, 14, 12, 0, 30, tzinfo=UTC)
