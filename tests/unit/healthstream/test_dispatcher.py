"""Fan-out delivery: one message per tick, suppression, failure handling."""

import json

import pytest

from healthstream.domain.models import Event, EventKind, Sample, Scope, Subscription
from healthstream.services.dispatcher import FanOutDispatcher, serialize_batch
from healthstream.services.event_aggregator import EventAggregator
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.snapshot_store import InMemorySnapshotStore
from tests.fakes import RecordingTransport


class FakeDirectory:
    def __init__(self, active: set[str]) -> None:
        self.active = active
        self.unsubscribed: list[str] = []

    def is_active(self, subscription_id: str) -> bool:
        return subscription_id in self.active

    async def unsubscribe(self, subscription_id: str) -> bool:
        self.unsubscribed.append(subscription_id)
        self.active.discard(subscription_id)
        return True


@pytest.fixture
def dispatcher(seeded_store: InMemorySnapshotStore, insight_requester: InsightRequester) -> FanOutDispatcher:
    return FanOutDispatcher(EventAggregator(seeded_store, insight_requester))


def _events(scope: Scope, *kinds: EventKind) -> list[Event]:
    return [Event(kind=k, payload={"n": i}, scope=scope) for i, k in enumerate(kinds)]


def _subscribe(dispatcher: FanOutDispatcher, transport: RecordingTransport, scope: Scope) -> Subscription:
    subscription = Subscription(scope=scope, cadence_ms=1000, transport=transport)
    directory = dispatcher.directory or FakeDirectory(set())
    directory.active.add(subscription.id)  # type: ignore[attr-defined]
    dispatcher.attach(directory)
    return subscription


class TestDeliver:
    async def test_one_message_per_batch(self, dispatcher: FanOutDispatcher) -> None:
        transport = RecordingTransport()
        sub = _subscribe(dispatcher, transport, Scope.for_user("U1"))

        delivered = await dispatcher.deliver(sub, _events(sub.scope, EventKind.SAMPLE_BATCH, EventKind.ALERT))

        assert delivered is True
        assert len(transport.messages) == 1
        message = json.loads(transport.messages[0])
        assert message["type"] == "user-health-update"
        assert message["subscription_id"] == sub.id
        assert [e["kind"] for e in message["events"]] == ["sample_batch", "alert"]
        assert dispatcher.events_delivered_by_kind == {"sample_batch": 1, "alert": 1}

    async def test_empty_batch_is_suppressed(self, dispatcher: FanOutDispatcher) -> None:
        transport = RecordingTransport()
        sub = _subscribe(dispatcher, transport, Scope.everyone())

        assert await dispatcher.deliver(sub, []) is False
        assert transport.messages == []
        assert dispatcher.batches_suppressed == 1

    @pytest.mark.parametrize("transport", [RecordingTransport(fail=True), RecordingTransport(raises=True)])
    async def test_write_failure_unsubscribes(
        self, dispatcher: FanOutDispatcher, transport: RecordingTransport
    ) -> None:
        sub = _subscribe(dispatcher, transport, Scope.everyone())

        assert await dispatcher.deliver(sub, _events(sub.scope, EventKind.INSIGHT)) is False
        assert dispatcher.directory.unsubscribed == [sub.id]  # type: ignore[union-attr]
        assert dispatcher.transport_failures == 1
        assert dispatcher.events_delivered_by_kind == {}

    async def test_failure_does_not_affect_other_subscribers(self, dispatcher: FanOutDispatcher) -> None:
        broken = _subscribe(dispatcher, RecordingTransport(raises=True), Scope.everyone())
        healthy_transport = RecordingTransport()
        healthy = _subscribe(dispatcher, healthy_transport, Scope.everyone())

        await dispatcher.deliver(broken, _events(broken.scope, EventKind.INSIGHT))
        await dispatcher.deliver(healthy, _events(healthy.scope, EventKind.INSIGHT))

        assert len(healthy_transport.messages) == 1
        assert dispatcher.directory.is_active(healthy.id)  # type: ignore[union-attr]

    async def test_inactive_subscription_is_never_written(self, dispatcher: FanOutDispatcher) -> None:
        transport = RecordingTransport()
        sub = _subscribe(dispatcher, transport, Scope.everyone())
        dispatcher.directory.active.clear()  # type: ignore[union-attr]

        assert await dispatcher.deliver(sub, _events(sub.scope, EventKind.INSIGHT)) is False
        assert transport.messages == []


class TestDispatchTick:
    async def test_tick_aggregates_for_subscriber_scope(
        self, dispatcher: FanOutDispatcher, seeded_store: InMemorySnapshotStore
    ) -> None:
        await seeded_store.add_sample(Sample(category="weight", value="70", owner_id="U1"))
        await seeded_store.add_sample(Sample(category="weight", value="90", owner_id="U2"))
        transport = RecordingTransport()
        sub = _subscribe(dispatcher, transport, Scope.for_user("U1"))

        assert await dispatcher.dispatch_tick(sub) is True

        batch = transport.batches()[0]
        assert batch["events"][0]["payload"]["count"] == 1

    async def test_quiet_tick_writes_nothing(self, dispatcher: FanOutDispatcher) -> None:
        transport = RecordingTransport()
        sub = _subscribe(dispatcher, transport, Scope.for_user("U2"))

        assert await dispatcher.dispatch_tick(sub) is False
        assert transport.messages == []


async def test_handshake_is_a_control_message(dispatcher: FanOutDispatcher) -> None:
    transport = RecordingTransport()
    sub = _subscribe(dispatcher, transport, Scope.everyone())

    assert await dispatcher.confirm(sub)

    handshake = transport.decoded()[0]
    assert handshake["type"] == "subscription-confirmed"
    assert handshake["cadence_ms"] == 1000
    assert "events" not in handshake


def test_serialize_batch_global_type() -> None:
    scope = Scope.everyone()
    sub = Subscription(scope=scope, cadence_ms=1000, transport=RecordingTransport())
    message = json.loads(serialize_batch(sub, _events(scope, EventKind.REMINDER_DUE)))

    assert message["type"] == "health-update"
    assert message["scope"]["kind"] == "global"
