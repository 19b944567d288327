"""
Fan-out dispatcher: runs a subscriber's tick and writes the batch to its transport.

The dispatcher is transport-agnostic. Pull streams and push sockets both implement
the `Transport` protocol; a write either succeeds or the subscription is dropped.
"""

from collections import Counter
from collections.abc import Sequence
from typing import Protocol

import structlog

from healthstream.domain.errors import TransportWriteFailure
from healthstream.domain.models import Event, EventBatch, Subscription, SubscriptionConfirmed
from healthstream.services.event_aggregator import EventAggregator, WindowPolicy

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """Anything a serialized batch can be written to."""

    name: str

    @property
    def closed(self) -> bool: ...

    async def send(self, message: str) -> bool:
        """Write one message. Returns False (or raises) when the peer is gone."""
        ...


class SubscriptionDirectory(Protocol):
    """The slice of the registry the dispatcher needs."""

    def is_active(self, subscription_id: str) -> bool: ...

    async def unsubscribe(self, subscription_id: str) -> bool: ...


def serialize_batch(subscription: Subscription, events: Sequence[Event]) -> str:
    """One JSON message per tick, tagged with the batch type discriminator."""
    batch = EventBatch(
        type=EventBatch.type_for(subscription.scope),
        subscription_id=subscription.id,
        scope=subscription.scope,
        events=list(events),
    )
    return batch.model_dump_json()


def serialize_handshake(subscription: Subscription) -> str:
    return SubscriptionConfirmed(
        subscription_id=subscription.id,
        scope=subscription.scope,
        cadence_ms=subscription.cadence_ms,
    ).model_dump_json()


class FanOutDispatcher:
    """
    Delivers batches with best-effort semantics.

    Design principles:
    - One message per tick, never one per event
    - Empty ticks are silent
    - A failed write unsubscribes that subscriber and never affects the others
    - Liveness is checked right before writing, so a tick that outlived its
      subscription cannot reach a released transport
    """

    def __init__(self, aggregator: EventAggregator, window_policy: WindowPolicy | None = None) -> None:
        self.aggregator = aggregator
        self.window_policy = window_policy
        self.directory: SubscriptionDirectory | None = None
        self.logger = logger.bind(component="fan_out_dispatcher")

        self.events_delivered_by_kind: Counter[str] = Counter()
        self.batches_delivered = 0
        self.batches_suppressed = 0
        self.transport_failures = 0

    def attach(self, directory: SubscriptionDirectory) -> None:
        """Bind the registry that owns the subscriptions this dispatcher serves."""
        self.directory = directory

    async def dispatch_tick(self, subscription: Subscription) -> bool:
        """Aggregate for the subscriber's scope and deliver the result."""
        events = await self.aggregator.aggregate(subscription.scope, self.window_policy)
        return await self.deliver(subscription, events)

    async def deliver(self, subscription: Subscription, events: Sequence[Event]) -> bool:
        """Write one batch. Returns True only when something was written."""
        if not events:
            self.batches_suppressed += 1
            self.logger.debug("empty_tick_suppressed", subscription_id=subscription.id)
            return False

        message = serialize_batch(subscription, events)
        delivered = await self._write(subscription, message)
        if delivered:
            self.batches_delivered += 1
            self.events_delivered_by_kind.update(e.kind.value for e in events)
            self.logger.debug(
                "batch_delivered",
                subscription_id=subscription.id,
                transport=subscription.transport.name,
                event_count=len(events),
            )
        return delivered

    async def confirm(self, subscription: Subscription) -> bool:
        """Handshake written once at subscribe time to prove the transport is live."""
        return await self._write(subscription, serialize_handshake(subscription))

    async def _write(self, subscription: Subscription, message: str) -> bool:
        if self.directory is not None and not self.directory.is_active(subscription.id):
            self.logger.info("write_skipped_inactive", subscription_id=subscription.id)
            return False

        try:
            if not await subscription.transport.send(message):
                raise TransportWriteFailure(subscription.id, subscription.transport.name)
        except Exception as e:
            self.transport_failures += 1
            self.logger.warning(
                "transport_write_failed",
                subscription_id=subscription.id,
                transport=getattr(subscription.transport, "name", "unknown"),
                error=str(e),
            )
            if self.directory is not None:
                await self.directory.unsubscribe(subscription.id)
            return False

        return True
