"""
Subscription registry: the only long-lived mutable state of the streaming engine.

Each accepted subscription gets its own asyncio timer task firing every `cadence_ms`.
The registry is the sole owner of those timers; transports never cancel them, they
only report `closed` or fail a write, which ends in `unsubscribe`.

Tick policy: a subscription never has two ticks in flight. When the timer fires and
the previous tick is still running, the firing is skipped and counted. This keeps
tick N's batch fully written before tick N+1 starts.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from healthstream.domain.errors import InvalidCadence, SubscriptionNotFound
from healthstream.domain.models import Scope, Subscription
from healthstream.services.dispatcher import FanOutDispatcher

logger = structlog.get_logger(__name__)

MIN_CADENCE_MS = 1000


@dataclass
class _Entry:
    subscription: Subscription
    timer: asyncio.Task | None = None
    in_flight: asyncio.Task | None = None
    ticks_run: int = 0
    ticks_skipped: int = 0
    tick_tasks: set[asyncio.Task] = field(default_factory=set)


class SubscriptionRegistry:
    """Tracks active subscribers and owns their timers."""

    def __init__(self, dispatcher: FanOutDispatcher, min_cadence_ms: int = MIN_CADENCE_MS) -> None:
        self.dispatcher = dispatcher
        self.min_cadence_ms = min_cadence_ms
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="subscription_registry")

        dispatcher.attach(self)

    async def subscribe(self, scope: Scope, cadence_ms: int, transport: Any) -> str:
        """
        Register a subscriber and start its timer.

        The handshake is written before the first tick. If that write fails the
        dispatcher has already unsubscribed the entry and no timer is started.

        Raises:
            InvalidCadence: cadence below the configured minimum
        """
        if cadence_ms < self.min_cadence_ms:
            self.logger.warning(
                "subscribe_rejected", cadence_ms=cadence_ms, minimum_ms=self.min_cadence_ms
            )
            raise InvalidCadence(cadence_ms, self.min_cadence_ms)

        subscription = Subscription(scope=scope, cadence_ms=cadence_ms, transport=transport)
        entry = _Entry(subscription=subscription)
        async with self._lock:
            self._entries[subscription.id] = entry

        await self.dispatcher.confirm(subscription)

        async with self._lock:
            if self._entries.get(subscription.id) is entry:
                entry.timer = asyncio.create_task(
                    self._run_timer(entry), name=f"subscription-timer-{subscription.id}"
                )

        self.logger.info(
            "subscribed",
            subscription_id=subscription.id,
            scope=str(scope),
            cadence_ms=cadence_ms,
            transport=getattr(transport, "name", type(transport).__name__),
        )
        return subscription.id

    async def unsubscribe(self, subscription_id: str) -> bool:
        """
        Cancel the timer and drop the entry. Idempotent.

        A tick already running is left to finish; the dispatcher's liveness check
        stops it from writing. Returns False when the id was not registered.
        """
        async with self._lock:
            entry = self._entries.pop(subscription_id, None)

        if entry is None:
            self.logger.debug(
                "unsubscribe_noop", error=str(SubscriptionNotFound(subscription_id))
            )
            return False

        if entry.timer is not None and entry.timer is not asyncio.current_task():
            entry.timer.cancel()

        self.logger.info(
            "unsubscribed",
            subscription_id=subscription_id,
            ticks_run=entry.ticks_run,
            ticks_skipped=entry.ticks_skipped,
        )
        return True

    def active(self) -> set[Subscription]:
        """Snapshot of the subscriptions currently registered."""
        return {entry.subscription for entry in self._entries.values()}

    def is_active(self, subscription_id: str) -> bool:
        return subscription_id in self._entries

    def get(self, subscription_id: str) -> Subscription:
        entry = self._entries.get(subscription_id)
        if entry is None:
            raise SubscriptionNotFound(subscription_id)
        return entry.subscription

    def tick_counts(self, subscription_id: str) -> tuple[int, int]:
        """(ticks_run, ticks_skipped) for a live subscription."""
        entry = self._entries.get(subscription_id)
        if entry is None:
            raise SubscriptionNotFound(subscription_id)
        return entry.ticks_run, entry.ticks_skipped

    async def sweep_closed(self) -> list[str]:
        """Remove every subscription whose transport reports closed."""
        removed: list[str] = []
        async with self._lock:
            for subscription_id, entry in list(self._entries.items()):
                if getattr(entry.subscription.transport, "closed", False):
                    del self._entries[subscription_id]
                    if entry.timer is not None:
                        entry.timer.cancel()
                    removed.append(subscription_id)

        if removed:
            self.logger.info("closed_subscriptions_swept", count=len(removed))
        return removed

    async def shutdown(self) -> None:
        """Cancel every timer and wait for in-flight ticks to settle."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()

        pending: list[asyncio.Task] = []
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
                pending.append(entry.timer)
            pending.extend(entry.tick_tasks)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info("registry_shutdown", subscriptions=len(entries))

    async def _run_timer(self, entry: _Entry) -> None:
        subscription = entry.subscription
        interval = subscription.cadence_ms / 1000
        loop = asyncio.get_running_loop()
        next_fire = loop.time() + interval

        while True:
            await asyncio.sleep(max(0.0, next_fire - loop.time()))
            next_fire += interval

            if not self.is_active(subscription.id):
                return

            if entry.in_flight is not None and not entry.in_flight.done():
                entry.ticks_skipped += 1
                self.logger.warning(
                    "tick_skipped",
                    subscription_id=subscription.id,
                    cadence_ms=subscription.cadence_ms,
                    ticks_skipped=entry.ticks_skipped,
                )
                continue

            entry.ticks_run += 1
            task = asyncio.create_task(
                self._tick(subscription), name=f"subscription-tick-{subscription.id}"
            )
            entry.in_flight = task
            entry.tick_tasks.add(task)
            task.add_done_callback(entry.tick_tasks.discard)

    async def _tick(self, subscription: Subscription) -> None:
        try:
            await self.dispatcher.dispatch_tick(subscription)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("tick_failed", subscription_id=subscription.id, error=str(e))
