"""
Integration service that wires the streaming engine together.

One `HealthStreamService` per process owns:
1. The snapshot store (in-memory by default)
2. The insight requester behind its circuit breaker
3. The aggregator, dispatcher and subscription registry
4. The reminder scheduler and its notifier

The web surface talks to this object only; it never builds engine pieces itself.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, Field

from healthstream.config import AppConfig, get_config
from healthstream.domain.errors import UnknownUser
from healthstream.domain.models import LiveStats, Sample, Scope, StatusSnapshot, TrendResult
from healthstream.services.alert_detector import AlertDetector
from healthstream.services.dispatcher import FanOutDispatcher
from healthstream.services.event_aggregator import EventAggregator, WindowPolicy
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.notifier import Notifier, build_notifier
from healthstream.services.reminder_scheduler import ReminderScheduler
from healthstream.services.snapshot_store import InMemorySnapshotStore
from healthstream.services.subscription_registry import SubscriptionRegistry
from healthstream.services.trend_analyzer import analyze_trends

logger = structlog.get_logger(__name__)

NO_DATA_MESSAGE = "No recent health data available for insights"
NO_DATA_SUGGESTION = "Start tracking your health data to get personalized insights!"


class UserInsightReport(BaseModel):
    """On-demand, multi-day insight for one user."""

    user_id: str
    username: str
    period_days: int = Field(gt=0)
    data_points: int = Field(ge=0)
    insights: str | None = None
    trends: list[TrendResult] = Field(default_factory=list)
    message: str | None = None
    suggestion: str | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class HealthStreamService:
    """Main service object: the streaming engine plus its periodic jobs."""

    def __init__(
        self,
        config: AppConfig | None = None,
        store: InMemorySnapshotStore | None = None,
        insight_requester: InsightRequester | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="health_stream_service")
        self.started_at = datetime.now(UTC)

        self.store = store or InMemorySnapshotStore()
        self.insight_requester = insight_requester or InsightRequester.from_config(
            self.config.insight
        )

        self._init_streaming()
        self._init_reminders(notifier or build_notifier(self.config.notifier))

        self._sweep_task: asyncio.Task | None = None
        self._is_running = False

    def _init_streaming(self) -> None:
        stream = self.config.stream
        self.window_policy = WindowPolicy.from_config(stream)
        self.aggregator = EventAggregator(
            self.store,
            self.insight_requester,
            AlertDetector(),
            self.window_policy,
            reminder_timezone=stream.reminder_timezone,
        )
        self.dispatcher = FanOutDispatcher(self.aggregator, self.window_policy)
        self.registry = SubscriptionRegistry(self.dispatcher, min_cadence_ms=stream.min_cadence_ms)
        self.logger.info("streaming_initialized", min_cadence_ms=stream.min_cadence_ms)

    def _init_reminders(self, notifier: Notifier) -> None:
        self.reminder_scheduler = ReminderScheduler(
            self.store,
            self.insight_requester,
            notifier,
            timezone=self.config.stream.reminder_timezone,
            check_interval_seconds=self.config.stream.reminder_check_seconds,
        )
        self.logger.info("reminders_initialized", notifier=type(notifier).__name__)

    async def start(self) -> None:
        """Start the reminder scheduler and the closed-transport sweep."""
        if self._is_running:
            return
        self._is_running = True
        await self.reminder_scheduler.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="subscription-sweep")
        self.logger.info("health_stream_service_started")

    async def stop(self) -> None:
        self._is_running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.reminder_scheduler.stop()
        await self.registry.shutdown()
        self.logger.info("health_stream_service_stopped")

    async def _sweep_loop(self) -> None:
        interval = self.config.stream.min_cadence_ms / 1000 * 10
        while True:
            await asyncio.sleep(interval)
            await self.registry.sweep_closed()

    async def status(self) -> StatusSnapshot:
        """Point-in-time status: store totals, live subscriptions, delivered events."""
        counts_result = await self.store.count_all()
        if counts_result.is_ok():
            counts_by_kind = counts_result.unwrap().model_dump()
            degraded = False
        else:
            self.logger.warning("status_counts_failed", error=str(counts_result.unwrap_err()))
            counts_by_kind = {}
            degraded = True

        if self.insight_requester.circuit_breaker.state == "open":
            degraded = True

        return StatusSnapshot(
            status="degraded" if degraded else "healthy",
            counts_by_kind=counts_by_kind,
            active_subscriptions=len(self.registry.active()),
            events_delivered_by_kind=dict(self.dispatcher.events_delivered_by_kind),
            batches_delivered=self.dispatcher.batches_delivered,
            uptime_seconds=(datetime.now(UTC) - self.started_at).total_seconds(),
        )

    async def live_stats(self, now: datetime | None = None) -> LiveStats | None:
        """Store totals plus today's activity, or None when the store cannot answer."""
        now = now or datetime.now(UTC)
        local_now = now.astimezone(ZoneInfo(self.config.stream.reminder_timezone))
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)

        totals = await self.store.count_all()
        today = await self.store.count_since(day_start)
        if totals.is_err() or today.is_err():
            failure = totals.unwrap_err() if totals.is_err() else today.unwrap_err()
            self.logger.warning("live_stats_unavailable", error=str(failure))
            return None

        return LiveStats(
            timestamp=now,
            totals=totals.unwrap(),
            today=today.unwrap(),
            active_subscriptions=len(self.registry.active()),
            uptime_seconds=max(0.0, (now - self.started_at).total_seconds()),
        )

    async def record_sample(
        self, owner_id: str, category: str, value: str, notes: str | None = None
    ) -> tuple[Sample, str]:
        """
        Store a new sample and ask for advice on it.

        Raises:
            UnknownUser: the owner is not registered
        """
        sample = await self.store.add_sample(
            Sample(owner_id=owner_id, category=category, value=value, notes=notes)
        )
        advice = await self.insight_requester.record_advice(sample)
        return sample, advice

    async def user_insights(self, user_id: str, days: int = 7) -> UserInsightReport:
        """
        Detailed insight and trends over the last `days` days.

        Raises:
            UnknownUser: the user is not registered
        """
        user = await self.store.get_user(user_id)
        if user is None:
            raise UnknownUser(user_id)

        since = datetime.now(UTC) - timedelta(days=days)
        samples = (await self.store.query_samples(Scope.for_user(user_id), since)).unwrap_or([])

        if not samples:
            return UserInsightReport(
                user_id=user_id,
                username=user.username,
                period_days=days,
                data_points=0,
                message=NO_DATA_MESSAGE,
                suggestion=NO_DATA_SUGGESTION,
            )

        trends = analyze_trends(samples)
        insights = await self.insight_requester.detailed_insight(samples, trends, days)
        return UserInsightReport(
            user_id=user_id,
            username=user.username,
            period_days=days,
            data_points=len(samples),
            insights=insights,
            trends=trends,
        )
