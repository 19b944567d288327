"""
Per-tick event aggregation.

One call to `EventAggregator.aggregate` is one tick's worth of work for one scope:
1. Query recent samples for the scope's lookback window
2. SampleBatch: count, most recent sample, per-category summary and trends
3. ReminderDue: reminders set for the current wall-clock minute
4. Insight: generated text for the sample window (fallback text on failure)
5. Alert: rule hits over the same window with their aggregate severity

Each step is an error boundary of its own: a failing step is logged and yields no
event, the remaining steps still run.
"""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, Field

from healthstream.config import StreamConfig
from healthstream.domain.models import Event, EventKind, Sample, Scope, TrendResult
from healthstream.services.alert_detector import AlertDetector, max_severity
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.snapshot_store import SnapshotStore
from healthstream.services.trend_analyzer import analyze_trends

logger = structlog.get_logger(__name__)


class WindowPolicy(BaseModel):
    """How far back each scope looks. Governs recency filtering, not cadence."""

    global_lookback: timedelta = Field(default=timedelta(hours=1))
    user_lookback: timedelta = Field(default=timedelta(hours=24))

    @classmethod
    def from_config(cls, config: StreamConfig) -> "WindowPolicy":
        return cls(
            global_lookback=timedelta(minutes=config.global_lookback_minutes),
            user_lookback=timedelta(minutes=config.user_lookback_minutes),
        )

    def lookback_for(self, scope: Scope) -> timedelta:
        return self.global_lookback if scope.is_global else self.user_lookback


def summarize_samples(samples: Sequence[Sample]) -> dict[str, dict]:
    """category -> {count, most_recent}, categories in order of first appearance."""
    summary: dict[str, dict] = {}
    for sample in samples:
        entry = summary.setdefault(sample.category, {"count": 0, "most_recent": None})
        entry["count"] += 1
        latest = entry["most_recent"]
        if latest is None or sample.recorded_at >= latest.recorded_at:
            entry["most_recent"] = sample

    return {
        category: {
            "count": entry["count"],
            "most_recent": entry["most_recent"].model_dump(mode="json"),
        }
        for category, entry in summary.items()
    }


class EventAggregator:
    """Turns a snapshot of the store into an ordered batch of typed events."""

    def __init__(
        self,
        store: SnapshotStore,
        insight_requester: InsightRequester,
        alert_detector: AlertDetector | None = None,
        window_policy: WindowPolicy | None = None,
        reminder_timezone: str = "UTC",
    ) -> None:
        self.store = store
        self.insight_requester = insight_requester
        self.alert_detector = alert_detector or AlertDetector()
        self.window_policy = window_policy or WindowPolicy()
        self.reminder_tz = ZoneInfo(reminder_timezone)
        self.logger = logger.bind(component="event_aggregator")

    async def aggregate(
        self,
        scope: Scope,
        window_policy: WindowPolicy | None = None,
        now: datetime | None = None,
    ) -> list[Event]:
        """Build this tick's events in fixed order, omitting kinds that produced nothing."""
        policy = window_policy or self.window_policy
        now = now or datetime.now(UTC)
        local_now = now.astimezone(self.reminder_tz)
        log = self.logger.bind(scope=str(scope))

        samples = await self._load_samples(scope, now - policy.lookback_for(scope))
        trends = self._trends(samples)

        events: list[Event] = []
        for kind, build in (
            (EventKind.SAMPLE_BATCH, lambda: self._sample_batch(samples, trends)),
            (EventKind.REMINDER_DUE, lambda: self._reminders_due(scope, local_now)),
            (EventKind.INSIGHT, lambda: self._insight(samples, trends)),
            (EventKind.ALERT, lambda: self._alerts(samples, local_now)),
        ):
            try:
                payload = await build()
            except Exception as e:
                log.exception("aggregation_step_failed", kind=kind.value, error=str(e))
                continue
            if payload is not None:
                events.append(Event(kind=kind, payload=payload, occurred_at=now, scope=scope))

        log.debug(
            "aggregation_completed",
            sample_count=len(samples),
            kinds=[e.kind.value for e in events],
        )
        return events

    async def _load_samples(self, scope: Scope, since: datetime) -> list[Sample]:
        try:
            result = await self.store.query_samples(scope, since)
        except Exception as e:
            self.logger.exception("sample_query_raised", scope=str(scope), error=str(e))
            return []
        if result.is_err():
            self.logger.warning(
                "sample_query_failed", scope=str(scope), error=str(result.unwrap_err())
            )
            return []
        return result.unwrap()

    def _trends(self, samples: list[Sample]) -> list[TrendResult]:
        try:
            return analyze_trends(samples)
        except Exception as e:
            self.logger.exception("trend_analysis_failed", error=str(e))
            return []

    async def _sample_batch(self, samples: list[Sample], trends: list[TrendResult]) -> dict | None:
        if not samples:
            return None
        return {
            "count": len(samples),
            "most_recent": samples[-1].model_dump(mode="json"),
            "summary": summarize_samples(samples),
            "trends": [t.model_dump(mode="json") for t in trends],
            "time_range": {
                "from": samples[0].recorded_at.isoformat(),
                "to": samples[-1].recorded_at.isoformat(),
            },
        }

    async def _reminders_due(self, scope: Scope, local_now: datetime) -> dict | None:
        now_minute = local_now.strftime("%H:%M")
        result = await self.store.query_due_reminders(scope, now_minute)
        if result.is_err():
            raise result.unwrap_err()

        reminders = sorted(result.unwrap(), key=lambda r: r.time_of_day)
        if not reminders:
            return None
        upcoming = [r.model_dump(mode="json") for r in reminders]
        return {"minute": now_minute, "upcoming": upcoming, "next_reminder": upcoming[0]}

    async def _insight(self, samples: list[Sample], trends: list[TrendResult]) -> dict | None:
        if not samples:
            return None
        text = await self.insight_requester.batch_insight(samples, trends)
        return {"insights": text, "based_on": len(samples)}

    async def _alerts(self, samples: list[Sample], local_now: datetime) -> dict | None:
        alerts = self.alert_detector.detect(samples, local_now)
        if not alerts:
            return None
        return {
            "alerts": [a.model_dump(mode="json") for a in alerts],
            "severity": max_severity(alerts).value,
        }
