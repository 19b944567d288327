"""
Rule-based alert detection over a sample window.

Rules are independent, additive and all run on every evaluation. Results keep
rule registration order, so adding a rule never reorders what existing rules emit.
"""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import structlog

from healthstream.domain.models import Alert, Sample, Severity

logger = structlog.get_logger(__name__)

AlertRule = Callable[[Sequence[Sample], datetime], list[Alert]]

BLOOD_PRESSURE = "blood pressure"
MEDICATION = "medication"
HIGH_PRESSURE_MARKERS = ("high", "180", "110")


def normalize_category(category: str) -> str:
    """'Blood_Pressure', 'blood-pressure' and 'blood pressure' are the same category."""
    return " ".join(category.replace("_", " ").replace("-", " ").lower().split())


def blood_pressure_rule(samples: Sequence[Sample], now: datetime) -> list[Alert]:
    """One HIGH alert per blood pressure reading that looks dangerously high."""
    alerts = []
    for sample in samples:
        if normalize_category(sample.category) != BLOOD_PRESSURE:
            continue
        value = sample.value.lower()
        if any(marker in value for marker in HIGH_PRESSURE_MARKERS):
            alerts.append(
                Alert(
                    kind="blood_pressure_high",
                    message="High blood pressure reading detected",
                    severity=Severity.HIGH,
                    recommendation="Consider consulting with a healthcare provider",
                    related_sample_id=sample.id,
                )
            )
    return alerts


def missed_medication_rule(samples: Sequence[Sample], now: datetime) -> list[Alert]:
    """At most one MEDIUM alert when the window has data but no medication logged today."""
    if not samples:
        return []

    today = now.date()
    tz = now.tzinfo or UTC
    logged_today = any(
        normalize_category(s.category) == MEDICATION
        and s.recorded_at.astimezone(tz).date() == today
        for s in samples
    )
    if logged_today:
        return []

    return [
        Alert(
            kind="medication_reminder",
            message="No medication records found for today",
            severity=Severity.MEDIUM,
            recommendation="Don't forget to log your medications",
        )
    ]


DEFAULT_RULES: tuple[AlertRule, ...] = (blood_pressure_rule, missed_medication_rule)


class AlertDetector:
    """Evaluates a fixed, ordered set of rules. Pure with respect to its input window."""

    def __init__(self, rules: Sequence[AlertRule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def detect(self, samples: Sequence[Sample], now: datetime | None = None) -> list[Alert]:
        now = now or datetime.now(UTC)
        alerts: list[Alert] = []
        for rule in self.rules:
            alerts.extend(rule(samples, now))
        if alerts:
            logger.debug("alerts_detected", count=len(alerts), window_size=len(samples))
        return alerts


def detect_alerts(samples: Sequence[Sample], now: datetime | None = None) -> list[Alert]:
    """Run the default rule set."""
    return AlertDetector().detect(samples, now)


def max_severity(alerts: Sequence[Alert]) -> Severity:
    """Aggregate severity of a non-empty alert list."""
    if not alerts:
        raise ValueError("max_severity() needs at least one alert")
    return max((a.severity for a in alerts), key=lambda s: s.rank)
