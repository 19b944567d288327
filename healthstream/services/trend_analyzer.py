"""
Per-category trend classification.

The trend is a two-point endpoint comparison: only the oldest and newest sample of a
category are looked at, intermediate readings are ignored. It is cheap and easy to
explain, and it is noisy for series that bounce around.
"""

import math
import re
from collections import defaultdict
from collections.abc import Iterable

from healthstream.domain.models import Sample, TrendDirection, TrendResult

CHANGE_THRESHOLD_PERCENT = 5.0

# Leading number of a reading: "70kg" -> 70, "120/80" -> 120
_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_reading(raw: str) -> float | None:
    """Numeric prefix of a sample value, or None when there is none."""
    match = _LEADING_NUMBER.match(raw)
    if match is None:
        return None
    value = float(match.group())
    return value if math.isfinite(value) else None


def classify_change(percent_change: float) -> TrendDirection:
    """Map a signed percent change onto a direction. Exactly ±5% counts as stable."""
    if percent_change > CHANGE_THRESHOLD_PERCENT:
        return TrendDirection.INCREASING
    if percent_change < -CHANGE_THRESHOLD_PERCENT:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


def analyze_category(category: str, samples: list[Sample]) -> TrendResult:
    """Trend for one category's samples (any order; sorted by time here)."""
    count = len(samples)
    if count < 2:
        return TrendResult(
            category=category, direction=TrendDirection.INSUFFICIENT, sample_count=count
        )

    ordered = sorted(samples, key=lambda s: s.recorded_at)
    first = parse_reading(ordered[0].value)
    last = parse_reading(ordered[-1].value)

    # A zero baseline has no meaningful percent change
    if first is None or last is None or first == 0:
        return TrendResult(
            category=category, direction=TrendDirection.NON_NUMERIC, sample_count=count
        )

    percent_change = (last - first) / first * 100
    return TrendResult(
        category=category,
        direction=classify_change(percent_change),
        magnitude_percent=round(abs(percent_change), 1),
        sample_count=count,
    )


def analyze_trends(samples: Iterable[Sample]) -> list[TrendResult]:
    """Trend per category, in order of each category's first appearance."""
    groups: defaultdict[str, list[Sample]] = defaultdict(list)
    for sample in samples:
        groups[sample.category].append(sample)

    return [analyze_category(category, group) for category, group in groups.items()]
