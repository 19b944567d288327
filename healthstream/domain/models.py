"""
Domain models for the health event stream.

These models represent the core business concepts and are framework-agnostic.
Everything here is an immutable value object: samples and reminders are read from
the snapshot store, events and alerts are built fresh on every tick.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

BatchType = Literal["health-update", "user-health-update"]


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ScopeKind(str, Enum):
    """Who a subscription is entitled to see."""

    GLOBAL = "global"
    USER = "user"


class Scope(BaseModel):
    """Either system-wide or limited to one owner."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind = ScopeKind.GLOBAL
    owner_id: str | None = None

    @model_validator(mode="after")
    def owner_matches_kind(self) -> "Scope":
        if self.kind == ScopeKind.USER and not self.owner_id:
            raise ValueError("user scope requires an owner_id")
        if self.kind == ScopeKind.GLOBAL and self.owner_id is not None:
            raise ValueError("global scope cannot carry an owner_id")
        return self

    @classmethod
    def everyone(cls) -> "Scope":
        return cls()

    @classmethod
    def for_user(cls, owner_id: str) -> "Scope":
        return cls(kind=ScopeKind.USER, owner_id=owner_id)

    @property
    def is_global(self) -> bool:
        return self.kind == ScopeKind.GLOBAL

    def includes(self, owner_id: str) -> bool:
        return self.is_global or owner_id == self.owner_id

    def __str__(self) -> str:
        return "global" if self.is_global else f"user:{self.owner_id}"


class Severity(str, Enum):
    """Ordinal alert urgency, LOW < MEDIUM < HIGH."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class User(BaseModel):
    """A person whose samples and reminders are tracked."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    username: str
    created_at: datetime = Field(default_factory=_utc_now)


class Sample(BaseModel):
    """Single user-submitted health reading.

    `value` is kept as the raw string the user typed ("72", "120/80", "felt dizzy");
    numeric analyses try to parse it and treat failures as an expected case.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    category: str = Field(min_length=1)
    value: str
    recorded_at: datetime = Field(default_factory=_utc_now)
    owner_id: str = Field(min_length=1)
    notes: str | None = None

    @field_validator("recorded_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo is not None else v.replace(tzinfo=UTC)


class ReminderFrequency(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class Reminder(BaseModel):
    """Scheduled reminder firing at a wall-clock time of day."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    owner_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    category: str = Field(default="custom")
    frequency: ReminderFrequency = ReminderFrequency.DAILY
    time_of_day: str = Field(pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM")
    is_active: bool = True
    last_sent_at: datetime | None = None


class SnapshotCounts(BaseModel):
    """Totals reported by the snapshot store."""

    model_config = ConfigDict(frozen=True)

    users: int = Field(ge=0)
    samples: int = Field(ge=0)
    active_reminders: int = Field(ge=0)


class ActivityCounts(BaseModel):
    """Samples recorded since a cut-off and how many distinct users recorded them."""

    model_config = ConfigDict(frozen=True)

    samples: int = Field(ge=0)
    active_users: int = Field(ge=0)


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    INSUFFICIENT = "insufficient"
    NON_NUMERIC = "non_numeric"


class TrendResult(BaseModel):
    """Directional trend of one category over a sample window."""

    model_config = ConfigDict(frozen=True)

    category: str
    direction: TrendDirection
    magnitude_percent: float | None = Field(default=None, ge=0.0)
    sample_count: int = Field(default=0, ge=0)

    def describe(self) -> str:
        if self.direction == TrendDirection.INCREASING:
            return f"{self.magnitude_percent:.1f}% increase"
        if self.direction == TrendDirection.DECREASING:
            return f"{self.magnitude_percent:.1f}% decrease"
        if self.direction == TrendDirection.STABLE:
            return "No significant changes"
        if self.direction == TrendDirection.NON_NUMERIC:
            return "Values are not numeric"
        return "Not enough data"


class Alert(BaseModel):
    """A rule hit worth surfacing to the subscriber."""

    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    severity: Severity
    recommendation: str | None = None
    related_sample_id: str | None = None


class EventKind(str, Enum):
    """Event kinds, declared in the order they appear inside a batch."""

    SAMPLE_BATCH = "sample_batch"
    REMINDER_DUE = "reminder_due"
    INSIGHT = "insight"
    ALERT = "alert"


class Event(BaseModel):
    """One typed entry of a batch. Never persisted."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    payload: dict[str, Any]
    occurred_at: datetime = Field(default_factory=_utc_now)
    scope: Scope


class EventBatch(BaseModel):
    """Everything a single tick delivers, written to the transport as one message."""

    model_config = ConfigDict(frozen=True)

    type: BatchType
    subscription_id: str
    scope: Scope
    events: list[Event] = Field(min_length=1)
    sent_at: datetime = Field(default_factory=_utc_now)

    @staticmethod
    def type_for(scope: Scope) -> BatchType:
        return "health-update" if scope.is_global else "user-health-update"


class SubscriptionConfirmed(BaseModel):
    """Control message written once when a subscription is accepted. Not an event batch."""

    model_config = ConfigDict(frozen=True)

    type: Literal["subscription-confirmed"] = "subscription-confirmed"
    subscription_id: str
    scope: Scope
    cadence_ms: int = Field(gt=0)
    timestamp: datetime = Field(default_factory=_utc_now)


class StatusSnapshot(BaseModel):
    """Point-in-time view of the service for the status endpoint."""

    status: Literal["healthy", "degraded"]
    timestamp: datetime = Field(default_factory=_utc_now)
    counts_by_kind: dict[str, int]
    active_subscriptions: int = Field(ge=0)
    events_delivered_by_kind: dict[str, int]
    batches_delivered: int = Field(ge=0)
    uptime_seconds: float = Field(ge=0.0)


class LiveStats(BaseModel):
    """Periodic totals pushed on the live statistics stream."""

    type: Literal["stats-update"] = "stats-update"
    timestamp: datetime = Field(default_factory=_utc_now)
    totals: SnapshotCounts
    today: ActivityCounts
    active_subscriptions: int = Field(ge=0)
    uptime_seconds: float = Field(ge=0.0)


@dataclass(frozen=True)
class Subscription:
    """A live subscriber. Owned exclusively by the subscription registry.

    A dataclass rather than a pydantic model because `transport` is a live handle
    (socket, queue) that must not be validated or copied.
    """

    scope: Scope
    cadence_ms: int
    transport: Any
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)
