"""
Snapshot store: the read-only query surface the streaming engine consumes.

Key patterns:
- Protocol-based dependency injection (any backend that quacks like a store works)
- Generic Result type for expected failures instead of exceptions
- In-memory implementation for single-process deployments and tests
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Protocol, cast

import structlog
from typing_extensions import TypeVar

from healthstream.domain.errors import SnapshotQueryFailure, UnknownUser
from healthstream.domain.models import ActivityCounts, Reminder, Sample, Scope, SnapshotCounts, User

logger = structlog.get_logger(__name__)

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException, default=Exception)


@dataclass(frozen=True, slots=True)
class Result(Generic[ValueT, ErrorT]):
    """
    Outcome of a store query: a value, or the expected failure that replaced it.

    Queries return this instead of raising so a tick can drop one event kind and
    still deliver the others. `ok(None)` is a valid success.
    """

    _value: ValueT | None = None
    _error: ErrorT | None = None

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(_value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(_error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return not self.is_ok()

    def unwrap(self) -> ValueT:
        """The value, or re-raise the stored failure."""
        if self._error is not None:
            raise self._error
        return cast(ValueT, self._value)

    def unwrap_or(self, default: ValueT) -> ValueT:
        return default if self.is_err() else cast(ValueT, self._value)

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("unwrap_err() called on a successful result")
        return self._error


class SnapshotStore(Protocol):
    """
    Read surface over samples, reminders and users.

    Queries are the only suspension points of a tick besides insight generation,
    so every method is async.
    """

    async def query_samples(
        self, scope: Scope, since: datetime
    ) -> Result[list[Sample], SnapshotQueryFailure]:
        """Samples visible to `scope` recorded at or after `since`, oldest first."""
        ...

    async def query_due_reminders(
        self, scope: Scope, now_minute: str
    ) -> Result[list[Reminder], SnapshotQueryFailure]:
        """Active reminders visible to `scope` whose time of day equals `now_minute` (HH:MM)."""
        ...

    async def count_all(self) -> Result[SnapshotCounts, SnapshotQueryFailure]:
        """Totals of users, samples and active reminders."""
        ...

    async def count_since(self, since: datetime) -> Result[ActivityCounts, SnapshotQueryFailure]:
        """Samples recorded at or after `since` and the distinct owners behind them."""
        ...


class InMemorySnapshotStore:
    """
    Process-local store holding users, samples and reminders in dictionaries.

    Reads take a consistent copy under the lock and filter outside it; writes are
    serialized so that concurrent ticks never observe a half-applied update.
    """

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._samples: list[Sample] = []
        self._reminders: dict[str, Reminder] = {}
        self._lock = asyncio.Lock()
        self.logger = logger.bind(component="snapshot_store")

    # Write side

    async def add_user(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user
        self.logger.info("user_added", owner_id=user.id)
        return user

    async def get_user(self, owner_id: str) -> User | None:
        async with self._lock:
            return self._users.get(owner_id)

    async def add_sample(self, sample: Sample) -> Sample:
        async with self._lock:
            if sample.owner_id not in self._users:
                raise UnknownUser(sample.owner_id)
            self._samples.append(sample)
        self.logger.info("sample_added", owner_id=sample.owner_id, category=sample.category)
        return sample

    async def add_reminder(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            if reminder.owner_id not in self._users:
                raise UnknownUser(reminder.owner_id)
            self._reminders[reminder.id] = reminder
        self.logger.info("reminder_added", owner_id=reminder.owner_id, time=reminder.time_of_day)
        return reminder

    async def deactivate_reminder(self, reminder_id: str) -> None:
        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is not None:
                self._reminders[reminder_id] = reminder.model_copy(update={"is_active": False})

    async def mark_reminder_sent(self, reminder_id: str, sent_at: datetime) -> None:
        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is not None:
                self._reminders[reminder_id] = reminder.model_copy(
                    update={"last_sent_at": sent_at}
                )

    # Read side (SnapshotStore protocol)

    async def query_samples(
        self, scope: Scope, since: datetime
    ) -> Result[list[Sample], SnapshotQueryFailure]:
        try:
            async with self._lock:
                samples = list(self._samples)
            visible = [s for s in samples if scope.includes(s.owner_id) and s.recorded_at >= since]
            visible.sort(key=lambda s: s.recorded_at)
            return Result.ok(visible)
        except Exception as e:
            self.logger.exception("sample_query_failed", scope=str(scope), error=str(e))
            return Result.err(SnapshotQueryFailure("query_samples", e))

    async def query_due_reminders(
        self, scope: Scope, now_minute: str
    ) -> Result[list[Reminder], SnapshotQueryFailure]:
        try:
            async with self._lock:
                reminders = list(self._reminders.values())
            due = [
                r
                for r in reminders
                if r.is_active and r.time_of_day == now_minute and scope.includes(r.owner_id)
            ]
            due.sort(key=lambda r: (r.time_of_day, r.title))
            return Result.ok(due)
        except Exception as e:
            self.logger.exception("reminder_query_failed", scope=str(scope), error=str(e))
            return Result.err(SnapshotQueryFailure("query_due_reminders", e))

    async def count_all(self) -> Result[SnapshotCounts, SnapshotQueryFailure]:
        try:
            async with self._lock:
                counts = SnapshotCounts(
                    users=len(self._users),
                    samples=len(self._samples),
                    active_reminders=sum(1 for r in self._reminders.values() if r.is_active),
                )
            return Result.ok(counts)
        except Exception as e:
            self.logger.exception("count_query_failed", error=str(e))
            return Result.err(SnapshotQueryFailure("count_all", e))

    async def count_since(self, since: datetime) -> Result[ActivityCounts, SnapshotQueryFailure]:
        try:
            async with self._lock:
                recent = [s for s in self._samples if s.recorded_at >= since]
            counts = ActivityCounts(
                samples=len(recent), active_users=len({s.owner_id for s in recent})
            )
            return Result.ok(counts)
        except Exception as e:
            self.logger.exception("activity_count_failed", since=str(since), error=str(e))
            return Result.err(SnapshotQueryFailure("count_since", e))
