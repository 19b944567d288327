"""Reminder scheduler: due selection, notification, deactivation, listeners."""

from datetime import UTC, datetime

import pytest

from healthstream.domain.models import Reminder, ReminderFrequency, Scope
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.notifier import LogNotifier
from healthstream.services.reminder_scheduler import ReminderScheduler, compose_notification
from healthstream.services.snapshot_store import InMemorySnapshotStore

NINE = datetime(2026, 3, 14, 9, 0, 15, tzinfo=UTC)


class RecordingNotifier:
    def __init__(self, result: bool = True, raises: bool = False) -> None:
        self.result = result
        self.raises = raises
        self.sent: list[tuple[str, str]] = []

    async def notify(self, target_id: str, message: str) -> bool:
        if self.raises:
            raise ConnectionError("channel down")
        self.sent.append((target_id, message))
        return self.result


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler(
    seeded_store: InMemorySnapshotStore, insight_requester: InsightRequester, notifier: RecordingNotifier
) -> ReminderScheduler:
    return ReminderScheduler(seeded_store, insight_requester, notifier)


async def test_due_reminders_are_sent_to_their_owner(
    scheduler: ReminderScheduler, seeded_store: InMemorySnapshotStore, notifier: RecordingNotifier
) -> None:
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Walk", time_of_day="09:00"))
    await seeded_store.add_reminder(Reminder(owner_id="U2", title="Water", time_of_day="09:00"))
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Sleep", time_of_day="22:00"))

    handled = await scheduler.run_once(NINE)

    assert sorted(r.title for r in handled) == ["Walk", "Water"]
    assert sorted(target for target, _ in notifier.sent) == ["U1", "U2"]
    assert all("Readings look steady." in message for _, message in notifier.sent)


async def test_once_reminder_is_deactivated(
    scheduler: ReminderScheduler, seeded_store: InMemorySnapshotStore
) -> None:
    await seeded_store.add_reminder(
        Reminder(owner_id="U1", title="Refill", time_of_day="09:00", frequency=ReminderFrequency.ONCE)
    )

    await scheduler.run_once(NINE)

    due = (await seeded_store.query_due_reminders(Scope.everyone(), "09:00")).unwrap()
    assert due == []


async def test_daily_reminder_sent_once_per_minute(
    scheduler: ReminderScheduler, seeded_store: InMemorySnapshotStore, notifier: RecordingNotifier
) -> None:
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Walk", time_of_day="09:00"))

    await scheduler.run_once(NINE)
    await scheduler.run_once(NINE.replace(second=45))

    assert len(notifier.sent) == 1
    due = (await seeded_store.query_due_reminders(Scope.everyone(), "09:00")).unwrap()
    assert due[0].last_sent_at is not None


@pytest.mark.parametrize("failing", [RecordingNotifier(result=False), RecordingNotifier(raises=True)])
async def test_failed_notification_is_not_retried(
    seeded_store: InMemorySnapshotStore, insight_requester: InsightRequester, failing: RecordingNotifier
) -> None:
    scheduler = ReminderScheduler(seeded_store, insight_requester, failing)
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Walk", time_of_day="09:00"))

    assert len(await scheduler.run_once(NINE)) == 1
    assert await scheduler.run_once(NINE) == []
    assert scheduler.notification_failures == 1
    assert scheduler.reminders_sent == 0


async def test_listeners_receive_reminder_and_message(
    scheduler: ReminderScheduler, seeded_store: InMemorySnapshotStore
) -> None:
    received = []

    async def listener(reminder: Reminder, message: str) -> None:
        received.append((reminder.title, message))

    async def broken_listener(reminder: Reminder, message: str) -> None:
        raise RuntimeError("listener bug")

    scheduler.on_reminder(broken_listener)
    scheduler.on_reminder(listener)
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Walk", time_of_day="09:00"))

    await scheduler.run_once(NINE)

    assert [title for title, _ in received] == ["Walk"]


async def test_timezone_shifts_the_due_minute(
    seeded_store: InMemorySnapshotStore, insight_requester: InsightRequester, notifier: RecordingNotifier
) -> None:
    scheduler = ReminderScheduler(seeded_store, insight_requester, notifier, timezone="America/New_York")
    await seeded_store.add_reminder(Reminder(owner_id="U1", title="Walk", time_of_day="05:00"))

    assert [r.title for r in await scheduler.run_once(NINE)] == ["Walk"]


async def test_start_and_stop(scheduler: ReminderScheduler) -> None:
    await scheduler.start()
    assert scheduler._task is not None
    await scheduler.stop()
    assert scheduler._task is None


async def test_log_notifier_always_succeeds() -> None:
    notifier = LogNotifier()
    assert await notifier.notify("U1", "hello") is True
    assert notifier.sent == 1


def test_compose_notification_includes_description_and_motivation() -> None:
    reminder = Reminder(owner_id="U1", title="Walk", description="30 minutes", time_of_day="09:00")
    message = compose_notification(reminder, "You got this!", NINE)

    assert message.splitlines() == [
        "Health reminder: Walk",
        "30 minutes",
        "You got this!",
        "Time: 2026-03-14 09:00 (daily)",
    ]
