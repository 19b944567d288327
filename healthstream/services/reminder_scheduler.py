"""
Reminder scheduler: once per wall-clock minute, notify owners of due reminders.

Independent of subscriptions. A reminder is sent at most once per minute even if the
check runs more often; `once` reminders are deactivated after their first send.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

import structlog

from healthstream.domain.models import Reminder, ReminderFrequency, Scope
from healthstream.services.insight_requester import InsightRequester
from healthstream.services.notifier import Notifier
from healthstream.services.snapshot_store import InMemorySnapshotStore

logger = structlog.get_logger(__name__)

ReminderListener = Callable[[Reminder, str], Awaitable[None]]


def compose_notification(reminder: Reminder, motivation: str, now: datetime) -> str:
    lines = [f"Health reminder: {reminder.title}"]
    if reminder.description:
        lines.append(reminder.description)
    lines.append(motivation)
    lines.append(f"Time: {now.strftime('%Y-%m-%d %H:%M')} ({reminder.frequency.value})")
    return "\n".join(lines)


class ReminderScheduler:
    def __init__(
        self,
        store: InMemorySnapshotStore,
        insight_requester: InsightRequester,
        notifier: Notifier,
        timezone: str = "UTC",
        check_interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.insight_requester = insight_requester
        self.notifier = notifier
        self.tz = ZoneInfo(timezone)
        self.check_interval_seconds = check_interval_seconds
        self.listeners: list[ReminderListener] = []
        self._task: asyncio.Task | None = None
        self.logger = logger.bind(component="reminder_scheduler")

        self.reminders_sent = 0
        self.notification_failures = 0

    def on_reminder(self, listener: ReminderListener) -> None:
        """Register a coroutine called with (reminder, message) after each send."""
        self.listeners.append(listener)

    async def run_once(self, now: datetime | None = None) -> list[Reminder]:
        """Process the reminders due at `now`'s minute. Returns the ones handled."""
        local_now = (now or datetime.now(UTC)).astimezone(self.tz)
        minute = local_now.strftime("%H:%M")

        result = await self.store.query_due_reminders(Scope.everyone(), minute)
        if result.is_err():
            self.logger.error("due_reminder_query_failed", minute=minute, error=str(result.unwrap_err()))
            return []

        handled = []
        for reminder in result.unwrap():
            if _already_sent_this_minute(reminder, local_now):
                continue
            await self._send(reminder, local_now)
            handled.append(reminder)

        if handled:
            self.logger.info("reminders_processed", minute=minute, count=len(handled))
        return handled

    async def _send(self, reminder: Reminder, local_now: datetime) -> None:
        log = self.logger.bind(reminder_id=reminder.id, owner_id=reminder.owner_id)

        motivation = await self.insight_requester.reminder_message(reminder)
        message = compose_notification(reminder, motivation, local_now)

        try:
            delivered = await self.notifier.notify(reminder.owner_id, message)
        except Exception as e:
            log.exception("reminder_notify_raised", error=str(e))
            delivered = False

        if delivered:
            self.reminders_sent += 1
            log.info("reminder_sent", title=reminder.title)
        else:
            self.notification_failures += 1
            log.warning("reminder_not_delivered", title=reminder.title)

        # No retry: the reminder counts as handled for this minute either way
        await self.store.mark_reminder_sent(reminder.id, local_now.astimezone(UTC))
        if reminder.frequency == ReminderFrequency.ONCE:
            await self.store.deactivate_reminder(reminder.id)
            log.info("one_time_reminder_deactivated")

        for listener in self.listeners:
            try:
                await listener(reminder, message)
            except Exception as e:
                log.exception("reminder_listener_failed", error=str(e))

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="reminder-scheduler")
            self.logger.info("reminder_scheduler_started", interval=self.check_interval_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            self.logger.info("reminder_scheduler_stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                self.logger.exception("reminder_check_failed", error=str(e))
            await asyncio.sleep(self.check_interval_seconds)


def _already_sent_this_minute(reminder: Reminder, local_now: datetime) -> bool:
    if reminder.last_sent_at is None:
        return False
    sent = reminder.last_sent_at.astimezone(local_now.tzinfo)
    return sent.replace(second=0, microsecond=0) == local_now.replace(second=0, microsecond=0)
