"""Reminder dispatch: decide which reminders are due and deliver them once.

Each tick re-reads the pending reminders from the store, so the dispatcher
holds no authoritative state between ticks.  A ``reminder_dispatches`` row
is written only after the messaging collaborator confirmed delivery; a crash
between the two is the only window for a duplicate, and the Matrix
transaction id derived from ``(reminder_id, occurrence)`` lets the
homeserver collapse that resend as well.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Protocol

from calendar_bot.core.logging import set_reminder_context
from calendar_bot.core.telemetry import traced
from calendar_bot.models import PendingReminder
from calendar_bot.reminders.render import RenderedMessage, render_reminder

logger = logging.getLogger(__name__)


class Eligibility(StrEnum):
    PENDING = "pending"
    DUE = "due"
    STALE = "stale"


class ReminderStore(Protocol):
    async def get_pending_reminders(self, now: datetime) -> list[PendingReminder]: ...

    async def record_dispatch(
        self, reminder_id: int, occurrence: datetime, sent_at: datetime | None = None
    ) -> bool: ...

    async def get_user_mappings(self) -> dict[str, str]: ...


class Messenger(Protocol):
    async def send(self, room: str, message: RenderedMessage, *, txn_id: str) -> str: ...


@dataclass(frozen=True)
class DispatchReport:
    sent: int = 0
    failed: int = 0
    stale: int = 0

    @property
    def due(self) -> int:
        return self.sent + self.failed


def trigger_time(occurrence: datetime, minutes_before: int) -> datetime:
    """Return the instant a reminder for *occurrence* should fire."""
    return occurrence - timedelta(minutes=minutes_before)


def classify(trigger: datetime, now: datetime, grace: timedelta) -> Eligibility:
    """Classify a reminder by where *now* falls relative to its trigger time.

    Reminders are due from the trigger time until ``grace`` after it; later
    than that they are stale and are skipped rather than sent late.
    """
    if now < trigger:
        return Eligibility.PENDING
    if now - trigger > grace:
        return Eligibility.STALE
    return Eligibility.DUE


def transaction_id(reminder_id: int, occurrence: datetime) -> str:
    """Deterministic Matrix transaction id for one reminder occurrence."""
    key = f"{reminder_id}:{occurrence.astimezone(UTC).isoformat()}"
    return f"reminder-{reminder_id}-{hashlib.sha256(key.encode('utf-8')).hexdigest()[:24]}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ReminderDispatcher:
    """Delivers due reminders through a :class:`Messenger`."""

    def __init__(
        self,
        store: ReminderStore,
        messenger: Messenger,
        *,
        grace: timedelta = timedelta(minutes=15),
        max_concurrency: int = 8,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._messenger = messenger
        self._grace = grace
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock
        # Only used to avoid repeating the same stale warning every tick.
        self._reported_stale: set[tuple[int, datetime]] = set()

    async def tick(self) -> DispatchReport:
        """Evaluate all pending reminders once and deliver the due ones.

        Store failures while listing reminders propagate; failures of a
        single delivery are logged and counted.
        """
        now = self._clock()
        with traced("reminders.tick") as span:
            pending = await self._store.get_pending_reminders(now)
            due: list[PendingReminder] = []
            stale_keys: set[tuple[int, datetime]] = set()
            for reminder in pending:
                trigger = trigger_time(reminder.occurrence, reminder.minutes_before)
                eligibility = classify(trigger, now, self._grace)
                if eligibility is Eligibility.DUE:
                    due.append(reminder)
                elif eligibility is Eligibility.STALE:
                    key = (reminder.reminder_id, reminder.occurrence)
                    stale_keys.add(key)
                    if key not in self._reported_stale:
                        logger.warning(
                            "Skipping stale reminder %d for %s: trigger time %s is more "
                            "than %s in the past",
                            reminder.reminder_id,
                            reminder.occurrence.isoformat(),
                            trigger.isoformat(),
                            self._grace,
                        )
            self._reported_stale = stale_keys

            mappings: Mapping[str, str] = {}
            if due:
                mappings = await self._store.get_user_mappings()
            results = await asyncio.gather(
                *(self._deliver(reminder, mappings, now) for reminder in due)
            )
            report = DispatchReport(
                sent=sum(1 for ok in results if ok),
                failed=sum(1 for ok in results if not ok),
                stale=len(stale_keys),
            )
            span.set_attribute("due", report.due)
            span.set_attribute("sent", report.sent)
            span.set_attribute("failed", report.failed)
            span.set_attribute("stale", report.stale)

        if report.due or report.stale:
            logger.info(
                "Reminder tick: %d sent, %d failed, %d stale",
                report.sent,
                report.failed,
                report.stale,
            )
        return report

    async def _deliver(
        self, reminder: PendingReminder, mappings: Mapping[str, str], now: datetime
    ) -> bool:
        async with self._semaphore:
            set_reminder_context(reminder.reminder_id)
            try:
                message = render_reminder(reminder, mappings, now=now)
                await self._messenger.send(
                    reminder.room,
                    message,
                    txn_id=transaction_id(reminder.reminder_id, reminder.occurrence),
                )
                await self._store.record_dispatch(
                    reminder.reminder_id, reminder.occurrence, self._clock()
                )
            except Exception:
                logger.exception(
                    "Failed to deliver reminder %d for event %s",
                    reminder.reminder_id,
                    reminder.event_id,
                )
                return False
            finally:
                set_reminder_context(None)
            logger.info(
                "Sent reminder %d for event %s (occurrence %s)",
                reminder.reminder_id,
                reminder.event_id,
                reminder.occurrence.isoformat(),
            )
            return True
