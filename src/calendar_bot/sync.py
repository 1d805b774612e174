"""Sync reconciler: bring stored events and next occurrences in line with a feed.

One sync of one calendar is: resolve credentials, fetch, parse, diff against
the stored rows and apply the diff in a single transaction.  The diff itself
is a pure function (:func:`diff_calendar`) so reconciliation can be tested
without a database.

:class:`SyncScheduler` drives syncs: one task per calendar so syncs of the
same calendar never overlap, and a shared semaphore bounding how many
calendars are fetched at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Protocol

from calendar_bot.core.logging import set_calendar_context
from calendar_bot.core.telemetry import traced
from calendar_bot.ical.fetcher import Credential, FeedUnauthorizedError, FetchError
from calendar_bot.ical.parser import MalformedFeedError, parse_feed
from calendar_bot.ical.recurrence import EventDefinition, next_occurrence
from calendar_bot.models import Calendar, NextOccurrence, StoredEvent

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(days=730)


class SyncStore(Protocol):
    async def list_calendars(self) -> list[Calendar]: ...

    async def get_calendar(self, calendar_id: int) -> Calendar | None: ...

    async def load_events(self, calendar_id: int) -> dict[str, StoredEvent]: ...

    async def load_next_occurrences(self, calendar_id: int) -> dict[str, NextOccurrence]: ...

    async def apply_sync_changes(self, calendar_id: int, changes: SyncChanges) -> None: ...


class Fetcher(Protocol):
    async def fetch(self, url: str, credential: Credential | None) -> bytes: ...


class Credentials(Protocol):
    async def resolve(self, calendar: Calendar) -> Credential | None: ...

    async def refresh(self, account_id: int) -> None: ...


@dataclass
class SyncChanges:
    """Row-level changes needed to make the store match a parsed feed."""

    inserts: list[StoredEvent] = field(default_factory=list)
    updates: list[StoredEvent] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    next_upserts: list[NextOccurrence] = field(default_factory=list)
    next_deletes: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (
            self.inserts or self.updates or self.deletes or self.next_upserts or self.next_deletes
        )


@dataclass(frozen=True)
class SyncResult:
    calendar_id: int
    events: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    next_upserted: int = 0
    next_deleted: int = 0

    @property
    def changed(self) -> bool:
        return any(
            (self.inserted, self.updated, self.deleted, self.next_upserted, self.next_deleted)
        )


def event_row(calendar_id: int, event: EventDefinition) -> StoredEvent:
    """Build the stored form of a parsed event."""
    return StoredEvent(
        calendar_id=calendar_id,
        event_id=event.uid,
        summary=event.summary,
        description=event.description,
        location=event.location,
        organizer=event.organizer,
        attendees=list(event.attendees),
        start=event.start,
        timezone=event.timezone_name,
        all_day=event.all_day,
        recurrence=event.recurrence.to_json(),
    )


def diff_calendar(
    calendar_id: int,
    stored_events: Mapping[str, StoredEvent],
    stored_next: Mapping[str, NextOccurrence],
    parsed: Sequence[EventDefinition],
    now: datetime,
    horizon: timedelta = DEFAULT_HORIZON,
) -> SyncChanges:
    """Compute the changes that make stored state match *parsed*.

    Rows that already match produce no change, so diffing a feed against the
    state it produced yields an empty :class:`SyncChanges`.  Next-occurrence
    rows of deleted events are left to the cascade.
    """
    changes = SyncChanges()
    seen: set[str] = set()

    for event in parsed:
        seen.add(event.uid)
        row = event_row(calendar_id, event)
        existing = stored_events.get(event.uid)
        if existing is None:
            changes.inserts.append(row)
        elif existing.model_dump() != row.model_dump():
            changes.updates.append(row)

        upcoming = next_occurrence(event, now, horizon)
        current = stored_next.get(event.uid)
        if upcoming is None:
            if current is not None:
                changes.next_deletes.append(event.uid)
            continue
        timestamp, attendees = upcoming
        candidate = NextOccurrence(
            calendar_id=calendar_id,
            event_id=event.uid,
            timestamp=timestamp,
            attendees=list(attendees),
        )
        if current is None or current.model_dump() != candidate.model_dump():
            changes.next_upserts.append(candidate)

    changes.deletes = sorted(set(stored_events) - seen)
    return changes


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CalendarSyncer:
    """Runs a single sync of one calendar."""

    def __init__(
        self,
        store: SyncStore,
        fetcher: Fetcher,
        credentials: Credentials,
        *,
        horizon: timedelta = DEFAULT_HORIZON,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._credentials = credentials
        self._horizon = horizon
        self._clock = clock

    async def _fetch(self, calendar: Calendar) -> bytes:
        credential = await self._credentials.resolve(calendar)
        try:
            return await self._fetcher.fetch(calendar.url, credential)
        except FeedUnauthorizedError:
            account_id = calendar.oauth2_account_id
            if account_id is None:
                raise
            logger.info(
                "Calendar %d rejected its OAuth2 token; refreshing and retrying once",
                calendar.calendar_id,
            )
            await self._credentials.refresh(account_id)
            credential = await self._credentials.resolve(calendar)
            return await self._fetcher.fetch(calendar.url, credential)

    async def sync_calendar(self, calendar: Calendar) -> SyncResult:
        """Fetch, parse and reconcile *calendar*.

        Raises
        ------
        FetchError
            The feed could not be retrieved.
        MalformedFeedError
            The feed could not be parsed; stored state is left untouched.
        """
        calendar_id = calendar.calendar_id
        with traced("calendar.sync", calendar_id=calendar_id) as span:
            raw = await self._fetch(calendar)
            events = parse_feed(raw)

            stored_events = await self._store.load_events(calendar_id)
            stored_next = await self._store.load_next_occurrences(calendar_id)
            changes = diff_calendar(
                calendar_id, stored_events, stored_next, events, self._clock(), self._horizon
            )
            await self._store.apply_sync_changes(calendar_id, changes)

            result = SyncResult(
                calendar_id=calendar_id,
                events=len(events),
                inserted=len(changes.inserts),
                updated=len(changes.updates),
                deleted=len(changes.deletes),
                next_upserted=len(changes.next_upserts),
                next_deleted=len(changes.next_deletes),
            )
            span.set_attribute("events", result.events)
            span.set_attribute("inserted", result.inserted)
            span.set_attribute("updated", result.updated)
            span.set_attribute("deleted", result.deleted)

        if result.changed:
            logger.info(
                "Synced calendar %d: %d events, %d inserted, %d updated, %d deleted",
                calendar_id,
                result.events,
                result.inserted,
                result.updated,
                result.deleted,
            )
        else:
            logger.debug("Synced calendar %d: no changes", calendar_id)
        return result


class SyncScheduler:
    """Periodically syncs every calendar with bounded parallelism."""

    def __init__(
        self,
        syncer: CalendarSyncer,
        store: SyncStore,
        *,
        interval: float = 300.0,
        max_concurrency: int = 8,
        timeout: float = 120.0,
    ) -> None:
        self._syncer = syncer
        self._store = store
        self._interval = interval
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[int, asyncio.Task] = {}

    async def sync_once(self, calendar: Calendar) -> SyncResult | Exception:
        """Sync *calendar* inside its own error boundary.

        Returns the result, or the exception that ended the sync.
        """
        set_calendar_context(calendar.calendar_id)
        try:
            async with self._semaphore:
                return await asyncio.wait_for(
                    self._syncer.sync_calendar(calendar), timeout=self._timeout
                )
        except TimeoutError as exc:
            logger.error(
                "Sync of calendar %d abandoned after %ss", calendar.calendar_id, self._timeout
            )
            return exc
        except MalformedFeedError as exc:
            logger.error(
                "Calendar %d returned a malformed feed; stored state left untouched: %s",
                calendar.calendar_id,
                exc,
            )
            return exc
        except FetchError as exc:
            logger.warning("Fetching calendar %d failed: %s", calendar.calendar_id, exc)
            return exc
        except Exception as exc:
            logger.exception("Sync of calendar %d failed", calendar.calendar_id)
            return exc
        finally:
            set_calendar_context(None)

    async def run_round(self) -> dict[int, SyncResult | Exception]:
        """Sync all calendars once, concurrently, and report per-calendar outcomes."""
        calendars = await self._store.list_calendars()
        results = await asyncio.gather(*(self.sync_once(c) for c in calendars))
        return {c.calendar_id: r for c, r in zip(calendars, results, strict=True)}

    async def _calendar_loop(self, calendar_id: int) -> None:
        set_calendar_context(calendar_id)
        while True:
            try:
                calendar = await self._store.get_calendar(calendar_id)
            except Exception:
                logger.exception("Could not load calendar %d", calendar_id)
            else:
                if calendar is None:
                    logger.info("Calendar %d was removed; stopping its sync loop", calendar_id)
                    return
                await self.sync_once(calendar)
            await asyncio.sleep(self._interval)

    async def _refresh_tasks(self) -> None:
        calendars = await self._store.list_calendars()
        wanted = {c.calendar_id for c in calendars}
        for calendar_id, task in list(self._tasks.items()):
            if calendar_id not in wanted or task.done():
                task.cancel()
                del self._tasks[calendar_id]
        for calendar_id in sorted(wanted - self._tasks.keys()):
            logger.info("Starting sync loop for calendar %d", calendar_id)
            self._tasks[calendar_id] = asyncio.create_task(
                self._calendar_loop(calendar_id), name=f"calendar-sync-{calendar_id}"
            )

    async def run(self) -> None:
        """Run per-calendar sync loops until cancelled.

        The calendar list is re-read every interval so calendars added or
        removed through the management UI are picked up without a restart.
        """
        logger.info(
            "Calendar sync scheduler started (interval=%ss, timeout=%ss)",
            self._interval,
            self._timeout,
        )
        try:
            while True:
                try:
                    await self._refresh_tasks()
                except Exception:
                    logger.exception("Failed to refresh the calendar list")
                await asyncio.sleep(self._interval)
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Cancel all per-calendar loops and wait for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
