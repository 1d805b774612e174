"""Tests for calendar_bot.sync: diffing, reconciliation and per-calendar isolation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from calendar_bot.ical.fetcher import (
    BearerCredential,
    Credential,
    FeedTransportError,
    FeedUnauthorizedError,
)
from calendar_bot.ical.parser import MalformedFeedError, parse_feed
from calendar_bot.models import Calendar, NextOccurrence, StoredEvent
from calendar_bot.sync import (
    CalendarSyncer,
    SyncChanges,
    SyncResult,
    SyncScheduler,
    diff_calendar,
)

pytestmark = pytest.mark.unit

STANDUP = """
UID:standup
DTSTART:20240101T090000Z
SUMMARY:Standup
RRULE:FREQ=WEEKLY
ATTENDEE;CN=Alice:mailto:alice@example.com
"""
DENTIST = """
UID:dentist
DTSTART:20240110T140000Z
SUMMARY:Dentist
"""


class FakeSyncStore:
    """In-memory store applying diffs like the SQL implementation, cascade included."""

    def __init__(self, calendars: list[Calendar]) -> None:
        self.calendars = {c.calendar_id: c for c in calendars}
        self.events: dict[int, dict[str, StoredEvent]] = {}
        self.next_dates: dict[int, dict[str, NextOccurrence]] = {}
        self.applied: list[SyncChanges] = []

    async def list_calendars(self) -> list[Calendar]:
        return [self.calendars[k] for k in sorted(self.calendars)]

    async def get_calendar(self, calendar_id: int) -> Calendar | None:
        return self.calendars.get(calendar_id)

    async def load_events(self, calendar_id: int) -> dict[str, StoredEvent]:
        return dict(self.events.get(calendar_id, {}))

    async def load_next_occurrences(self, calendar_id: int) -> dict[str, NextOccurrence]:
        return dict(self.next_dates.get(calendar_id, {}))

    async def apply_sync_changes(self, calendar_id: int, changes: SyncChanges) -> None:
        self.applied.append(changes)
        events = self.events.setdefault(calendar_id, {})
        next_dates = self.next_dates.setdefault(calendar_id, {})
        for event_id in changes.deletes:
            events.pop(event_id, None)
            next_dates.pop(event_id, None)
        for event in [*changes.inserts, *changes.updates]:
            events[event.event_id] = event
        for event_id in changes.next_deletes:
            next_dates.pop(event_id, None)
        for nxt in changes.next_upserts:
            next_dates[nxt.event_id] = nxt


class FakeFetcher:
    def __init__(self, feeds: dict[str, bytes | Exception]) -> None:
        self.feeds = feeds
        self.calls: list[tuple[str, Credential | None]] = []

    async def fetch(self, url: str, credential: Credential | None) -> bytes:
        self.calls.append((url, credential))
        feed = self.feeds[url]
        if isinstance(feed, Exception):
            raise feed
        return feed


class FakeCredentials:
    def __init__(self) -> None:
        self.refreshed: list[int] = []
        self.token = "old"

    async def resolve(self, calendar: Calendar) -> Credential | None:
        if calendar.oauth2_account_id is None:
            return None
        return BearerCredential(self.token)

    async def refresh(self, account_id: int) -> None:
        self.refreshed.append(account_id)
        self.token = "new"


def _calendar(calendar_id: int, **kwargs) -> Calendar:
    return Calendar(
        calendar_id=calendar_id,
        user_id=1,
        name=f"cal{calendar_id}",
        url=f"https://dav.example.com/cal{calendar_id}",
        **kwargs,
    )


@pytest.fixture
def store() -> FakeSyncStore:
    return FakeSyncStore([_calendar(1), _calendar(2)])


@pytest.fixture
def fetcher(make_ics) -> FakeFetcher:
    return FakeFetcher(
        {
            "https://dav.example.com/cal1": make_ics(STANDUP, DENTIST),
            "https://dav.example.com/cal2": make_ics(DENTIST),
        }
    )


@pytest.fixture
def syncer(store, fetcher, clock) -> CalendarSyncer:
    return CalendarSyncer(store, fetcher, FakeCredentials(), clock=clock)


# ---------------------------------------------------------------------------
# diff_calendar
# ---------------------------------------------------------------------------


class TestDiffCalendar:
    NOW = datetime(2024, 1, 3, 12, tzinfo=UTC)

    def test_new_events_are_inserted_with_next_occurrence(self, make_ics):
        changes = diff_calendar(1, {}, {}, parse_feed(make_ics(STANDUP, DENTIST)), self.NOW)

        assert sorted(e.event_id for e in changes.inserts) == ["dentist", "standup"]
        nexts = {n.event_id: n.timestamp for n in changes.next_upserts}
        assert nexts == {
            "standup": datetime(2024, 1, 8, 9, tzinfo=UTC),
            "dentist": datetime(2024, 1, 10, 14, tzinfo=UTC),
        }

    def test_past_event_has_no_next_occurrence(self, make_ics):
        changes = diff_calendar(
            1, {}, {}, parse_feed(make_ics(DENTIST)), datetime(2024, 2, 1, tzinfo=UTC)
        )
        assert [e.event_id for e in changes.inserts] == ["dentist"]
        assert changes.next_upserts == []

    def test_next_occurrence_row_removed_once_event_is_past(self, make_ics):
        events = parse_feed(make_ics(DENTIST))
        first = diff_calendar(1, {}, {}, events, self.NOW)
        stored = {e.event_id: e for e in first.inserts}
        stored_next = {n.event_id: n for n in first.next_upserts}

        later = diff_calendar(1, stored, stored_next, events, datetime(2024, 2, 1, tzinfo=UTC))

        assert later.next_deletes == ["dentist"]
        assert later.inserts == later.updates == []

    def test_stored_event_missing_from_feed_is_deleted(self, make_ics):
        first = diff_calendar(1, {}, {}, parse_feed(make_ics(STANDUP, DENTIST)), self.NOW)
        stored = {e.event_id: e for e in first.inserts}

        changes = diff_calendar(1, stored, {}, parse_feed(make_ics(STANDUP)), self.NOW)

        assert changes.deletes == ["dentist"]
        # The cascade removes the next_dates row of a deleted event.
        assert changes.next_deletes == []


# ---------------------------------------------------------------------------
# CalendarSyncer
# ---------------------------------------------------------------------------


class TestCalendarSyncer:
    async def test_first_sync_populates_store(self, syncer, store):
        result = await syncer.sync_calendar(_calendar(1))

        assert result == SyncResult(
            calendar_id=1, events=2, inserted=2, next_upserted=2
        )
        assert set(store.events[1]) == {"standup", "dentist"}
        assert store.next_dates[1]["standup"].timestamp == datetime(2024, 1, 8, 9, tzinfo=UTC)
        assert [a.email for a in store.next_dates[1]["standup"].attendees] == [
            "alice@example.com"
        ]

    async def test_second_sync_of_same_feed_changes_nothing(self, syncer, store):
        await syncer.sync_calendar(_calendar(1))
        snapshot = (dict(store.events[1]), dict(store.next_dates[1]))

        result = await syncer.sync_calendar(_calendar(1))

        assert result.changed is False
        assert store.applied[-1].empty
        assert (store.events[1], store.next_dates[1]) == snapshot

    async def test_edited_event_is_updated(self, syncer, store, fetcher, make_ics):
        await syncer.sync_calendar(_calendar(1))
        fetcher.feeds["https://dav.example.com/cal1"] = make_ics(
            STANDUP.replace("SUMMARY:Standup", "SUMMARY:Daily standup"), DENTIST
        )

        result = await syncer.sync_calendar(_calendar(1))

        assert result.updated == 1
        assert store.events[1]["standup"].summary == "Daily standup"

    async def test_removed_event_is_deleted_with_its_next_occurrence(
        self, syncer, store, fetcher, make_ics
    ):
        await syncer.sync_calendar(_calendar(1))
        fetcher.feeds["https://dav.example.com/cal1"] = make_ics(STANDUP)

        result = await syncer.sync_calendar(_calendar(1))

        assert result.deleted == 1
        assert "dentist" not in store.events[1]
        assert "dentist" not in store.next_dates[1]

    async def test_deleted_then_re_added_event_gets_fresh_next_occurrence(
        self, syncer, store, fetcher, make_ics
    ):
        url = "https://dav.example.com/cal1"
        await syncer.sync_calendar(_calendar(1))
        fetcher.feeds[url] = make_ics(STANDUP)
        await syncer.sync_calendar(_calendar(1))
        fetcher.feeds[url] = make_ics(STANDUP, DENTIST)

        result = await syncer.sync_calendar(_calendar(1))

        assert result.inserted == 1
        assert store.next_dates[1]["dentist"].timestamp == datetime(2024, 1, 10, 14, tzinfo=UTC)

    async def test_next_occurrence_advances_with_time(self, syncer, store, clock):
        await syncer.sync_calendar(_calendar(1))
        clock.now = datetime(2024, 1, 9, tzinfo=UTC)

        result = await syncer.sync_calendar(_calendar(1))

        assert result.inserted == result.updated == 0
        assert store.next_dates[1]["standup"].timestamp == datetime(2024, 1, 15, 9, tzinfo=UTC)

    @pytest.mark.parametrize(
        "body",
        [
            b"BEGIN:VEVENT\r\nEND:VEVENT\r\n",
            b"",
            b"  \r\n",
            b"<html><body>Please log in</body></html>",
        ],
        ids=["vevent-only", "empty", "whitespace", "html-login-page"],
    )
    async def test_malformed_feed_leaves_state_untouched(self, syncer, store, fetcher, body):
        await syncer.sync_calendar(_calendar(1))
        before = (dict(store.events[1]), dict(store.next_dates[1]), len(store.applied))
        assert set(before[0]) == {"standup", "dentist"}
        fetcher.feeds["https://dav.example.com/cal1"] = body

        with pytest.raises(MalformedFeedError):
            await syncer.sync_calendar(_calendar(1))

        assert (dict(store.events[1]), dict(store.next_dates[1]), len(store.applied)) == before

    async def test_unauthorized_oauth2_fetch_refreshes_and_retries_once(
        self, store, make_ics, clock
    ):
        calendar = _calendar(3, oauth2_account_id=9)
        credentials = FakeCredentials()

        class RejectOldToken(FakeFetcher):
            async def fetch(self, url, credential):
                self.calls.append((url, credential))
                if credential == BearerCredential("old"):
                    raise FeedUnauthorizedError("expired", status_code=401)
                return make_ics(DENTIST)

        fetcher = RejectOldToken({})
        syncer = CalendarSyncer(store, fetcher, credentials, clock=clock)

        result = await syncer.sync_calendar(calendar)

        assert result.inserted == 1
        assert credentials.refreshed == [9]
        assert [c for _, c in fetcher.calls] == [BearerCredential("old"), BearerCredential("new")]

    async def test_unauthorized_without_oauth2_is_not_retried(self, store, clock):
        url = "https://dav.example.com/cal1"
        fetcher = FakeFetcher({url: FeedUnauthorizedError("nope", status_code=401)})
        syncer = CalendarSyncer(store, fetcher, FakeCredentials(), clock=clock)

        with pytest.raises(FeedUnauthorizedError):
            await syncer.sync_calendar(_calendar(1))
        assert len(fetcher.calls) == 1


# ---------------------------------------------------------------------------
# SyncScheduler
# ---------------------------------------------------------------------------


class TestSyncScheduler:
    async def test_failure_of_one_calendar_does_not_affect_another(
        self, syncer, store, fetcher, make_ics
    ):
        scheduler = SyncScheduler(syncer, store)
        await scheduler.run_round()
        calendar_1_before = (dict(store.events[1]), dict(store.next_dates[1]))
        assert set(calendar_1_before[0]) == {"standup", "dentist"}

        fetcher.feeds["https://dav.example.com/cal1"] = FeedTransportError("connection reset")
        fetcher.feeds["https://dav.example.com/cal2"] = make_ics(
            DENTIST.replace("SUMMARY:Dentist", "SUMMARY:Dentist (rescheduled)"), STANDUP
        )

        results = await scheduler.run_round()

        assert isinstance(results[1], FeedTransportError)
        assert isinstance(results[2], SyncResult)
        assert (store.events[1], store.next_dates[1]) == calendar_1_before
        assert set(store.events[2]) == {"dentist", "standup"}
        assert store.events[2]["dentist"].summary == "Dentist (rescheduled)"
        assert "standup" in store.next_dates[2]

    async def test_malformed_feed_is_reported_not_raised(self, syncer, store, fetcher):
        fetcher.feeds["https://dav.example.com/cal2"] = b"not a calendar"
        scheduler = SyncScheduler(syncer, store)

        result = await scheduler.sync_once(_calendar(2))

        assert isinstance(result, MalformedFeedError)

    async def test_slow_sync_is_abandoned(self, store, clock):
        class SlowFetcher:
            async def fetch(self, url, credential):
                await asyncio.sleep(10)
                return b""

        syncer = CalendarSyncer(store, SlowFetcher(), FakeCredentials(), clock=clock)
        scheduler = SyncScheduler(syncer, store, timeout=0.01)

        result = await scheduler.sync_once(_calendar(1))

        assert isinstance(result, TimeoutError)
        assert store.applied == []

    async def test_run_starts_a_loop_per_calendar_and_stops_cleanly(self, syncer, store):
        scheduler = SyncScheduler(syncer, store, interval=3600)
        task = asyncio.create_task(scheduler.run())
        for _ in range(20):
            await asyncio.sleep(0)
            if 1 in store.events and 2 in store.events:
                break

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert set(store.events) == {1, 2}

    async def test_loop_stops_when_calendar_is_removed(self, syncer, store):
        del store.calendars[2]
        scheduler = SyncScheduler(syncer, store, interval=3600)

        await asyncio.wait_for(scheduler._calendar_loop(2), timeout=1)

        assert 2 not in store.events


def test_horizon_limits_next_occurrence(make_ics):
    changes = diff_calendar(
        1,
        {},
        {},
        parse_feed(make_ics(DENTIST)),
        datetime(2024, 1, 3, tzinfo=UTC),
        horizon=timedelta(days=1),
    )
    assert changes.next_upserts == []
