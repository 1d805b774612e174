"""PostgreSQL access for calendars, events, reminders and OAuth2 tokens.

Every logical update (applying a sync diff, recording a dispatch, saving a
refreshed token) is a single statement or a single transaction, so a
cancelled task never leaves partial state behind.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from importlib import resources
from typing import TYPE_CHECKING, Any

import asyncpg

from calendar_bot.models import (
    Attendee,
    Calendar,
    NextOccurrence,
    OAuth2Token,
    PendingReminder,
    StoredEvent,
)

if TYPE_CHECKING:
    from calendar_bot.sync import SyncChanges

logger = logging.getLogger(__name__)

_CALENDAR_COLUMNS = """
    c.calendar_id, c.user_id, c.name, c.url,
    p.user_name, p.password, o.account_id AS oauth2_account_id
FROM calendars c
LEFT JOIN calendar_passwords p ON p.calendar_id = c.calendar_id
LEFT JOIN calendar_oauth2 o ON o.calendar_id = c.calendar_id
"""


def load_schema_sql() -> str:
    """Return the reference schema shipped with the package."""
    return resources.files("calendar_bot").joinpath("schema.sql").read_text(encoding="utf-8")


async def apply_schema(pool: asyncpg.Pool) -> None:
    """Create any missing tables; safe to run against an existing database."""
    async with pool.acquire() as conn:
        await conn.execute(load_schema_sql())


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_attendees(attendees: list[Attendee]) -> str:
    return json.dumps([a.model_dump() for a in attendees])


def _event_from_row(row: asyncpg.Record) -> StoredEvent:
    organizer = _load_json(row["organizer"])
    return StoredEvent(
        calendar_id=row["calendar_id"],
        event_id=row["event_id"],
        summary=row["summary"],
        description=row["description"],
        location=row["location"],
        organizer=Attendee.model_validate(organizer) if organizer else None,
        attendees=[Attendee.model_validate(a) for a in _load_json(row["attendees"]) or []],
        start=row["start"],
        timezone=row["timezone"],
        all_day=row["all_day"],
        recurrence=_load_json(row["recurrence"]),
    )


class CalendarStore:
    """Data access over an asyncpg pool.

    Holds no state besides the pool; every call re-reads what it needs.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- Calendars -----------------------------------------------------------

    async def list_calendars(self) -> list[Calendar]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {_CALENDAR_COLUMNS} ORDER BY c.calendar_id")
        return [Calendar.model_validate(dict(row)) for row in rows]

    async def get_calendar(self, calendar_id: int) -> Calendar | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CALENDAR_COLUMNS} WHERE c.calendar_id = $1", calendar_id
            )
        return Calendar.model_validate(dict(row)) if row is not None else None

    # -- Sync state ----------------------------------------------------------

    async def load_events(self, calendar_id: int) -> dict[str, StoredEvent]:
        """Return the stored events of a calendar keyed by event id."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT calendar_id, event_id, summary, description, location,
                       organizer, attendees, start, timezone, all_day, recurrence
                FROM events
                WHERE calendar_id = $1
                """,
                calendar_id,
            )
        return {row["event_id"]: _event_from_row(row) for row in rows}

    async def load_next_occurrences(self, calendar_id: int) -> dict[str, NextOccurrence]:
        """Return the stored next occurrences of a calendar keyed by event id."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT calendar_id, event_id, "timestamp", attendees
                FROM next_dates
                WHERE calendar_id = $1
                """,
                calendar_id,
            )
        return {
            row["event_id"]: NextOccurrence(
                calendar_id=row["calendar_id"],
                event_id=row["event_id"],
                timestamp=row["timestamp"],
                attendees=[Attendee.model_validate(a) for a in _load_json(row["attendees"])],
            )
            for row in rows
        }

    async def apply_sync_changes(self, calendar_id: int, changes: SyncChanges) -> None:
        """Apply a computed diff for one calendar in a single transaction.

        Deleting an event cascades to its next_dates row; reminders pointing
        at it are left in place.
        """
        if changes.empty:
            return
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                if changes.deletes:
                    await conn.execute(
                        "DELETE FROM events WHERE calendar_id = $1 AND event_id = ANY($2::text[])",
                        calendar_id,
                        list(changes.deletes),
                    )
                upserts = [*changes.inserts, *changes.updates]
                if upserts:
                    await conn.executemany(
                        """
                        INSERT INTO events (
                            calendar_id, event_id, summary, description, location,
                            organizer, attendees, start, timezone, all_day, recurrence
                        )
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11::jsonb)
                        ON CONFLICT (calendar_id, event_id) DO UPDATE SET
                            summary = EXCLUDED.summary,
                            description = EXCLUDED.description,
                            location = EXCLUDED.location,
                            organizer = EXCLUDED.organizer,
                            attendees = EXCLUDED.attendees,
                            start = EXCLUDED.start,
                            timezone = EXCLUDED.timezone,
                            all_day = EXCLUDED.all_day,
                            recurrence = EXCLUDED.recurrence
                        """,
                        [
                            (
                                calendar_id,
                                event.event_id,
                                event.summary,
                                event.description,
                                event.location,
                                json.dumps(event.organizer.model_dump())
                                if event.organizer
                                else None,
                                _dump_attendees(event.attendees),
                                event.start,
                                event.timezone,
                                event.all_day,
                                json.dumps(event.recurrence)
                                if event.recurrence is not None
                                else None,
                            )
                            for event in upserts
                        ],
                    )
                if changes.next_deletes:
                    await conn.execute(
                        """
                        DELETE FROM next_dates
                        WHERE calendar_id = $1 AND event_id = ANY($2::text[])
                        """,
                        calendar_id,
                        list(changes.next_deletes),
                    )
                if changes.next_upserts:
                    await conn.executemany(
                        """
                        INSERT INTO next_dates (calendar_id, event_id, "timestamp", attendees)
                        VALUES ($1, $2, $3, $4::jsonb)
                        ON CONFLICT (calendar_id, event_id) DO UPDATE SET
                            "timestamp" = EXCLUDED."timestamp",
                            attendees = EXCLUDED.attendees
                        """,
                        [
                            (
                                calendar_id,
                                nxt.event_id,
                                nxt.timestamp,
                                _dump_attendees(nxt.attendees),
                            )
                            for nxt in changes.next_upserts
                        ],
                    )
        logger.debug(
            "Applied sync changes for calendar %d: %d inserted, %d updated, %d deleted",
            calendar_id,
            len(changes.inserts),
            len(changes.updates),
            len(changes.deletes),
        )

    # -- Reminders -----------------------------------------------------------

    async def get_pending_reminders(self, now: datetime) -> list[PendingReminder]:
        """Return reminders whose trigger time has passed and that were not sent.

        The trigger time is the next occurrence minus ``minutes_before``;
        a reminder is sent when a ``reminder_dispatches`` row exists for that
        exact occurrence.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT r.reminder_id, r.calendar_id, r.event_id, r.room,
                       r.minutes_before, r.template,
                       e.summary, e.description, e.location,
                       n."timestamp" AS occurrence, n.attendees
                FROM reminders r
                JOIN events e
                  ON e.calendar_id = r.calendar_id AND e.event_id = r.event_id
                JOIN next_dates n
                  ON n.calendar_id = r.calendar_id AND n.event_id = r.event_id
                WHERE n."timestamp" - r.minutes_before * interval '1 minute' <= $1
                  AND NOT EXISTS (
                      SELECT 1 FROM reminder_dispatches d
                      WHERE d.reminder_id = r.reminder_id
                        AND d.occurrence = n."timestamp"
                  )
                ORDER BY n."timestamp", r.reminder_id
                """,
                now,
            )
        return [
            PendingReminder.model_validate(
                {**dict(row), "attendees": _load_json(row["attendees"])}
            )
            for row in rows
        ]

    async def record_dispatch(
        self, reminder_id: int, occurrence: datetime, sent_at: datetime | None = None
    ) -> bool:
        """Mark a reminder as sent for *occurrence*.

        Returns False when a record already existed.
        """
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO reminder_dispatches (reminder_id, occurrence, sent_at)
                VALUES ($1, $2, COALESCE($3, now()))
                ON CONFLICT (reminder_id, occurrence) DO NOTHING
                """,
                reminder_id,
                occurrence,
                sent_at,
            )
        return status.endswith(" 1")

    async def get_user_mappings(self) -> dict[str, str]:
        """Return the e-mail address to Matrix user id mapping."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT email, matrix_id FROM email_to_matrix_id")
        return {row["email"]: row["matrix_id"] for row in rows}

    # -- OAuth2 --------------------------------------------------------------

    async def get_oauth2_token(self, account_id: int) -> OAuth2Token | None:
        """Return the current token for an account, or None if it has none."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT a.account_id, a.needs_reauth,
                       t.access_token, t.refresh_token, t.expiry
                FROM oauth2_accounts a
                LEFT JOIN oauth2_tokens t ON t.account_id = a.account_id
                WHERE a.account_id = $1
                """,
                account_id,
            )
        if row is None or row["access_token"] is None:
            return None
        return OAuth2Token.model_validate(dict(row))

    async def save_oauth2_token(
        self,
        account_id: int,
        *,
        access_token: str,
        expiry: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed token; the refresh token is kept unless rotated."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE oauth2_tokens
                SET access_token = $2,
                    refresh_token = COALESCE($3, refresh_token),
                    expiry = $4
                WHERE account_id = $1
                """,
                account_id,
                access_token,
                refresh_token,
                expiry,
            )

    async def mark_needs_reauth(self, account_id: int) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE oauth2_accounts SET needs_reauth = true WHERE account_id = $1",
                account_id,
            )
        logger.warning("OAuth2 account %d marked as needing re-authorization", account_id)

    async def accounts_expiring_before(self, deadline: datetime) -> list[int]:
        """Return ids of usable accounts whose access token expires before *deadline*."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT t.account_id
                FROM oauth2_tokens t
                JOIN oauth2_accounts a ON a.account_id = t.account_id
                WHERE NOT a.needs_reauth AND t.expiry <= $1
                ORDER BY t.expiry
                """,
                deadline,
            )
        return [row["account_id"] for row in rows]
