"""Recurrence model and occurrence expansion for parsed calendar events.

An event either happens once (:class:`NoRecurrence`) or follows a rule
(:class:`Recurring`) with optional exception dates and per-instance
overrides.  :func:`expand_occurrences` turns either variant into concrete
UTC start times inside a half-open window.

Candidates are generated with :mod:`dateutil.rrule` in the event's own time
zone so a weekly 09:00 meeting stays at 09:00 local time across DST
changes, then converted to UTC for every comparison.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

from dateutil import rrule as dateutil_rrule

from calendar_bot.models import Attendee


class Frequency(StrEnum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


_DATEUTIL_FREQUENCY = {
    Frequency.DAILY: dateutil_rrule.DAILY,
    Frequency.WEEKLY: dateutil_rrule.WEEKLY,
    Frequency.MONTHLY: dateutil_rrule.MONTHLY,
    Frequency.YEARLY: dateutil_rrule.YEARLY,
}

_WEEKDAYS = {
    "MO": dateutil_rrule.MO,
    "TU": dateutil_rrule.TU,
    "WE": dateutil_rrule.WE,
    "TH": dateutil_rrule.TH,
    "FR": dateutil_rrule.FR,
    "SA": dateutil_rrule.SA,
    "SU": dateutil_rrule.SU,
}

# BYDAY entries such as "MO", "1MO" or "-1FR".
_BYDAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"expected a timezone-aware datetime, got {value!r}")
    return value.astimezone(UTC)


def parse_weekday(token: str) -> dateutil_rrule.weekday:
    """Convert a BYDAY token to a dateutil weekday, raising ValueError if invalid."""
    match = _BYDAY_PATTERN.match(token.strip().upper())
    if match is None:
        raise ValueError(f"invalid BYDAY value: {token!r}")
    ordinal, day = match.groups()
    weekday = _WEEKDAYS[day]
    if ordinal is None:
        return weekday
    n = int(ordinal)
    if n == 0:
        raise ValueError(f"invalid BYDAY ordinal: {token!r}")
    return weekday(n)


@dataclass(frozen=True)
class RecurrenceRule:
    """A repeating pattern anchored at an event's base start time.

    ``count`` and ``until`` are mutually exclusive; when both are ``None``
    the series is unbounded and expansion is limited by the window alone.
    """

    frequency: Frequency
    interval: int = 1
    count: int | None = None
    until: datetime | None = None
    by_weekday: tuple[str, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if self.interval < 1:
            raise ValueError(f"interval must be >= 1, got {self.interval}")
        if self.count is not None and self.until is not None:
            raise ValueError("count and until are mutually exclusive")
        if self.count is not None and self.count < 1:
            raise ValueError(f"count must be >= 1, got {self.count}")
        if self.until is not None and self.until.tzinfo is None:
            raise ValueError("until must be timezone-aware")
        for token in self.by_weekday:
            parse_weekday(token)

    def build(self, dtstart: datetime) -> dateutil_rrule.rrule:
        """Return the dateutil rule generating this pattern from *dtstart*."""
        return dateutil_rrule.rrule(
            _DATEUTIL_FREQUENCY[self.frequency],
            dtstart=dtstart,
            interval=self.interval,
            count=self.count,
            until=self.until,
            byweekday=[parse_weekday(t) for t in self.by_weekday] or None,
            bymonthday=list(self.by_month_day) or None,
            bymonth=list(self.by_month) or None,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency.value,
            "interval": self.interval,
            "count": self.count,
            "until": _utc(self.until).isoformat() if self.until else None,
            "by_weekday": list(self.by_weekday),
            "by_month_day": list(self.by_month_day),
            "by_month": list(self.by_month),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> RecurrenceRule:
        until = data.get("until")
        return cls(
            frequency=Frequency(data["frequency"]),
            interval=int(data.get("interval", 1)),
            count=data.get("count"),
            until=datetime.fromisoformat(until) if until else None,
            by_weekday=tuple(data.get("by_weekday", ())),
            by_month_day=tuple(data.get("by_month_day", ())),
            by_month=tuple(data.get("by_month", ())),
        )


@dataclass(frozen=True)
class OccurrenceOverride:
    """A replacement for one instance of a recurring series.

    ``recurrence_id`` is the UTC start the instance would have had without
    the override.  A cancelled override removes the instance entirely.
    """

    recurrence_id: datetime
    start: datetime
    attendees: tuple[Attendee, ...] = ()
    cancelled: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "recurrence_id": _utc(self.recurrence_id).isoformat(),
            "start": _utc(self.start).isoformat(),
            "attendees": [a.model_dump() for a in self.attendees],
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> OccurrenceOverride:
        return cls(
            recurrence_id=datetime.fromisoformat(data["recurrence_id"]),
            start=datetime.fromisoformat(data["start"]),
            attendees=tuple(Attendee.model_validate(a) for a in data.get("attendees", ())),
            cancelled=bool(data.get("cancelled", False)),
        )


@dataclass(frozen=True)
class NoRecurrence:
    """The event happens exactly once, at its base start."""

    def to_json(self) -> dict[str, Any]:
        return {"kind": "none"}


@dataclass(frozen=True)
class Recurring:
    """The event repeats according to *rule*.

    ``exceptions`` holds UTC instants of suppressed instances, plus plain
    dates for date-only exceptions.  A date matches any instance falling on
    that day in the series' own time zone.  ``overrides`` maps a recurrence
    id to its replacement.
    """

    rule: RecurrenceRule
    exceptions: frozenset[datetime | date] = frozenset()
    overrides: Mapping[datetime, OccurrenceOverride] = field(default_factory=dict)

    def is_excepted(self, candidate: datetime) -> bool:
        """Whether *candidate*, given in the series' local zone, is suppressed."""
        return _utc(candidate) in self.exceptions or candidate.date() in self.exceptions

    def to_json(self) -> dict[str, Any]:
        return {
            "kind": "recurring",
            "rule": self.rule.to_json(),
            "exceptions": sorted(
                (_exception_to_json(e) for e in self.exceptions), key=_exception_sort_key
            ),
            "overrides": [
                self.overrides[key].to_json() for key in sorted(self.overrides)
            ],
        }


Recurrence = NoRecurrence | Recurring


def _exception_to_json(value: datetime | date) -> str | dict[str, str]:
    if isinstance(value, datetime):
        return _utc(value).isoformat()
    return {"date": value.isoformat()}


def _exception_sort_key(value: str | dict[str, str]) -> str:
    return value["date"] if isinstance(value, dict) else value


def _exception_from_json(value: str | Mapping[str, str]) -> datetime | date:
    if isinstance(value, Mapping):
        return date.fromisoformat(value["date"])
    return datetime.fromisoformat(value)


def recurrence_from_json(data: Mapping[str, Any] | None) -> Recurrence:
    """Rebuild a recurrence variant from its stored JSON form."""
    if not data or data.get("kind") == "none":
        return NoRecurrence()
    if data.get("kind") != "recurring":
        raise ValueError(f"unknown recurrence kind: {data.get('kind')!r}")
    overrides = [OccurrenceOverride.from_json(o) for o in data.get("overrides", ())]
    return Recurring(
        rule=RecurrenceRule.from_json(data["rule"]),
        exceptions=frozenset(_exception_from_json(e) for e in data.get("exceptions", ())),
        overrides={o.recurrence_id: o for o in overrides},
    )


@dataclass(frozen=True)
class EventDefinition:
    """One event as described by a feed, with its recurrence resolved.

    ``start`` is timezone-aware and keeps the event's own zone.  All-day
    events start at UTC midnight of their date.
    """

    uid: str
    start: datetime
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    organizer: Attendee | None = None
    attendees: tuple[Attendee, ...] = ()
    all_day: bool = False
    recurrence: Recurrence = field(default_factory=NoRecurrence)

    @property
    def timezone_name(self) -> str:
        tz = self.start.tzinfo
        name = getattr(tz, "key", None) or getattr(tz, "zone", None)
        if name:
            return str(name)
        if self.start.utcoffset() == timedelta(0):
            return "UTC"
        return str(self.start.tzname() or "UTC")


def _override_shift(recurrence: Recurring) -> timedelta:
    """Largest distance any override moves its instance."""
    shifts = [abs(o.start - o.recurrence_id) for o in recurrence.overrides.values()]
    return max(shifts, default=timedelta(0))


def expand_occurrences(
    event: EventDefinition,
    window_start: datetime,
    window_end: datetime,
) -> Iterator[datetime]:
    """Yield the UTC start times of *event* inside ``[window_start, window_end)``.

    Each call returns a fresh generator.  Instances are generated in rule
    order; an overridden instance yields the override's start in place of
    its own, so output is only guaranteed sorted when no override moves an
    instance past its neighbours.
    """
    window_start = _utc(window_start)
    window_end = _utc(window_end)
    if window_end <= window_start:
        return

    recurrence = event.recurrence
    if isinstance(recurrence, NoRecurrence):
        start = _utc(event.start)
        if window_start <= start < window_end:
            yield start
        return

    # Overrides may pull instances from just outside the window into it.
    shift = _override_shift(recurrence)
    scan_start = (window_start - shift).astimezone(event.start.tzinfo)
    scan_end = window_end + shift

    rule = recurrence.rule.build(event.start)
    for candidate in rule.xafter(scan_start, inc=True):
        instant = _utc(candidate)
        if instant >= scan_end:
            return
        override = recurrence.overrides.get(instant)
        if override is not None:
            if override.cancelled:
                continue
            instant = _utc(override.start)
        elif recurrence.is_excepted(candidate):
            continue
        if window_start <= instant < window_end:
            yield instant


def occurrence_attendees(event: EventDefinition, occurrence: datetime) -> tuple[Attendee, ...]:
    """Return the attendee list valid for the instance starting at *occurrence*."""
    if isinstance(event.recurrence, Recurring):
        occurrence = _utc(occurrence)
        for override in event.recurrence.overrides.values():
            if not override.cancelled and _utc(override.start) == occurrence:
                return override.attendees
    return event.attendees


def next_occurrence(
    event: EventDefinition,
    now: datetime,
    horizon: timedelta,
) -> tuple[datetime, tuple[Attendee, ...]] | None:
    """Return the earliest instance strictly after *now* and before ``now + horizon``."""
    future = [t for t in expand_occurrences(event, now, now + horizon) if t > _utc(now)]
    if not future:
        return None
    earliest = min(future)
    return earliest, occurrence_attendees(event, earliest)
