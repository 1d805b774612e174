"""Parse iCalendar documents and CalDAV multistatus bodies into event definitions."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, tzinfo
from typing import Any
from xml.etree import ElementTree
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar as ICalendar
from pydantic import ValidationError

from calendar_bot.ical.recurrence import (
    EventDefinition,
    Frequency,
    NoRecurrence,
    OccurrenceOverride,
    RecurrenceRule,
    Recurring,
)
from calendar_bot.models import Attendee

logger = logging.getLogger(__name__)

_UTF8_BOM = b"\xef\xbb\xbf"
_MULTISTATUS_TAG = "{DAV:}multistatus"


class MalformedFeedError(Exception):
    """Raised when a feed cannot be parsed into event definitions."""


@dataclass(frozen=True)
class _ParsedComponent:
    uid: str
    start: datetime
    all_day: bool
    summary: str | None
    description: str | None
    location: str | None
    organizer: Attendee | None
    attendees: tuple[Attendee, ...]
    cancelled: bool
    recurrence_id: datetime | None = None
    rule: RecurrenceRule | None = None
    exceptions: frozenset[datetime | date] = frozenset()


# ---------------------------------------------------------------------------
# Document extraction
# ---------------------------------------------------------------------------


def extract_calendar_documents(raw: bytes) -> list[bytes]:
    """Split a feed body into individual iCalendar documents.

    A CalDAV ``REPORT`` answers with a ``multistatus`` XML body holding one
    ``calendar-data`` element per object; a plain feed is a single document.
    An empty multistatus is a calendar with no events, but an empty body or
    any other document (a login page, say) is malformed.
    """
    body = raw.lstrip()
    if body.startswith(_UTF8_BOM):
        body = body[len(_UTF8_BOM) :].lstrip()
    if not body:
        raise MalformedFeedError("Feed body is empty")
    if not body.startswith(b"<"):
        if b"BEGIN:VCALENDAR" not in body.upper():
            raise MalformedFeedError("Feed body contains no VCALENDAR")
        return [body]

    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise MalformedFeedError(f"CalDAV response is not valid XML: {exc}") from exc
    if root.tag != _MULTISTATUS_TAG:
        raise MalformedFeedError(f"Expected a CalDAV multistatus response, got <{root.tag}>")

    documents: list[bytes] = []
    for element in root.iter():
        if not isinstance(element.tag, str) or element.tag.rsplit("}", 1)[-1] != "calendar-data":
            continue
        if element.text and element.text.strip():
            documents.append(element.text.strip().encode("utf-8"))
    return documents


def _parse_document(document: bytes) -> list[ICalendar]:
    try:
        calendars = ICalendar.from_ical(document, multiple=True)
    except (ValueError, IndexError, KeyError) as exc:
        raise MalformedFeedError(f"iCalendar document could not be parsed: {exc}") from exc
    calendars = [c for c in calendars if c.name == "VCALENDAR"]
    if not calendars:
        raise MalformedFeedError("iCalendar document contains no VCALENDAR")
    return calendars


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _calendar_timezone(calendar: ICalendar, default: tzinfo) -> tzinfo:
    name = calendar.get("X-WR-TIMEZONE")
    if not name or not str(name).strip():
        return default
    try:
        return ZoneInfo(str(name).strip())
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Ignoring unknown X-WR-TIMEZONE %r", str(name))
        return default


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_start(value: date | datetime, tz: tzinfo) -> tuple[datetime, bool]:
    """Return an aware start and whether it is an all-day value."""
    if not isinstance(value, datetime):
        return datetime(value.year, value.month, value.day, tzinfo=UTC), True
    if value.tzinfo is None:
        return value.replace(tzinfo=tz), False
    return value, False


def _normalize_instant(value: date | datetime, tz: tzinfo) -> datetime:
    return _normalize_start(value, tz)[0].astimezone(UTC)


def _normalize_exception(value: date | datetime, tz: tzinfo) -> date | datetime:
    # Date-only exceptions stay dates; they name a day in the series' own zone.
    if not isinstance(value, datetime):
        return value
    return _normalize_instant(value, tz)


def _normalize_until(value: date | datetime, start: datetime, all_day: bool) -> datetime:
    if not isinstance(value, datetime):
        if all_day:
            return datetime(value.year, value.month, value.day, tzinfo=UTC)
        # A date bound on a timed series includes that whole local day.
        return datetime.combine(value, time(23, 59, 59), tzinfo=start.tzinfo).astimezone(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=start.tzinfo).astimezone(UTC)
    return value.astimezone(UTC)


def _dt_values(prop: Any) -> Iterator[date | datetime]:
    for entry in _as_list(prop):
        dts = getattr(entry, "dts", None)
        if dts is None:
            value = getattr(entry, "dt", entry)
            if isinstance(value, date):
                yield value
            continue
        for item in dts:
            yield item.dt


def _calendar_address(value: Any) -> Attendee | None:
    """Build an attendee from a CAL-ADDRESS value.

    Only ``mailto:`` addresses are kept, and participants who declined are
    dropped.
    """
    text = str(value).strip()
    if not text.lower().startswith("mailto:"):
        return None
    params = getattr(value, "params", {}) or {}
    if str(params.get("PARTSTAT", "")).upper() == "DECLINED":
        return None
    common_name = params.get("CN")
    try:
        return Attendee(
            email=text[len("mailto:") :],
            common_name=str(common_name).strip() or None if common_name else None,
        )
    except ValidationError:
        return None


def _attendees(component: Any) -> tuple[Attendee, ...]:
    attendees = (_calendar_address(v) for v in _as_list(component.get("ATTENDEE")))
    return tuple(a for a in attendees if a is not None)


def _first(recur: Any, key: str) -> Any:
    values = _as_list(recur.get(key))
    return values[0] if values else None


def _parse_rule(recur: Any, start: datetime, all_day: bool, uid: str) -> RecurrenceRule:
    freq = _first(recur, "FREQ")
    if freq is None:
        raise MalformedFeedError(f"RRULE of event {uid!r} has no FREQ")
    try:
        frequency = Frequency(str(freq).upper())
    except ValueError as exc:
        raise MalformedFeedError(
            f"RRULE of event {uid!r} uses unsupported frequency {str(freq)!r}"
        ) from exc

    try:
        interval = _first(recur, "INTERVAL")
        count = _first(recur, "COUNT")
        until = _first(recur, "UNTIL")
        until = getattr(until, "dt", until)
        return RecurrenceRule(
            frequency=frequency,
            interval=int(interval) if interval is not None else 1,
            count=int(count) if count is not None else None,
            until=_normalize_until(until, start, all_day) if until is not None else None,
            by_weekday=tuple(str(v).upper() for v in _as_list(recur.get("BYDAY"))),
            by_month_day=tuple(int(v) for v in _as_list(recur.get("BYMONTHDAY"))),
            by_month=tuple(int(v) for v in _as_list(recur.get("BYMONTH"))),
        )
    except (TypeError, ValueError) as exc:
        raise MalformedFeedError(f"RRULE of event {uid!r} is invalid: {exc}") from exc


def _parse_vevent(component: Any, tz: tzinfo) -> _ParsedComponent:
    uid = _text(component, "UID")
    if uid is None:
        raise MalformedFeedError("VEVENT without UID")

    # icalendar records unparseable properties in ``errors`` and drops them.
    broken = {str(name).upper() for name, _ in getattr(component, "errors", ())}
    if "RRULE" in broken:
        raise MalformedFeedError(f"RRULE of event {uid!r} could not be parsed")
    if component.get("DTSTART") is None:
        raise MalformedFeedError(f"VEVENT {uid!r} has no valid DTSTART")

    start, all_day = _normalize_start(component.decoded("DTSTART"), tz)

    rule = None
    rrules = _as_list(component.get("RRULE"))
    if rrules:
        if len(rrules) > 1:
            logger.warning(
                "Event %r has %d RRULEs; only the first is used, later ones are ignored",
                uid,
                len(rrules),
            )
        rule = _parse_rule(rrules[0], start, all_day, uid)

    recurrence_id = None
    if component.get("RECURRENCE-ID") is not None:
        recurrence_id = _normalize_instant(component.decoded("RECURRENCE-ID"), tz)

    organizer = component.get("ORGANIZER")
    return _ParsedComponent(
        uid=uid,
        start=start,
        all_day=all_day,
        summary=_text(component, "SUMMARY"),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        organizer=_calendar_address(organizer) if organizer is not None else None,
        attendees=_attendees(component),
        cancelled=(_text(component, "STATUS") or "").upper() == "CANCELLED",
        recurrence_id=recurrence_id,
        rule=rule,
        exceptions=frozenset(
            _normalize_exception(v, start.tzinfo or tz)
            for v in _dt_values(component.get("EXDATE"))
        ),
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def _definition(base: _ParsedComponent, overrides: Iterable[_ParsedComponent]) -> EventDefinition:
    if base.rule is None:
        recurrence: NoRecurrence | Recurring = NoRecurrence()
    else:
        recurrence = Recurring(
            rule=base.rule,
            exceptions=base.exceptions,
            overrides={
                o.recurrence_id: OccurrenceOverride(
                    recurrence_id=o.recurrence_id,
                    start=o.start.astimezone(UTC),
                    attendees=o.attendees,
                    cancelled=o.cancelled,
                )
                for o in overrides
                if o.recurrence_id is not None
            },
        )
    return EventDefinition(
        uid=base.uid,
        start=base.start,
        summary=base.summary,
        description=base.description,
        location=base.location,
        organizer=base.organizer,
        attendees=base.attendees,
        all_day=base.all_day,
        recurrence=recurrence,
    )


def parse_feed(raw: bytes, *, default_timezone: str = "UTC") -> list[EventDefinition]:
    """Parse a feed body into event definitions, one per UID.

    VEVENTs sharing a UID are grouped: the one without ``RECURRENCE-ID`` is
    the series and the rest become per-instance overrides.  When a feed only
    carries overrides for a UID, the earliest one stands in as a single
    event.  Cancelled series are left out.

    Raises
    ------
    MalformedFeedError
        If the body or any embedded document cannot be parsed, or a VEVENT
        lacks ``UID``/``DTSTART`` or has an unusable ``RRULE``.
    """
    try:
        fallback_tz: tzinfo = ZoneInfo(default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        fallback_tz = UTC

    bases: dict[str, _ParsedComponent] = {}
    overrides: dict[str, list[_ParsedComponent]] = {}

    for document in extract_calendar_documents(raw):
        for calendar in _parse_document(document):
            tz = _calendar_timezone(calendar, fallback_tz)
            for component in calendar.walk("VEVENT"):
                parsed = _parse_vevent(component, tz)
                if parsed.recurrence_id is not None:
                    overrides.setdefault(parsed.uid, []).append(parsed)
                elif parsed.uid in bases:
                    logger.debug("Duplicate VEVENT for UID %r; keeping the first", parsed.uid)
                else:
                    bases[parsed.uid] = parsed

    events: list[EventDefinition] = []
    for uid in sorted(bases.keys() | overrides.keys()):
        base = bases.get(uid)
        instances = overrides.get(uid, [])
        if base is None:
            live = [o for o in instances if not o.cancelled]
            if not live:
                continue
            events.append(_definition(min(live, key=lambda o: o.start), ()))
            continue
        if base.cancelled:
            logger.debug("Skipping cancelled event %r", uid)
            continue
        events.append(_definition(base, instances))
    return events
