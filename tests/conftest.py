"""Shared fixtures for the calendar-bot test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC instants."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 3, 12, 0, tzinfo=UTC))


@pytest.fixture
def make_ics() -> Callable[..., bytes]:
    """Wrap VEVENT bodies into a VCALENDAR document.

    Each argument is the content between ``BEGIN:VEVENT`` and ``END:VEVENT``.
    """

    def _make(*events: str, calendar_props: str = "") -> bytes:
        lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calendar-bot tests//EN"]
        if calendar_props:
            lines.extend(calendar_props.strip().splitlines())
        for event in events:
            lines.append("BEGIN:VEVENT")
            lines.extend(line.strip() for line in event.strip().splitlines())
            lines.append("END:VEVENT")
        lines.append("END:VCALENDAR")
        return ("\r\n".join(lines) + "\r\n").encode("utf-8")

    return _make
