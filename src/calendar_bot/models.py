"""Persisted entity shapes shared by the store, the sync reconciler and the dispatcher."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Attendee(BaseModel):
    """A calendar participant identified by e-mail address."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(min_length=1)
    common_name: str | None = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("email must be a non-empty string")
        return normalized


class Calendar(BaseModel):
    """A remote calendar source owned by a user.

    Rows are created by the management UI; the daemon only reads them.
    """

    model_config = ConfigDict(extra="ignore")

    calendar_id: int
    user_id: int
    name: str = ""
    url: str = Field(min_length=1)
    user_name: str | None = None
    password: str | None = Field(default=None, repr=False)
    oauth2_account_id: int | None = None

    def __str__(self) -> str:
        return f"Calendar {self.calendar_id} ({self.name or self.url})"


class StoredEvent(BaseModel):
    """An event row as held in the store, keyed by ``(calendar_id, event_id)``."""

    model_config = ConfigDict(extra="ignore")

    calendar_id: int
    event_id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    organizer: Attendee | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    start: datetime
    timezone: str = "UTC"
    all_day: bool = False
    recurrence: dict[str, Any] | None = None


class NextOccurrence(BaseModel):
    """The earliest future instance of an event as of the last successful sync."""

    model_config = ConfigDict(extra="ignore")

    calendar_id: int
    event_id: str
    timestamp: datetime
    attendees: list[Attendee] = Field(default_factory=list)


class PendingReminder(BaseModel):
    """A reminder joined with its event and next occurrence, awaiting delivery."""

    model_config = ConfigDict(extra="ignore")

    reminder_id: int
    calendar_id: int
    event_id: str
    room: str
    minutes_before: int = Field(ge=0)
    template: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    occurrence: datetime
    attendees: list[Attendee] = Field(default_factory=list)


class OAuth2Token(BaseModel):
    """Stored token pair for an OAuth2-linked account."""

    model_config = ConfigDict(extra="ignore")

    account_id: int
    access_token: str = Field(repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expiry: datetime | None = None
    needs_reauth: bool = False
