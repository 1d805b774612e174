"""Feed fetching over HTTP (CalDAV ``REPORT`` with a plain ``GET`` fallback)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx

logger = logging.getLogger(__name__)

# Not a CalDAV collection; the URL is probably a plain .ics download.
_NOT_CALDAV_STATUSES = frozenset({405, 501})

_CALENDAR_QUERY = """<?xml version="1.0" encoding="utf-8" ?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag />
    <c:calendar-data />
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" />
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>
"""


class FetchError(Exception):
    """Base class for feed retrieval failures."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class FeedUnauthorizedError(FetchError):
    """The source rejected the credential (HTTP 401/403)."""


class FeedNotFoundError(FetchError):
    """The source URL does not exist (HTTP 404/410)."""


class FeedTimeoutError(FetchError):
    """The request did not complete within the configured timeout."""


class FeedTransportError(FetchError):
    """Connection-level failure or an unexpected HTTP status."""


@dataclass(frozen=True)
class BasicCredential:
    user_name: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class BearerCredential:
    access_token: str = field(repr=False)


Credential = BasicCredential | BearerCredential


def safe_url(url: str) -> str:
    """Return *url* without userinfo or query string, for logging."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError):
        return "<invalid url>"
    return f"{parsed.scheme}://{parsed.host}{parsed.path}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FeedFetcher:
    """Retrieves raw calendar bytes for a source URL.

    Performs no retries: retry policy belongs to the sync reconciler.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        timeout_seconds: float = 30.0,
        lookback_days: int = 180,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._http_client = http_client
        self._timeout = timeout_seconds
        self._lookback = timedelta(days=lookback_days)
        self._clock = clock

    def calendar_query(self) -> str:
        """Build the CalDAV query body.

        Events from the past lookback period are included because some servers
        omit the base event of a series when only its overrides are recent.
        """
        start = (self._clock() - self._lookback).astimezone(UTC)
        return _CALENDAR_QUERY.format(start=start.strftime("%Y%m%dT%H%M%SZ"))

    async def fetch(self, url: str, credential: Credential | None) -> bytes:
        """Return the raw feed body for *url*.

        Raises
        ------
        FetchError
            One of its subclasses, depending on how the request failed.
        """
        response = await self._send(
            "REPORT",
            url,
            credential,
            content=self.calendar_query().encode("utf-8"),
            headers={"Content-Type": "application/xml; charset=utf-8", "Depth": "1"},
        )
        if response.status_code in _NOT_CALDAV_STATUSES:
            logger.debug(
                "REPORT not supported by %s (%d); falling back to GET",
                safe_url(url),
                response.status_code,
            )
            response = await self._send("GET", url, credential)

        logger.info("Fetched calendar %s: status=%d", safe_url(url), response.status_code)
        status = response.status_code
        if status in (401, 403):
            raise FeedUnauthorizedError(
                f"Calendar source rejected credentials ({status})", status_code=status
            )
        if status in (404, 410):
            raise FeedNotFoundError(f"Calendar source not found ({status})", status_code=status)
        if status < 200 or status >= 300:
            raise FeedTransportError(
                f"Calendar source returned unexpected status {status}", status_code=status
            )
        return response.content

    async def _send(
        self,
        method: str,
        url: str,
        credential: Credential | None,
        *,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        auth: httpx.Auth | None = None
        if isinstance(credential, BasicCredential):
            auth = httpx.BasicAuth(credential.user_name, credential.password)
        elif isinstance(credential, BearerCredential):
            request_headers["Authorization"] = f"Bearer {credential.access_token}"

        try:
            return await self._http_client.request(
                method,
                url,
                content=content,
                headers=request_headers,
                auth=auth,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise FeedTimeoutError(
                f"Timed out fetching {safe_url(url)} after {self._timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise FeedTransportError(
                f"Transport failure fetching {safe_url(url)}: {type(exc).__name__}"
            ) from exc
