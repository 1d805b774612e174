"""Tests for calendar_bot.ical.fetcher: CalDAV REPORT / GET retrieval."""

from __future__ import annotations

import base64
from datetime import UTC, datetime

import httpx
import pytest

from calendar_bot.ical.fetcher import (
    BasicCredential,
    BearerCredential,
    FeedFetcher,
    FeedNotFoundError,
    FeedTimeoutError,
    FeedTransportError,
    FeedUnauthorizedError,
    safe_url,
)

pytestmark = pytest.mark.unit

URL = "https://dav.example.com/calendars/alice/work/"
BODY = b"BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"


def _fetcher(handler, **kwargs) -> tuple[FeedFetcher, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FeedFetcher(client, **kwargs), client


class TestFetch:
    async def test_report_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(207, content=BODY)

        fetcher, client = _fetcher(handler)
        async with client:
            assert await fetcher.fetch(URL, None) == BODY

        [request] = seen
        assert request.method == "REPORT"
        assert request.headers["Depth"] == "1"
        assert request.headers["Content-Type"].startswith("application/xml")
        assert b"calendar-query" in request.content
        assert "Authorization" not in request.headers

    async def test_basic_credential(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(207, content=BODY)

        fetcher, client = _fetcher(handler)
        async with client:
            await fetcher.fetch(URL, BasicCredential("alice", "s3cret"))

        expected = base64.b64encode(b"alice:s3cret").decode()
        assert seen[0].headers["Authorization"] == f"Basic {expected}"

    async def test_bearer_credential(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(207, content=BODY)

        fetcher, client = _fetcher(handler)
        async with client:
            await fetcher.fetch(URL, BearerCredential("tok-123"))

        assert seen[0].headers["Authorization"] == "Bearer tok-123"

    @pytest.mark.parametrize("status", [405, 501])
    async def test_falls_back_to_get_when_report_unsupported(self, status):
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            if request.method == "REPORT":
                return httpx.Response(status)
            return httpx.Response(200, content=BODY)

        fetcher, client = _fetcher(handler)
        async with client:
            assert await fetcher.fetch(URL, None) == BODY
        assert methods == ["REPORT", "GET"]

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (401, FeedUnauthorizedError),
            (403, FeedUnauthorizedError),
            (404, FeedNotFoundError),
            (410, FeedNotFoundError),
            (500, FeedTransportError),
            (302, FeedTransportError),
        ],
    )
    async def test_status_mapping(self, status, error):
        fetcher, client = _fetcher(lambda request: httpx.Response(status))
        async with client:
            with pytest.raises(error) as exc_info:
                await fetcher.fetch(URL, None)
        assert exc_info.value.status_code == status

    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        fetcher, client = _fetcher(handler, timeout_seconds=5)
        async with client:
            with pytest.raises(FeedTimeoutError, match="5"):
                await fetcher.fetch(URL, None)

    async def test_connection_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher, client = _fetcher(handler)
        async with client:
            with pytest.raises(FeedTransportError, match="ConnectError"):
                await fetcher.fetch(URL, None)

    async def test_errors_do_not_leak_credentials_in_url(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        fetcher, client = _fetcher(handler)
        async with client:
            with pytest.raises(FeedTransportError) as exc_info:
                await fetcher.fetch("https://alice:pw@dav.example.com/cal?token=abc", None)
        assert "pw" not in str(exc_info.value)
        assert "token" not in str(exc_info.value)


def test_calendar_query_time_range_uses_lookback():
    fetcher = FeedFetcher(
        httpx.AsyncClient(),
        lookback_days=180,
        clock=lambda: datetime(2024, 1, 1, tzinfo=UTC),
    )
    assert 'start="20230705T000000Z"' in fetcher.calendar_query()


def test_safe_url_strips_userinfo_and_query():
    assert (
        safe_url("https://alice:pw@dav.example.com/cal/work?token=abc")
        == "https://dav.example.com/cal/work"
    )
