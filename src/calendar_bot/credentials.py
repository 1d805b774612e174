"""Credential resolution for calendar sources and OAuth2 token refresh."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from calendar_bot.core.telemetry import traced
from calendar_bot.ical.fetcher import (
    BasicCredential,
    BearerCredential,
    Credential,
    FeedUnauthorizedError,
)
from calendar_bot.models import Calendar, OAuth2Token

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """Raised when a refresh-token exchange fails for a transient reason."""


class TokenRevokedError(TokenRefreshError):
    """Raised when the provider rejected the refresh token; the account needs re-linking."""


class TokenStore(Protocol):
    async def get_oauth2_token(self, account_id: int) -> OAuth2Token | None: ...

    async def save_oauth2_token(
        self,
        account_id: int,
        *,
        access_token: str,
        expiry: datetime,
        refresh_token: str | None = None,
    ) -> None: ...

    async def mark_needs_reauth(self, account_id: int) -> None: ...

    async def accounts_expiring_before(self, deadline: datetime) -> list[int]: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or 3600
    return 3600


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        description = payload.get("error_description")
        parts = [p for p in (error, description) if isinstance(p, str) and p.strip()]
        if parts:
            return " ".join(": ".join(parts).split())[:200]
    return f"HTTP {response.status_code}"


class TokenRefresher:
    """Exchanges stored refresh tokens for new access tokens.

    Refreshes of the same account are serialized by a per-account lock; a
    caller that waited on the lock reuses the token the previous holder
    stored instead of issuing a second request.
    """

    def __init__(
        self,
        store: TokenStore,
        http_client: httpx.AsyncClient,
        *,
        token_url: str,
        client_id: str,
        client_secret: str,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._http_client = http_client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, account_id: int) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def refresh(self, account_id: int) -> OAuth2Token:
        """Refresh the access token of *account_id* and persist the result.

        Raises
        ------
        TokenRevokedError
            The provider rejected the refresh token (HTTP 400/401); the
            account has been marked as needing re-authorization.
        TokenRefreshError
            Transport failure or unexpected response; nothing is marked.
        """
        seen = await self._store.get_oauth2_token(account_id)
        async with self._lock_for(account_id):
            current = await self._store.get_oauth2_token(account_id)
            if current is None or current.needs_reauth:
                raise TokenRevokedError(f"OAuth2 account {account_id} needs re-authorization")
            if seen is not None and current.access_token != seen.access_token:
                return current
            with traced("oauth2.refresh", account_id=account_id):
                return await self._exchange(current)

    async def _exchange(self, token: OAuth2Token) -> OAuth2Token:
        if not token.refresh_token:
            await self._store.mark_needs_reauth(token.account_id)
            raise TokenRevokedError(f"OAuth2 account {token.account_id} has no refresh token")

        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": token.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"OAuth2 token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code in (400, 401):
            await self._store.mark_needs_reauth(token.account_id)
            raise TokenRevokedError(
                f"OAuth2 refresh token rejected ({response.status_code}): "
                f"{_safe_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"OAuth2 token refresh failed ({response.status_code}): "
                f"{_safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError("OAuth2 token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError("OAuth2 token response is missing a non-empty access_token")

        expiry = self._clock() + timedelta(
            seconds=_coerce_expires_in_seconds(payload.get("expires_in"))
        )
        rotated = payload.get("refresh_token")
        if not isinstance(rotated, str) or not rotated.strip():
            rotated = None

        await self._store.save_oauth2_token(
            token.account_id,
            access_token=access_token.strip(),
            expiry=expiry,
            refresh_token=rotated,
        )
        logger.info("Refreshed OAuth2 token for account %d", token.account_id)
        return OAuth2Token(
            account_id=token.account_id,
            access_token=access_token.strip(),
            refresh_token=rotated or token.refresh_token,
            expiry=expiry,
        )

    async def refresh_expiring(self, within: timedelta) -> int:
        """Refresh every usable account whose token expires within *within*.

        Failures are logged per account. Returns the number refreshed.
        """
        deadline = self._clock() + within
        refreshed = 0
        for account_id in await self._store.accounts_expiring_before(deadline):
            try:
                await self.refresh(account_id)
            except TokenRevokedError as exc:
                logger.warning("OAuth2 account %d: %s", account_id, exc)
            except TokenRefreshError as exc:
                logger.error("OAuth2 account %d refresh failed: %s", account_id, exc)
            else:
                refreshed += 1
        return refreshed


class CredentialResolver:
    """Resolves the credential a calendar's feed should be fetched with."""

    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher | None = None,
        *,
        refresh_margin: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._refresh_margin = refresh_margin
        self._clock = clock

    async def resolve(self, calendar: Calendar) -> Credential | None:
        """Return a basic-auth pair, an OAuth2 bearer token, or None.

        Raises
        ------
        FeedUnauthorizedError
            The calendar's OAuth2 account needs re-authorization.
        """
        account_id = calendar.oauth2_account_id
        if account_id is None:
            if calendar.user_name is not None and calendar.password is not None:
                return BasicCredential(calendar.user_name, calendar.password)
            return None

        token = await self._store.get_oauth2_token(account_id)
        if token is None or token.needs_reauth:
            raise FeedUnauthorizedError(f"OAuth2 account {account_id} needs re-authorization")

        expiring = token.expiry is not None and token.expiry - self._clock() <= self._refresh_margin
        if expiring and self._refresher is not None:
            try:
                token = await self._refresher.refresh(account_id)
            except TokenRevokedError as exc:
                raise FeedUnauthorizedError(str(exc)) from exc
            except TokenRefreshError as exc:
                # The current token may still be accepted; the fetch will tell.
                logger.warning("Using unrefreshed token for account %d: %s", account_id, exc)
        return BearerCredential(token.access_token)

    async def refresh(self, account_id: int) -> None:
        """Force a refresh after the source rejected the current token.

        Raises
        ------
        FeedUnauthorizedError
            OAuth2 is not configured or the refresh token was revoked.
        TokenRefreshError
            The refresh failed for a transient reason.
        """
        if self._refresher is None:
            raise FeedUnauthorizedError("OAuth2 token refresh is not configured")
        try:
            await self._refresher.refresh(account_id)
        except TokenRevokedError as exc:
            raise FeedUnauthorizedError(str(exc)) from exc
