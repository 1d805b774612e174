"""calendar-bot daemon: wires collaborators together and owns the background loops.

Startup sequence:
1. Initialize telemetry
2. Connect the bounded database pool
3. Create the shared HTTP client
4. Build store, fetcher, credentials, Matrix client, syncer and dispatcher
5. Launch the sync scheduler, the reminder dispatch loop and, when OAuth2 is
   configured, the token refresh loop

Shutdown cancels the loops first, then closes the HTTP client and the pool.
Every store mutation is a single statement or transaction, so cancelling a
loop mid-tick never leaves partial state behind.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

import httpx

from calendar_bot import __version__
from calendar_bot.config import AppConfig
from calendar_bot.core.telemetry import init_telemetry
from calendar_bot.credentials import CredentialResolver, TokenRefresher
from calendar_bot.db import Database
from calendar_bot.ical.fetcher import FeedFetcher
from calendar_bot.matrix import MatrixClient
from calendar_bot.reminders.dispatcher import ReminderDispatcher
from calendar_bot.store import CalendarStore
from calendar_bot.sync import CalendarSyncer, SyncResult, SyncScheduler

logger = logging.getLogger(__name__)


class CalendarBotDaemon:
    """Central orchestrator for one calendar-bot process."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.db: Database | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.store: CalendarStore | None = None
        self.scheduler: SyncScheduler | None = None
        self.dispatcher: ReminderDispatcher | None = None
        self.refresher: TokenRefresher | None = None
        self._tasks: list[asyncio.Task] = []

    async def open(self) -> None:
        """Connect to the database and build all collaborators without starting loops."""
        config = self.config
        init_telemetry("calendar-bot")

        self.db = Database.from_url(
            config.database.connection_string,
            min_pool_size=config.database.min_pool_size,
            max_pool_size=config.database.max_pool_size,
        )
        pool = await self.db.connect()
        self.store = CalendarStore(pool)

        self.http_client = httpx.AsyncClient(
            timeout=config.sync.request_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": f"calendar-bot/{__version__}"},
        )

        if config.oauth2 is not None:
            self.refresher = TokenRefresher(
                self.store,
                self.http_client,
                token_url=config.oauth2.token_url,
                client_id=config.oauth2.client_id,
                client_secret=config.oauth2.client_secret,
            )
        credentials = CredentialResolver(
            self.store,
            self.refresher,
            refresh_margin=timedelta(
                seconds=config.oauth2.refresh_margin_seconds if config.oauth2 else 600
            ),
        )
        fetcher = FeedFetcher(
            self.http_client,
            timeout_seconds=config.sync.request_timeout_seconds,
            lookback_days=config.sync.lookback_days,
        )
        syncer = CalendarSyncer(
            self.store,
            fetcher,
            credentials,
            horizon=timedelta(days=config.sync.horizon_days),
        )
        self.scheduler = SyncScheduler(
            syncer,
            self.store,
            interval=config.sync.interval_seconds,
            max_concurrency=config.sync.max_concurrency,
            timeout=config.sync.timeout_seconds,
        )
        self.dispatcher = ReminderDispatcher(
            self.store,
            MatrixClient(
                self.http_client,
                homeserver_url=config.matrix.homeserver_url,
                access_token=config.matrix.access_token,
            ),
            grace=timedelta(minutes=config.dispatch.grace_minutes),
            max_concurrency=config.dispatch.max_concurrency,
        )

    async def start(self) -> None:
        """Open collaborators and launch the background loops."""
        await self.open()
        assert self.scheduler is not None

        self._tasks.append(asyncio.create_task(self.scheduler.run(), name="calendar-sync"))
        self._tasks.append(
            asyncio.create_task(
                self._run_periodic(
                    "reminder dispatch",
                    self._dispatch_tick,
                    self.config.dispatch.tick_interval_seconds,
                ),
                name="reminder-dispatch",
            )
        )
        if self.refresher is not None and self.config.oauth2 is not None:
            self._tasks.append(
                asyncio.create_task(
                    self._run_periodic(
                        "token refresh",
                        self._token_refresh_tick,
                        self.config.oauth2.refresh_interval_seconds,
                    ),
                    name="oauth2-refresh",
                )
            )
        logger.info("calendar-bot started with %d background loop(s)", len(self._tasks))

    async def run_sync_round(self) -> dict[int, SyncResult | Exception]:
        """Sync every calendar once (used by ``calendar-bot sync``)."""
        if self.scheduler is None:
            await self.open()
        assert self.scheduler is not None
        return await self.scheduler.run_round()

    async def _dispatch_tick(self) -> None:
        assert self.dispatcher is not None
        await self.dispatcher.tick()

    async def _token_refresh_tick(self) -> None:
        assert self.refresher is not None and self.config.oauth2 is not None
        refreshed = await self.refresher.refresh_expiring(
            timedelta(seconds=self.config.oauth2.refresh_margin_seconds)
        )
        if refreshed:
            logger.info("Refreshed %d OAuth2 token(s)", refreshed)

    @staticmethod
    async def _run_periodic(
        name: str,
        tick: Callable[[], Awaitable[None]],
        interval_seconds: float,
    ) -> None:
        """Run *tick* every *interval_seconds* until cancelled.

        A failing tick is logged and the loop carries on with the next one.
        """
        logger.debug("%s loop started (interval=%ss)", name.capitalize(), interval_seconds)
        while True:
            try:
                await tick()
            except Exception:
                logger.exception("%s tick failed", name.capitalize())
            await asyncio.sleep(interval_seconds)

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Cancel background loops
        2. Close the HTTP client
        3. Close the DB pool
        """
        logger.info("Shutting down calendar-bot")

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task, outcome in zip(
            tasks, await asyncio.gather(*tasks, return_exceptions=True), strict=True
        ):
            if isinstance(outcome, Exception):
                logger.error("Background loop %s ended with an error: %s", task.get_name(), outcome)

        if self.scheduler is not None:
            await self.scheduler.stop()

        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

        if self.db is not None:
            await self.db.close()

        logger.info("calendar-bot shutdown complete")
