"""Root conftest: shared PostgreSQL testcontainer fixtures for DB-backed tests."""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "tried to kill container",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    """True for known Docker API races while force-removing a container."""
    status_code = getattr(getattr(exc, "response", None), "status_code", None)
    if status_code not in (None, 404, 409, 500):
        return False
    message = " ".join(
        part for part in (str(getattr(exc, "explanation", "") or ""), str(exc)) if part
    ).lower()
    return any(marker in message for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _patch_testcontainers_stop_with_retry() -> None:
    """Patch testcontainers stop() to tolerate transient Docker daemon races."""
    try:
        from testcontainers.core.container import DockerContainer
    except ImportError:
        return

    if getattr(DockerContainer.stop, "_calendar_bot_retry_patch", False):
        return

    original_stop = DockerContainer.stop

    def _stop_with_retry(self: Any, force: bool = True, delete_volume: bool = True) -> None:
        _retry_testcontainer_stop(
            lambda: original_stop(self, force=force, delete_volume=delete_volume)
        )

    setattr(_stop_with_retry, "_calendar_bot_retry_patch", True)
    DockerContainer.stop = _stop_with_retry


_patch_testcontainers_stop_with_retry()


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each use of :func:`provisioned_postgres_pool` provisions a new database
    with a random name, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database with the calendar-bot schema applied.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calendar_bot.db import Database
    from calendar_bot.store import apply_schema

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            await apply_schema(pool)
            yield pool
        finally:
            await db.close()

    return _provision
