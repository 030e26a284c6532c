"""Shared test fixtures and factories."""

import asyncio
import inspect
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from jobstash.config.models import StoreConfig
from jobstash.scheduler import Scheduler, create_scheduler
from jobstash.store.sql import SQLJobStore
from jobstash.types import JobRecord

# =============================================================================
# Helpers
# =============================================================================


async def eventually(
    check: Callable[[], bool | Awaitable[bool]],
    timeout: float = 5.0,
    interval: float = 0.01,
) -> None:
    """Poll check until it returns True, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def in_ms(milliseconds: float) -> datetime:
    return datetime.now(UTC) + timedelta(milliseconds=milliseconds)


class CallbackRecorder:
    """Callback that records every record it is invoked with.

    Raises for the first ``fail_times`` invocations (forever if -1).
    """

    def __init__(self, fail_times: int = 0):
        self.calls: list[JobRecord] = []
        self.fail_times = fail_times

    async def __call__(self, record: JobRecord) -> None:
        self.calls.append(record)
        if self.fail_times == -1 or len(self.calls) <= self.fail_times:
            raise RuntimeError(f"attempt {len(self.calls)} failed")

    @property
    def count(self) -> int:
        return len(self.calls)


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def store_config(tmp_path: Path) -> StoreConfig:
    return StoreConfig(address=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")


@pytest.fixture
async def sql_store(store_config: StoreConfig) -> AsyncGenerator[SQLJobStore, None]:
    """Connected SQL job store on a temporary SQLite file."""
    store = SQLJobStore(store_config)
    await store.connect()
    await store.ensure_unique_index()
    yield store
    await store.close()


@pytest.fixture
def make_record() -> Callable[..., JobRecord]:
    def factory(job_id: str = "job-1", **kwargs: Any) -> JobRecord:
        kwargs.setdefault("due_at", datetime(2030, 1, 1, 9, 0, tzinfo=UTC))
        return JobRecord(id=job_id, **kwargs)

    return factory


# =============================================================================
# Scheduler Fixtures
# =============================================================================


@pytest.fixture
async def scheduler(sql_store: SQLJobStore) -> AsyncGenerator[Scheduler, None]:
    """Initialized scheduler with a short retry window."""
    scheduler = await create_scheduler(
        sql_store, {"retry_window_seconds": 0.05, "retry_count": 2}
    )
    yield scheduler
    await scheduler.close()


@pytest.fixture
async def locked_scheduler(sql_store: SQLJobStore) -> AsyncGenerator[Scheduler, None]:
    """Initialized scheduler that claims every firing."""
    scheduler = await create_scheduler(
        sql_store,
        {"retry_window_seconds": 0.05, "retry_count": 2, "use_lock": True},
    )
    yield scheduler
    await scheduler.close()
