"""Durable date scheduler.

A Scheduler persists every job to a JobStore and keeps one in-memory
UnboundedTimer per job id. When a timer fires, the job runs through a
pipeline chosen once at init():

- without locking: run callback -> delete record
- with locking: claim record -> run callback -> delete record

A failed callback is handed to the RetryPolicy, which records the failure
atomically and re-arms the job after the retry window until the persisted
retry budget is used up. Calling reschedule_jobs() after init() on process
start re-arms every active job found in the store.
"""

import asyncio
import functools
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from jobstash.claim import ClaimCoordinator
from jobstash.config.models import SchedulerOptions
from jobstash.errors import (
    CallbackNotCallableError,
    ConfigError,
    SchedulerNotInitializedError,
)
from jobstash.retry import RetryPolicy
from jobstash.store import StoreTarget, build_store
from jobstash.store.protocols import JobStore
from jobstash.timer import MAX_DELAY, UnboundedTimer
from jobstash.types import JobCallback, JobMetadata, JobRecord, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Runs one firing of a job: (callback, record, timer that fired) -> None
Runner = Callable[[JobCallback, JobRecord, UnboundedTimer], Awaitable[None]]


class Job:
    """Handle for a job armed in a Scheduler."""

    def __init__(self, scheduler: "Scheduler", record: JobRecord):
        self._scheduler = scheduler
        self._record = record

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def due_at(self) -> datetime:
        return self._record.due_at

    @property
    def metadata(self) -> JobMetadata:
        return self._record.metadata

    def cancel(self) -> bool:
        """Stop the in-memory timer. The stored record is left in place."""
        return self._scheduler.cancel_job_in_memory(self.id)

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, due_at={self.due_at.isoformat()!r})"


def _check_callback(callback: Any) -> None:
    if not callable(callback):
        raise CallbackNotCallableError()


def _resolve_options(
    options: SchedulerOptions | Mapping[str, Any] | None,
) -> SchedulerOptions:
    if options is None:
        return SchedulerOptions()
    if isinstance(options, SchedulerOptions):
        return options
    try:
        return SchedulerOptions.model_validate(dict(options))
    except ValidationError as e:
        raise ConfigError(f"Invalid scheduler options: {e}") from e


async def _invoke(callback: JobCallback, record: JobRecord) -> None:
    result = callback(record)
    if inspect.isawaitable(result):
        await result


class Scheduler:
    """Schedules callbacks at future instants, durably.

    Example:
        scheduler = await create_scheduler(
            StoreConfig(address="mongodb://localhost:27017"),
            {"retry_count": 5, "use_lock": True},
        )
        await scheduler.reschedule_jobs(send_reminder)
        job = await scheduler.schedule_job(
            send_reminder, due_at, metadata={"user_id": "u1"}
        )
    """

    def __init__(self, *, max_delay: float = MAX_DELAY):
        self._max_delay = max_delay
        self._store: JobStore | None = None
        self._owns_store = False
        self._options = SchedulerOptions()
        self._claims: ClaimCoordinator | None = None
        self._retry: RetryPolicy | None = None
        self._runner: Runner | None = None
        self._timers: dict[str, UnboundedTimer] = {}
        self._tasks: set[asyncio.Task] = set()
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def options(self) -> SchedulerOptions:
        return self._options

    @property
    def store(self) -> JobStore:
        self._require_initialized()
        assert self._store is not None
        return self._store

    async def init(
        self,
        store: StoreTarget,
        options: SchedulerOptions | Mapping[str, Any] | None = None,
        *,
        collection: str | None = None,
    ) -> "Scheduler":
        """Connect to the store and apply options over the defaults.

        Calling init() again closes the previous store and timers first.

        Args:
            store: A StoreConfig, an open pymongo AsyncDatabase or SQLAlchemy
                AsyncEngine, or a JobStore instance.
            options: SchedulerOptions or a mapping of option names.
            collection: Collection (or table) name overriding the default
                or the StoreConfig's. Ignored for JobStore instances.
        """
        resolved = _resolve_options(options)
        job_store = build_store(store, collection=collection)
        await job_store.connect()
        await job_store.ensure_unique_index()

        reuses_store = job_store is self._store
        owns_store = job_store is not store or (reuses_store and self._owns_store)
        if self._initialized:
            if reuses_store:
                self._owns_store = False
            await self.close()

        self._store = job_store
        self._owns_store = owns_store
        self._options = resolved
        self._claims = ClaimCoordinator(job_store)
        self._retry = RetryPolicy(
            job_store,
            retry_window_seconds=resolved.retry_window_seconds,
            retry_count=resolved.retry_count,
        )
        self._runner = self._run_claimed if resolved.use_lock else self._run_direct
        self._initialized = True
        logger.info(
            "scheduler_initialized",
            extra={
                "store.type": type(job_store).__name__,
                "retry.window_s": resolved.retry_window_seconds,
                "retry.count": resolved.retry_count,
                "scheduler.use_lock": resolved.use_lock,
            },
        )
        return self

    async def close(self) -> None:
        """Cancel all timers, wait for running jobs and release the store."""
        if not self._initialized:
            return
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._tasks:
            await asyncio.wait(list(self._tasks))
        if self._owns_store and self._store is not None:
            await self._store.close()
        self._initialized = False
        logger.info("scheduler_closed")

    async def __aenter__(self) -> "Scheduler":
        self._require_initialized()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise SchedulerNotInitializedError()

    # ------------------------------------------------------------------
    # Public scheduling API
    # ------------------------------------------------------------------

    async def schedule_job(
        self,
        callback: JobCallback,
        due_at: datetime,
        job_id: str | None = None,
        metadata: JobMetadata | None = None,
    ) -> Job:
        """Persist a new job and arm it.

        Raises:
            SchedulerNotInitializedError: init() has not completed.
            CallbackNotCallableError: callback is not callable.
            DuplicateJobIdError: job_id already exists in the store.
        """
        self._require_initialized()
        _check_callback(callback)
        assert self._store is not None

        record = JobRecord(
            id=job_id or str(uuid.uuid4()),
            due_at=due_at,
            metadata=dict(metadata or {}),
        )
        await self._store.insert(record)
        logger.info(
            "job_scheduled",
            extra={"job.id": record.id, "job.due_at": record.due_at.isoformat()},
        )
        return self._arm(callback, record)

    def schedule_job_in_memory(
        self,
        callback: JobCallback,
        due_at: datetime,
        job_id: str,
        metadata: JobMetadata | None = None,
    ) -> Job:
        """Arm a job whose record is already persisted."""
        self._require_initialized()
        _check_callback(callback)
        record = JobRecord(id=job_id, due_at=due_at, metadata=dict(metadata or {}))
        return self._arm(callback, record)

    async def reschedule_jobs(self, callback: JobCallback) -> list[Job]:
        """Re-arm every active job in the store.

        Call once at process start, after init(). Each callback invocation
        receives the full stored record.
        """
        self._require_initialized()
        _check_callback(callback)
        assert self._store is not None

        records = await self._store.find_all(is_active=True)
        jobs = [self._arm(callback, record) for record in records]
        logger.info("jobs_rehydrated", extra={"job.count": len(jobs)})
        return jobs

    async def update_job(
        self,
        job_id: str,
        callback: JobCallback,
        due_at: datetime,
        metadata: JobMetadata | None = None,
    ) -> Job:
        """Move a job to a new due time, creating it if it does not exist.

        When metadata is None the stored metadata is kept.
        """
        self._require_initialized()
        _check_callback(callback)
        assert self._store is not None

        self.cancel_job_in_memory(job_id)
        await self._store.upsert(job_id, ensure_utc(due_at), metadata)
        record = await self._store.find_one(job_id)
        if record is None:
            record = JobRecord(id=job_id, due_at=due_at, metadata=dict(metadata or {}))
        logger.info(
            "job_updated",
            extra={"job.id": job_id, "job.due_at": record.due_at.isoformat()},
        )
        return self._arm(callback, record)

    async def cancel_job(self, job: Job | str) -> bool:
        """Cancel a job's timer and delete its record.

        Safe to call repeatedly. An attempt that is already running is not
        interrupted, but it will not be retried.

        Returns:
            True if a stored record was deleted.
        """
        self._require_initialized()
        assert self._store is not None

        job_id = job.id if isinstance(job, Job) else job
        self.cancel_job_in_memory(job_id)
        deleted = await self._store.delete_one(job_id)
        logger.info("job_cancelled", extra={"job.id": job_id, "job.deleted": deleted})
        return deleted

    def cancel_job_in_memory(self, job_id: str) -> bool:
        """Stop and forget the in-memory timer for job_id, if any."""
        timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        was_active = timer.active
        timer.cancel()
        return was_active

    async def get_all_active_jobs(self) -> list[JobRecord]:
        """Get every stored job that can still fire."""
        self._require_initialized()
        assert self._store is not None
        return await self._store.find_all(is_active=True)

    async def get_job(self, job_id: str) -> JobRecord | None:
        """Get a stored job, including abandoned ones."""
        self._require_initialized()
        assert self._store is not None
        return await self._store.find_one(job_id)

    @property
    def scheduled_job_ids(self) -> list[str]:
        """Ids with a live in-memory timer in this process."""
        return [job_id for job_id, timer in self._timers.items() if timer.active]

    def is_scheduled(self, job_id: str) -> bool:
        timer = self._timers.get(job_id)
        return timer is not None and timer.active

    # ------------------------------------------------------------------
    # Arming and firing
    # ------------------------------------------------------------------

    def _arm(
        self, callback: JobCallback, record: JobRecord, delay: float | None = None
    ) -> Job:
        """Arm a timer for record, replacing any live timer for the same id."""
        existing = self._timers.pop(record.id, None)
        if existing is not None:
            existing.cancel()

        if delay is None:
            delay = (record.due_at - utc_now()).total_seconds()
        timer = UnboundedTimer(max_delay=self._max_delay)
        self._timers[record.id] = timer
        timer.arm(delay, functools.partial(self._dispatch, callback, record, timer))
        logger.debug(
            "job_armed",
            extra={"job.id": record.id, "timer.delay_s": round(max(delay, 0.0), 3)},
        )
        return Job(self, record)

    def _dispatch(
        self, callback: JobCallback, record: JobRecord, timer: UnboundedTimer
    ) -> None:
        assert self._runner is not None
        task = asyncio.create_task(self._runner(callback, record, timer))
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._on_pipeline_done, record.id))

    def _on_pipeline_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "job_pipeline_failed",
                extra={
                    "job.id": job_id,
                    "error.message": str(error),
                    "error.type": type(error).__name__,
                },
                exc_info=error,
            )

    def _release_timer(self, job_id: str, timer: UnboundedTimer) -> None:
        # Only drop the entry if nobody re-armed the job in the meantime
        if self._timers.get(job_id) is timer:
            del self._timers[job_id]

    async def _run_claimed(
        self, callback: JobCallback, record: JobRecord, timer: UnboundedTimer
    ) -> None:
        assert self._claims is not None
        claimed = False
        try:
            claimed = await self._claims.try_claim(record.id, record.due_at)
        finally:
            if not claimed:
                self._release_timer(record.id, timer)
        if not claimed:
            logger.debug("job_claim_lost", extra={"job.id": record.id})
            return
        await self._run_direct(callback, record, timer)

    async def _run_direct(
        self, callback: JobCallback, record: JobRecord, timer: UnboundedTimer
    ) -> None:
        assert self._store is not None
        assert self._retry is not None
        try:
            try:
                await _invoke(callback, record)
            except Exception as e:
                await self._retry.handle_failure(
                    record.id,
                    e,
                    functools.partial(self._rearm_retry, callback, timer),
                )
                return

            # False when the job was rescheduled while this attempt ran
            deleted = await self._store.delete_one(record.id, due_at=record.due_at)
            logger.info(
                "job_completed", extra={"job.id": record.id, "job.deleted": deleted}
            )
        finally:
            self._release_timer(record.id, timer)

    def _rearm_retry(
        self,
        callback: JobCallback,
        fired: UnboundedTimer,
        record: JobRecord,
        delay: float,
    ) -> Job | None:
        # Cancelled or rescheduled while the failed attempt was running
        if self._timers.get(record.id) is not fired:
            return None
        return self._arm(callback, record, delay=delay)


async def create_scheduler(
    store: StoreTarget,
    options: SchedulerOptions | Mapping[str, Any] | None = None,
    *,
    max_delay: float = MAX_DELAY,
    collection: str | None = None,
) -> Scheduler:
    """Create and initialize a Scheduler."""
    scheduler = Scheduler(max_delay=max_delay)
    return await scheduler.init(store, options, collection=collection)
