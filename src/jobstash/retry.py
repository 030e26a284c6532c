"""Fixed-window retry policy for failed job callbacks.

On failure the policy asks the store for one atomic transition that records
the error, bumps the counters, unlocks the record and, once the persisted
retried_count reaches the configured retry_count, marks the job inactive.
The persisted counter is the only retry counter; nothing is tracked in
memory, so the decision survives restarts.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from jobstash.store.protocols import JobStore
from jobstash.types import JobRecord, serialize_error

logger = logging.getLogger(__name__)

# Re-arms the job for another attempt after a delay in seconds. Returns
# None when the job is no longer owned by the caller (cancelled or
# rescheduled while the failed attempt was running).
Rearm = Callable[[JobRecord, float], Any]


@dataclass
class FailureOutcome:
    """What happened to a job after a failed attempt."""

    record: JobRecord | None
    retry_scheduled: bool = False

    @property
    def abandoned(self) -> bool:
        return self.record is not None and not self.record.is_active


class RetryPolicy:
    """Records failures and re-arms jobs after a fixed retry window."""

    def __init__(self, store: JobStore, retry_window_seconds: float, retry_count: int):
        self._store = store
        self._retry_window_seconds = retry_window_seconds
        self._retry_count = retry_count

    @property
    def retry_window_seconds(self) -> float:
        return self._retry_window_seconds

    @property
    def retry_count(self) -> int:
        return self._retry_count

    async def handle_failure(
        self, job_id: str, error: BaseException, rearm: Rearm
    ) -> FailureOutcome:
        """Record a failed attempt and re-arm the job unless it is finished.

        Store errors propagate; the caller's pipeline stops without
        re-arming for this cycle.
        """
        record = await self._store.record_failure(
            job_id, serialize_error(error), self._retry_count
        )

        if record is None:
            logger.info("job_failed_after_removal", extra={"job.id": job_id})
            return FailureOutcome(record=None)

        if not record.is_active:
            logger.warning(
                "job_abandoned",
                extra={
                    "job.id": job_id,
                    "retry.retried_count": record.retried_count,
                    "retry.error_count": record.error_count,
                    "error.message": str(error),
                    "error.type": type(error).__name__,
                },
            )
            return FailureOutcome(record=record)

        if rearm(record, self._retry_window_seconds) is None:
            logger.info("job_retry_skipped", extra={"job.id": job_id})
            return FailureOutcome(record=record)

        logger.info(
            "job_retry_scheduled",
            extra={
                "job.id": job_id,
                "retry.attempt": record.retried_count + 1,
                "retry.max": self._retry_count,
                "retry.delay_s": self._retry_window_seconds,
                "error.message": str(error),
                "error.type": type(error).__name__,
            },
        )
        return FailureOutcome(record=record, retry_scheduled=True)
