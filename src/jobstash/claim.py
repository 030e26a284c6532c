"""Claim coordination across processes sharing one job store.

A claim is a single conditional update that flips is_locked on the record
for this exact firing. The store applies it atomically, so among any
number of processes racing on the same firing exactly one sees it
succeed. There is no lease or heartbeat.
"""

import logging
from datetime import datetime

from jobstash.store.protocols import JobStore

logger = logging.getLogger(__name__)


class ClaimCoordinator:
    """Grants at most one process the right to run a given firing."""

    def __init__(self, store: JobStore):
        self._store = store

    async def try_claim(self, job_id: str, due_at: datetime) -> bool:
        """Claim the firing of job_id scheduled for due_at.

        Matching on due_at keeps a timer left over from before a
        reschedule from claiming the rescheduled record.
        """
        result = await self._store.conditional_update(
            {"id": job_id, "is_active": True, "due_at": due_at, "is_locked": False},
            {"is_locked": True},
        )
        claimed = result.succeeded
        logger.debug(
            "job_claim_attempted",
            extra={
                "job.id": job_id,
                "job.due_at": due_at.isoformat(),
                "claim.acquired": claimed,
            },
        )
        return claimed
