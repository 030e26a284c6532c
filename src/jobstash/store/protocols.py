"""Protocol definitions for job store backends.

Defines the interface the scheduler needs from a persistence backend. The
only concurrency primitive relied upon is the atomicity of a single
conditional update (and of record_failure, which backends must apply as
one indivisible transition).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from jobstash.types import JobMetadata, JobRecord, UpdateResult


@runtime_checkable
class JobStore(Protocol):
    """Protocol for job storage operations."""

    async def connect(self) -> None:
        """Open the connection. Idempotent."""
        ...

    async def close(self) -> None:
        """Release resources owned by the store."""
        ...

    async def ensure_unique_index(self) -> None:
        """Ensure a uniqueness constraint on the job id exists."""
        ...

    async def insert(self, record: JobRecord) -> None:
        """Insert a record. Raises DuplicateJobIdError if the id exists."""
        ...

    async def find_all(self, **predicate: Any) -> list[JobRecord]:
        """Return records whose fields equal every value in predicate."""
        ...

    async def find_one(self, job_id: str) -> JobRecord | None:
        """Get a record by id."""
        ...

    async def conditional_update(
        self, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> UpdateResult:
        """Set values on the record matching every field in match."""
        ...

    async def record_failure(
        self, job_id: str, error: str, retry_count: int
    ) -> JobRecord | None:
        """Apply the failure transition atomically.

        retried_count takes the previous error_count, error_count is
        incremented, is_locked is cleared, error is appended to
        error_messages and updated_at is bumped. is_active becomes False
        iff the new retried_count >= retry_count.

        Returns the updated record, or None if no record matched.
        """
        ...

    async def upsert(
        self, job_id: str, due_at: datetime, metadata: JobMetadata | None
    ) -> None:
        """Set due_at (and metadata when given), creating the record if absent.

        Moving due_at clears is_locked. Counters and is_active are kept.
        """
        ...

    async def delete_one(self, job_id: str, due_at: datetime | None = None) -> bool:
        """Delete a record by id, optionally only if due_at still matches.

        Returns True if a record was removed.
        """
        ...
