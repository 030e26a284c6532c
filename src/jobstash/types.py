"""Job types.

Public types:
- JobRecord: Persisted state of a single scheduled job
- JobCallback: Callable invoked with the JobRecord when a job fires
- UpdateResult: Outcome of a conditional update against the store
"""

import json
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

JobMetadata = dict[str, Any]

# Callbacks receive the record for the firing; they may be sync or async
JobCallback = Callable[["JobRecord"], Awaitable[Any] | Any]


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC with millisecond precision.

    Naive datetimes are assumed to already be in UTC, which is how MongoDB
    hands them back. BSON dates only carry milliseconds, so anything finer
    is dropped to keep due_at comparisons exact across backends.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    else:
        value = value.astimezone(UTC)
    return value.replace(microsecond=value.microsecond - value.microsecond % 1000)


@dataclass
class UpdateResult:
    """Result of a conditional update."""

    matched_count: int = 0
    modified_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.matched_count == 1 and self.modified_count == 1


@dataclass
class JobRecord:
    """A scheduled job as stored in the persistence backend."""

    id: str
    due_at: datetime
    metadata: JobMetadata = field(default_factory=dict)
    is_active: bool = True
    is_locked: bool = False
    retried_count: int = 0
    error_count: int = 0
    error_messages: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        self.due_at = ensure_utc(self.due_at)
        self.created_at = ensure_utc(self.created_at)
        if self.updated_at is not None:
            self.updated_at = ensure_utc(self.updated_at)

    @property
    def is_abandoned(self) -> bool:
        return not self.is_active

    def to_document(self) -> dict[str, Any]:
        """Serialize to the stored document shape."""
        data: dict[str, Any] = {
            "id": self.id,
            "dueAt": self.due_at,
            "metadata": dict(self.metadata),
            "isActive": self.is_active,
            "isLocked": self.is_locked,
            "retriedCount": self.retried_count,
            "errorCount": self.error_count,
            "errorMessages": list(self.error_messages),
            "createdAt": self.created_at,
        }
        if self.updated_at is not None:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "JobRecord":
        """Parse a stored document.

        Counters and flags missing from older documents fall back to the
        values a freshly inserted record would have.
        """
        return cls(
            id=data["id"],
            due_at=data["dueAt"],
            metadata=dict(data.get("metadata") or {}),
            is_active=bool(data.get("isActive", True)),
            is_locked=bool(data.get("isLocked", False)),
            retried_count=int(data.get("retriedCount") or 0),
            error_count=int(data.get("errorCount") or 0),
            error_messages=list(data.get("errorMessages") or []),
            created_at=data.get("createdAt") or utc_now(),
            updated_at=data.get("updatedAt"),
        )


# Record field name -> stored document key
DOCUMENT_KEYS = {
    "id": "id",
    "due_at": "dueAt",
    "metadata": "metadata",
    "is_active": "isActive",
    "is_locked": "isLocked",
    "retried_count": "retriedCount",
    "error_count": "errorCount",
    "error_messages": "errorMessages",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


def serialize_error(error: BaseException) -> str:
    """Serialize an exception to the JSON string stored in error_messages."""
    stack = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    )
    return json.dumps(
        {
            "message": str(error),
            "type": type(error).__name__,
            "code": getattr(error, "code", None),
            "stack": stack,
        },
        default=str,
    )
