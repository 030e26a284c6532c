"""Configuration models using Pydantic."""

import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

DEFAULT_DATABASE_NAME = "job_stash"
DEFAULT_COLLECTION = "jobs"
MONGO_SCHEMES = ("mongodb://", "mongodb+srv://")

COLLECTION_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SchedulerOptions(BaseModel):
    """Retry and locking behavior for a Scheduler."""

    # Fixed delay between a failed attempt and the next one
    retry_window_seconds: float = Field(
        default=3600,
        gt=0,
        validation_alias=AliasChoices("retry_window_seconds", "retryWindowInSeconds"),
    )
    # Retries after the initial attempt before the job is abandoned
    retry_count: int = Field(
        default=3, ge=0, validation_alias=AliasChoices("retry_count", "retryCount")
    )
    # Claim each firing through the store before running it (multi-process)
    use_lock: bool = Field(
        default=False, validation_alias=AliasChoices("use_lock", "useLock")
    )


class StoreConfig(BaseModel):
    """Connection settings for the job store.

    MongoDB addresses (mongodb:// or mongodb+srv://) select the MongoDB
    backend. Anything else is treated as a SQLAlchemy async URL, e.g.
    sqlite+aiosqlite:///jobs.db.
    """

    address: str | None = None
    database_name: str = DEFAULT_DATABASE_NAME
    collection: str = DEFAULT_COLLECTION
    client_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("collection")
    @classmethod
    def _check_collection(cls, value: str) -> str:
        if not COLLECTION_NAME_PATTERN.match(value):
            raise ValueError(f"Invalid collection name: {value!r}")
        return value

    @property
    def backend(self) -> Literal["mongo", "sql"]:
        if self.address is None or self.address.startswith(MONGO_SCHEMES):
            return "mongo"
        return "sql"


class JobstashConfig(BaseModel):
    """Root configuration model."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    scheduler: SchedulerOptions = Field(default_factory=SchedulerOptions)
