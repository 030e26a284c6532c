"""jobstash: durable, crash-recoverable date scheduling for asyncio.

Public API:
- Scheduler / create_scheduler: Schedule, update, cancel and rehydrate jobs
- Job: Handle returned for every armed job
- JobRecord: Persisted job state, passed to callbacks
- StoreConfig / SchedulerOptions: Configuration models
- UnboundedTimer: Timer that fires after arbitrarily long delays
"""

from jobstash.claim import ClaimCoordinator
from jobstash.config import JobstashConfig, SchedulerOptions, StoreConfig, load_config
from jobstash.errors import (
    CallbackNotCallableError,
    ConfigError,
    DuplicateJobIdError,
    JobstashError,
    SchedulerNotInitializedError,
    StoreError,
    UsageError,
)
from jobstash.retry import FailureOutcome, RetryPolicy
from jobstash.scheduler import Job, Scheduler, create_scheduler
from jobstash.store import JobStore, MongoJobStore, SQLJobStore, connect_store
from jobstash.timer import MAX_DELAY, TimerState, UnboundedTimer
from jobstash.types import JobCallback, JobMetadata, JobRecord, UpdateResult

__all__ = [
    "MAX_DELAY",
    "CallbackNotCallableError",
    "ClaimCoordinator",
    "ConfigError",
    "DuplicateJobIdError",
    "FailureOutcome",
    "Job",
    "JobCallback",
    "JobMetadata",
    "JobRecord",
    "JobStore",
    "JobstashConfig",
    "JobstashError",
    "MongoJobStore",
    "RetryPolicy",
    "SQLJobStore",
    "Scheduler",
    "SchedulerNotInitializedError",
    "SchedulerOptions",
    "StoreConfig",
    "StoreError",
    "TimerState",
    "UnboundedTimer",
    "UpdateResult",
    "UsageError",
    "connect_store",
    "create_scheduler",
    "load_config",
]
