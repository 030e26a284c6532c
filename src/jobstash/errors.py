"""Exception types raised by jobstash.

Usage errors are raised directly to callers of the scheduling API and are
never retried. Failures raised by user callbacks are not represented here:
they are recorded on the job and retried by the retry policy.
"""


class JobstashError(Exception):
    """Base class for all jobstash errors."""


class UsageError(JobstashError):
    """The scheduling API was called incorrectly."""


class SchedulerNotInitializedError(UsageError):
    """An operation was attempted before Scheduler.init() completed."""

    def __init__(self, message: str = "Scheduler not initialized"):
        super().__init__(message)


class CallbackNotCallableError(UsageError):
    """A non-callable object was supplied as a job callback."""

    def __init__(self, message: str = "callback is not a function"):
        super().__init__(message)


class DuplicateJobIdError(UsageError):
    """A job with the same id already exists in the store."""

    def __init__(self, job_id: str | None = None):
        super().__init__("JobId must be unique")
        self.job_id = job_id


class ConfigError(JobstashError):
    """Configuration error."""


class StoreError(JobstashError):
    """The persistence backend failed."""
