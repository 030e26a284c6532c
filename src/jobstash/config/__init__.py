"""Configuration module."""

from jobstash.config.loader import load_config
from jobstash.config.models import (
    DEFAULT_COLLECTION,
    DEFAULT_DATABASE_NAME,
    JobstashConfig,
    SchedulerOptions,
    StoreConfig,
)
from jobstash.errors import ConfigError

__all__ = [
    "ConfigError",
    "DEFAULT_COLLECTION",
    "DEFAULT_DATABASE_NAME",
    "JobstashConfig",
    "SchedulerOptions",
    "StoreConfig",
    "load_config",
]
