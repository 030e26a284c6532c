"""Configuration loading from TOML files and environment variables."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from jobstash.config.models import JobstashConfig
from jobstash.errors import ConfigError

CONFIG_ENV_VAR = "JOBSTASH_CONFIG"

# Environment variable -> (section, key)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "JOBSTASH_STORE_ADDRESS": ("store", "address"),
    "JOBSTASH_DATABASE_NAME": ("store", "database_name"),
    "JOBSTASH_COLLECTION": ("store", "collection"),
    "JOBSTASH_RETRY_WINDOW_SECONDS": ("scheduler", "retry_window_seconds"),
    "JOBSTASH_RETRY_COUNT": ("scheduler", "retry_count"),
    "JOBSTASH_USE_LOCK": ("scheduler", "use_lock"),
}


def _get_default_config_paths() -> list[Path]:
    """Get ordered list of default config file locations."""
    paths = []
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        paths.append(Path(env_path))
    paths.append(Path("jobstash.toml"))
    return paths


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Overlay JOBSTASH_* environment variables onto the raw config dict."""
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value is None or value == "":
            continue
        config.setdefault(section, {})[key] = value
    return config


def load_config(path: Path | None = None) -> JobstashConfig:
    """Load configuration from TOML file and environment.

    Args:
        path: Explicit config file. If None, JOBSTASH_CONFIG and then
            ./jobstash.toml are tried; a missing file means defaults.

    Raises:
        ConfigError: If an explicit path is missing or the result is invalid.
    """
    raw: dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        candidates = [path]
    else:
        candidates = _get_default_config_paths()

    for candidate in candidates:
        if candidate.exists():
            try:
                with candidate.open("rb") as f:
                    raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid TOML in {candidate}: {e}") from e
            break

    raw = _apply_env_overrides(raw)

    try:
        return JobstashConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
