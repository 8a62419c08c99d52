from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Descriptor
    compose_file: str = os.getenv("CCR_FILE", "compose.yaml")
    project_name: str | None = os.getenv("CCR_PROJECT_NAME") or None

    # Runtime
    stop_timeout_s: int = _env_int("CCR_STOP_TIMEOUT_S", 10)
    # Pull an image once when it is not present locally; no build support.
    pull_missing: bool = _env_bool("CCR_PULL_MISSING", True)

    log_level: str = os.getenv("CCR_LOG_LEVEL", "WARNING").upper()


settings = Settings()
