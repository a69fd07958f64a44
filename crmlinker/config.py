"""
Runtime settings read from the environment (and .env via load_env).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ConfigError

DEFAULT_DATABASE_URL = "sqlite:///data/crmlinker.db"


def _int_env(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    api_base_url: str = ""
    api_token: str = ""
    database_url: str = DEFAULT_DATABASE_URL
    concurrency: int = 5
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    stale_after_seconds: float = 600.0  # running jobs older than this are re-queued by `work`
    ids_file: Path = Path("record_ids.csv")
    producer_limit: Optional[int] = None  # None = no limit
    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    @classmethod
    def from_env(cls) -> "Settings":
        limit = _int_env("CRMLINKER_PRODUCER_LIMIT", 0, minimum=0)
        return cls(
            api_base_url=os.getenv("CRM_API_BASE_URL", ""),
            api_token=os.getenv("CRM_API_TOKEN", ""),
            database_url=os.getenv("CRMLINKER_DATABASE_URL") or DEFAULT_DATABASE_URL,
            concurrency=_int_env("CRMLINKER_CONCURRENCY", 5, minimum=1),
            max_attempts=_int_env("CRMLINKER_MAX_ATTEMPTS", 3, minimum=1),
            backoff_seconds=_float_env("CRMLINKER_BACKOFF_SECONDS", 5.0),
            stale_after_seconds=_float_env("CRMLINKER_STALE_AFTER_SECONDS", 600.0),
            ids_file=Path(os.getenv("CRMLINKER_IDS_FILE") or "record_ids.csv"),
            producer_limit=limit if limit > 0 else None,
            log_level=os.getenv("CRMLINKER_LOG_LEVEL") or "INFO",
            log_dir=Path(os.getenv("CRMLINKER_LOG_DIR") or "logs"),
        )

    def require_api(self) -> None:
        """Fetching needs both the base URL and the token."""
        if not self.api_base_url or not self.api_token:
            raise ConfigError("CRM_API_BASE_URL and CRM_API_TOKEN must be set to fetch records.")
