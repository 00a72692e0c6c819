from __future__ import annotations

import os
from dataclasses import dataclass

from settings import SETTINGS


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return int(default)
    return int(v.strip())


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return float(default)
    return float(v.strip())


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not v.strip():
        return str(default)
    return v.strip()


@dataclass(frozen=True)
class Config:
    """Runtime configuration: `settings.SETTINGS` overridden by environment variables."""

    sec_user_agent: str
    sec_request_timeout_seconds: float
    sec_max_requests_per_second: int
    task_max_attempts: int
    task_backoff_base_seconds: float
    task_backoff_cap_seconds: float
    task_workers: int
    scheduler_interval_seconds: float
    log_level: str
    database_url: str | None = None
    init_db_on_startup: bool = True

    @classmethod
    def from_env(cls) -> "Config":
        cfg = cls(
            sec_user_agent=_env_str("SEC_EDGAR_USER_AGENT", str(SETTINGS["SEC_USER_AGENT"])),
            sec_request_timeout_seconds=_env_float(
                "SEC_REQUEST_TIMEOUT_SECONDS", SETTINGS["SEC_REQUEST_TIMEOUT_SECONDS"]
            ),
            sec_max_requests_per_second=_env_int(
                "SEC_MAX_REQUESTS_PER_SECOND", SETTINGS["SEC_MAX_REQUESTS_PER_SECOND"]
            ),
            task_max_attempts=_env_int("TASK_MAX_ATTEMPTS", SETTINGS["TASK_MAX_ATTEMPTS"]),
            task_backoff_base_seconds=_env_float(
                "TASK_BACKOFF_BASE_SECONDS", SETTINGS["TASK_BACKOFF_BASE_SECONDS"]
            ),
            task_backoff_cap_seconds=_env_float(
                "TASK_BACKOFF_CAP_SECONDS", SETTINGS["TASK_BACKOFF_CAP_SECONDS"]
            ),
            task_workers=_env_int("TASK_WORKERS", SETTINGS["TASK_WORKERS"]),
            scheduler_interval_seconds=_env_float(
                "SCHEDULER_INTERVAL_SECONDS", SETTINGS["SCHEDULER_INTERVAL_SECONDS"]
            ),
            log_level=_env_str("LOG_LEVEL", str(SETTINGS["LOG_LEVEL"])).upper(),
            database_url=os.getenv("DATABASE_URL") or None,
            init_db_on_startup=_env_bool("INIT_DB_ON_STARTUP", True),
        )
        cfg.check()
        return cfg

    def check(self) -> None:
        if self.task_max_attempts < 1:
            raise ValueError("TASK_MAX_ATTEMPTS must be >= 1")
        if self.task_workers < 1:
            raise ValueError("TASK_WORKERS must be >= 1")
        if self.task_backoff_base_seconds < 0 or self.task_backoff_cap_seconds < 0:
            raise ValueError("task backoff seconds must be >= 0")
        if self.sec_max_requests_per_second < 1:
            raise ValueError("SEC_MAX_REQUESTS_PER_SECOND must be >= 1")
