"""Default settings.

Single source of truth for defaults; `config.Config.from_env()` layers
environment variables on top of these values.
"""

SETTINGS: dict[str, object] = {
    # Logging
    "LOG_LEVEL": "INFO",
    # SEC EDGAR
    # SEC requires a descriptive User-Agent that includes contact info.
    # Example: "SEC13F Collector your.name@domain.com"
    "SEC_USER_AGENT": "sec13f-collector/0.1 (contact: unset)",
    "SEC_REQUEST_TIMEOUT_SECONDS": 15.0,
    # SEC fair-access limit is 10 req/s; stay below it.
    "SEC_MAX_REQUESTS_PER_SECOND": 9,
    # Task engine
    "TASK_MAX_ATTEMPTS": 3,
    "TASK_BACKOFF_BASE_SECONDS": 60.0,
    "TASK_BACKOFF_CAP_SECONDS": 3600.0,
    "TASK_WORKERS": 3,
    "SCHEDULER_INTERVAL_SECONDS": 600.0,
}
