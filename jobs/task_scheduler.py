"""Periodic driver for the task queue.

Usage:
    python -m jobs.task_scheduler --once
    python -m jobs.task_scheduler --submit-cik 0001067983 --company-name "BERKSHIRE HATHAWAY INC" --once
    python -m jobs.task_scheduler --interval 300 --workers 4
"""

from __future__ import annotations

import argparse
import dataclasses
import os
import threading
from datetime import timedelta

import requests
from sqlalchemy.orm import sessionmaker

import db
from config import Config
from jobs.holding_merge_task import HoldingMergeTaskProcessor
from jobs.scraping_task import ScrapingTaskProcessor
from logging_utils import configure_app_logging, get_logger
from models.tasks import TaskType
from services.filing_store import FilingStore
from services.task_queue import ExponentialBackoff, ProcessorRegistry, TaskQueue
from utils.sec_edgar_api import EdgarClient, SlidingWindowRateLimiter

logger = get_logger(__name__)


def build_task_queue(config: Config, session_factory=None) -> TaskQueue:
    """Wire fetcher, store and both processors into a ready-to-run queue."""

    if session_factory is None:
        if config.database_url and config.database_url != db.SQLALCHEMY_DATABASE_URL:
            engine = db.make_engine(config.database_url)
            session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        else:
            engine = db.engine
            session_factory = db.SessionLocal
        if config.init_db_on_startup:
            db.init_db(bind=engine)

    client = EdgarClient(
        user_agent=config.sec_user_agent,
        session=requests.Session(),
        rate_limiter=SlidingWindowRateLimiter(
            max_requests=config.sec_max_requests_per_second, window_seconds=1.0
        ),
        timeout_seconds=config.sec_request_timeout_seconds,
    )
    store = FilingStore(session_factory)

    registry = ProcessorRegistry()
    registry.register(ScrapingTaskProcessor(client, store))
    registry.register(HoldingMergeTaskProcessor(store))

    return TaskQueue(
        session_factory,
        registry,
        max_attempts=config.task_max_attempts,
        backoff=ExponentialBackoff(config.task_backoff_base_seconds, config.task_backoff_cap_seconds),
        workers=config.task_workers,
    )


def run_scheduler(
    queue: TaskQueue,
    *,
    interval_seconds: float,
    stop_event: threading.Event | None = None,
    max_ticks: int | None = None,
    stale_after: timedelta | None = None,
) -> int:
    """Call `run_eligible_tasks()` every `interval_seconds` until stopped.

    Returns the number of ticks executed. Tasks left RUNNING by a previous
    process are requeued once at startup when `stale_after` is given.
    """

    stop_event = stop_event or threading.Event()

    if stale_after is not None:
        queue.requeue_stale_running(stale_after)

    ticks = 0
    while not stop_event.is_set():
        try:
            queue.run_eligible_tasks()
        except Exception:
            # A broken tick (e.g. database unavailable) must not kill the driver.
            logger.exception("Scheduler tick crashed | tick=%s", ticks + 1)
        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            break
        stop_event.wait(max(float(interval_seconds), 0.0))

    logger.info("Scheduler stopped | ticks=%s", ticks)
    return ticks


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Run the SEC 13F task scheduler (periodic runEligibleTasks loop)."
    )
    p.add_argument("--once", action="store_true", help="Run a single tick and exit")
    p.add_argument("--interval", type=float, default=None, help="Seconds between ticks")
    p.add_argument("--workers", type=int, default=None, help="Worker pool size per tick")
    p.add_argument("--log-level", default=None, help="Override LOG_LEVEL for this run")
    p.add_argument("--submit-cik", default=None, help="Submit a SEC_SCRAPING task for this CIK first")
    p.add_argument("--company-name", default=None, help="Company name for --submit-cik")
    p.add_argument(
        "--stale-after",
        type=float,
        default=3600.0,
        help="Requeue tasks RUNNING for longer than this many seconds at startup",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    if args.log_level:
        os.environ["LOG_LEVEL"] = str(args.log_level)

    config = Config.from_env()
    configure_app_logging(config.log_level)
    if args.workers is not None:
        config = dataclasses.replace(config, task_workers=max(1, int(args.workers)))

    logger.info(
        "task_scheduler starting | workers=%s max_attempts=%s backoff=%s..%ss sec_user_agent_set=%s",
        config.task_workers,
        config.task_max_attempts,
        config.task_backoff_base_seconds,
        config.task_backoff_cap_seconds,
        bool(os.getenv("SEC_EDGAR_USER_AGENT")),
    )
    if not os.getenv("SEC_EDGAR_USER_AGENT"):
        logger.warning(
            "SEC_EDGAR_USER_AGENT is not set; SEC endpoints may return 403. "
            "Set SEC_EDGAR_USER_AGENT to something compliant (e.g. 'MyApp/1.0 you@example.com')."
        )

    try:
        queue = build_task_queue(config)

        if args.submit_cik:
            payload = {"cik": str(args.submit_cik)}
            if args.company_name:
                payload["companyName"] = str(args.company_name)
            task_id = queue.submit(TaskType.SEC_SCRAPING, payload)
            print(f"submitted SEC_SCRAPING task {task_id}")

        interval = args.interval if args.interval is not None else config.scheduler_interval_seconds
        ticks = run_scheduler(
            queue,
            interval_seconds=interval,
            max_ticks=1 if args.once else None,
            stale_after=timedelta(seconds=float(args.stale_after)),
        )
        logger.info("task_scheduler complete | ticks=%s", ticks)
    except KeyboardInterrupt:
        logger.info("task_scheduler interrupted")
    except Exception:
        logger.exception("task_scheduler crashed")
        raise


if __name__ == "__main__":
    main()
