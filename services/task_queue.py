"""Persistent task queue with processor dispatch and retry/backoff.

State machine (every transition is committed before the next step):

    PENDING ──claim──▶ RUNNING ──ok──────────────▶ COMPLETED
    RETRY ───claim──▶ RUNNING ──error, retryable─▶ RETRY   (next_run_at = now + backoff)
    (when due)                └─error, final─────▶ FAILED

COMPLETED and FAILED are terminal. `attempts` counts failed executions; the
task becomes FAILED once it reaches `max_attempts`, or straight away for errors
whose class says `retryable = False`.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, or_

import db
from logging_utils import get_logger
from models.tasks import Task, TaskStatus, TaskType
from support.task_processor_base import TaskContext, TaskProcessor
from utils.time_utils import utcnow

logger = get_logger(__name__)

_ERROR_TEXT_LIMIT = 4000


class InvalidTaskType(ValueError):
    """No processor is bound to the task type (or the type is unknown)."""

    retryable = False


class DuplicateRegistration(ValueError):
    """A processor is already bound to the task type."""

    retryable = False


def _coerce_task_type(task_type: TaskType | str) -> TaskType:
    if isinstance(task_type, TaskType):
        return task_type
    try:
        return TaskType(str(task_type).strip().upper())
    except ValueError:
        raise InvalidTaskType(f"unknown task type: {task_type!r}") from None


class ProcessorRegistry:
    """Task type -> processor bindings, one processor per type."""

    def __init__(self) -> None:
        self._processors: dict[TaskType, TaskProcessor] = {}
        self._lock = threading.Lock()

    def register(self, processor: TaskProcessor) -> TaskProcessor:
        return self.register_processor(processor.task_type, processor)

    def register_processor(self, task_type: TaskType | str, processor: TaskProcessor) -> TaskProcessor:
        tt = _coerce_task_type(task_type)
        with self._lock:
            if tt in self._processors:
                raise DuplicateRegistration(
                    f"processor already registered for {tt.value}: "
                    f"{type(self._processors[tt]).__name__}"
                )
            self._processors[tt] = processor
        logger.debug("Processor registered | task_type=%s processor=%s", tt.value, type(processor).__name__)
        return processor

    def get(self, task_type: TaskType | str) -> TaskProcessor:
        tt = _coerce_task_type(task_type)
        with self._lock:
            processor = self._processors.get(tt)
        if processor is None:
            raise InvalidTaskType(f"no processor registered for task type {tt.value}")
        return processor

    def registered_types(self) -> list[TaskType]:
        with self._lock:
            return sorted(self._processors, key=lambda t: t.value)


class ExponentialBackoff:
    """`min(base * 2**(attempts-1), cap)` seconds; never decreases with attempts."""

    def __init__(self, base_seconds: float = 60.0, cap_seconds: float = 3600.0) -> None:
        if base_seconds < 0 or cap_seconds < 0:
            raise ValueError("backoff seconds must be >= 0")
        self.base_seconds = float(base_seconds)
        self.cap_seconds = max(float(cap_seconds), self.base_seconds)

    def __call__(self, attempts: int) -> timedelta:
        n = max(int(attempts), 1)
        # Cap the exponent too; 2**n overflows float conversion for large n.
        seconds = self.base_seconds * (2 ** min(n - 1, 62))
        return timedelta(seconds=min(seconds, self.cap_seconds))


def _error_text(exc: BaseException) -> str:
    text = f"{type(exc).__name__}: {exc}"
    return text[:_ERROR_TEXT_LIMIT]


class TaskQueue:
    """Submits tasks, claims the eligible ones and runs them on a worker pool.

    `session_factory` must produce independent sessions (worker threads each
    open their own). `clock` returns an aware UTC datetime and is injectable
    for tests.
    """

    def __init__(
        self,
        session_factory: Any = None,
        registry: ProcessorRegistry | None = None,
        *,
        max_attempts: int = 3,
        backoff: Callable[[int], timedelta] | None = None,
        workers: int = 1,
        clock: Callable[[], datetime] = utcnow,
        log: logging.Logger | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session_factory = session_factory or db.SessionLocal
        self.registry = registry or ProcessorRegistry()
        self.max_attempts = int(max_attempts)
        self.backoff = backoff or ExponentialBackoff()
        self.workers = max(1, int(workers))
        self.clock = clock
        self.log = log or logger

    def _now(self) -> datetime:
        return self.clock()

    # ---- submission -----------------------------------------------------

    def submit(self, task_type: TaskType | str, payload: dict | None = None) -> str:
        """Create a PENDING task and return its `task_id`.

        Raises:
            InvalidTaskType: no processor is registered for `task_type`.
            ValueError: `payload` is not JSON-serialisable.
        """

        tt = _coerce_task_type(task_type)
        self.registry.get(tt)

        try:
            payload_text = json.dumps(payload or {}, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise ValueError(f"task payload must be JSON-serialisable: {e}") from e

        now = self._now()
        with self.session_factory() as s:
            task = Task(
                task_type=tt.value,
                status=TaskStatus.PENDING.value,
                payload=payload_text,
                attempts=0,
                max_attempts=self.max_attempts,
                created_at=now,
                updated_at=now,
            )
            s.add(task)
            s.commit()
            task_id = task.task_id

        self.log.info("Task submitted | task_id=%s type=%s payload=%s", task_id, tt.value, payload_text)
        return task_id

    # ---- selection / claim ----------------------------------------------

    def _eligible_filter(self, now: datetime):
        return or_(
            Task.status == TaskStatus.PENDING.value,
            and_(
                Task.status == TaskStatus.RETRY.value,
                or_(Task.next_run_at.is_(None), Task.next_run_at <= now),
            ),
        )

    def eligible_task_ids(self, *, limit: int | None = None) -> list[str]:
        now = self._now()
        with self.session_factory() as s:
            q = (
                s.query(Task.task_id)
                .filter(self._eligible_filter(now))
                .order_by(Task.created_at.asc(), Task.id.asc())
            )
            if limit is not None:
                q = q.limit(int(limit))
            return [row[0] for row in q.all()]

    def claim(self, task_id: str) -> bool:
        """Atomically move an eligible task to RUNNING.

        A conditional UPDATE; returns False when another tick already claimed
        the task or it is no longer eligible.
        """

        now = self._now()
        with self.session_factory() as s:
            updated = (
                s.query(Task)
                .filter(Task.task_id == task_id, self._eligible_filter(now))
                .update(
                    {
                        Task.status: TaskStatus.RUNNING.value,
                        Task.started_at: now,
                        Task.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            s.commit()
        return updated == 1

    # ---- completion -----------------------------------------------------

    def _complete(self, task_id: str, message: str | None) -> str:
        now = self._now()
        with self.session_factory() as s:
            task = s.query(Task).filter(Task.task_id == task_id).one()
            task.status = TaskStatus.COMPLETED.value
            task.message = message
            task.next_run_at = None
            task.finished_at = now
            task.updated_at = now
            s.commit()
        self.log.info("Task completed | task_id=%s message=%s", task_id, message)
        return TaskStatus.COMPLETED.value

    def _fail(self, task_id: str, exc: BaseException, *, retryable: bool | None = None) -> str:
        now = self._now()
        if retryable is None:
            retryable = bool(getattr(exc, "retryable", True))
        with self.session_factory() as s:
            task = s.query(Task).filter(Task.task_id == task_id).one()
            task.attempts = int(task.attempts or 0) + 1
            task.last_error = _error_text(exc)
            task.updated_at = now

            if not retryable or task.attempts >= int(task.max_attempts):
                task.status = TaskStatus.FAILED.value
                task.next_run_at = None
                task.finished_at = now
            else:
                task.status = TaskStatus.RETRY.value
                task.next_run_at = now + self.backoff(task.attempts)

            status, attempts, max_attempts, next_run_at = (
                task.status,
                task.attempts,
                task.max_attempts,
                task.next_run_at,
            )
            s.commit()

        if status == TaskStatus.FAILED.value:
            self.log.error(
                "Task failed | task_id=%s attempts=%s/%s retryable=%s error=%s",
                task_id,
                attempts,
                max_attempts,
                retryable,
                _error_text(exc),
            )
        else:
            self.log.warning(
                "Task scheduled for retry | task_id=%s attempts=%s/%s next_run_at=%s error=%s",
                task_id,
                attempts,
                max_attempts,
                next_run_at,
                _error_text(exc),
            )
        return status

    # ---- execution ------------------------------------------------------

    def _execute(self, task_id: str) -> str:
        """Claim and run one task; returns the resulting status or "SKIPPED"."""

        if not self.claim(task_id):
            self.log.debug("Task not claimed (already running or not due) | task_id=%s", task_id)
            return "SKIPPED"

        with self.session_factory() as s:
            task = s.query(Task).filter(Task.task_id == task_id).one()
            task_type_value = task.task_type
            attempt = int(task.attempts or 0) + 1
            payload_text = task.payload

        try:
            task_type = _coerce_task_type(task_type_value)
            processor = self.registry.get(task_type)
            payload = json.loads(payload_text) if payload_text else {}
        except (InvalidTaskType, ValueError) as e:
            return self._fail(task_id, e, retryable=False)

        context = TaskContext(
            task_id=task_id,
            task_type=task_type,
            attempt=attempt,
            log=self.log.getChild(task_type.value.lower()),
        )
        self.log.info(
            "Task started | task_id=%s type=%s attempt=%s processor=%s",
            task_id,
            task_type.value,
            attempt,
            type(processor).__name__,
        )
        try:
            message = processor.process(payload, context)
        except Exception as e:
            return self._fail(task_id, e)
        return self._complete(task_id, message)

    def run_eligible_tasks(self) -> dict[str, int]:
        """One scheduling tick.

        Runs every PENDING task and every RETRY task whose `next_run_at` has
        passed on a bounded thread pool. Returns summary counts.
        """

        task_ids = self.eligible_task_ids()
        summary = {"selected": len(task_ids), "completed": 0, "retry": 0, "failed": 0, "skipped": 0, "errors": 0}
        if not task_ids:
            self.log.debug("No eligible tasks")
            return summary

        self.log.info("Scheduling tick | eligible=%s workers=%s", len(task_ids), self.workers)

        with ThreadPoolExecutor(max_workers=min(self.workers, len(task_ids))) as ex:
            futs = {ex.submit(self._execute, tid): tid for tid in task_ids}
            for fut in as_completed(futs):
                try:
                    outcome = fut.result()
                except Exception:
                    # Bookkeeping itself failed (e.g. database error); the task
                    # stays RUNNING until requeue_stale_running picks it up.
                    self.log.exception("Task execution crashed | task_id=%s", futs[fut])
                    summary["errors"] += 1
                    continue
                key = {
                    TaskStatus.COMPLETED.value: "completed",
                    TaskStatus.RETRY.value: "retry",
                    TaskStatus.FAILED.value: "failed",
                }.get(outcome, "skipped")
                summary[key] += 1

        self.log.info(
            "Scheduling tick done | selected=%s completed=%s retry=%s failed=%s skipped=%s errors=%s",
            summary["selected"],
            summary["completed"],
            summary["retry"],
            summary["failed"],
            summary["skipped"],
            summary["errors"],
        )
        return summary

    # ---- inspection / recovery ------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        with self.session_factory() as s:
            return s.query(Task).filter(Task.task_id == task_id).first()

    def list_tasks(self, status: TaskStatus | str | None = None, *, limit: int | None = None) -> list[Task]:
        with self.session_factory() as s:
            q = s.query(Task)
            if status is not None:
                q = q.filter(Task.status == TaskStatus(status).value)
            q = q.order_by(Task.created_at.desc(), Task.id.desc())
            if limit is not None:
                q = q.limit(int(limit))
            return q.all()

    def requeue_stale_running(self, older_than: timedelta) -> int:
        """Recover tasks left RUNNING by a process that died mid-task.

        The interrupted run counts as a failed attempt, so the task goes to
        RETRY (due immediately) or FAILED when it has no attempts left.
        """

        now = self._now()
        cutoff = now - older_than
        recovered = 0
        with self.session_factory() as s:
            stale = (
                s.query(Task)
                .filter(
                    Task.status == TaskStatus.RUNNING.value,
                    or_(Task.started_at.is_(None), Task.started_at <= cutoff),
                )
                .all()
            )
            for task in stale:
                task.attempts = int(task.attempts or 0) + 1
                task.last_error = f"abandoned while running (started_at={task.started_at})"
                task.updated_at = now
                if task.attempts >= int(task.max_attempts):
                    task.status = TaskStatus.FAILED.value
                    task.next_run_at = None
                    task.finished_at = now
                else:
                    task.status = TaskStatus.RETRY.value
                    task.next_run_at = now
                recovered += 1
            s.commit()

        if recovered:
            self.log.warning("Requeued stale running tasks | count=%s older_than=%s", recovered, older_than)
        return recovered

