from __future__ import annotations

import enum
import json
import uuid

from sqlalchemy import Column, DateTime, Integer, String, Text, Index

from db import Base
from utils.time_utils import utcnow_sa_default


class TaskType(str, enum.Enum):
    SEC_SCRAPING = "SEC_SCRAPING"
    DATA_ANALYSIS = "DATA_ANALYSIS"
    DATA_EXPORT = "DATA_EXPORT"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    HOLDING_MERGE = "HOLDING_MERGE"


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    # Claimed by a worker; persisted so overlapping ticks cannot double-dispatch.
    RUNNING = "RUNNING"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Task(Base):
    """A unit of schedulable, retryable work.

    Mutated only through `services.task_queue.TaskQueue` (claim / complete / fail).
    Rows are never deleted by the engine.
    """

    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_status_next_run_at", "status", "next_run_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)

    task_id = Column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
        default=lambda: uuid.uuid4().hex,
    )
    task_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=TaskStatus.PENDING.value)

    # JSON text; shape depends on task_type.
    payload = Column(Text, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_run_at = Column(DateTime, nullable=True)

    message = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
    updated_at = Column(
        DateTime, nullable=False, default=utcnow_sa_default, onupdate=utcnow_sa_default
    )

    def payload_dict(self) -> dict:
        if not self.payload:
            return {}
        return json.loads(self.payload)

    def __repr__(self) -> str:
        return (
            f"Task(task_id={self.task_id!r}, type={self.task_type}, status={self.status}, "
            f"attempts={self.attempts}/{self.max_attempts})"
        )
