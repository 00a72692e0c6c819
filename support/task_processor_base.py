from __future__ import annotations

import abc
import logging
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from models.tasks import TaskType


class InvalidTaskPayload(ValueError):
    """Payload does not match the processor's schema. Not retried."""

    retryable = False


@dataclass(frozen=True)
class TaskContext:
    """Per-execution context handed to a processor by the task queue."""

    task_id: str
    task_type: TaskType
    # 1-based: the attempt currently running.
    attempt: int
    log: logging.Logger


class TaskProcessor(abc.ABC):
    """Base class for task-type plugins.

    Subclasses set `task_type` and implement `process()`. The return value is a
    short human-readable summary stored on the task as its message. Raising
    marks the attempt as failed; an exception whose class carries
    `retryable = False` fails the task immediately.
    """

    task_type: TaskType

    @abc.abstractmethod
    def process(self, payload: dict, context: TaskContext) -> str:  # pragma: no cover
        raise NotImplementedError

    @staticmethod
    def parse_payload(model: type[BaseModel], payload: dict):
        try:
            return model.model_validate(payload or {})
        except ValidationError as e:
            raise InvalidTaskPayload(f"invalid {model.__name__}: {e.errors(include_url=False)}") from e
