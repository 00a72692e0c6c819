from __future__ import annotations

import logging
from typing import Generator

import pytest

from pytests.common import FakeClock, FakeEdgarClient, create_session_factory
from services.filing_store import FilingStore
from services.task_queue import ExponentialBackoff, ProcessorRegistry, TaskQueue


@pytest.fixture()
def session_factory(tmp_path) -> Generator:
    """Session factory bound to a fresh temp SQLite file (never data/sec13f.db)."""

    factory, engine = create_session_factory(tmp_path / "test.sqlite")
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(session_factory) -> FilingStore:
    return FilingStore(session_factory)


@pytest.fixture()
def fake_edgar() -> FakeEdgarClient:
    return FakeEdgarClient()


@pytest.fixture()
def registry() -> ProcessorRegistry:
    return ProcessorRegistry()


@pytest.fixture()
def queue(session_factory, registry, clock) -> TaskQueue:
    return TaskQueue(
        session_factory,
        registry,
        max_attempts=3,
        backoff=ExponentialBackoff(base_seconds=60, cap_seconds=3600),
        workers=2,
        clock=clock,
        log=logging.getLogger("sec13f.tests.task_queue"),
    )
