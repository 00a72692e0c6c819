from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from jobs.holding_merge_task import HoldingMergeTaskProcessor
from models.tasks import TaskStatus, TaskType
from support.task_processor_base import TaskContext
from utils.thirteenf_parser import ParsedFiling, ParsedHolding


def _save(store, acc, period, holdings, cik="0001067983"):
    return store.save_filing(
        ParsedFiling(
            cik=cik,
            accession_number=acc,
            filing_type="13F-HR",
            filing_date=date(2024, 2, 14),
            report_period=period,
            company_name="BERKSHIRE HATHAWAY INC",
            holdings=[ParsedHolding(n, c, "COM", Decimal(v), s) for n, c, v, s in holdings],
        )
    )


def test_merge_by_filing_id(queue, registry, store):
    registry.register(HoldingMergeTaskProcessor(store))
    fid = _save(
        store,
        "0000950123-24-000001",
        date(2023, 12, 31),
        [
            ("APPLE INC", "037833100", "100", 10),
            ("APPLE INC", "037833100", "50", 5),
            ("LENNAR CORP", "526057104", "300", 30),
        ],
    )

    task_id = queue.submit(TaskType.HOLDING_MERGE, {"filingId": fid})
    queue.run_eligible_tasks()

    task = queue.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert "source_rows=3" in task.message
    assert "merged_rows=2" in task.message
    assert "total_value=450" in task.message


def test_merge_by_cik_and_period(queue, registry, store):
    registry.register(HoldingMergeTaskProcessor(store))
    _save(store, "0000950123-24-000001", date(2023, 12, 31), [("APPLE INC", "037833100", "100", 10)])
    _save(store, "0000950123-23-000001", date(2023, 9, 30), [("APPLE INC", "037833100", "900", 90)])

    task_id = queue.submit(
        TaskType.HOLDING_MERGE,
        {"cik": "1067983", "reportPeriodFrom": "2023-10-01", "reportPeriodTo": "2023-12-31"},
    )
    queue.run_eligible_tasks()

    task = queue.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert "cik=0001067983" in task.message
    assert "merged_rows=1" in task.message
    assert "total_value=100" in task.message


def test_unknown_filing_fails_without_retry(queue, registry, store):
    registry.register(HoldingMergeTaskProcessor(store))

    task_id = queue.submit(TaskType.HOLDING_MERGE, {"filingId": 12345})
    summary = queue.run_eligible_tasks()

    assert summary["failed"] == 1
    task = queue.get_task(task_id)
    assert task.attempts == 1
    assert "filing not found" in task.last_error


def test_payload_needs_a_target(queue, registry, store):
    registry.register(HoldingMergeTaskProcessor(store))

    task_id = queue.submit(TaskType.HOLDING_MERGE, {})
    queue.run_eligible_tasks()

    task = queue.get_task(task_id)
    assert task.status == TaskStatus.FAILED.value
    assert "InvalidTaskPayload" in task.last_error


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())


def test_injected_logger_used_without_context_logger(store):
    fid = _save(store, "0000950123-24-000001", date(2023, 12, 31), [("APPLE INC", "037833100", "100", 10)])
    log = logging.getLogger("holding_merge_task_test")
    log.setLevel(logging.DEBUG)
    handler = _ListHandler()
    log.addHandler(handler)
    try:
        processor = HoldingMergeTaskProcessor(store, log=log)
        message = processor.process(
            {"filingId": fid},
            TaskContext(task_id="t-1", task_type=TaskType.HOLDING_MERGE, attempt=1, log=None),
        )
    finally:
        log.removeHandler(handler)

    assert "merged_rows=1" in message
    assert len(handler.messages) == 1
    assert handler.messages[0].startswith("Holdings merged | task_id=t-1")
