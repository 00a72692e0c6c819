"""SEC_SCRAPING end to end: queue → processor → fake EDGAR → parser → validator → store."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from jobs.scraping_task import ScrapingTaskProcessor
from models.tasks import TaskStatus, TaskType
from pytests.common import (
    BERKSHIRE_ACCESSION,
    BERKSHIRE_CIK,
    BERKSHIRE_HOLDINGS,
    info_table_xml,
    submission_text,
)
from utils.sec_edgar_api import FetchFailed, FilingReference
from utils.time_utils import ensure_utc


def _ref(acc: str = BERKSHIRE_ACCESSION, **kw) -> FilingReference:
    return FilingReference(
        cik=BERKSHIRE_CIK,
        accession_number=acc,
        filing_type=kw.get("filing_type", "13F-HR"),
        filing_date=kw.get("filing_date", date(2024, 2, 14)),
        report_date=kw.get("report_date", date(2023, 12, 31)),
    )


@pytest.fixture()
def scraping(queue, registry, store, fake_edgar):
    registry.register(ScrapingTaskProcessor(fake_edgar, store))
    return queue


def test_scraping_task_end_to_end(scraping, store, fake_edgar):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref()]
    fake_edgar.documents[BERKSHIRE_ACCESSION] = info_table_xml(BERKSHIRE_HOLDINGS)

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": "0001067983"})
    summary = scraping.run_eligible_tasks()

    assert summary["completed"] == 1
    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert task.attempts == 0
    assert "saved=1" in task.message

    filings = store.get_filings_by_cik("0001067983")
    assert len(filings) == 1
    f = filings[0]
    assert f.accession_number == BERKSHIRE_ACCESSION
    assert f.filing_date == date(2024, 2, 14)
    assert f.report_period == date(2023, 12, 31)
    assert [(h.name_of_issuer, h.cusip, h.value) for h in f.holdings] == [
        ("D R HORTON INC", "23331A109", Decimal("192267725")),
        ("LENNAR CORP", "526057104", Decimal("221522186")),
    ]
    assert fake_edgar.document_calls == [(BERKSHIRE_ACCESSION, BERKSHIRE_CIK)]


def test_submission_text_document_and_company_name(scraping, store, fake_edgar):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref()]
    fake_edgar.documents[BERKSHIRE_ACCESSION] = submission_text()

    scraping.submit(TaskType.SEC_SCRAPING, {"cik": "1067983"})
    scraping.run_eligible_tasks()

    (f,) = store.get_filings_by_cik(BERKSHIRE_CIK)
    assert f.company_name == "BERKSHIRE HATHAWAY INC"
    assert f.form_file == f"{BERKSHIRE_ACCESSION}.txt"
    assert len(f.holdings) == 2


def test_rerun_skips_stored_filings(scraping, store, fake_edgar):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref()]
    fake_edgar.documents[BERKSHIRE_ACCESSION] = info_table_xml(BERKSHIRE_HOLDINGS)

    scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    scraping.run_eligible_tasks()
    second = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK, "companyName": "BRK"})
    scraping.run_eligible_tasks()

    assert "skipped=1" in scraping.get_task(second).message
    assert len(fake_edgar.document_calls) == 1
    assert len(store.get_filings_by_cik(BERKSHIRE_CIK)) == 1


def test_limit_processes_newest_references_only(scraping, store, fake_edgar):
    newer, older = "0000950123-24-011775", "0000950123-23-000001"
    fake_edgar.index[BERKSHIRE_CIK] = [_ref(newer), _ref(older, filing_date=date(2023, 11, 14))]
    fake_edgar.documents[newer] = info_table_xml(BERKSHIRE_HOLDINGS)
    fake_edgar.documents[older] = info_table_xml(BERKSHIRE_HOLDINGS)

    scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK, "limit": 1})
    scraping.run_eligible_tasks()

    assert [f.accession_number for f in store.get_filings_by_cik(BERKSHIRE_CIK)] == [newer]


def test_empty_accession_fails_validation_without_retry(scraping, store, fake_edgar):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref("")]

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    summary = scraping.run_eligible_tasks()

    assert summary["failed"] == 1
    assert summary["retry"] == 0
    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.FAILED.value
    assert task.attempts == 1
    assert task.next_run_at is None
    assert "ValidationFailed" in task.last_error
    assert "accession number is required" in task.last_error
    assert store.get_filings_by_cik(BERKSHIRE_CIK) == []


def test_invalid_payload_fails_without_retry(scraping):
    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": "not-a-cik"})
    scraping.run_eligible_tasks()

    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.FAILED.value
    assert "InvalidTaskPayload" in task.last_error


def test_fetch_failure_retries_then_recovers(scraping, store, fake_edgar, clock):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref()]
    fake_edgar.documents[BERKSHIRE_ACCESSION] = FetchFailed("https://www.sec.gov/x", status_code=503)

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    assert scraping.run_eligible_tasks()["retry"] == 1
    task = scraping.get_task(task_id)
    assert "status=503" in task.last_error

    fake_edgar.documents[BERKSHIRE_ACCESSION] = info_table_xml(BERKSHIRE_HOLDINGS)
    clock.now = ensure_utc(task.next_run_at)
    assert scraping.run_eligible_tasks()["completed"] == 1

    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert task.attempts == 1
    assert len(store.get_filings_by_cik(BERKSHIRE_CIK)[0].holdings) == 2


def test_malformed_document_is_retried_until_failed(scraping, fake_edgar, clock):
    fake_edgar.index[BERKSHIRE_CIK] = [_ref()]
    fake_edgar.documents[BERKSHIRE_ACCESSION] = "<informationTable><infoTable>"

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    statuses = []
    for _ in range(3):
        scraping.run_eligible_tasks()
        task = scraping.get_task(task_id)
        statuses.append(task.status)
        if task.next_run_at is not None:
            clock.now = ensure_utc(task.next_run_at)

    assert statuses == ["RETRY", "RETRY", "FAILED"]
    assert "ParseError" in scraping.get_task(task_id).last_error


def test_invalid_reference_does_not_stop_later_references(scraping, store, fake_edgar):
    first, bad, last = "0000950123-24-000001", "0000950123-24-000002", "0000950123-24-000003"
    fake_edgar.index[BERKSHIRE_CIK] = [_ref(first), _ref(bad), _ref(last)]
    fake_edgar.documents[first] = info_table_xml(BERKSHIRE_HOLDINGS)
    fake_edgar.documents[bad] = info_table_xml([("NO CUSIP CORP", None, "10", "1")])
    fake_edgar.documents[last] = info_table_xml(BERKSHIRE_HOLDINGS)

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    summary = scraping.run_eligible_tasks()

    assert summary["failed"] == 1
    assert summary["retry"] == 0
    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.FAILED.value
    assert f"{bad}: holding[0] cusip is required" in task.last_error
    assert [f.accession_number for f in store.get_filings_by_cik(BERKSHIRE_CIK)] == [last, first]
    assert [acc for acc, _ in fake_edgar.document_calls] == [first, bad, last]


def test_transient_failure_retries_only_missing_reference(scraping, store, fake_edgar, clock):
    first, flaky, last = "0000950123-24-000001", "0000950123-24-000002", "0000950123-24-000003"
    fake_edgar.index[BERKSHIRE_CIK] = [_ref(first), _ref(flaky), _ref(last)]
    fake_edgar.documents[first] = info_table_xml(BERKSHIRE_HOLDINGS)
    fake_edgar.documents[flaky] = FetchFailed("https://www.sec.gov/x", status_code=503)
    fake_edgar.documents[last] = info_table_xml(BERKSHIRE_HOLDINGS)

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    assert scraping.run_eligible_tasks()["retry"] == 1
    assert len(store.get_filings_by_cik(BERKSHIRE_CIK)) == 2

    fake_edgar.documents[flaky] = info_table_xml(BERKSHIRE_HOLDINGS)
    clock.now = ensure_utc(scraping.get_task(task_id).next_run_at)
    assert scraping.run_eligible_tasks()["completed"] == 1

    assert "saved=1 skipped=2" in scraping.get_task(task_id).message
    assert len(store.get_filings_by_cik(BERKSHIRE_CIK)) == 3
    assert [acc for acc, _ in fake_edgar.document_calls].count(first) == 1


def test_legacy_submission_without_xml_table_is_skipped(scraping, store, fake_edgar):
    legacy, current = "0000950123-12-000001", BERKSHIRE_ACCESSION
    fake_edgar.index[BERKSHIRE_CIK] = [_ref(current), _ref(legacy, filing_date=date(2012, 2, 14))]
    fake_edgar.documents[current] = info_table_xml(BERKSHIRE_HOLDINGS)
    fake_edgar.documents[legacy] = (
        "<SEC-DOCUMENT>0000950123-12-000001.txt\n"
        "<DOCUMENT>\n<TYPE>13F-HR\n<TEXT>\n"
        "NAME OF ISSUER    TITLE  CUSIP      VALUE\n"
        "LENNAR CORP       CL A   526057104  1000\n"
        "</TEXT>\n</DOCUMENT>\n"
    )

    task_id = scraping.submit(TaskType.SEC_SCRAPING, {"cik": BERKSHIRE_CIK})
    scraping.run_eligible_tasks()

    task = scraping.get_task(task_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert "saved=1" in task.message
    assert "unsupported=1" in task.message
    assert [f.accession_number for f in store.get_filings_by_cik(BERKSHIRE_CIK)] == [current]
