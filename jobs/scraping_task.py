"""SEC_SCRAPING task: fetch → parse → validate → persist the 13F filings of one CIK."""

from __future__ import annotations

import logging
from typing import Callable

from logging_utils import get_logger
from models.tasks import TaskType
from schemas.task_payloads import ScrapingTaskPayload
from services.filing_store import FilingStore
from support.task_processor_base import TaskContext, TaskProcessor
from utils.filing_validator import ValidationFailed, ValidationResult, validate_filing
from utils.sec_edgar_api import EdgarClient, FilingReference
from utils.thirteenf_parser import ParsedFiling, UnsupportedFilingFormat, parse_filing

logger = get_logger(__name__)


class ScrapingTaskProcessor(TaskProcessor):
    """Ingest every 13F filing listed in a filer's EDGAR index.

    Filings whose accession number is already stored are skipped without a
    fetch, so re-running a task (or retrying after a partial failure) only
    downloads what is missing. A failing reference never stops the others;
    failures are raised together once every reference has been tried.
    Submissions without an XML information table are counted as unsupported.
    """

    task_type = TaskType.SEC_SCRAPING

    def __init__(
        self,
        fetcher: EdgarClient,
        store: FilingStore,
        *,
        parser: Callable[..., ParsedFiling] = parse_filing,
        validator: Callable[..., ValidationResult] = validate_filing,
        log: logging.Logger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.store = store
        self.parser = parser
        self.validator = validator
        self.log = log or logger

    def _parsed_for(self, ref: FilingReference, params: ScrapingTaskPayload, log: logging.Logger) -> ParsedFiling:
        if not ref.accession_number:
            # Nothing to download; validation reports the missing key.
            return ParsedFiling(
                cik=params.cik,
                accession_number=None,
                filing_type=ref.filing_type,
                filing_date=ref.filing_date,
                report_period=ref.report_date,
                company_name=params.company_name,
            )

        raw = self.fetcher.fetch_filing_document(ref.accession_number, params.cik)
        return self.parser(
            raw,
            params.cik,
            params.company_name,
            accession_number=ref.accession_number,
            filing_type=ref.filing_type,
            filing_date=ref.filing_date,
            report_period=ref.report_date,
            log=log,
        )

    def _ingest(self, ref: FilingReference, params: ScrapingTaskPayload, log: logging.Logger) -> None:
        parsed = self._parsed_for(ref, params, log)

        result = self.validator(parsed)
        for warning in result.warnings:
            log.debug("Validation warning | accession=%s %s", parsed.accession_number, warning)
        if not result.valid:
            raise ValidationFailed(result.errors, accession_number=parsed.accession_number)

        filing_id = self.store.save_filing(parsed)
        log.info(
            "Filing ingested | filing_id=%s accession=%s holdings=%s parse_warnings=%s",
            filing_id,
            parsed.accession_number,
            len(parsed.holdings or []),
            len(parsed.warnings),
        )

    @staticmethod
    def _raise_failures(failures: list[tuple[str | None, Exception]]) -> None:
        # A transient failure wins: the retry refetches only what is still missing.
        for _, exc in failures:
            if getattr(exc, "retryable", True):
                raise exc

        invalid = [(acc, exc) for acc, exc in failures if isinstance(exc, ValidationFailed)]
        if invalid:
            errors = [f"{acc or '(no accession)'}: {err}" for acc, exc in invalid for err in exc.errors]
            raise ValidationFailed(errors, accession_number=invalid[0][0] if len(invalid) == 1 else None)
        raise failures[0][1]

    def process(self, payload: dict, context: TaskContext) -> str:
        params = self.parse_payload(ScrapingTaskPayload, payload)
        log = context.log or self.log

        refs = list(self.fetcher.fetch_filing_index(params.cik))
        if params.limit is not None:
            refs = refs[: params.limit]
        log.info(
            "Scraping filer | task_id=%s cik=%s references=%s attempt=%s",
            context.task_id,
            params.cik,
            len(refs),
            context.attempt,
        )

        saved = 0
        skipped = 0
        unsupported = 0
        failures: list[tuple[str | None, Exception]] = []
        for ref in refs:
            if ref.accession_number and self.store.get_filing_id_by_accession_number(ref.accession_number) is not None:
                log.debug("Filing already stored | accession=%s", ref.accession_number)
                skipped += 1
                continue

            try:
                self._ingest(ref, params, log)
            except UnsupportedFilingFormat as e:
                log.warning("Filing format not supported, skipped | accession=%s error=%s", ref.accession_number, e)
                unsupported += 1
            except Exception as e:
                log.warning(
                    "Filing not ingested | accession=%s error=%s: %s",
                    ref.accession_number,
                    type(e).__name__,
                    e,
                )
                failures.append((ref.accession_number, e))
            else:
                saved += 1

        summary = (
            f"cik={params.cik} references={len(refs)} saved={saved} skipped={skipped} "
            f"unsupported={unsupported} failed={len(failures)}"
        )
        if failures:
            log.warning("Scraping incomplete | task_id=%s %s", context.task_id, summary)
            self._raise_failures(failures)
        return summary
