"""HOLDING_MERGE task: aggregate stored holdings by (CIK, CUSIP) and report the totals."""

from __future__ import annotations

import logging
from decimal import Decimal

from logging_utils import get_logger
from models.tasks import TaskType
from schemas.merge_holdings import MergeHoldingsQuery
from schemas.task_payloads import HoldingMergeTaskPayload
from services.filing_store import FilingStore
from support.task_processor_base import InvalidTaskPayload, TaskContext, TaskProcessor

logger = get_logger(__name__)


class HoldingMergeTaskProcessor(TaskProcessor):
    task_type = TaskType.HOLDING_MERGE

    def __init__(self, store: FilingStore, *, log: logging.Logger | None = None) -> None:
        self.store = store
        self.log = log or logger

    def process(self, payload: dict, context: TaskContext) -> str:
        params = self.parse_payload(HoldingMergeTaskPayload, payload)
        log = context.log or self.log

        if params.filing_id is not None:
            filing = self.store.get_filing(params.filing_id)
            if filing is None:
                raise InvalidTaskPayload(f"filing not found: filingId={params.filing_id}")
            query = MergeHoldingsQuery(cik=filing.cik, filing_id=filing.id)
            source_rows = len(filing.holdings)
        else:
            query = MergeHoldingsQuery(
                cik=params.cik,
                report_period_from=params.report_period_from,
                report_period_to=params.report_period_to,
            )
            source_rows = None

        merged = self.store.query_merged_holdings(query)
        total_value = sum((m.total_value or Decimal(0) for m in merged), Decimal(0))
        contributing = sum(m.holding_count for m in merged)
        if source_rows is None:
            source_rows = contributing

        log.info(
            "Holdings merged | task_id=%s cik=%s filing_id=%s source_rows=%s merged_rows=%s total_value=%s",
            context.task_id,
            query.cik,
            query.filing_id,
            source_rows,
            len(merged),
            total_value,
        )
        return (
            f"cik={query.cik} filing_id={query.filing_id} "
            f"source_rows={source_rows} merged_rows={len(merged)} total_value={total_value}"
        )
