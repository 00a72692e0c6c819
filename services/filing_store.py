from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as SASession
from sqlalchemy.orm import selectinload

import db
from logging_utils import get_logger
from models.filings import Filing, Holding
from schemas.merge_holdings import MergedHolding, MergeHoldingsQuery
from utils.thirteenf_parser import ParsedFiling
from utils.value_parsing import normalize_accession, normalize_cik

logger = get_logger(__name__)


class FilingStore:
    """Persistence for 13F filings and their holdings.

    Each public call opens and closes its own session so the store can be
    shared between worker threads.
    """

    def __init__(self, session_factory: Any = None, *, log: logging.Logger | None = None) -> None:
        self.session_factory = session_factory or db.SessionLocal
        self.log = log or logger

    # ---- writes ---------------------------------------------------------

    @staticmethod
    def _backfill(filing: Filing, parsed: ParsedFiling) -> bool:
        changed = False
        if parsed.company_name and filing.company_name != parsed.company_name:
            filing.company_name = parsed.company_name
            changed = True
        if filing.report_period is None and parsed.report_period is not None:
            filing.report_period = parsed.report_period
            changed = True
        if not filing.form_file and parsed.form_file:
            filing.form_file = parsed.form_file
            changed = True
        return changed

    @staticmethod
    def _new_filing(parsed: ParsedFiling, accession_number: str) -> Filing:
        filing = Filing(
            cik=normalize_cik(parsed.cik),
            company_name=parsed.company_name,
            filing_type=parsed.filing_type,
            filing_date=parsed.filing_date,
            report_period=parsed.report_period,
            accession_number=accession_number,
            form_file=parsed.form_file,
        )
        filing.holdings = [
            Holding(
                name_of_issuer=h.name_of_issuer,
                title_of_class=h.title_of_class,
                cusip=h.cusip,
                value=h.value,
                shares=h.shares,
            )
            for h in (parsed.holdings or [])
            if h is not None
        ]
        return filing

    def _update_existing(self, s: SASession, accession_number: str, parsed: ParsedFiling) -> int | None:
        existing = s.query(Filing).filter(Filing.accession_number == accession_number).first()
        if existing is None:
            return None
        if self._backfill(existing, parsed):
            s.commit()
            self.log.info(
                "Filing updated | id=%s accession=%s company_name=%s",
                existing.id,
                accession_number,
                existing.company_name,
            )
        else:
            self.log.debug("Filing unchanged | id=%s accession=%s", existing.id, accession_number)
        return int(existing.id)

    def save_filing(self, parsed: ParsedFiling) -> int:
        """Insert a filing with its holdings, or update the existing row.

        Idempotent by accession number: a second save of the same accession
        never adds rows; it backfills the company name (and a missing report
        period / form file) and returns the existing id. The insert of a filing
        and its holdings is a single transaction.
        """

        accession_number = normalize_accession(parsed.accession_number)
        if not accession_number:
            raise ValueError("accession_number is required to save a filing")

        with self.session_factory() as s:
            existing_id = self._update_existing(s, accession_number, parsed)
            if existing_id is not None:
                return existing_id

            filing = self._new_filing(parsed, accession_number)
            s.add(filing)
            try:
                s.commit()
            except IntegrityError:
                # Another worker inserted the same accession between our read
                # and our commit.
                s.rollback()
                self.log.info("Concurrent filing insert detected | accession=%s", accession_number)
                existing_id = self._update_existing(s, accession_number, parsed)
                if existing_id is None:
                    raise
                return existing_id

            self.log.info(
                "Filing saved | id=%s cik=%s accession=%s holdings=%s",
                filing.id,
                filing.cik,
                accession_number,
                len(filing.holdings),
            )
            return int(filing.id)

    # ---- reads ----------------------------------------------------------

    def get_filings_by_cik(self, cik: str) -> list[Filing]:
        """All filings for a filer with holdings loaded, most recent first.

        Ordered by filing date descending; undated filings come last, then
        higher ids first.
        """

        cik10 = normalize_cik(cik)
        if not cik10:
            return []
        with self.session_factory() as s:
            return (
                s.query(Filing)
                .options(selectinload(Filing.holdings))
                .filter(Filing.cik == cik10)
                .order_by(
                    Filing.filing_date.is_(None).asc(),
                    Filing.filing_date.desc(),
                    Filing.id.desc(),
                )
                .all()
            )

    def get_filing(self, filing_id: int) -> Filing | None:
        with self.session_factory() as s:
            return (
                s.query(Filing)
                .options(selectinload(Filing.holdings))
                .filter(Filing.id == int(filing_id))
                .first()
            )

    def get_filing_id_by_accession_number(self, accession_number: str) -> int | None:
        acc = normalize_accession(accession_number)
        if not acc:
            return None
        with self.session_factory() as s:
            row = s.query(Filing.id).filter(Filing.accession_number == acc).first()
            return int(row[0]) if row else None

    def query_merged_holdings(self, params: MergeHoldingsQuery | None = None) -> list[MergedHolding]:
        """Aggregate holdings across filings, grouped by (CIK, CUSIP).

        Values and shares are summed over every contributing holding row.
        The report period of a filing falls back to its filing date when the
        period is unknown. Ties on the sort key are broken by CUSIP ascending.

        Rows are filtered in SQL and summed in Python as `Decimal`, so totals
        stay exact on every backend.
        """

        params = params or MergeHoldingsQuery()

        period = func.coalesce(Filing.report_period, Filing.filing_date)

        with self.session_factory() as s:
            q = (
                s.query(
                    Filing.cik,
                    Holding.cusip,
                    Holding.name_of_issuer,
                    Holding.value,
                    Holding.shares,
                    Holding.filing_id,
                    period.label("period"),
                )
                .select_from(Holding)
                .join(Filing, Holding.filing_id == Filing.id)
            )

            if params.cik:
                q = q.filter(Filing.cik == params.cik)
            if params.filing_id is not None:
                q = q.filter(Filing.id == params.filing_id)
            if params.report_period_from is not None:
                q = q.filter(period >= params.report_period_from)
            if params.report_period_to is not None:
                q = q.filter(period <= params.report_period_to)
            if params.search:
                term = params.search.lower()
                q = q.filter(
                    or_(
                        func.lower(Holding.name_of_issuer).contains(term, autoescape=True),
                        func.lower(Holding.cusip).contains(term, autoescape=True),
                    )
                )

            rows = q.all()

        groups: dict[tuple[str, str | None], _MergeGroup] = {}
        for r in rows:
            key = (r.cik, r.cusip)
            group = groups.get(key)
            if group is None:
                group = groups[key] = _MergeGroup(cik=r.cik, cusip=r.cusip)
            group.add(r.name_of_issuer, r.value, r.shares, r.filing_id, r.period)

        merged = [g.to_model() for g in groups.values()]
        if params.min_value is not None:
            merged = [m for m in merged if m.total_value is not None and m.total_value >= params.min_value]

        out = _sort_merged(merged, params.sort_by, params.sort_order)
        self.log.debug(
            "Merged holdings query | cik=%s filing_id=%s sort=%s/%s source_rows=%s rows=%s",
            params.cik,
            params.filing_id,
            params.sort_by,
            params.sort_order,
            len(rows),
            len(out),
        )
        return out


@dataclass
class _MergeGroup:
    cik: str
    cusip: str | None
    name_of_issuer: str | None = None
    total_value: Decimal | None = None
    total_shares: int | None = None
    holding_count: int = 0
    filing_ids: set[int] = field(default_factory=set)
    first_period: date | None = None
    last_period: date | None = None

    def add(self, issuer, value, shares, filing_id, period) -> None:
        self.holding_count += 1
        self.filing_ids.add(filing_id)
        if issuer is not None and (self.name_of_issuer is None or issuer > self.name_of_issuer):
            self.name_of_issuer = issuer
        if value is not None:
            self.total_value = (self.total_value or Decimal(0)) + Decimal(value)
        if shares is not None:
            self.total_shares = (self.total_shares or 0) + int(shares)
        if period is not None:
            if self.first_period is None or period < self.first_period:
                self.first_period = period
            if self.last_period is None or period > self.last_period:
                self.last_period = period

    def to_model(self) -> MergedHolding:
        return MergedHolding(
            cik=self.cik,
            cusip=self.cusip,
            name_of_issuer=self.name_of_issuer,
            total_value=self.total_value,
            total_shares=self.total_shares,
            holding_count=self.holding_count,
            filing_count=len(self.filing_ids),
            first_report_period=self.first_period,
            last_report_period=self.last_period,
        )


_SORT_KEYS = {
    "value": lambda m: m.total_value,
    "shares": lambda m: m.total_shares,
    "name": lambda m: m.name_of_issuer,
    "cusip": lambda m: m.cusip,
    "filings": lambda m: m.filing_count,
    "period": lambda m: m.last_report_period,
}


def _sort_merged(rows: list[MergedHolding], sort_by: str, sort_order: str) -> list[MergedHolding]:
    # Tie-breakers first; the later sorts are stable.
    rows = sorted(rows, key=lambda m: (m.cusip is None, m.cusip or "", m.cik))
    key = _SORT_KEYS[sort_by]
    present = [m for m in rows if key(m) is not None]
    missing = [m for m in rows if key(m) is None]
    present.sort(key=key, reverse=(sort_order == "desc"))
    return present + missing
