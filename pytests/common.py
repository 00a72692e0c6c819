"""Shared helpers for tests.

Intended usage:
- spin up a temporary SQLite database
- create all SQLAlchemy tables
- fake EDGAR client / clock so the task engine runs without network or sleeps

These utilities keep tests small and consistent.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import db
from models import Base
from utils.sec_edgar_api import FilingReference

__all__ = [
    "make_sqlite_engine",
    "create_session_factory",
    "FakeClock",
    "FakeEdgarClient",
    "info_table_xml",
    "submission_text",
    "BERKSHIRE_CIK",
    "BERKSHIRE_ACCESSION",
    "BERKSHIRE_HOLDINGS",
]


BERKSHIRE_CIK = "0001067983"
BERKSHIRE_ACCESSION = "0000950123-24-011775"
# (issuer, cusip, value, shares)
BERKSHIRE_HOLDINGS = [
    ("D R HORTON INC", "23331A109", "192267725", "1494336"),
    ("LENNAR CORP", "526057104", "221522186", "1478336"),
]


def make_sqlite_engine(db_path: Path | str) -> Engine:
    """Create a SQLite engine suitable for tests (shared across worker threads)."""

    if isinstance(db_path, Path):
        db_path = str(db_path)
    return db.make_engine(f"sqlite:///{db_path}")


def create_session_factory(db_path: Path) -> tuple[sessionmaker, Engine]:
    """Create an empty SQLite DB file, initialize all models, return (factory, engine)."""

    engine = make_sqlite_engine(db_path)
    Base.metadata.create_all(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine), engine


class FakeClock:
    """Manually advanced UTC clock for the task queue."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 2, 14, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass
class FakeEdgarClient:
    """In-memory stand-in for `EdgarClient`.

    `index` maps CIK -> list of FilingReference; `documents` maps accession
    number -> raw text. A value that is an exception instance is raised instead.
    """

    index: dict[str, Any] = field(default_factory=dict)
    documents: dict[str, Any] = field(default_factory=dict)
    index_calls: list[str] = field(default_factory=list)
    document_calls: list[tuple[str, str]] = field(default_factory=list)

    def fetch_filing_index(self, cik: str) -> list[FilingReference]:
        self.index_calls.append(cik)
        refs = self.index.get(cik, [])
        if isinstance(refs, Exception):
            raise refs
        return list(refs)

    def fetch_filing_document(self, accession_number: str, cik: str) -> str:
        self.document_calls.append((accession_number, cik))
        doc = self.documents[accession_number]
        if isinstance(doc, Exception):
            raise doc
        return doc


def info_table_xml(holdings: Iterable[tuple], *, namespace: bool = True) -> str:
    """Build a 13F information table. Each holding is (issuer, cusip, value, shares);
    a None entry omits that sub-element."""

    rows = []
    for issuer, cusip, value, shares in holdings:
        parts = ["  <infoTable>"]
        if issuer is not None:
            parts.append(f"    <nameOfIssuer>{issuer}</nameOfIssuer>")
        parts.append("    <titleOfClass>COM</titleOfClass>")
        if cusip is not None:
            parts.append(f"    <cusip>{cusip}</cusip>")
        if value is not None:
            parts.append(f"    <value>{value}</value>")
        if shares is not None:
            parts.append(
                "    <shrsOrPrnAmt>"
                f"<sshPrnamt>{shares}</sshPrnamt><sshPrnamtType>SH</sshPrnamtType>"
                "</shrsOrPrnAmt>"
            )
        parts.append("    <investmentDiscretion>DFND</investmentDiscretion>")
        parts.append("  </infoTable>")
        rows.append("\n".join(parts))

    xmlns = (
        ' xmlns="http://www.sec.gov/edgar/document/thirteenf/informationtable"'
        if namespace
        else ""
    )
    body = "\n".join(rows)
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<informationTable{xmlns}>\n{body}\n</informationTable>\n'


def submission_text(
    *,
    accession_number: str = BERKSHIRE_ACCESSION,
    company_name: str = "BERKSHIRE HATHAWAY INC",
    cik: str = BERKSHIRE_CIK,
    period: date = date(2023, 12, 31),
    filed: date = date(2024, 2, 14),
    info_table: str | None = None,
) -> str:
    """Build a full EDGAR submission text file wrapping a 13F-HR."""

    info_table = info_table if info_table is not None else info_table_xml(BERKSHIRE_HOLDINGS)
    return f"""<SEC-DOCUMENT>{accession_number}.txt : {filed:%Y%m%d}
<SEC-HEADER>{accession_number}.hdr.sgml : {filed:%Y%m%d}
ACCESSION NUMBER:\t\t{accession_number}
CONFORMED SUBMISSION TYPE:\t13F-HR
PUBLIC DOCUMENT COUNT:\t\t2
CONFORMED PERIOD OF REPORT:\t{period:%Y%m%d}
FILED AS OF DATE:\t\t{filed:%Y%m%d}
EFFECTIVENESS DATE:\t\t{filed:%Y%m%d}

FILER:

\tCOMPANY DATA:\t
\t\tCOMPANY CONFORMED NAME:\t\t\t{company_name}
\t\tCENTRAL INDEX KEY:\t\t\t{cik}
</SEC-HEADER>
<DOCUMENT>
<TYPE>13F-HR
<SEQUENCE>1
<FILENAME>primary_doc.xml
<TEXT>
<XML>
<?xml version="1.0" encoding="UTF-8"?>
<edgarSubmission xmlns="http://www.sec.gov/edgar/thirteenffiler">
  <formData><coverPage><reportCalendarOrQuarter>12-31-2023</reportCalendarOrQuarter></coverPage></formData>
</edgarSubmission>
</XML>
</TEXT>
</DOCUMENT>
<DOCUMENT>
<TYPE>INFORMATION TABLE
<SEQUENCE>2
<FILENAME>infotable.xml
<TEXT>
<XML>
{info_table}
</XML>
</TEXT>
</DOCUMENT>
</SEC-DOCUMENT>
"""
