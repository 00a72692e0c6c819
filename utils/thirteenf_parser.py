"""13F information-table parser.

Turns either a bare information-table XML document or a full EDGAR submission
text file (SGML wrapper around several documents) into a `ParsedFiling`.

Parsing is best-effort per field: a missing sub-element leaves the field None,
an unconvertible one leaves it None and appends a warning to
`ParsedFiling.warnings`. Only a document that is not well-formed markup raises
`ParseError`.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from logging_utils import get_logger
from utils.time_utils import parse_header_date, parse_ymd_date
from utils.value_parsing import (
    clean_cusip,
    clean_text,
    normalize_accession,
    normalize_cik,
    parse_decimal,
    parse_shares,
)

logger = get_logger(__name__)

DEFAULT_FILING_TYPE = "13F-HR"

_INFO_TABLE_TYPE = re.compile(r"^<TYPE>\s*INFORMATION TABLE\s*$", re.IGNORECASE | re.MULTILINE)
_XML_BLOCK = re.compile(r"<XML>\s*(.*?)\s*</XML>", re.IGNORECASE | re.DOTALL)
_DOCUMENT_BLOCK = re.compile(r"<DOCUMENT>(.*?)</DOCUMENT>", re.IGNORECASE | re.DOTALL)
_SEC_DOCUMENT = re.compile(r"^<SEC-DOCUMENT>\s*([^\s:]+)", re.MULTILINE)

# SGML header keys (before the first <DOCUMENT>).
_HEADER_FIELDS = {
    "accession_number": "ACCESSION NUMBER",
    "filing_type": "CONFORMED SUBMISSION TYPE",
    "report_period": "CONFORMED PERIOD OF REPORT",
    "effectiveness_date": "EFFECTIVENESS DATE",
    "filed_as_of_date": "FILED AS OF DATE",
    "company_name": "COMPANY CONFORMED NAME",
}


class ParseError(ValueError):
    """The document cannot be loaded as well-formed markup at all."""

    retryable = True


class UnsupportedFilingFormat(ParseError):
    """A submission with no XML information table.

    Filings from before the 2013 XML mandate carry their holdings as a text or
    HTML table. Those are recorded as skipped by the scraper, never retried.
    """

    retryable = False


@dataclass
class ParsedHolding:
    name_of_issuer: str | None = None
    cusip: str | None = None
    title_of_class: str | None = None
    value: Decimal | None = None
    shares: int | None = None


@dataclass
class ParsedFiling:
    cik: str | None
    accession_number: str | None
    filing_type: str | None = None
    filing_date: date | None = None
    report_period: date | None = None
    company_name: str | None = None
    form_file: str | None = None
    holdings: list[ParsedHolding] | None = field(default_factory=list)
    # Non-fatal diagnostics (unparsable fields, dropped records).
    warnings: list[str] = field(default_factory=list)


def _local(tag: str) -> str:
    # "{http://www.sec.gov/edgar/document/thirteenf/informationtable}infoTable" -> "infoTable"
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _find_child(el: ET.Element, *names: str) -> ET.Element | None:
    wanted = {n.lower() for n in names}
    for child in el:
        if _local(child.tag).lower() in wanted:
            return child
    return None


def _child_text(el: ET.Element, *names: str) -> str | None:
    child = _find_child(el, *names)
    if child is None:
        return None
    return "".join(child.itertext()).strip() or None


def _first_text(root: ET.Element, *names: str) -> str | None:
    wanted = {n.lower() for n in names}
    for el in root.iter():
        if _local(el.tag).lower() in wanted:
            text = "".join(el.itertext()).strip()
            if text:
                return text
    return None


def parse_sgml_header(content: str) -> dict[str, str]:
    """Read `KEY: value` lines from the submission header.

    Stops at the first <DOCUMENT>. Only the first occurrence of each key wins
    (later ones belong to filer/agent sub-blocks).
    """

    head = content.split("<DOCUMENT>", 1)[0]
    out: dict[str, str] = {}
    for line in head.splitlines():
        if ":" not in line:
            continue
        key, _, value = line.strip().partition(":")
        key = key.strip().upper()
        value = value.strip()
        if not value:
            continue
        for field_name, header_key in _HEADER_FIELDS.items():
            if key == header_key and field_name not in out:
                out[field_name] = value

    m = _SEC_DOCUMENT.search(head)
    if m:
        out["form_file"] = m.group(1).strip()
    return out


def extract_information_table(content: str) -> str | None:
    """Return the <XML> body of the INFORMATION TABLE document, if present."""

    for doc in _DOCUMENT_BLOCK.findall(content):
        if not _INFO_TABLE_TYPE.search(doc):
            continue
        m = _XML_BLOCK.search(doc)
        if m:
            return m.group(1).strip()
    return None


def _is_submission_text(content: str) -> bool:
    head = content.lstrip()[:200].upper()
    return head.startswith("<SEC-DOCUMENT>") or head.startswith("<SEC-HEADER>") or "<DOCUMENT>" in content.upper()


def _load_xml(xml_text: str) -> ET.Element:
    text = xml_text.lstrip("\ufeff").strip()
    if not text:
        raise ParseError("empty document")
    try:
        return ET.fromstring(text.encode("utf-8"))
    except ET.ParseError as e:
        raise ParseError(f"document is not well-formed XML: {e}") from e


def _parse_holding(el: ET.Element, index: int, warnings: list[str]) -> ParsedHolding:
    h = ParsedHolding(
        name_of_issuer=clean_text(_child_text(el, "nameOfIssuer")),
        cusip=clean_cusip(_child_text(el, "cusip")),
        title_of_class=clean_text(_child_text(el, "titleOfClass")),
    )

    raw_value = _child_text(el, "value")
    try:
        h.value = parse_decimal(raw_value)
    except ValueError:
        warnings.append(f"holding[{index}] value not numeric: {raw_value!r}")

    # <shrsOrPrnAmt><sshPrnamt>…</sshPrnamt></shrsOrPrnAmt>; some filers flatten it.
    amount_el = _find_child(el, "shrsOrPrnAmt")
    raw_shares = _child_text(amount_el, "sshPrnamt") if amount_el is not None else None
    if raw_shares is None:
        raw_shares = _child_text(el, "sshPrnamt")
    try:
        h.shares = parse_shares(raw_shares)
    except ValueError:
        warnings.append(f"holding[{index}] shares not an integer: {raw_shares!r}")

    return h


def _holding_elements(root: ET.Element) -> list[ET.Element]:
    if _local(root.tag).lower() == "infotable":
        return [root]
    return [el for el in root.iter() if _local(el.tag).lower() == "infotable"]


def _parse_date(raw: str | None, fmt_parser, label: str, warnings: list[str]) -> date | None:
    if raw is None:
        return None
    try:
        return fmt_parser(raw)
    except ValueError:
        warnings.append(f"{label} not a valid date: {raw!r}")
        return None


def parse_filing(
    raw_content: str | bytes,
    cik: str | None,
    company_name: str | None,
    *,
    accession_number: str | None = None,
    filing_type: str | None = None,
    filing_date: date | None = None,
    report_period: date | None = None,
    log: logging.Logger | None = None,
) -> ParsedFiling:
    """Parse one 13F document into a `ParsedFiling`.

    Keyword metadata (normally taken from the filing index) takes precedence
    over values found inside the document; document values only fill gaps.

    Raises:
        ParseError: if no well-formed XML information table can be loaded.
        UnsupportedFilingFormat: if a submission carries no XML information
            table at all (pre-2013 text or HTML filings).
    """

    log = log or logger
    if isinstance(raw_content, bytes):
        raw_content = raw_content.decode("utf-8", errors="replace")
    content = raw_content or ""

    warnings: list[str] = []
    header: dict[str, str] = {}
    xml_text = content
    if _is_submission_text(content):
        header = parse_sgml_header(content)
        xml_text = extract_information_table(content) or ""
        if not xml_text:
            raise UnsupportedFilingFormat("submission has no INFORMATION TABLE <XML> document")

    root = _load_xml(xml_text)

    holdings: list[ParsedHolding] = []
    for i, el in enumerate(_holding_elements(root)):
        try:
            holdings.append(_parse_holding(el, i, warnings))
        except Exception as e:
            warnings.append(f"holding[{i}] dropped: {type(e).__name__}: {e}")

    doc_filing_date = _parse_date(
        header.get("effectiveness_date") or header.get("filed_as_of_date"),
        parse_header_date,
        "header filing date",
        warnings,
    ) or _parse_date(_first_text(root, "filingDate"), parse_ymd_date, "filingDate", warnings)
    doc_report_period = _parse_date(
        header.get("report_period"), parse_header_date, "header period of report", warnings
    ) or _parse_date(
        _first_text(root, "periodOfReport"),
        parse_ymd_date,
        "periodOfReport",
        warnings,
    )

    filing = ParsedFiling(
        cik=normalize_cik(cik),
        accession_number=normalize_accession(
            accession_number if accession_number is not None else header.get("accession_number")
        ),
        filing_type=filing_type or header.get("filing_type") or DEFAULT_FILING_TYPE,
        filing_date=filing_date or doc_filing_date,
        report_period=report_period or doc_report_period,
        company_name=clean_text(company_name) or clean_text(header.get("company_name")),
        form_file=header.get("form_file"),
        holdings=holdings,
        warnings=warnings,
    )

    if warnings:
        log.warning(
            "13F parsed with warnings | cik=%s accession=%s holdings=%s warnings=%s first=%s",
            filing.cik,
            filing.accession_number,
            len(holdings),
            len(warnings),
            warnings[0],
        )
    else:
        log.info(
            "13F parsed | cik=%s accession=%s holdings=%s",
            filing.cik,
            filing.accession_number,
            len(holdings),
        )
    return filing
