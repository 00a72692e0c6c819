from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from utils.thirteenf_parser import ParsedFiling, ParsedHolding
from utils.time_utils import utcnow
from utils.value_parsing import is_canonical_accession

_CIK_DIGITS = re.compile(r"^\d{1,10}$")
_CUSIP = re.compile(r"^[0-9A-Z]{9}$")
_THIRTEEN_F_TYPE = re.compile(r"^13F(-HR|-HR/A|-NT|-NT/A)?$", re.IGNORECASE)

# EDGAR electronic filing starts in 1993; anything older is suspicious.
EARLIEST_EXPECTED_FILING_DATE = date(1993, 1, 1)
LARGE_VALUE = Decimal("1000000000000")
LARGE_SHARES = 10_000_000_000

DEFAULT_REQUIRED_HOLDING_FIELDS: tuple[str, ...] = ("name_of_issuer", "cusip")


class ValidationFailed(ValueError):
    """A parsed filing broke at least one business rule.

    Bad data does not become valid on retry, so this is never retried.
    """

    retryable = False

    def __init__(self, errors: list[str], *, accession_number: str | None = None) -> None:
        self.errors = list(errors)
        self.accession_number = accession_number
        head = "; ".join(self.errors[:5])
        more = f" (+{len(self.errors) - 5} more)" if len(self.errors) > 5 else ""
        super().__init__(f"filing failed validation accession={accession_number}: {head}{more}")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _validate_holding(
    h: ParsedHolding,
    index: int,
    required_fields: tuple[str, ...],
    result: ValidationResult,
) -> None:
    prefix = f"holding[{index}]"

    for name in required_fields:
        if getattr(h, name, None) in (None, ""):
            result.errors.append(f"{prefix} {name} is required")

    if h.cusip and not _CUSIP.match(h.cusip):
        result.errors.append(f"{prefix} invalid CUSIP format: {h.cusip!r}")

    if h.value is not None:
        if h.value < 0:
            result.errors.append(f"{prefix} value cannot be negative: {h.value}")
        elif h.value > LARGE_VALUE:
            result.warnings.append(f"{prefix} value is unusually large: {h.value}")

    if h.shares is None:
        result.warnings.append(f"{prefix} share count is missing")
    elif h.shares < 0:
        result.errors.append(f"{prefix} share count cannot be negative: {h.shares}")
    elif h.shares > LARGE_SHARES:
        result.warnings.append(f"{prefix} share count is unusually large: {h.shares}")


def validate_filing(
    filing: ParsedFiling | None,
    *,
    today: date | None = None,
    required_holding_fields: tuple[str, ...] = DEFAULT_REQUIRED_HOLDING_FIELDS,
) -> ValidationResult:
    """Check a parsed filing against structural business rules.

    Read-only: the filing is never modified. Errors are collected in a stable
    order (filing-level first, then holdings in document order).

    `today` defaults to the current UTC date; pass it explicitly in tests.
    """

    result = ValidationResult()
    if filing is None:
        result.errors.append("filing is missing")
        return result

    today = today or utcnow().date()

    acc = (filing.accession_number or "").strip()
    if not acc:
        result.errors.append("accession number is required")
    elif not is_canonical_accession(acc):
        result.errors.append(f"invalid accession number format: {acc!r}")

    cik = (filing.cik or "").strip()
    if not cik:
        result.errors.append("CIK is required")
    elif not _CIK_DIGITS.match(cik):
        result.errors.append(f"invalid CIK format: {cik!r}")

    if filing.filing_date is None:
        result.errors.append("filing date is required")
    elif filing.filing_date > today:
        result.errors.append(f"filing date cannot be in the future: {filing.filing_date.isoformat()}")
    elif filing.filing_date < EARLIEST_EXPECTED_FILING_DATE:
        result.warnings.append(f"filing date is very old: {filing.filing_date.isoformat()}")

    if not (filing.company_name or "").strip():
        result.warnings.append("company name is missing")

    if filing.filing_type and not _THIRTEEN_F_TYPE.match(filing.filing_type.strip()):
        result.warnings.append(f"unusual filing type: {filing.filing_type!r}")

    if filing.holdings is None:
        result.errors.append("holdings list is missing")
        return result

    for i, h in enumerate(filing.holdings):
        if h is None:
            result.errors.append(f"holding[{i}] is missing")
            continue
        _validate_holding(h, i, tuple(required_holding_fields), result)

    return result
