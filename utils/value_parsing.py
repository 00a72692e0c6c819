from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

_NUMERIC_NOISE = re.compile(r"[,$\s]")
_WHITESPACE = re.compile(r"\s+")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_ACCESSION_DASHED = re.compile(r"^\d{10}-\d{2}-\d{6}$")
_ACCESSION_PLAIN = re.compile(r"^\d{18}$")


def clean_text(text: str | None) -> str | None:
    """Collapse whitespace and drop control characters; "" -> None."""

    if text is None:
        return None
    s = _CONTROL_CHARS.sub("", _WHITESPACE.sub(" ", str(text))).strip()
    return s or None


def parse_decimal(text: str | None) -> Decimal | None:
    """Parse a reported value ("1,234.50", "$ 99") as an exact Decimal.

    None/"" -> None. Raises ValueError when the text is present but not numeric,
    so callers can decide whether that is worth a warning.
    """

    if text is None:
        return None
    s = _NUMERIC_NOISE.sub("", str(text))
    if s == "":
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        raise ValueError(f"not a decimal: {text!r}") from None
    if not d.is_finite():
        raise ValueError(f"not a finite decimal: {text!r}")
    return d


def parse_shares(text: str | None) -> int | None:
    """Parse a share / principal amount as an int (arbitrary size).

    "1,000" -> 1000, "1000.0" -> 1000. Fractional amounts raise ValueError.
    """

    d = parse_decimal(text)
    if d is None:
        return None
    if d != d.to_integral_value():
        raise ValueError(f"not a whole share amount: {text!r}")
    return int(d)


def normalize_cik(cik: str | int | None) -> str | None:
    """Normalize CIK input to the 10-digit zero-padded SEC form.

    Non-numeric input is returned trimmed so validation can report it.
    """

    if cik is None:
        return None
    raw = str(cik).strip()
    if not raw:
        return None
    if raw.isdigit():
        return str(int(raw)).zfill(10)
    return raw


def normalize_accession(accession_number: str | None) -> str | None:
    """Return the canonical dashed accession number (##########-##-######).

    18-digit inputs get dashes inserted; anything else is returned trimmed.
    """

    if accession_number is None:
        return None
    raw = str(accession_number).strip()
    if not raw:
        return None
    if _ACCESSION_PLAIN.match(raw):
        return f"{raw[:10]}-{raw[10:12]}-{raw[12:]}"
    return raw


def is_canonical_accession(accession_number: str | None) -> bool:
    return bool(accession_number) and bool(_ACCESSION_DASHED.match(str(accession_number)))


def clean_cusip(cusip: str | None) -> str | None:
    """Upper-case a CUSIP and drop separators; "" -> None."""

    if cusip is None:
        return None
    s = re.sub(r"[^0-9A-Za-z]", "", str(cusip)).upper()
    return s or None
