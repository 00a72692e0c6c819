from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from utils.time_utils import ensure_utc, parse_header_date, parse_ymd_date
from utils.value_parsing import (
    clean_cusip,
    clean_text,
    is_canonical_accession,
    normalize_accession,
    normalize_cik,
    parse_decimal,
    parse_shares,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("192267725", Decimal("192267725")),
        ("1,234.50", Decimal("1234.50")),
        ("$ 99", Decimal("99")),
        (" 0.1 ", Decimal("0.1")),
        ("", None),
        (None, None),
    ],
)
def test_parse_decimal(raw, expected):
    assert parse_decimal(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "1.2.3", "NaN", "Infinity"])
def test_parse_decimal_rejects_non_numeric(raw):
    with pytest.raises(ValueError):
        parse_decimal(raw)


def test_parse_shares():
    assert parse_shares("1,000") == 1000
    assert parse_shares("1000.0") == 1000
    assert parse_shares("98765432109876543210") == 98765432109876543210
    assert parse_shares(None) is None
    with pytest.raises(ValueError):
        parse_shares("1.5")


def test_identifiers():
    assert normalize_cik("1067983") == "0001067983"
    assert normalize_cik(1067983) == "0001067983"
    assert normalize_cik(" ") is None
    assert normalize_cik("BRK") == "BRK"

    assert normalize_accession("000095012324011775") == "0000950123-24-011775"
    assert normalize_accession("0000950123-24-011775") == "0000950123-24-011775"
    assert normalize_accession("") is None
    assert is_canonical_accession("0000950123-24-011775")
    assert not is_canonical_accession("000095012324011775")
    assert not is_canonical_accession(None)

    assert clean_cusip(" 23331a-109 ") == "23331A109"
    assert clean_cusip("") is None
    assert clean_text("  D R\n HORTON\tINC ") == "D R HORTON INC"
    assert clean_text("   ") is None


def test_dates():
    assert parse_ymd_date("2024-02-14") == date(2024, 2, 14)
    assert parse_header_date("20231231") == date(2023, 12, 31)
    with pytest.raises(ValueError):
        parse_ymd_date("02/14/2024")
    with pytest.raises(ValueError):
        parse_header_date("2023-12-31")


def test_ensure_utc():
    naive = datetime(2024, 1, 1, 12, 0)
    assert ensure_utc(naive) == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    plus2 = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert ensure_utc(plus2).hour == 12
