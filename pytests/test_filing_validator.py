from __future__ import annotations

import copy
from datetime import date
from decimal import Decimal

import pytest

from utils.filing_validator import ValidationFailed, validate_filing
from utils.thirteenf_parser import ParsedFiling, ParsedHolding

TODAY = date(2025, 3, 1)


def _filing(**overrides) -> ParsedFiling:
    f = ParsedFiling(
        cik="0001067983",
        accession_number="0000950123-24-011775",
        filing_type="13F-HR",
        filing_date=date(2024, 2, 14),
        report_period=date(2023, 12, 31),
        company_name="BERKSHIRE HATHAWAY INC",
        holdings=[
            ParsedHolding("D R HORTON INC", "23331A109", "COM", Decimal("192267725"), 1494336),
            ParsedHolding("LENNAR CORP", "526057104", "COM", Decimal("221522186"), 1478336),
        ],
    )
    for k, v in overrides.items():
        setattr(f, k, v)
    return f


def test_valid_filing():
    r = validate_filing(_filing(), today=TODAY)
    assert r.valid
    assert r.errors == []
    assert r.warnings == []


@pytest.mark.parametrize("acc", [None, "", "   "])
def test_missing_accession_number(acc):
    r = validate_filing(_filing(accession_number=acc), today=TODAY)
    assert not r.valid
    assert r.errors == ["accession number is required"]


@pytest.mark.parametrize("acc", ["000095012324011775", "0000950123-24-01177", "abc"])
def test_malformed_accession_number(acc):
    r = validate_filing(_filing(accession_number=acc), today=TODAY)
    assert not r.valid
    assert "invalid accession number format" in r.errors[0]


def test_cik_rules():
    assert validate_filing(_filing(cik=None), today=TODAY).errors == ["CIK is required"]
    r = validate_filing(_filing(cik="BRK"), today=TODAY)
    assert "invalid CIK format" in r.errors[0]


def test_filing_date_rules():
    assert validate_filing(_filing(filing_date=None), today=TODAY).errors == ["filing date is required"]

    r = validate_filing(_filing(filing_date=date(2025, 3, 2)), today=TODAY)
    assert "filing date cannot be in the future" in r.errors[0]

    r = validate_filing(_filing(filing_date=date(2025, 3, 1)), today=TODAY)
    assert r.valid

    r = validate_filing(_filing(filing_date=date(1990, 1, 1)), today=TODAY)
    assert r.valid
    assert any("very old" in w for w in r.warnings)


def test_holdings_list_none_is_error_but_empty_is_fine():
    assert validate_filing(_filing(holdings=None), today=TODAY).errors == ["holdings list is missing"]
    assert validate_filing(_filing(holdings=[]), today=TODAY).valid


def test_per_holding_required_fields_and_formats():
    holdings = [
        ParsedHolding(None, "23331A109", None, Decimal("1"), 1),
        ParsedHolding("X", None, None, Decimal("1"), 1),
        ParsedHolding("Y", "BAD", None, Decimal("1"), 1),
        ParsedHolding("Z", "526057104", None, Decimal("-1"), -5),
    ]

    r = validate_filing(_filing(holdings=holdings), today=TODAY)

    assert r.errors == [
        "holding[0] name_of_issuer is required",
        "holding[1] cusip is required",
        "holding[2] invalid CUSIP format: 'BAD'",
        "holding[3] value cannot be negative: -1",
        "holding[3] share count cannot be negative: -5",
    ]


def test_required_fields_are_configurable():
    holdings = [ParsedHolding("X", "23331A109", None, None, 1)]

    assert validate_filing(_filing(holdings=holdings), today=TODAY).valid
    r = validate_filing(
        _filing(holdings=holdings),
        today=TODAY,
        required_holding_fields=("name_of_issuer", "cusip", "value"),
    )
    assert r.errors == ["holding[0] value is required"]


def test_warnings_do_not_invalidate():
    holdings = [ParsedHolding("X", "23331A109", None, Decimal("2000000000000"), None)]

    r = validate_filing(
        _filing(company_name=None, filing_type="10-K", holdings=holdings), today=TODAY
    )

    assert r.valid
    assert "company name is missing" in r.warnings
    assert any("unusual filing type" in w for w in r.warnings)
    assert any("unusually large" in w for w in r.warnings)
    assert any("share count is missing" in w for w in r.warnings)


def test_validation_does_not_mutate_input():
    f = _filing(cik="BRK", holdings=[ParsedHolding(None, "bad", None, Decimal("-1"), None)])
    before = copy.deepcopy(f)

    validate_filing(f, today=TODAY)

    assert f == before


def test_none_filing():
    assert validate_filing(None).errors == ["filing is missing"]


def test_validation_failed_is_not_retryable():
    e = ValidationFailed(["a", "b"], accession_number="x")
    assert e.retryable is False
    assert e.errors == ["a", "b"]
    assert "a; b" in str(e)
