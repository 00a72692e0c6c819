from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils.value_parsing import normalize_cik

SortBy = Literal["value", "shares", "name", "cusip", "filings", "period"]
SortOrder = Literal["asc", "desc"]


class MergeHoldingsQuery(BaseModel):
    """Parameters for the cross-filing holdings merge query.

    Accepts both snake_case and the camelCase keys used in task payloads
    (`filingId`, `minValue`, `sortBy`, ...).
    """

    cik: Optional[str] = None
    filing_id: Optional[int] = Field(default=None, alias="filingId")
    min_value: Optional[Decimal] = Field(default=None, alias="minValue")
    search: Optional[str] = None
    sort_by: SortBy = Field(default="value", alias="sortBy")
    sort_order: SortOrder = Field(default="desc", alias="sortOrder")
    report_period_from: Optional[date] = Field(default=None, alias="reportPeriodFrom")
    report_period_to: Optional[date] = Field(default=None, alias="reportPeriodTo")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("cik", mode="before")
    @classmethod
    def _normalize_cik(cls, v):
        return normalize_cik(v)

    @field_validator("search", mode="before")
    @classmethod
    def _blank_search(cls, v):
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("sort_by", "sort_order", mode="before")
    @classmethod
    def _lower(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _period_order(self) -> "MergeHoldingsQuery":
        if (
            self.report_period_from is not None
            and self.report_period_to is not None
            and self.report_period_from > self.report_period_to
        ):
            raise ValueError("reportPeriodFrom must not be after reportPeriodTo")
        return self


class MergedHolding(BaseModel):
    """One (CIK, CUSIP) aggregate.

    `total_value` and `total_shares` are sums over every contributing holding
    row; `holding_count` and `filing_count` say how many rows/filings fed them.
    """

    cik: str
    cusip: Optional[str] = None
    name_of_issuer: Optional[str] = None
    total_value: Optional[Decimal] = None
    total_shares: Optional[int] = None
    holding_count: int = 0
    filing_count: int = 0
    first_report_period: Optional[date] = None
    last_report_period: Optional[date] = None

    model_config = ConfigDict(extra="ignore")
