from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils.value_parsing import normalize_cik


class ScrapingTaskPayload(BaseModel):
    """SEC_SCRAPING payload: `{"cik": "0001067983", "companyName": "...", "limit": 4}`."""

    cik: str
    company_name: Optional[str] = Field(default=None, alias="companyName")
    # Only process the newest `limit` filings from the index.
    limit: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("cik", mode="before")
    @classmethod
    def _cik(cls, v):
        cik = normalize_cik(v)
        if not cik or not cik.isdigit() or len(cik) != 10:
            raise ValueError(f"cik must be numeric (at most 10 digits), got {v!r}")
        return cik


class HoldingMergeTaskPayload(BaseModel):
    """HOLDING_MERGE payload: either `{"filingId": 7}` or `{"cik": ..., "reportPeriodFrom": ...}`."""

    filing_id: Optional[int] = Field(default=None, alias="filingId")
    cik: Optional[str] = None
    report_period_from: Optional[date] = Field(default=None, alias="reportPeriodFrom")
    report_period_to: Optional[date] = Field(default=None, alias="reportPeriodTo")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("cik", mode="before")
    @classmethod
    def _cik(cls, v):
        return normalize_cik(v)

    @model_validator(mode="after")
    def _target(self) -> "HoldingMergeTaskPayload":
        if self.filing_id is None and not self.cik:
            raise ValueError("either filingId or cik is required")
        return self
