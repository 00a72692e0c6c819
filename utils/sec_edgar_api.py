from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import date

import requests

from logging_utils import get_logger
from utils.time_utils import parse_ymd_date
from utils.value_parsing import normalize_accession, normalize_cik

logger = get_logger(__name__)


SEC_BASE_URL = "https://data.sec.gov"
SEC_WWW_BASE_URL = "https://www.sec.gov"

THIRTEEN_F_FORMS: frozenset[str] = frozenset({"13F-HR", "13F-HR/A"})


class SecEdgarApiError(RuntimeError):
    retryable = True


class FetchFailed(SecEdgarApiError):
    """A single EDGAR request did not produce a 200 response.

    `status_code` is None when no response was received (timeout, connection
    reset). Always retryable from the task engine's point of view.
    """

    retryable = True

    def __init__(
        self,
        url: str,
        *,
        status_code: int | None = None,
        timeout: bool = False,
        reason: str | None = None,
    ) -> None:
        self.url = url
        self.status_code = status_code
        self.timeout = timeout
        self.reason = reason
        if timeout:
            detail = "timeout"
        elif status_code is not None:
            detail = f"status={status_code}"
        else:
            detail = f"error={reason}"
        super().__init__(f"SEC request failed {detail} url={url}")


@dataclass(frozen=True)
class SecResponse:
    url: str
    status_code: int
    content: bytes
    content_type: str | None

    def text(self, encoding: str | None = None) -> str:
        return self.content.decode(encoding or "utf-8", errors="replace")


@dataclass(frozen=True)
class FilingReference:
    """One row of a filer's submissions index."""

    cik: str
    accession_number: str
    filing_type: str
    filing_date: date | None = None
    report_date: date | None = None
    primary_document: str | None = None


def _safe_preview_bytes(data: bytes | None, *, limit: int = 2000) -> str:
    """Best-effort, log-safe preview of response body."""

    if not data:
        return ""
    return data[:limit].decode("utf-8", errors="replace")


class SlidingWindowRateLimiter:
    """Thread-safe sliding-window rate limiter.

    Enforces at most `max_requests` in any `window_seconds` wall-clock window.

    Default for SEC EDGAR: 9 requests per 1 second (stays under 10 req/s).
    """

    def __init__(self, *, max_requests: int = 9, window_seconds: float = 1.0):
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self._max_requests = int(max_requests)
        self._window_seconds = float(window_seconds)
        self._lock = threading.Lock()
        self._events: deque[float] = deque()  # monotonic timestamps

    def acquire(self) -> None:
        """Block until a request token is available."""
        while True:
            now = time.monotonic()

            with self._lock:
                cutoff = now - self._window_seconds
                while self._events and self._events[0] <= cutoff:
                    self._events.popleft()

                if len(self._events) < self._max_requests:
                    self._events.append(now)
                    return

                # Wait until the oldest event exits the window.
                oldest = self._events[0]
                sleep_for = max((oldest + self._window_seconds) - now, 0.001)

            time.sleep(sleep_for)


_default_rate_limiter = SlidingWindowRateLimiter(max_requests=9, window_seconds=1.0)


def _request(
    *,
    url: str,
    user_agent: str,
    session: requests.Session | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15.0,
    rate_limiter: SlidingWindowRateLimiter | None = None,
    log: logging.Logger | None = None,
) -> SecResponse:
    """Single-shot HTTP GET with SEC constraints (identity header + throttling).

    Anything other than HTTP 200 raises `FetchFailed`; retrying is the task
    engine's job.
    """

    if not user_agent or not user_agent.strip():
        raise ValueError("user_agent is required for SEC requests")

    s = session or requests.Session()
    rl = rate_limiter or _default_rate_limiter
    log = log or logger

    merged_headers = {"User-Agent": user_agent.strip(), "Accept-Encoding": "gzip"}
    if headers:
        merged_headers.update(headers)

    rl.acquire()
    try:
        resp = s.get(url, headers=merged_headers, timeout=timeout_seconds)
    except requests.Timeout as e:
        log.warning("SEC request timed out | url=%s timeout=%s", url, timeout_seconds)
        raise FetchFailed(url, timeout=True, reason=str(e)) from e
    except requests.RequestException as e:
        log.warning("SEC request failed | url=%s err=%s", url, e)
        raise FetchFailed(url, reason=f"{type(e).__name__}: {e}") from e

    if resp.status_code == 200:
        return SecResponse(
            url=url,
            status_code=resp.status_code,
            content=resp.content,
            content_type=resp.headers.get("Content-Type"),
        )

    log.warning(
        "SEC non-200 response | status=%s url=%s content_type=%s retry_after=%s body_preview=%s",
        resp.status_code,
        url,
        resp.headers.get("Content-Type"),
        resp.headers.get("Retry-After"),
        _safe_preview_bytes(getattr(resp, "content", b""), limit=500),
    )
    raise FetchFailed(url, status_code=resp.status_code)


def _optional_date(value) -> date | None:
    if not value:
        return None
    try:
        return parse_ymd_date(str(value))
    except ValueError:
        return None


def parse_submissions_index(cik: str, submissions: dict) -> list[FilingReference]:
    """Extract 13F references from a submissions JSON document.

    The `filings.recent` block is column-oriented: parallel arrays indexed by
    filing position.
    """

    recent = (submissions.get("filings") or {}).get("recent") or {}
    forms = recent.get("form") or []
    accessions = recent.get("accessionNumber") or []
    filing_dates = recent.get("filingDate") or []
    report_dates = recent.get("reportDate") or []
    primary_docs = recent.get("primaryDocument") or []

    def _at(seq, i):
        return seq[i] if i < len(seq) else None

    out: list[FilingReference] = []
    for i, form in enumerate(forms):
        if form not in THIRTEEN_F_FORMS:
            continue
        out.append(
            FilingReference(
                cik=cik,
                accession_number=normalize_accession(_at(accessions, i)) or "",
                filing_type=str(form),
                filing_date=_optional_date(_at(filing_dates, i)),
                report_date=_optional_date(_at(report_dates, i)),
                primary_document=_at(primary_docs, i) or None,
            )
        )
    return out


class EdgarClient:
    """Document fetcher for SEC EDGAR.

    Every call is one HTTP request (plus rate limiting). Failures surface as
    `FetchFailed` and are classified as retryable by the task engine.
    """

    def __init__(
        self,
        *,
        user_agent: str,
        session: requests.Session | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        timeout_seconds: float = 15.0,
        log: logging.Logger | None = None,
    ) -> None:
        if not user_agent or not str(user_agent).strip():
            raise ValueError("EdgarClient requires a non-empty user_agent identity")
        self.user_agent = str(user_agent).strip()
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or _default_rate_limiter
        self.timeout_seconds = float(timeout_seconds)
        self.log = log or logger

    def _get(self, url: str, *, accept: str) -> SecResponse:
        return _request(
            url=url,
            user_agent=self.user_agent,
            session=self.session,
            headers={"Accept": accept},
            timeout_seconds=self.timeout_seconds,
            rate_limiter=self.rate_limiter,
            log=self.log,
        )

    def fetch_filing_index(self, cik: str) -> list[FilingReference]:
        """List the filer's 13F filings (newest first, as EDGAR orders them).

        Endpoint:
          https://data.sec.gov/submissions/CIK##########.json
        """

        cik10 = normalize_cik(cik)
        if not cik10 or not cik10.isdigit():
            raise ValueError(f"invalid CIK: {cik!r}")
        url = f"{SEC_BASE_URL}/submissions/CIK{cik10}.json"
        r = self._get(url, accept="application/json")
        try:
            submissions = json.loads(r.text())
        except ValueError as e:
            raise FetchFailed(url, status_code=r.status_code, reason="invalid JSON body") from e

        refs = parse_submissions_index(cik10, submissions)
        self.log.info("Filing index fetched | cik=%s filings_13f=%s", cik10, len(refs))
        return refs

    def fetch_filing_document(self, accession_number: str, cik: str) -> str:
        """Fetch the full submission text file for one filing.

        Endpoint:
          https://www.sec.gov/Archives/edgar/data/{cik}/{acc_nodash}/{acc}.txt
        """

        acc = normalize_accession(accession_number)
        if not acc:
            raise ValueError("accession_number is required")
        cik_nozeros = str(int(str(cik).strip()))
        acc_nodash = acc.replace("-", "")
        url = f"{SEC_WWW_BASE_URL}/Archives/edgar/data/{cik_nozeros}/{acc_nodash}/{acc}.txt"
        r = self._get(url, accept="text/plain,application/xml,text/xml")
        self.log.debug(
            "Filing document fetched | cik=%s accession=%s bytes=%s", cik_nozeros, acc, len(r.content)
        )
        return r.text()
