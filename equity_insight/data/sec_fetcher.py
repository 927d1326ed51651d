"""
SEC EDGAR adapter: ticker -> CIK resolution and filing lists.

EDGAR requires a descriptive User-Agent with a contact address on every
request. Both the company ticker index and a company's submissions document
are cached (they change at most daily), so one analysis costs at most two
index requests no matter how many filings it touches.

Filing types of interest:
    periodic reports   10-Q, 10-K, 20-F, 6-K   -> get_recent_filings()
    event reports      8-K, 6-K                -> get_event_filings()
"""

from dataclasses import dataclass
from datetime import date
from typing import Any

import structlog

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import ProviderClient
from equity_insight.exceptions import ProviderError

logger = structlog.get_logger(__name__)

TICKER_INDEX_URL = "https://www.sec.gov/files/company_tickers.json"
SUBMISSIONS_URL = "https://data.sec.gov/submissions/CIK{cik}.json"
ARCHIVE_URL = "https://www.sec.gov/Archives/edgar/data/{cik}/{accession}/{document}"

SUPPORTED_FORMS = ("10-Q", "10-K", "20-F", "6-K")
EVENT_FORMS = ("8-K", "6-K")

FORM_LABELS = {
    "10-Q": "Form 10-Q (US quarterly report)",
    "10-K": "Form 10-K (US annual report)",
    "20-F": "Form 20-F (foreign issuer annual report)",
    "6-K": "Form 6-K (foreign issuer current report)",
    "8-K": "Form 8-K (US current report)",
}

INDEX_TTL_SECONDS = 24 * 3600
SUBMISSIONS_TTL_SECONDS = 12 * 3600


@dataclass(frozen=True)
class Filing:
    """One regulatory filing. Immutable once built from the submissions index."""

    form: str
    form_label: str
    filing_date: str
    report_date: str | None
    accession: str
    url: str | None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "form": self.form,
            "formLabel": self.form_label,
            "filingDate": self.filing_date,
            "reportDate": self.report_date,
            "accession": self.accession,
            "url": self.url,
        }


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


class SecFilingsFetcher(ProviderClient):
    """EDGAR company index and submissions client."""

    provider = "SEC"

    def __init__(
        self,
        cache: CacheStore,
        user_agent: str,
        api_key: str = "",
        timeout: float = 20,
    ):
        super().__init__(cache, timeout=timeout)
        self.user_agent = user_agent
        self.api_key = api_key

    @property
    def headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def get_cik(self, ticker: str) -> str:
        """Resolve a ticker to its zero-padded 10-digit CIK."""
        symbol = ticker.upper().strip()
        key = FetchKey("sec_index_all")
        index = await self.cache.get(key, INDEX_TTL_SECONDS)
        if not index:
            try:
                index = await self._get_json(TICKER_INDEX_URL, headers=self.headers)
            except ProviderError as e:
                raise self._error(f"getCIK index failed: {e.reason}") from e
            await self.cache.set(key, index)

        rows = index.values() if isinstance(index, dict) else index
        for row in rows:
            if str(row.get("ticker", "")).upper() == symbol:
                return str(row["cik_str"]).zfill(10)
        raise self._error(f"Ticker {symbol} not found in SEC index")

    async def get_submissions(self, cik: str) -> dict[str, Any]:
        key = FetchKey("sec_submissions", cik)
        data = await self.cache.get(key, SUBMISSIONS_TTL_SECONDS)
        if data:
            return data
        try:
            data = await self._get_json(
                SUBMISSIONS_URL.format(cik=cik), headers=self.headers
            )
        except ProviderError as e:
            raise self._error(f"submissions failed: {e.reason}") from e
        await self.cache.set(key, data)
        return data

    def _document_url(self, cik: str, accession: str | None, document: str | None):
        if not accession or not document:
            return None
        return ARCHIVE_URL.format(
            cik=int(cik), accession=accession.replace("-", ""), document=document
        )

    def _rows(self, cik: str, recent: dict[str, list]) -> list[Filing]:
        forms = recent.get("form") or []

        def column(name: str, i: int):
            values = recent.get(name) or []
            return values[i] if i < len(values) else None

        filings = []
        for i, form in enumerate(forms):
            accession = column("accessionNumber", i) or ""
            filings.append(
                Filing(
                    form=form,
                    form_label=FORM_LABELS.get(form, form),
                    filing_date=column("filingDate", i) or "",
                    report_date=column("reportDate", i) or None,
                    accession=accession,
                    url=self._document_url(cik, accession, column("primaryDocument", i)),
                    description=column("primaryDocDescription", i) or "",
                )
            )
        return filings

    def _on_or_before(
        self, filings: list[Filing], baseline_date: str, forms: tuple[str, ...]
    ) -> list[Filing]:
        cutoff = _parse_date(baseline_date)
        selected = []
        for filing in filings:
            filed = _parse_date(filing.filing_date)
            if filing.form not in forms or filed is None:
                continue
            if cutoff is None or filed <= cutoff:
                selected.append(filing)
        return sorted(selected, key=lambda f: f.filing_date, reverse=True)

    async def get_recent_filings(
        self, cik: str, baseline_date: str, limit: int = 4
    ) -> list[Filing]:
        """Most recent periodic reports filed on/before the baseline date."""
        data = await self.get_submissions(cik)
        recent = (data.get("filings") or {}).get("recent")
        if not recent:
            raise self._error("No recent filings")

        filings = self._on_or_before(self._rows(cik, recent), baseline_date, SUPPORTED_FORMS)
        if not filings:
            raise self._error(
                f"No supported filings ({'/'.join(SUPPORTED_FORMS)}) found before baseline"
            )
        logger.info(
            "sec_filings_selected",
            cik=cik,
            baseline=baseline_date,
            count=min(limit, len(filings)),
        )
        return filings[:limit]

    async def get_event_filings(
        self, cik: str, baseline_date: str, limit: int = 15
    ) -> list[Filing]:
        """Event reports (8-K / 6-K) filed on/before the baseline date; [] if none."""
        data = await self.get_submissions(cik)
        recent = (data.get("filings") or {}).get("recent")
        if not recent:
            return []
        return self._on_or_before(self._rows(cik, recent), baseline_date, EVENT_FORMS)[
            :limit
        ]
