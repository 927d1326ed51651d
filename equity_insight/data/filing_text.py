"""
Narrative-text fetcher for filing documents.

Downloads a filing's primary document, strips the markup with BeautifulSoup
and returns the Management's Discussion and Analysis section as plain text:

    10-K  -> Item 7
    10-Q  -> Part I, Item 2
    20-F  -> Item 5 (Operating and Financial Review and Prospects)
    6-K   -> no fixed structure, document head is used

The excerpt is bounded by ``max_chars``; callers truncate further before
putting it into an LLM payload.
"""

import re

import structlog
from bs4 import BeautifulSoup

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import ProviderClient

logger = structlog.get_logger(__name__)

MDA_TTL_SECONDS = 30 * 24 * 3600

_MDA_HEADINGS = [
    re.compile(
        r"item\s*7\.?\s*[-:.]?\s*management[’'`\ufffds]*\s+discussion\s+and\s+analysis",
        re.IGNORECASE,
    ),
    re.compile(
        r"item\s*2\.?\s*[-:.]?\s*management[’'`\ufffds]*\s+discussion\s+and\s+analysis",
        re.IGNORECASE,
    ),
    re.compile(
        r"item\s*5\.?\s*[-:.]?\s*operating\s+and\s+financial\s+review", re.IGNORECASE
    ),
    re.compile(r"management[’'`\ufffds]*\s+discussion\s+and\s+analysis", re.IGNORECASE),
]

_SECTION_END = re.compile(
    r"item\s*(7a|8|3|4|6)\.?\s*[-:.]?\s*"
    r"(quantitative|financial\s+statements|controls|directors)",
    re.IGNORECASE,
)

_MIN_SECTION_CHARS = 500


def html_to_text(html: str) -> str:
    """Visible text of an HTML/iXBRL document with whitespace collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head", "title", "ix:header"]):
        tag.decompose()
    text = soup.get_text(separator=" ", strip=True)
    return " ".join(text.split())


def _locate_section(text: str) -> str | None:
    for pattern in _MDA_HEADINGS:
        matches = list(pattern.finditer(text))
        if not matches:
            continue
        # Table-of-contents entries repeat the heading with no prose after them
        for match in matches:
            body = text[match.start():]
            end = _SECTION_END.search(body, pos=match.end() - match.start())
            section = body[: end.start()] if end else body
            if len(section) >= _MIN_SECTION_CHARS:
                return section
    return None


def extract_mda(text: str, max_chars: int) -> str:
    """MD&A section of the plain text, or the document head when none is found."""
    section = _locate_section(text)
    if section is None:
        logger.debug("mda_heading_not_found", chars=len(text))
        section = text
    return section[:max_chars].strip()


class FilingTextFetcher(ProviderClient):
    """Fetches filing documents from EDGAR and extracts the MD&A excerpt."""

    provider = "SEC_TEXT"

    def __init__(
        self,
        cache: CacheStore,
        user_agent: str,
        max_chars: int = 20000,
        timeout: float = 20,
    ):
        super().__init__(cache, timeout=timeout)
        self.user_agent = user_agent
        self.max_chars = max_chars

    async def fetch_mda(self, url: str) -> str:
        if not url:
            raise self._error("filing has no document URL")
        key = FetchKey("sec_mda", tag=url)
        cached = await self.cache.get(key, MDA_TTL_SECONDS)
        if cached is not None:
            return cached

        html = await self._get_text(url, headers={"User-Agent": self.user_agent})
        text = extract_mda(html_to_text(html), self.max_chars)
        logger.info("mda_extracted", url=url[:120], chars=len(text))
        await self.cache.set(key, text)
        return text
