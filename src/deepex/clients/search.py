"""
Web search client used to ground reasoning in current sources.

``search()`` never raises: any failure, including an exhausted retry budget,
yields an empty ``SearchResult`` so reasoning continues without web context.
"""

import re

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config.settings import SearchConfig
from ..observability.logging import get_logger
from ..observability.tracing import trace_span
from .credentials import CredentialSlot
from .errors import UpstreamError, classify_status
from .request_client import ResilientClient

logger = get_logger(__name__)

_SEARCH_INDICATORS = [
    re.compile(r"\b(latest|recent|current|today|news|update|now|2024|2025|2026)\b", re.I),
    re.compile(r"\b(who is|what is|when did|where is|how much|price of|cost of)\b", re.I),
    re.compile(r"\b(is it true|fact check|verify|confirm|source)\b", re.I),
    re.compile(r"\b(company|stock|weather|score|result|election)\b", re.I),
]

_NO_SEARCH_DOMAINS = frozenset(
    {"math", "mathematics", "logic", "philosophy", "creative_writing", "coding", "abstract_reasoning"}
)


class Source(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class WebPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    url: str = ""
    display_url: str = Field("", alias="displayUrl")
    snippet: str = ""
    summary: str | None = None
    date_published: str | None = Field(None, alias="datePublished")


class SearchResult(BaseModel):
    sources: list[Source] = Field(default_factory=list)
    raw_results: list[WebPage] = Field(default_factory=list)


def build_search_context(results: list[WebPage]) -> str:
    """Render search hits as a prompt block."""
    if not results:
        return ""
    entries = []
    for i, page in enumerate(results, start=1):
        entries.append(
            "\n".join(
                [
                    f"[Source {i}] {page.name}",
                    f"Source: {page.display_url or page.url}",
                    f"Published: {page.date_published or 'Unknown'}",
                    f"Content: {page.summary or page.snippet}",
                    "",
                ]
            )
        )
    return "\n".join(["====== WEB SEARCH RESULTS ======", "", *entries, "====== END SEARCH RESULTS ======"])


def should_search(query: str, domain: str) -> bool:
    """Heuristic fallback when the classifier did not ask for a search."""
    if domain in _NO_SEARCH_DOMAINS:
        return False
    return any(pattern.search(query) for pattern in _SEARCH_INDICATORS)


def dedupe_sources(sources: list[Source]) -> list[Source]:
    seen: set[str] = set()
    unique = []
    for source in sources:
        if source.url in seen:
            continue
        seen.add(source.url)
        unique.append(source)
    return unique


class WebSearchClient:
    provider_name = "search"

    def __init__(self, http: httpx.AsyncClient, client: ResilientClient, config: SearchConfig):
        self._http = http
        self._client = client
        self.config = config

    async def _post(self, payload: dict, slot: CredentialSlot) -> SearchResult:
        response = await self._http.post(
            self.config.base_url,
            json=payload,
            headers={"Authorization": f"Bearer {slot.secret}", "Content-Type": "application/json"},
        )
        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text, provider=self.provider_name)

        data = response.json()
        if data.get("code") != 200:
            logger.error("Search API returned an error code", code=data.get("code"), msg=data.get("msg"))
            return SearchResult()

        raw = ((data.get("data") or {}).get("webPages") or {}).get("value") or []
        try:
            pages = [WebPage.model_validate(item) for item in raw]
        except ValidationError as exc:
            logger.warning("Malformed search results", error=str(exc)[:200])
            return SearchResult()
        sources = [Source(title=p.name, url=p.url, snippet=p.snippet) for p in pages]
        return SearchResult(sources=sources, raw_results=pages)

    @trace_span("search.query")
    async def search(
        self, query: str, count: int = 5, freshness: str = "noLimit", summary: bool = True
    ) -> SearchResult:
        payload = {"query": query, "count": count, "freshness": freshness, "summary": summary}
        try:
            return await self._client.call(
                lambda slot: self._post(payload, slot), lookup=True, empty=SearchResult()
            )
        except UpstreamError as exc:
            logger.error("Search failed, continuing without results", error=str(exc)[:200])
            return SearchResult()
