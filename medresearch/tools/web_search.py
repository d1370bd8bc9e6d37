from __future__ import annotations

import hashlib
import time
from typing import Any

from tavily import AsyncTavilyClient

from medresearch.errors import ProviderError
from medresearch.models.research import SourceItem, SourceType
from medresearch.tools.base import KnowledgeProvider, ProviderResult
from medresearch.tools.web_utils import clean_text, extract_domain, is_valid_url


class TavilyMedicalProvider(KnowledgeProvider):
    """General web search restricted to trusted medical domains."""

    name = "web"

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        include_domains: list[str] | None = None,
        client: Any | None = None,
    ):
        super().__init__(timeout)
        self.include_domains = include_domains or []
        self._client = client or AsyncTavilyClient(api_key=api_key)

    async def search(self, query: str, filters: dict[str, Any], max_results: int) -> ProviderResult:
        started = time.monotonic()
        kwargs: dict[str, Any] = {
            "query": query,
            "search_depth": "advanced",
            "max_results": max_results,
            "topic": "general",
            "include_raw_content": False,
        }
        domains = filters.get("includeDomains") or self.include_domains
        if domains:
            kwargs["include_domains"] = domains
        if filters.get("timeRange"):
            kwargs["time_range"] = filters["timeRange"]

        try:
            response = await self._client.search(**kwargs)
        except Exception as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc

        items: list[SourceItem] = []
        for record in response.get("results", []) or []:
            url = record.get("url", "")
            if not is_valid_url(url):
                continue
            items.append(
                SourceItem(
                    id=f"web:{hashlib.sha1(url.encode('utf-8')).hexdigest()[:12]}",
                    title=record.get("title", "") or extract_domain(url),
                    url=url,
                    source_type=SourceType.WEB,
                    provider=self.name,
                    venue=extract_domain(url),
                    relevance_score=float(record.get("score", 0.0) or 0.0),
                    snippet=clean_text(record.get("content", "")),
                    published=record.get("published_date") or None,
                )
            )
        return ProviderResult(
            found=len(items),
            retrieved=len(items),
            results=items,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
