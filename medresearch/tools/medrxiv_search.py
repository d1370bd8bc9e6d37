from __future__ import annotations

import time
from typing import Any

import httpx

from medresearch.errors import ProviderError
from medresearch.models.research import SourceItem, SourceType
from medresearch.tools.base import KnowledgeProvider, ProviderResult
from medresearch.tools.web_utils import clean_text

# medRxiv has no search API of its own; Europe PMC indexes its preprints.
EUROPE_PMC_URL = "https://www.ebi.ac.uk/europepmc/webservices/rest/search"


class MedRxivProvider(KnowledgeProvider):
    name = "medrxiv"

    def __init__(self, timeout: float = 3.0):
        super().__init__(timeout)

    async def search(self, query: str, filters: dict[str, Any], max_results: int) -> ProviderResult:
        started = time.monotonic()
        term = f"({query}) AND SRC:PPR"
        from_year = filters.get("fromYear")
        if from_year:
            term += f" AND PUB_YEAR:[{int(from_year)} TO 3000]"
        params = {
            "query": term,
            "format": "json",
            "resultType": "core",
            "pageSize": max_results,
            "sort": "RELEVANCE",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(EUROPE_PMC_URL, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc

        records = (payload.get("resultList") or {}).get("result", []) or []
        found = int(payload.get("hitCount", len(records)) or 0)
        total = max(len(records), 1)
        items: list[SourceItem] = []
        for position, record in enumerate(records[:max_results]):
            record_id = record.get("id")
            if not record_id:
                continue
            doi = record.get("doi")
            url = f"https://doi.org/{doi}" if doi else f"https://europepmc.org/article/PPR/{record_id}"
            year = record.get("pubYear")
            items.append(
                SourceItem(
                    id=f"ppr:{record_id}",
                    title=clean_text(record.get("title", ""), max_length=300) or "Untitled",
                    url=url,
                    source_type=SourceType.MEDRXIV,
                    provider=self.name,
                    authors=[a.strip() for a in (record.get("authorString") or "").split(",") if a.strip()],
                    venue=(record.get("bookOrReportDetails") or {}).get("publisher") or "medRxiv",
                    year=int(year) if str(year or "").isdigit() else None,
                    citation_count=record.get("citedByCount"),
                    relevance_score=round(1.0 - position / total, 4),
                    snippet=clean_text(record.get("abstractText", "")),
                    doi=doi,
                    published=record.get("firstPublicationDate"),
                )
            )
        return ProviderResult(
            found=found,
            retrieved=len(items),
            results=items,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
