from __future__ import annotations

import re
import time
from typing import Any

import httpx

from medresearch.errors import ProviderError
from medresearch.models.research import SourceItem, SourceType
from medresearch.tools.base import KnowledgeProvider, ProviderResult

ESEARCH_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esearch.fcgi"
ESUMMARY_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils/esummary.fcgi"

# Evidence level by publication type, 0-10.
EVIDENCE_LEVELS = {
    "Meta-Analysis": 10,
    "Systematic Review": 9,
    "Randomized Controlled Trial": 8,
    "Clinical Trial": 7,
    "Observational Study": 6,
    "Review": 5,
    "Case Reports": 4,
}
DEFAULT_EVIDENCE_LEVEL = 5


def evidence_level(pub_types: list[str]) -> int:
    for pub_type in pub_types:
        if pub_type in EVIDENCE_LEVELS:
            return EVIDENCE_LEVELS[pub_type]
    return DEFAULT_EVIDENCE_LEVEL


def _year(pubdate: str) -> int | None:
    match = re.search(r"\b(19|20)\d{2}\b", pubdate or "")
    return int(match.group(0)) if match else None


def _doi(article: dict[str, Any]) -> str | None:
    for aid in article.get("articleids", []) or []:
        if aid.get("idtype") == "doi" and aid.get("value"):
            return aid["value"]
    elocation = article.get("elocationid") or ""
    if elocation.startswith("doi:"):
        return elocation[4:].strip()
    return None


class PubMedProvider(KnowledgeProvider):
    """NCBI E-utilities: esearch for ids, then esummary for metadata."""

    name = "pubmed"

    def __init__(self, timeout: float = 3.0, api_key: str = "", years_back: int = 5):
        super().__init__(timeout)
        self.api_key = api_key
        self.years_back = years_back

    def default_filters(self) -> dict[str, Any]:
        return {"yearsBack": self.years_back} if self.years_back > 0 else {}

    async def search(self, query: str, filters: dict[str, Any], max_results: int) -> ProviderResult:
        started = time.monotonic()
        term = query
        study_types = filters.get("studyTypes") or []
        if study_types:
            type_filter = " OR ".join(f'"{t}"[Publication Type]' for t in study_types)
            term = f"({query}) AND ({type_filter})"

        params: dict[str, Any] = {
            "db": "pubmed",
            "term": term,
            "retmax": max_results,
            "retmode": "json",
            "sort": "relevance",
        }
        years_back = int(filters.get("yearsBack", 0) or 0)
        if years_back > 0:
            params["reldate"] = years_back * 365
        if self.api_key:
            params["api_key"] = self.api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(ESEARCH_URL, params=params)
                response.raise_for_status()
                esearch = response.json().get("esearchresult", {}) or {}
                ids: list[str] = esearch.get("idlist", []) or []
                found = int(esearch.get("count", len(ids)) or 0)
                if not ids:
                    return ProviderResult(
                        found=found,
                        retrieved=0,
                        latency_ms=int((time.monotonic() - started) * 1000),
                    )

                summary_params: dict[str, Any] = {"db": "pubmed", "id": ",".join(ids), "retmode": "json"}
                if self.api_key:
                    summary_params["api_key"] = self.api_key
                response = await client.get(ESUMMARY_URL, params=summary_params)
                response.raise_for_status()
                articles = response.json().get("result", {}) or {}
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc

        items: list[SourceItem] = []
        total = max(len(ids), 1)
        for position, pmid in enumerate(ids):
            article = articles.get(pmid)
            if not article:
                continue
            items.append(
                SourceItem(
                    id=f"pmid:{pmid}",
                    title=article.get("title") or "Untitled",
                    url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
                    source_type=SourceType.PUBMED,
                    provider=self.name,
                    authors=[a.get("name", "") for a in article.get("authors", []) or [] if a.get("name")],
                    venue=article.get("source") or None,
                    year=_year(article.get("pubdate", "")),
                    impact_metric=float(evidence_level(article.get("pubtype", []) or [])),
                    # esummary has no score; relevance sort order stands in for it.
                    relevance_score=round(1.0 - position / total, 4),
                    doi=_doi(article),
                    published=article.get("pubdate") or None,
                )
            )
        return ProviderResult(
            found=found,
            retrieved=len(items),
            results=items,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
