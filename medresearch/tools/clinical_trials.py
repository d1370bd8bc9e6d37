from __future__ import annotations

import re
import time
from typing import Any

import httpx

from medresearch.errors import ProviderError
from medresearch.models.research import SourceItem, SourceType
from medresearch.tools.base import KnowledgeProvider, ProviderResult
from medresearch.tools.web_utils import clean_text

CLINICAL_TRIALS_URL = "https://clinicaltrials.gov/api/v2/studies"


class ClinicalTrialsProvider(KnowledgeProvider):
    name = "clinicaltrials"

    def __init__(self, timeout: float = 3.0):
        super().__init__(timeout)

    async def search(self, query: str, filters: dict[str, Any], max_results: int) -> ProviderResult:
        started = time.monotonic()
        params: dict[str, Any] = {
            "query.term": query,
            "pageSize": max_results,
            "countTotal": "true",
            "format": "json",
        }
        status = filters.get("status")
        if status:
            params["filter.overallStatus"] = ",".join(status) if isinstance(status, list) else status
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(CLINICAL_TRIALS_URL, params=params)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ProviderError(self.name, str(exc) or type(exc).__name__) from exc

        studies = payload.get("studies", []) or []
        total = max(len(studies), 1)
        items: list[SourceItem] = []
        for position, study in enumerate(studies[:max_results]):
            protocol = study.get("protocolSection", {}) or {}
            ident = protocol.get("identificationModule", {}) or {}
            nct_id = ident.get("nctId")
            if not nct_id:
                continue
            status_module = protocol.get("statusModule", {}) or {}
            start_date = (status_module.get("startDateStruct") or {}).get("date", "")
            year_match = re.match(r"(\d{4})", start_date or "")
            sponsor = ((protocol.get("sponsorCollaboratorsModule") or {}).get("leadSponsor") or {}).get("name")
            summary = (protocol.get("descriptionModule") or {}).get("briefSummary", "")
            phases = (protocol.get("designModule") or {}).get("phases") or []
            overall = status_module.get("overallStatus")
            prefix = " ".join(p for p in [overall, ", ".join(phases)] if p)
            items.append(
                SourceItem(
                    id=f"nct:{nct_id}",
                    title=ident.get("briefTitle") or ident.get("officialTitle") or nct_id,
                    url=f"https://clinicaltrials.gov/study/{nct_id}",
                    source_type=SourceType.CLINICAL_TRIAL,
                    provider=self.name,
                    authors=[sponsor] if sponsor else [],
                    venue="ClinicalTrials.gov",
                    year=int(year_match.group(1)) if year_match else None,
                    relevance_score=round(1.0 - position / total, 4),
                    snippet=clean_text(f"{prefix}. {summary}" if prefix else summary),
                    published=start_date or None,
                )
            )
        found = int(payload.get("totalCount", len(items)) or 0)
        return ProviderResult(
            found=found,
            retrieved=len(items),
            results=items,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
