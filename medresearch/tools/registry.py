from __future__ import annotations

from loguru import logger

from medresearch.config import Settings
from medresearch.tools.base import KnowledgeProvider
from medresearch.tools.clinical_trials import ClinicalTrialsProvider
from medresearch.tools.medrxiv_search import MedRxivProvider
from medresearch.tools.pubmed_search import PubMedProvider
from medresearch.tools.web_search import TavilyMedicalProvider


def build_providers(settings: Settings) -> list[KnowledgeProvider]:
    """Instantiate the enabled providers in configured order."""
    providers: list[KnowledgeProvider] = []
    for name in settings.enabled_provider_list:
        if name == "pubmed":
            providers.append(
                PubMedProvider(
                    timeout=settings.pubmed_timeout_seconds,
                    api_key=settings.pubmed_api_key,
                    years_back=settings.pubmed_years_back,
                )
            )
        elif name == "medrxiv":
            providers.append(MedRxivProvider(timeout=settings.medrxiv_timeout_seconds))
        elif name == "clinicaltrials":
            providers.append(ClinicalTrialsProvider(timeout=settings.clinicaltrials_timeout_seconds))
        elif name == "web":
            if not settings.tavily_api_key:
                logger.warning("Web provider enabled but TAVILY_API_KEY is empty; skipping it")
                continue
            providers.append(
                TavilyMedicalProvider(
                    api_key=settings.tavily_api_key,
                    timeout=settings.web_timeout_seconds,
                    include_domains=settings.trusted_domain_list,
                )
            )
        else:
            raise ValueError(f"Unsupported provider in ENABLED_PROVIDERS: {name}")
    return providers
