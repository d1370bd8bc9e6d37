"""Per-round source mix.

One small model call classifies the round's search query and splits the
source budget across the enabled providers. A failed call or a reply without
usable ratios falls back to the configured provider weights.
"""
from __future__ import annotations

from typing import Any

from loguru import logger

from medresearch.agents.base import ModelAgent, clamp
from medresearch.errors import AnalysisError
from medresearch.models.research import CallMetrics, Query, SourceMix
from medresearch.services.prompt_store import render_prompt

CATEGORIES = ("drug_safety", "new_research", "treatment", "nutrition", "general")


def normalize(shares: dict[str, float]) -> dict[str, float]:
    total = sum(shares.values())
    if total <= 0:
        return {}
    return {name: share / total for name, share in shares.items()}


def configured_mix(
    provider_names: list[str],
    weights: dict[str, float],
    *,
    is_fallback: bool,
    metrics: CallMetrics | None = None,
) -> SourceMix:
    """Mix from the configured weights; no weights means an equal split."""
    if weights:
        shares = {name: max(weights.get(name, 0.0), 0.0) for name in provider_names}
    else:
        shares = {name: 1.0 for name in provider_names}
    return SourceMix(
        category="general",
        weights=normalize(shares),
        confidence=0.0,
        is_fallback=is_fallback,
        metrics=metrics or CallMetrics(),
    )


def parse_ratios(ratios: Any, provider_names: list[str]) -> dict[str, float]:
    if not isinstance(ratios, dict):
        return {}
    lowered = {str(key).strip().lower(): value for key, value in ratios.items()}
    return normalize({name: clamp(lowered.get(name), default=0.0) for name in provider_names})


class QueryAnalyzer(ModelAgent):
    name = "query_analyzer"
    error = AnalysisError

    async def analyze(
        self,
        query: Query,
        round_query: str,
        provider_names: list[str],
        weights: dict[str, float],
    ) -> SourceMix:
        if len(provider_names) < 2:
            return configured_mix(provider_names, weights, is_fallback=False)

        system = render_prompt("analyzer.system")
        user = render_prompt(
            "analyzer.user",
            question=query.text,
            round_query=round_query,
            providers=", ".join(provider_names),
        )
        try:
            payload, metrics = await self.ask_json(system, user)
        except AnalysisError as exc:
            logger.warning(f"Query analysis failed, using configured weights: {exc}")
            return configured_mix(provider_names, weights, is_fallback=True)

        shares = parse_ratios(payload.get("ratios"), provider_names)
        if not shares:
            logger.warning("Query analysis returned no usable ratios, using configured weights")
            return configured_mix(provider_names, weights, is_fallback=True, metrics=metrics)

        category = str(payload.get("category") or "general").strip().lower()
        return SourceMix(
            category=category if category in CATEGORIES else "general",
            weights=shares,
            confidence=clamp(payload.get("confidence"), default=0.5),
            metrics=metrics,
        )
