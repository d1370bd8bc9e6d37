"""Explicit engine configuration passed to the orchestrator at construction."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from medresearch.config import Settings, settings as default_settings


@dataclass(frozen=True)
class StageModel:
    model: str
    temperature: float
    max_tokens: int = 1024


@dataclass(frozen=True)
class Pricing:
    per_1k_input: float = 0.0
    per_1k_output: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000) * self.per_1k_input + (output_tokens / 1000) * self.per_1k_output


@dataclass(frozen=True)
class ResearchPolicy:
    router_confidence_threshold: float = 0.6
    hybrid_budget: int = 10
    initial_budget: int = 25
    gap_fill_budget: int = 15
    max_rounds: int = 4
    source_ceiling: int = 50
    gap_score_stop_threshold: float | None = None
    request_timeout_seconds: float = 180.0
    analyze_source_mix: bool = True
    rank_weights: dict[str, float] = field(
        default_factory=lambda: {
            "relevance": 0.45,
            "recency": 0.2,
            "venue_quality": 0.2,
            "citations": 0.15,
        }
    )
    rank_min_score: float = 0.3
    rank_top_n: int = 25
    rank_extended_top_n: int = 30
    rank_high_quality_score: float = 0.7
    rank_near_duplicate_similarity: float = 0.85
    rank_token_budget: int = 16800
    citation_accurate_threshold: float = 0.5
    citation_nuance_threshold: float = 0.25


@dataclass
class EngineConfig:
    llm: Any
    providers: list[Any]
    router: StageModel
    planner: StageModel
    reflection: StageModel
    synthesis: StageModel
    analyzer: StageModel | None = None  # falls back to the router stage
    policy: ResearchPolicy = field(default_factory=ResearchPolicy)
    provider_weights: dict[str, float] = field(default_factory=dict)
    pricing: Pricing = field(default_factory=Pricing)
    sink: Any | None = None
    router_llm: Any | None = None  # no-retry client for the routing call; falls back to llm

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "EngineConfig":
        from medresearch.llm_client import get_client, model_for
        from medresearch.services.persistence import LoggingJourneySink
        from medresearch.tools.registry import build_providers

        return cls(
            llm=get_client(config),
            router_llm=get_client(config, max_retries=0),
            providers=build_providers(config),
            router=StageModel(model_for("router", config), config.router_temperature, 400),
            planner=StageModel(model_for("planner", config), config.planner_temperature, 800),
            reflection=StageModel(model_for("reflection", config), config.reflection_temperature, 1000),
            analyzer=StageModel(model_for("analyzer", config), config.analyzer_temperature, 256),
            synthesis=StageModel(
                model_for("synthesis", config),
                config.synthesis_temperature,
                config.synthesis_max_tokens,
            ),
            policy=ResearchPolicy(
                router_confidence_threshold=config.router_confidence_threshold,
                hybrid_budget=config.hybrid_source_budget,
                initial_budget=config.initial_round_source_budget,
                gap_fill_budget=config.gap_fill_round_source_budget,
                max_rounds=config.max_rounds,
                source_ceiling=config.source_ceiling,
                gap_score_stop_threshold=config.gap_score_stop_threshold,
                request_timeout_seconds=config.request_timeout_seconds,
                analyze_source_mix=config.analyze_source_mix,
                rank_weights={
                    "relevance": config.rank_weight_relevance,
                    "recency": config.rank_weight_recency,
                    "venue_quality": config.rank_weight_venue_quality,
                    "citations": config.rank_weight_citations,
                },
                rank_min_score=config.rank_min_score,
                rank_top_n=config.rank_top_n,
                rank_extended_top_n=config.rank_extended_top_n,
                rank_high_quality_score=config.rank_high_quality_score,
                rank_near_duplicate_similarity=config.rank_near_duplicate_similarity,
                rank_token_budget=config.rank_token_budget,
                citation_accurate_threshold=config.citation_accurate_threshold,
                citation_nuance_threshold=config.citation_nuance_threshold,
            ),
            provider_weights=config.provider_weight_map,
            pricing=Pricing(config.cost_per_1k_input_tokens, config.cost_per_1k_output_tokens),
            sink=LoggingJourneySink(),
        )
