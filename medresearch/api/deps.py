from __future__ import annotations

from functools import lru_cache

from medresearch.config import settings
from medresearch.engine import EngineConfig
from medresearch.models.research import Tier

TIER_DESCRIPTIONS = {
    Tier.RECALL: "Answers from earlier turns of the conversation.",
    Tier.MODEL: "Answers directly from the model, no retrieval.",
    Tier.HYBRID: "One retrieval round across all providers, then a cited answer.",
    Tier.DEEP: "Planned multi-round research with gap analysis, ranking and citation checks.",
}


@lru_cache(maxsize=1)
def get_engine_config() -> EngineConfig:
    """Engine configuration built once from settings; overridden in tests."""
    return EngineConfig.from_settings(settings)


def get_tiers() -> list[dict[str, object]]:
    return [
        {"tier": int(tier), "label": tier.label, "description": TIER_DESCRIPTIONS[tier]}
        for tier in Tier
    ]
