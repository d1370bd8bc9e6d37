"""Round-loop termination.

``evaluate_stopping_conditions`` is a pure function: no I/O, no model calls,
no clock. It reports every condition that holds, not just the first.
"""
from __future__ import annotations

from dataclasses import dataclass

from medresearch.models.research import (
    EvidenceQuality,
    Reflection,
    ReflectionDecision,
    Round,
    RoundStatus,
    StoppingCondition,
    StoppingDecision,
)


@dataclass(frozen=True)
class StoppingPolicy:
    source_ceiling: int = 50
    gap_score_threshold: float | None = None


_REASONS = {
    StoppingCondition.QUALITY_SUFFICIENT: "evidence quality is high and no focus area is uncovered",
    StoppingCondition.MAX_ROUNDS: "maximum number of rounds reached",
    StoppingCondition.DIMINISHING_RETURNS: "last round added no new sources",
    StoppingCondition.ALL_PROVIDERS_FAILED: "every provider failed in the last round",
    StoppingCondition.REFLECTION_STOP: "gap analysis recommended stopping",
    StoppingCondition.SOURCE_CEILING: "collected sources exceed the coverage ceiling",
    StoppingCondition.GAP_SCORE_THRESHOLD: "coverage score above threshold",
}


def evaluate_stopping_conditions(
    round_number: int,
    max_rounds: int,
    current_round: Round,
    all_rounds: list[Round],
    reflection: Reflection | None,
    policy: StoppingPolicy = StoppingPolicy(),
) -> StoppingDecision:
    triggered: list[StoppingCondition] = []

    if reflection is not None:
        if reflection.evidence_quality == EvidenceQuality.HIGH and not reflection.not_covered:
            triggered.append(StoppingCondition.QUALITY_SUFFICIENT)

    if round_number >= max_rounds:
        triggered.append(StoppingCondition.MAX_ROUNDS)

    if current_round.new_source_count == 0:
        triggered.append(StoppingCondition.DIMINISHING_RETURNS)
    if current_round.status == RoundStatus.FAILED:
        triggered.append(StoppingCondition.ALL_PROVIDERS_FAILED)

    if reflection is not None and reflection.decision != ReflectionDecision.CONTINUE:
        triggered.append(StoppingCondition.REFLECTION_STOP)

    rounds = list(all_rounds)
    if all(r.round_number != current_round.round_number for r in rounds):
        rounds.append(current_round)
    total_sources = sum(r.new_source_count for r in rounds)
    if total_sources > policy.source_ceiling:
        triggered.append(StoppingCondition.SOURCE_CEILING)

    if (
        policy.gap_score_threshold is not None
        and reflection is not None
        and reflection.gap_score > policy.gap_score_threshold
    ):
        triggered.append(StoppingCondition.GAP_SCORE_THRESHOLD)

    if not triggered:
        return StoppingDecision(should_stop=False, reason="gaps remain; continuing research")
    return StoppingDecision(
        should_stop=True,
        reason="; ".join(_REASONS[c] for c in triggered),
        triggered_conditions=tuple(triggered),
    )
