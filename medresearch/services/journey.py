"""Derived views over a finished journey: completeness and the summary."""
from __future__ import annotations

from medresearch.models.research import (
    Bottleneck,
    EvidenceQuality,
    JourneySummary,
    Reflection,
    ResearchJourney,
    Round,
    RoundStatus,
)

QUALITY_LEVELS = {
    EvidenceQuality.INSUFFICIENT: 0.0,
    EvidenceQuality.LIMITED: 0.33,
    EvidenceQuality.MODERATE: 0.67,
    EvidenceQuality.HIGH: 1.0,
}
BOTTLENECK_SHARE = 25.0
MAX_BOTTLENECKS = 3
LOW_CITATION_SCORE = 0.7


def completeness_score(rounds: list[Round], reflection: Reflection | None, target_sources: int = 25) -> float:
    """0-1 estimate of how completely the research covered the question."""
    if not rounds:
        return 0.0
    source_total = sum(r.new_source_count for r in rounds)
    volume = min(source_total / max(target_sources, 1), 1.0)
    if reflection is None or reflection.is_fallback:
        return round(0.5 * volume, 3)
    return round(
        0.6 * reflection.gap_score + 0.2 * QUALITY_LEVELS[reflection.evidence_quality] + 0.2 * volume,
        3,
    )


def last_reflection(journey: ResearchJourney) -> Reflection | None:
    if not journey.reflections:
        return None
    return journey.reflections[max(journey.reflections)]


def _average(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 4) if values else None


def build_summary(journey: ResearchJourney, total_time_ms: int) -> JourneySummary:
    metrics = []
    if journey.routing:
        metrics.append(journey.routing.metrics)
    if journey.plan:
        metrics.append(journey.plan.metrics)
    metrics.extend(m.metrics for m in journey.source_mixes.values())
    metrics.extend(r.metrics for r in journey.reflections.values())
    input_tokens = sum(m.input_tokens for m in metrics)
    output_tokens = sum(m.output_tokens for m in metrics)
    cost = sum(m.cost for m in metrics)
    if journey.synthesis:
        input_tokens += journey.synthesis.input_tokens
        output_tokens += journey.synthesis.output_tokens
        cost += journey.synthesis.cost

    selected = [r.source for r in journey.ranking.top_sources] if journey.ranking else []
    reflection = last_reflection(journey)
    quality_metrics = {
        "sourceQuality": _average([s.quality_rating for s in selected if s.quality_rating is not None]),
        "gapCoverage": round(reflection.gap_score, 3) if reflection else None,
        "citationAuthenticity": (
            journey.verification.overall_score
            if journey.verification and journey.verification.available
            else None
        ),
        "impactMetricAverage": _average([s.impact_metric for s in selected if s.impact_metric is not None]),
        "completeness": completeness_score(journey.rounds, reflection) if journey.rounds else None,
    }

    total = max(total_time_ms, 1)
    bottlenecks = tuple(
        Bottleneck(stage=stage, latency_ms=latency, percentage=100.0 * latency / total)
        for stage, latency in sorted(journey.stage_latencies.items(), key=lambda kv: kv[1], reverse=True)
        if 100.0 * latency / total >= BOTTLENECK_SHARE
    )[:MAX_BOTTLENECKS]

    return JourneySummary(
        total_time_ms=total_time_ms,
        total_cost=cost,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        quality_metrics=quality_metrics,
        bottlenecks=bottlenecks,
        recommendations=tuple(recommendations(journey, bottlenecks)),
        tier=journey.routing.tier.label if journey.routing else "unrouted",
        rounds=len(journey.rounds),
        total_sources=len(journey.collection),
    )


def recommendations(journey: ResearchJourney, bottlenecks: tuple[Bottleneck, ...]) -> list[str]:
    notes: list[str] = []

    failures: dict[str, int] = {}
    for round_ in journey.rounds:
        for call in round_.api_calls:
            if not call.succeeded:
                failures[call.provider] = failures.get(call.provider, 0) + 1
    for provider, count in sorted(failures.items()):
        notes.append(f"{provider} failed in {count} call(s); check its availability or timeout.")

    if any(r.status == RoundStatus.FAILED for r in journey.rounds):
        notes.append("A round returned no results from any provider; answer coverage is reduced.")

    reflection = last_reflection(journey)
    if reflection and reflection.not_covered:
        notes.append(f"Uncovered focus areas remain: {', '.join(reflection.not_covered[:3])}.")
    if reflection and reflection.is_fallback:
        notes.append("Gap analysis failed; the round loop stopped conservatively.")

    if journey.verification and journey.verification.available:
        score = journey.verification.overall_score
        if score is not None and score < LOW_CITATION_SCORE:
            notes.append("Citation accuracy is low; review inaccurate citations before relying on the answer.")
    elif journey.verification is not None:
        notes.append("Citation verification was unavailable.")

    for bottleneck in bottlenecks[:1]:
        notes.append(f"{bottleneck.stage} took {bottleneck.percentage:.0f}% of the total time.")

    if journey.synthesis and journey.synthesis.partial:
        notes.append("The answer is partial.")
    return notes
