from __future__ import annotations

from loguru import logger

from medresearch.agents.base import ModelAgent, as_str_list, clamp
from medresearch.errors import ReflectionError
from medresearch.models.research import (
    EvidenceQuality,
    Query,
    Reflection,
    ReflectionDecision,
    ResearchPlan,
    Round,
    SourceCollection,
)
from medresearch.services.prompt_store import render_prompt

SOURCE_SAMPLE_SIZE = 12

_QUALITY_ALIASES = {
    "low": EvidenceQuality.LIMITED,
    "medium": EvidenceQuality.MODERATE,
    "none": EvidenceQuality.INSUFFICIENT,
}


def fallback_reflection(reason: str) -> Reflection:
    """Conservative result used when the reflection call fails: stop searching."""
    return Reflection(
        well_covered=(),
        partially_covered=(),
        not_covered=(),
        gap_score=0.0,
        evidence_quality=EvidenceQuality.LIMITED,
        decision=ReflectionDecision.STOP,
        reasoning=reason,
        is_fallback=True,
    )


def coverage_score(well: int, partial: int, missing: int) -> float:
    total = well + partial + missing
    if total == 0:
        return 0.0
    return (well + 0.5 * partial) / total


def parse_quality(value: object) -> EvidenceQuality:
    text = str(value or "").strip().lower()
    if text in _QUALITY_ALIASES:
        return _QUALITY_ALIASES[text]
    try:
        return EvidenceQuality(text)
    except ValueError:
        return EvidenceQuality.LIMITED


def _rounds_summary(rounds: list[Round]) -> str:
    lines = []
    for r in rounds:
        lines.append(
            f"- Round {r.round_number} ({r.purpose.value}): query \"{r.query}\", "
            f"{len(r.sources)} sources, {r.new_source_count} new, status {r.status.value}"
        )
    return "\n".join(lines) or "- none"


def _source_sample(collection: SourceCollection) -> str:
    ranked = sorted(
        collection.items(),
        key=lambda s: (s.relevance_score or 0.0, s.year or 0),
        reverse=True,
    )[:SOURCE_SAMPLE_SIZE]
    lines = []
    for source in ranked:
        year = f" ({source.year})" if source.year else ""
        lines.append(f"- [{source.source_type.value}] {source.title}{year}: {source.snippet[:200]}")
    return "\n".join(lines) or "- no sources collected"


class GapAnalyzer(ModelAgent):
    name = "reflection"
    error = ReflectionError

    async def reflect(
        self,
        query: Query,
        plan: ResearchPlan,
        rounds: list[Round],
        collection: SourceCollection,
        max_rounds: int,
    ) -> Reflection:
        current = rounds[-1]
        system = render_prompt("reflection.system")
        user = render_prompt(
            "reflection.user",
            question=query.text,
            round_number=current.round_number,
            max_rounds=max_rounds,
            focus_areas=", ".join(plan.focus_areas) or "(none given; judge against the question)",
            rounds_summary=_rounds_summary(rounds),
            source_sample=_source_sample(collection),
        )
        try:
            payload, metrics = await self.ask_json(system, user)
        except ReflectionError as exc:
            logger.warning(f"Reflection failed for round {current.round_number}: {exc}")
            return fallback_reflection(f"Reflection unavailable: {type(exc.__cause__).__name__}")

        well = as_str_list(payload.get("wellCovered"))
        partial = as_str_list(payload.get("partiallyCovered"))
        missing = as_str_list(payload.get("notCovered"))
        if "gapScore" in payload:
            gap_score = clamp(payload.get("gapScore"), default=coverage_score(len(well), len(partial), len(missing)))
        else:
            gap_score = coverage_score(len(well), len(partial), len(missing))
        quality = parse_quality(payload.get("evidenceQuality"))

        raw_decision = str(payload.get("decision") or "").strip().lower()
        if raw_decision in ("continue", "stop"):
            decision = ReflectionDecision(raw_decision)
        else:
            decision = (
                ReflectionDecision.CONTINUE
                if missing and quality != EvidenceQuality.HIGH
                else ReflectionDecision.STOP
            )

        return Reflection(
            well_covered=well,
            partially_covered=partial,
            not_covered=missing,
            gap_score=gap_score,
            evidence_quality=quality,
            decision=decision,
            reasoning=str(payload.get("reasoning") or "").strip(),
            metrics=metrics,
        )
