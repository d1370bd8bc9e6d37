"""Domain model for one research journey.

Everything here is owned by a single request. Records produced by a finished
stage (decision, plan, round, reflection, stopping decision) are frozen; the
source collection and the synthesis are the only objects that change while the
journey runs.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import IntEnum, StrEnum
from typing import Any, Iterator

from medresearch.tools.web_utils import canonical_url, normalize_doi


class Tier(IntEnum):
    RECALL = 0
    MODEL = 1
    HYBRID = 2
    DEEP = 3

    @property
    def label(self) -> str:
        return _TIER_LABELS[self]


_TIER_LABELS = {
    Tier.RECALL: "recall",
    Tier.MODEL: "model",
    Tier.HYBRID: "hybrid_research",
    Tier.DEEP: "deep_research",
}


class RoundPurpose(StrEnum):
    INITIAL = "initial"
    GAP_FILL = "gap_fill"


class RoundStatus(StrEnum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class CallStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class SourceType(StrEnum):
    PUBMED = "pubmed"
    MEDRXIV = "medrxiv"
    CLINICAL_TRIAL = "clinical_trial"
    WEB = "medical_source"


class EvidenceQuality(StrEnum):
    INSUFFICIENT = "insufficient"
    LIMITED = "limited"
    MODERATE = "moderate"
    HIGH = "high"


class ReflectionDecision(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"


class StoppingCondition(StrEnum):
    QUALITY_SUFFICIENT = "quality_sufficient"
    MAX_ROUNDS = "max_rounds_reached"
    DIMINISHING_RETURNS = "diminishing_returns"
    ALL_PROVIDERS_FAILED = "all_providers_failed"
    REFLECTION_STOP = "reflection_recommended_stop"
    SOURCE_CEILING = "source_ceiling_exceeded"
    GAP_SCORE_THRESHOLD = "gap_score_threshold"


class CitationVerdict(StrEnum):
    ACCURATE = "accurate"
    NUANCE_LOST = "nuance_lost"
    INACCURATE = "inaccurate"


class JourneyOutcome(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


# --- Query ---


@dataclass(frozen=True, slots=True)
class HistoryTurn:
    role: str
    content: str


@dataclass(frozen=True, slots=True)
class HealthProfile:
    diabetes_type: str | None = None
    medications: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Query:
    text: str
    user_id: str
    language: str = "en"
    profile: HealthProfile | None = None
    history: tuple[HistoryTurn, ...] = ()
    created_at: float = field(default_factory=time.time)

    def last_user_turn(self) -> str | None:
        for turn in reversed(self.history):
            if turn.role == "user" and turn.content.strip():
                return turn.content
        return None


# --- Metrics shared by every model call ---


@dataclass(frozen=True, slots=True)
class CallMetrics:
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
            "cost": round(self.cost, 6),
            "latency": self.latency_ms,
        }


# --- Routing and planning ---


@dataclass(frozen=True, slots=True)
class RouterDecision:
    tier: Tier
    reasoning: str
    confidence: float
    explicit_deep_request: bool = False
    is_recall_request: bool = False
    search_terms: str | None = None
    metrics: CallMetrics = field(default_factory=CallMetrics)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tier": int(self.tier),
            "reasoning": self.reasoning,
            "confidence": round(self.confidence, 3),
            "explicitDeepRequest": self.explicit_deep_request,
            "isRecallRequest": self.is_recall_request,
            **self.metrics.to_dict(),
        }
        if self.search_terms is not None:
            data["searchTerms"] = self.search_terms
        return data


@dataclass(frozen=True, slots=True)
class ResearchPlan:
    estimated_rounds: int
    strategy: str
    focus_areas: tuple[str, ...]
    reasoning: str
    is_default: bool = False
    metrics: CallMetrics = field(default_factory=CallMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimatedRounds": self.estimated_rounds,
            "strategy": self.strategy,
            "focusAreas": list(self.focus_areas),
            "reasoning": self.reasoning,
            "isDefault": self.is_default,
            **self.metrics.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class SourceMix:
    """Per-round share of the source budget for each provider."""

    category: str
    weights: dict[str, float]
    confidence: float
    is_fallback: bool = False
    metrics: CallMetrics = field(default_factory=CallMetrics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "weights": {name: round(share, 4) for name, share in self.weights.items()},
            "confidence": self.confidence,
            "isFallback": self.is_fallback,
            **self.metrics.to_dict(),
        }


# --- Sources ---


@dataclass(slots=True)
class SourceItem:
    id: str
    title: str
    url: str
    source_type: SourceType
    provider: str
    authors: list[str] = field(default_factory=list)
    venue: str | None = None
    year: int | None = None
    citation_count: int | None = None
    impact_metric: float | None = None
    relevance_score: float | None = None
    quality_rating: float | None = None
    snippet: str = ""
    doi: str | None = None
    published: str | None = None
    first_seen_round: int | None = None

    @property
    def dedup_key(self) -> str:
        doi = normalize_doi(self.doi)
        if doi:
            return f"doi:{doi}"
        url = canonical_url(self.url)
        if url:
            return f"url:{url}"
        return f"{self.provider}:{self.id}"

    def completeness(self) -> int:
        """Number of optional metadata fields that carry a value."""
        values = (
            self.authors,
            self.venue,
            self.year,
            self.citation_count,
            self.impact_metric,
            self.snippet,
            self.doi,
            self.published,
        )
        return sum(1 for value in values if value not in (None, "", []))

    @property
    def text(self) -> str:
        return f"{self.title} {self.snippet}".strip()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "type": self.source_type.value,
            "provider": self.provider,
            "authors": ", ".join(self.authors) if self.authors else None,
            "journal": self.venue,
            "year": self.year,
            "citations": self.citation_count,
            "impactFactor": self.impact_metric,
            "relevanceScore": self.relevance_score,
            "qualityRating": self.quality_rating,
            "snippet": self.snippet,
            "doi": self.doi,
            "publishDate": self.published,
        }


@dataclass(frozen=True, slots=True)
class MergeResult:
    new: int = 0
    refreshed: int = 0
    duplicates: int = 0


class SourceCollection:
    """Request-scoped accumulator of deduplicated sources.

    Items keep call-completion order. A key is never removed; a later, more
    complete record for the same key replaces the stored fields but keeps the
    original id and first-seen round.
    """

    def __init__(self) -> None:
        self._items: dict[str, SourceItem] = {}

    def merge(self, items: list[SourceItem], round_number: int) -> MergeResult:
        new = refreshed = duplicates = 0
        for item in items:
            key = item.dedup_key
            existing = self._items.get(key)
            if existing is None:
                self._items[key] = replace(item, first_seen_round=round_number)
                new += 1
                continue
            if item.completeness() > existing.completeness():
                self._items[key] = replace(
                    item,
                    id=existing.id,
                    first_seen_round=existing.first_seen_round,
                    relevance_score=_max_optional(existing.relevance_score, item.relevance_score),
                )
                refreshed += 1
            else:
                if item.relevance_score is not None and (
                    existing.relevance_score is None
                    or item.relevance_score > existing.relevance_score
                ):
                    existing.relevance_score = item.relevance_score
                duplicates += 1
        return MergeResult(new=new, refreshed=refreshed, duplicates=duplicates)

    def get(self, key: str) -> SourceItem | None:
        return self._items.get(key)

    def keys(self) -> list[str]:
        return list(self._items)

    def items(self) -> list[SourceItem]:
        return list(self._items.values())

    def count_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self._items.values():
            counts[item.source_type.value] = counts.get(item.source_type.value, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[SourceItem]:
        return iter(list(self._items.values()))

    def __contains__(self, key: object) -> bool:
        return key in self._items


def _max_optional(a: float | None, b: float | None) -> float | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


# --- Rounds ---


@dataclass(frozen=True, slots=True)
class APICall:
    provider: str
    query: str
    filters: dict[str, Any]
    max_results: int
    found: int
    retrieved: int
    status: CallStatus
    latency_ms: int
    started_at: float
    ended_at: float
    results: tuple[SourceItem, ...] = ()
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == CallStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "api": self.provider,
            "query": self.query,
            "filters": self.filters,
            "maxResults": self.max_results,
            "found": self.found,
            "retrieved": self.retrieved,
            "status": self.status.value,
            "error": self.error,
            "latency": self.latency_ms,
            "startTime": int(self.started_at * 1000),
            "endTime": int(self.ended_at * 1000),
        }


@dataclass(frozen=True, slots=True)
class Round:
    round_number: int
    purpose: RoundPurpose
    query: str
    estimated_sources: int
    api_calls: tuple[APICall, ...]
    sources: tuple[SourceItem, ...]
    new_source_count: int
    duration_ms: int
    status: RoundStatus

    @property
    def successful_calls(self) -> int:
        return sum(1 for call in self.api_calls if call.succeeded)

    def to_dict(self) -> dict[str, Any]:
        return {
            "roundNumber": self.round_number,
            "purpose": self.purpose.value,
            "query": self.query,
            "estimatedSources": self.estimated_sources,
            "apiCalls": [call.to_dict() for call in self.api_calls],
            "sourceCount": len(self.sources),
            "newSourceCount": self.new_source_count,
            "duration": self.duration_ms,
            "status": self.status.value,
        }


# --- Reflection and stopping ---


@dataclass(frozen=True, slots=True)
class Reflection:
    well_covered: tuple[str, ...]
    partially_covered: tuple[str, ...]
    not_covered: tuple[str, ...]
    gap_score: float
    evidence_quality: EvidenceQuality
    decision: ReflectionDecision
    reasoning: str
    is_fallback: bool = False
    metrics: CallMetrics = field(default_factory=CallMetrics)

    @property
    def should_continue(self) -> bool:
        return self.decision == ReflectionDecision.CONTINUE

    def to_dict(self) -> dict[str, Any]:
        return {
            "wellCovered": list(self.well_covered),
            "partiallyCovered": list(self.partially_covered),
            "notCovered": list(self.not_covered),
            "gapScore": round(self.gap_score, 3),
            "evidenceQuality": self.evidence_quality.value,
            "decision": self.decision.value,
            "reasoning": self.reasoning,
            "isFallback": self.is_fallback,
            **self.metrics.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class StoppingDecision:
    should_stop: bool
    reason: str
    triggered_conditions: tuple[StoppingCondition, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "shouldStop": self.should_stop,
            "reason": self.reason,
            "triggeredConditions": [c.value for c in self.triggered_conditions],
        }


# --- Ranking ---


@dataclass(frozen=True, slots=True)
class RankedSource:
    rank: int
    source: SourceItem
    overall_score: float
    breakdown: dict[str, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "source": self.source.to_dict(),
            "overallScore": round(self.overall_score, 4),
            "breakdown": {k: round(v, 4) for k, v in self.breakdown.items()},
        }


@dataclass(frozen=True, slots=True)
class SourceRanking:
    criteria: dict[str, float]
    total_evaluated: int
    selected: int
    excluded: tuple[tuple[str, int], ...]
    top_sources: tuple[RankedSource, ...]
    average_relevance: float
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "criteria": self.criteria,
            "totalEvaluated": self.total_evaluated,
            "selected": self.selected,
            "excluded": [{"reason": r, "count": c} for r, c in self.excluded],
            "topSources": [ranked.to_dict() for ranked in self.top_sources],
            "averageRelevance": round(self.average_relevance, 4),
            "latency": self.latency_ms,
        }


# --- Synthesis and verification ---


@dataclass(slots=True)
class ResponseSynthesis:
    model: str
    temperature: float
    prompt_version: str
    sources_provided: int
    streaming: bool = True
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    response: str = ""
    finish_reason: str | None = None
    partial: bool = False
    error: str | None = None
    tokens_emitted: int = 0
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    def append(self, token: str) -> None:
        self.response += token
        self.tokens_emitted += 1

    @property
    def status(self) -> str:
        return "partial" if self.partial else "complete"

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "systemPromptVersion": self.prompt_version,
            "sourcesProvided": self.sources_provided,
            "responseLength": len(self.response),
            "streaming": self.streaming,
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
            "cost": round(self.cost, 6),
            "latency": self.latency_ms,
            "finishReason": self.finish_reason,
            "status": self.status,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class CitationMatch:
    index: int
    source_title: str
    similarity: float
    verdict: CitationVerdict
    issue: str | None = None


@dataclass(frozen=True, slots=True)
class CitationCheck:
    sentence: str
    citations: tuple[CitationMatch, ...]


@dataclass(frozen=True, slots=True)
class CitationVerification:
    available: bool
    total_sentences: int = 0
    total_citations: int = 0
    checks: tuple[CitationCheck, ...] = ()
    overall_score: float | None = None
    accurate: int = 0
    nuance_lost: int = 0
    inaccurate: int = 0
    error: str | None = None
    latency_ms: int = 0

    @classmethod
    def unavailable(cls, error: str) -> "CitationVerification":
        return cls(available=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        if not self.available:
            return {"available": False, "status": "unavailable", "error": self.error}
        return {
            "available": True,
            "totalSentences": self.total_sentences,
            "totalCitations": self.total_citations,
            "overallScore": None if self.overall_score is None else round(self.overall_score, 4),
            "summary": {
                "accurate": self.accurate,
                "nuanceLost": self.nuance_lost,
                "inaccurate": self.inaccurate,
            },
            "checks": [
                {
                    "sentence": check.sentence,
                    "citations": [
                        {
                            "index": match.index,
                            "sourceTitle": match.source_title,
                            "similarity": round(match.similarity, 4),
                            "verdict": match.verdict.value,
                            "issue": match.issue,
                        }
                        for match in check.citations
                    ],
                }
                for check in self.checks
            ],
            "latency": self.latency_ms,
        }


# --- Journey ---


@dataclass(frozen=True, slots=True)
class Bottleneck:
    stage: str
    latency_ms: int
    percentage: float


@dataclass(frozen=True, slots=True)
class JourneySummary:
    total_time_ms: int
    total_cost: float
    input_tokens: int
    output_tokens: int
    quality_metrics: dict[str, float | None]
    bottlenecks: tuple[Bottleneck, ...]
    recommendations: tuple[str, ...]
    tier: str
    rounds: int
    total_sources: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTime": self.total_time_ms,
            "totalCost": round(self.total_cost, 6),
            "totalTokens": {"input": self.input_tokens, "output": self.output_tokens},
            "qualityMetrics": self.quality_metrics,
            "bottlenecks": [
                {"stage": b.stage, "latency": b.latency_ms, "percentage": round(b.percentage, 1)}
                for b in self.bottlenecks
            ],
            "recommendations": list(self.recommendations),
            "tier": self.tier,
            "rounds": self.rounds,
            "totalSources": self.total_sources,
        }


@dataclass(slots=True)
class ResearchJourney:
    request_id: str
    query: Query
    routing: RouterDecision | None = None
    plan: ResearchPlan | None = None
    rounds: list[Round] = field(default_factory=list)
    source_mixes: dict[int, SourceMix] = field(default_factory=dict)
    reflections: dict[int, Reflection] = field(default_factory=dict)
    stopping: list[StoppingDecision] = field(default_factory=list)
    collection: SourceCollection = field(default_factory=SourceCollection)
    ranking: SourceRanking | None = None
    synthesis: ResponseSynthesis | None = None
    verification: CitationVerification | None = None
    summary: JourneySummary | None = None
    stage_latencies: dict[str, int] = field(default_factory=dict)
    outcome: JourneyOutcome = JourneyOutcome.RUNNING
    error: str | None = None
    started_at: float = field(default_factory=time.monotonic)

    def record_latency(self, stage: str, latency_ms: int) -> None:
        self.stage_latencies[stage] = self.stage_latencies.get(stage, 0) + max(latency_ms, 0)

    def coverage(self) -> dict[str, int]:
        return {"rounds": len(self.rounds), "sourceCount": len(self.collection)}

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "query": {
                "original": self.query.text,
                "language": self.query.language,
                "length": len(self.query.text),
                "userId": self.query.user_id,
            },
            "routing": self.routing.to_dict() if self.routing else None,
            "planning": self.plan.to_dict() if self.plan else None,
            "rounds": [
                {
                    **r.to_dict(),
                    "sourceMix": (
                        self.source_mixes[r.round_number].to_dict()
                        if r.round_number in self.source_mixes
                        else None
                    ),
                    "gapAnalysis": (
                        self.reflections[r.round_number].to_dict()
                        if r.round_number in self.reflections
                        else None
                    ),
                }
                for r in self.rounds
            ],
            "stopping": [s.to_dict() for s in self.stopping],
            "ranking": self.ranking.to_dict() if self.ranking else None,
            "synthesis": self.synthesis.to_dict() if self.synthesis else None,
            "citationVerification": self.verification.to_dict() if self.verification else None,
            "summary": self.summary.to_dict() if self.summary else None,
            "outcome": self.outcome.value,
            "error": self.error,
        }
