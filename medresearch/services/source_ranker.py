"""Deterministic ranking and selection of collected sources.

Each source gets a weighted sum over four criteria, every one scaled to 0-1:

- relevance: BM25 of title and snippet against the question, blended 50/50
  with the provider's own relevance score when the provider supplies one;
- recency: 1.0 within a year, 0.67 within three, 0.33 within five, else 0;
- venue_quality: the quality rating assigned when the source was collected;
- citations: log-scaled citation count, saturating at 1000.

Selection then drops sources below the minimum score, near-duplicates, sources
beyond top-N and sources that would overflow the synthesis token budget, and
counts every exclusion under its reason.
"""
from __future__ import annotations

import math
import re
import time
from datetime import date

from rank_bm25 import BM25Okapi

from medresearch.models.research import RankedSource, SourceItem, SourceRanking, SourceType

CRITERIA = ("relevance", "recency", "venue_quality", "citations")
EXCLUSION_REASONS = ("below_min_score", "near_duplicate", "beyond_top_n", "token_budget")

CREDIBILITY = {
    SourceType.PUBMED: 0.6,
    SourceType.CLINICAL_TRIAL: 0.6,
    SourceType.MEDRXIV: 0.4,
    SourceType.WEB: 0.25,
}
CITATION_SATURATION = 1000
CHARS_PER_TOKEN = 4

_TOKEN = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    return _TOKEN.findall((text or "").lower())


def bm25_scores(query: str, documents: list[str]) -> list[float]:
    """BM25 scores normalised to 0-1 by the best match."""
    if not documents:
        return []
    tokenized_docs = [tokenize(doc) or ["_"] for doc in documents]
    bm25 = BM25Okapi(tokenized_docs)
    scores = [max(float(s), 0.0) for s in bm25.get_scores(tokenize(query))]
    max_score = max(scores) if scores else 0.0
    if max_score > 0:
        scores = [s / max_score for s in scores]
    return scores


def rate_source_quality(source: SourceItem) -> float:
    """Credibility by source type plus bonuses for evidence level and a DOI."""
    score = CREDIBILITY.get(source.source_type, 0.25)
    if source.impact_metric is not None:
        score += 0.25 * min(max(source.impact_metric, 0.0), 10.0) / 10.0
    if source.doi:
        score += 0.1
    if source.venue:
        score += 0.05
    return round(min(score, 1.0), 4)


def recency_score(year: int | None, current_year: int) -> float:
    if year is None:
        return 0.0
    age = current_year - year
    if age <= 1:
        return 1.0
    if age <= 3:
        return 0.67
    if age <= 5:
        return 0.33
    return 0.0


def citation_score(count: int | None) -> float:
    if not count or count <= 0:
        return 0.0
    return min(math.log1p(count) / math.log1p(CITATION_SATURATION), 1.0)


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def estimate_tokens(source: SourceItem) -> int:
    text = f"{source.title} {source.venue or ''} {source.year or ''} {source.snippet}"
    return max(len(text) // CHARS_PER_TOKEN, 1)


def score_sources(
    sources: list[SourceItem],
    query: str,
    weights: dict[str, float],
    current_year: int,
) -> list[tuple[SourceItem, float, dict[str, float]]]:
    lexical = bm25_scores(query, [source.text for source in sources])
    scored = []
    for source, bm25 in zip(sources, lexical):
        if source.relevance_score is not None:
            relevance = 0.5 * min(max(source.relevance_score, 0.0), 1.0) + 0.5 * bm25
        else:
            relevance = bm25
        quality = source.quality_rating if source.quality_rating is not None else rate_source_quality(source)
        breakdown = {
            "relevance": relevance,
            "recency": recency_score(source.year, current_year),
            "venue_quality": quality,
            "citations": citation_score(source.citation_count),
        }
        overall = sum(weights.get(name, 0.0) * breakdown[name] for name in CRITERIA)
        scored.append((source, overall, breakdown))
    scored.sort(
        key=lambda row: (-row[1], -row[2]["relevance"], -(row[0].year or 0), row[0].dedup_key)
    )
    return scored


def rank_sources(
    sources: list[SourceItem],
    query: str,
    *,
    weights: dict[str, float],
    min_score: float = 0.3,
    top_n: int = 25,
    extended_top_n: int = 30,
    high_quality_score: float = 0.7,
    near_duplicate_similarity: float = 0.85,
    token_budget: int = 16800,
    current_year: int | None = None,
) -> SourceRanking:
    t0 = time.monotonic()
    year = current_year or date.today().year
    scored = score_sources(sources, query, weights, year)
    excluded = {reason: 0 for reason in EXCLUSION_REASONS}

    passing = []
    for row in scored:
        if row[1] < min_score:
            excluded["below_min_score"] += 1
        else:
            passing.append(row)

    distinct = []
    fingerprints: list[set[str]] = []
    for row in passing:
        fingerprint = set(tokenize(f"{row[0].title} {row[0].snippet[:200]}"))
        if any(jaccard(fingerprint, other) > near_duplicate_similarity for other in fingerprints):
            excluded["near_duplicate"] += 1
            continue
        fingerprints.append(fingerprint)
        distinct.append(row)

    high_quality = sum(1 for row in distinct if row[1] >= high_quality_score)
    limit = extended_top_n if high_quality > top_n else top_n
    excluded["beyond_top_n"] += max(len(distinct) - limit, 0)
    capped = distinct[:limit]

    selected = []
    used_tokens = 0
    for row in capped:
        cost = estimate_tokens(row[0])
        if used_tokens + cost > token_budget:
            excluded["token_budget"] += 1
            continue
        used_tokens += cost
        selected.append(row)

    top = tuple(
        RankedSource(rank=index, source=source, overall_score=score, breakdown=breakdown)
        for index, (source, score, breakdown) in enumerate(selected, start=1)
    )
    average_relevance = (
        sum(r.breakdown["relevance"] for r in top) / len(top) if top else 0.0
    )
    return SourceRanking(
        criteria={name: weights.get(name, 0.0) for name in CRITERIA},
        total_evaluated=len(sources),
        selected=len(top),
        excluded=tuple((reason, count) for reason, count in excluded.items() if count),
        top_sources=top,
        average_relevance=average_relevance,
        latency_ms=int((time.monotonic() - t0) * 1000),
    )
