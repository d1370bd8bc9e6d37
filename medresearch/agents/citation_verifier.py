from __future__ import annotations

import re
import time

from loguru import logger

from medresearch.models.research import (
    CitationCheck,
    CitationMatch,
    CitationVerdict,
    CitationVerification,
    RankedSource,
)
from medresearch.services.source_ranker import bm25_scores, tokenize

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[^\[\s])|(?<=\])\s+(?=[A-ZÇĞİÖŞÜ])|\n+")
_MARKER = re.compile(r"\[(\d+(?:\s*[,\-–]\s*\d+)*)\]")
_STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "are", "was", "were", "from",
    "have", "has", "can", "may", "not", "but", "its", "than", "also", "such",
    "ve", "ile", "bir", "bu", "için", "gibi", "daha", "olan", "olarak", "çok",
}


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_BREAK.split(text or "") if s and s.strip()]


def cited_indices(sentence: str) -> list[int]:
    indices: list[int] = []
    for group in _MARKER.findall(sentence):
        for part in re.split(r"\s*,\s*", group):
            bounds = re.split(r"\s*[\-–]\s*", part)
            if len(bounds) == 2 and bounds[0].isdigit() and bounds[1].isdigit():
                low, high = int(bounds[0]), int(bounds[1])
                if 0 < high - low <= 10:
                    indices.extend(range(low, high + 1))
                    continue
            if bounds[0].isdigit():
                indices.append(int(bounds[0]))
    return list(dict.fromkeys(indices))


def strip_markers(sentence: str) -> str:
    return " ".join(_MARKER.sub(" ", sentence).split())


def containment(sentence: str, source_text: str) -> float:
    """Share of the sentence's content words that appear in the source."""
    terms = {t for t in tokenize(sentence) if len(t) > 2 and t not in _STOPWORDS}
    if not terms:
        return 0.0
    source_terms = set(tokenize(source_text))
    return len(terms & source_terms) / len(terms)


def verify_citations(
    response: str,
    sources: list[RankedSource],
    *,
    accurate_threshold: float = 0.5,
    nuance_threshold: float = 0.25,
) -> CitationVerification:
    """Check every cited sentence against the sources it references.

    Similarity is the mean of BM25 (normalised over the cited sources) and
    content-word containment. Indices outside the source list are inaccurate.
    Never raises; any failure yields an unavailable verification.
    """
    t0 = time.monotonic()
    try:
        by_rank = {ranked.rank: ranked.source for ranked in sources}
        documents = [ranked.source.text for ranked in sources]
        ranks = [ranked.rank for ranked in sources]

        sentences = split_sentences(response)
        checks: list[CitationCheck] = []
        counts = {verdict: 0 for verdict in CitationVerdict}
        for sentence in sentences:
            indices = cited_indices(sentence)
            if not indices:
                continue
            claim = strip_markers(sentence)
            lexical = dict(zip(ranks, bm25_scores(claim, documents))) if documents else {}
            # BM25 carries no signal on very small source lists; fall back to containment.
            use_lexical = any(score > 0 for score in lexical.values())
            matches = []
            for index in indices:
                source = by_rank.get(index)
                if source is None:
                    match = CitationMatch(
                        index=index,
                        source_title="",
                        similarity=0.0,
                        verdict=CitationVerdict.INACCURATE,
                        issue="citation index out of range",
                    )
                else:
                    overlap = containment(claim, source.text)
                    if use_lexical:
                        similarity = 0.5 * lexical.get(index, 0.0) + 0.5 * overlap
                    else:
                        similarity = overlap
                    if similarity >= accurate_threshold:
                        verdict, issue = CitationVerdict.ACCURATE, None
                    elif similarity >= nuance_threshold:
                        verdict, issue = CitationVerdict.NUANCE_LOST, "claim only partly supported"
                    else:
                        verdict, issue = CitationVerdict.INACCURATE, "claim not supported by source"
                    match = CitationMatch(
                        index=index,
                        source_title=source.title,
                        similarity=similarity,
                        verdict=verdict,
                        issue=issue,
                    )
                counts[match.verdict] += 1
                matches.append(match)
            checks.append(CitationCheck(sentence=sentence, citations=tuple(matches)))

        total = sum(counts.values())
        overall = (
            (counts[CitationVerdict.ACCURATE] + 0.5 * counts[CitationVerdict.NUANCE_LOST]) / total
            if total
            else None
        )
        return CitationVerification(
            available=True,
            total_sentences=len(sentences),
            total_citations=total,
            checks=tuple(checks),
            overall_score=overall,
            accurate=counts[CitationVerdict.ACCURATE],
            nuance_lost=counts[CitationVerdict.NUANCE_LOST],
            inaccurate=counts[CitationVerdict.INACCURATE],
            latency_ms=int((time.monotonic() - t0) * 1000),
        )
    except Exception as exc:
        logger.warning(f"Citation verification unavailable: {exc}")
        return CitationVerification.unavailable(str(exc) or type(exc).__name__)
