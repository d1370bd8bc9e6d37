from __future__ import annotations

from medresearch.models.research import Reflection

MAX_GAP_AREAS = 2


def _normalise(text: str) -> str:
    return " ".join(text.split()).strip()


def gap_fill_query(question: str, reflection: Reflection | None) -> str:
    """Query for the next round: the question narrowed to its open gaps.

    Uses the first not-covered focus areas, then partially covered ones, then
    falls back to the bare question.
    """
    base = _normalise(question)
    if reflection is None:
        return base
    areas = list(reflection.not_covered) or list(reflection.partially_covered)
    picked: list[str] = []
    seen = {base.lower()}
    for area in areas:
        cleaned = _normalise(area)
        if not cleaned or cleaned.lower() in seen:
            continue
        seen.add(cleaned.lower())
        picked.append(cleaned)
        if len(picked) >= MAX_GAP_AREAS:
            break
    if not picked:
        return base
    return _normalise(f"{base} {' '.join(picked)}")


def initial_query(question: str, focus_areas: tuple[str, ...] = ()) -> str:
    """Round 1 uses the question itself; focus areas steer reflection, not search."""
    return _normalise(question)
