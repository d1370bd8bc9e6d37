from __future__ import annotations

from medresearch.models.research import HistoryTurn
from medresearch.services.source_ranker import tokenize

MAX_RECALLED_EXCHANGES = 3


def recall_turns(search_terms: str | None, history: tuple[HistoryTurn, ...]) -> list[HistoryTurn]:
    """Find earlier exchanges that mention the recalled topic.

    A user turn matches when it shares a term of three or more letters with
    the search terms; the assistant reply that followed is returned with it.
    Best matches first, at most three exchanges.
    """
    terms = {t for t in tokenize(search_terms or "") if len(t) >= 3}
    if not terms or not history:
        return []

    scored: list[tuple[int, int]] = []
    for index, turn in enumerate(history):
        if turn.role != "user":
            continue
        overlap = len(terms & set(tokenize(turn.content)))
        if overlap:
            scored.append((overlap, index))
    scored.sort(key=lambda row: (-row[0], -row[1]))

    picked: list[HistoryTurn] = []
    for _, index in scored[:MAX_RECALLED_EXCHANGES]:
        picked.append(history[index])
        if index + 1 < len(history) and history[index + 1].role == "assistant":
            picked.append(history[index + 1])
    return picked
