from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

from medresearch.models.events import EventType, ResearchEvent
from medresearch.models.research import (
    APICall,
    Reflection,
    ResearchPlan,
    Round,
    RouterDecision,
)


class EventChannel:
    """Single-consumer queue of research events.

    The channel stamps a monotonically increasing ``sequence`` on every event at
    publish time, so consumers see gap-free ordering regardless of transport.
    Nothing is accepted after a terminal event or ``close()``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ResearchEvent | None] = asyncio.Queue()
        self._sequence = 0
        self._closed = False
        self._terminal: ResearchEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_event(self) -> ResearchEvent | None:
        return self._terminal

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def publish(self, event: ResearchEvent) -> bool:
        if self._closed:
            return False
        self._sequence += 1
        event.sequence = self._sequence
        self._queue.put_nowait(event)
        if event.is_terminal:
            self._terminal = event
            self.close()
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ResearchEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


def routing() -> ResearchEvent:
    return ResearchEvent(type=EventType.ROUTING, data={"message": "Analyzing question"})


def tier_selected(decision: RouterDecision) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.TIER_SELECTED,
        data={
            "tier": int(decision.tier),
            "processingTier": decision.tier.label,
            "reasoning": decision.reasoning,
            "confidence": round(decision.confidence, 3),
            "explicitDeepRequest": decision.explicit_deep_request,
            "isRecallRequest": decision.is_recall_request,
        },
    )


def recall_results(match_count: int, search_terms: str | None) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.RECALL_RESULTS,
        data={"count": match_count, "searchTerms": search_terms},
    )


def planning_started() -> ResearchEvent:
    return ResearchEvent(type=EventType.PLANNING_STARTED, data={"message": "Planning research"})


def planning_complete(plan: ResearchPlan) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.PLANNING_COMPLETE,
        data={
            "plan": {
                "estimatedRounds": plan.estimated_rounds,
                "strategy": plan.strategy,
                "focusAreas": list(plan.focus_areas),
                "reasoning": plan.reasoning,
                "isDefault": plan.is_default,
            }
        },
    )


def round_started(round_number: int, query: str, estimated_sources: int, purpose: str) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.ROUND_STARTED,
        data={
            "round": round_number,
            "query": query,
            "estimatedSources": estimated_sources,
            "purpose": purpose,
        },
    )


def api_started(round_number: int, provider: str, max_results: int) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.API_STARTED,
        data={"round": round_number, "api": provider, "maxResults": max_results},
    )


def api_completed(round_number: int, call: APICall) -> ResearchEvent:
    data: dict[str, Any] = {
        "round": round_number,
        "api": call.provider,
        "count": call.retrieved,
        "found": call.found,
        "duration": call.latency_ms,
        "success": call.succeeded,
    }
    if call.error:
        data["error"] = call.error
    return ResearchEvent(type=EventType.API_COMPLETED, data=data)


def round_complete(round_: Round, total_sources: int) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.ROUND_COMPLETE,
        data={
            "round": round_.round_number,
            "sourceCount": len(round_.sources),
            "newSources": round_.new_source_count,
            "totalSources": total_sources,
            "duration": round_.duration_ms,
            "status": round_.status.value,
        },
    )


def reflection_started(round_number: int) -> ResearchEvent:
    return ResearchEvent(type=EventType.REFLECTION_STARTED, data={"round": round_number})


def reflection_complete(round_number: int, reflection: Reflection) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.REFLECTION_COMPLETE,
        data={
            "round": round_number,
            "reflection": {
                "wellCovered": list(reflection.well_covered),
                "partiallyCovered": list(reflection.partially_covered),
                "notCovered": list(reflection.not_covered),
                "gapScore": round(reflection.gap_score, 3),
                "evidenceQuality": reflection.evidence_quality.value,
                "decision": reflection.decision.value,
                "reasoning": reflection.reasoning,
                "isFallback": reflection.is_fallback,
            },
        },
    )


def source_selection_started(total_sources: int) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.SOURCE_SELECTION_STARTED,
        data={"totalSources": total_sources},
    )


def synthesis_preparation(selected_sources: int) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.SYNTHESIS_PREPARATION,
        data={"selectedSources": selected_sources},
    )


def synthesis_started(total_rounds: int, total_sources: int) -> ResearchEvent:
    return ResearchEvent(
        type=EventType.SYNTHESIS_STARTED,
        data={"totalRounds": total_rounds, "totalSources": total_sources},
    )


def token(content: str) -> ResearchEvent:
    return ResearchEvent(type=EventType.TOKEN, data={"content": content})


def complete(
    sources: list[dict[str, Any]],
    metadata: dict[str, Any],
    processing_tier: str,
    research_summary: dict[str, Any] | None = None,
    thinking_summary: str | None = None,
) -> ResearchEvent:
    data: dict[str, Any] = {
        "sources": sources,
        "metadata": metadata,
        "processingTier": processing_tier,
    }
    if research_summary is not None:
        data["researchSummary"] = research_summary
    if thinking_summary is not None:
        data["thinkingSummary"] = thinking_summary
    return ResearchEvent(type=EventType.COMPLETE, data=data)


def error(
    message: str,
    *,
    reason: str = "error",
    stage: str | None = None,
    partial_content: str | None = None,
    coverage: dict[str, int] | None = None,
) -> ResearchEvent:
    data: dict[str, Any] = {"message": message, "reason": reason}
    if stage:
        data["stage"] = stage
    if partial_content is not None:
        data["partialContent"] = partial_content
        data["partial"] = True
    if coverage is not None:
        data["coverage"] = coverage
    return ResearchEvent(type=EventType.ERROR, data=data)
