from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from medresearch.models.research import ResearchJourney
from medresearch.services import logger as log_service


class JourneySink(Protocol):
    async def __call__(self, journey: ResearchJourney) -> Any: ...


class LoggingJourneySink:
    """Default sink: one structured log line per finished journey."""

    async def __call__(self, journey: ResearchJourney) -> None:
        summary = journey.summary.to_dict() if journey.summary else {}
        log_service.log_research_step(
            journey.request_id,
            step_type="journey",
            status=journey.outcome.value,
            data={
                "tier": journey.routing.tier.label if journey.routing else None,
                "rounds": len(journey.rounds),
                "sources": len(journey.collection),
                "totalTime": summary.get("totalTime"),
                "totalCost": summary.get("totalCost"),
                "totalTokens": summary.get("totalTokens"),
            },
        )


def _log_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error(f"Journey sink failed: {exc}")


def submit_journey(
    sink: JourneySink | None,
    journey: ResearchJourney,
    pending: set[asyncio.Task],
) -> asyncio.Task | None:
    """Hand the finished journey to the sink without waiting for it.

    The task is held in the caller's ``pending`` set until it finishes.
    """
    if sink is None:
        return None
    task = asyncio.create_task(sink(journey))
    pending.add(task)
    task.add_done_callback(pending.discard)
    task.add_done_callback(_log_failure)
    return task
