from __future__ import annotations

import asyncio
import json as _json

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from medresearch.agents.orchestrator import ResearchOrchestrator, make_query
from medresearch.api.deps import get_engine_config, get_tiers
from medresearch.engine import EngineConfig
from medresearch.models.research import HealthProfile
from medresearch.models.schemas import ResearchRequest, TiersResponse
from medresearch.services import logger as log_service
from medresearch.services import streaming

router = APIRouter(prefix="/api/research", tags=["research"])


@router.get("/tiers", response_model=TiersResponse)
async def list_tiers():
    return {"tiers": get_tiers()}


@router.post("/stream")
async def stream_research(
    request: ResearchRequest,
    config: EngineConfig = Depends(get_engine_config),
):
    """SSE endpoint that streams research progress events for one question."""
    profile = None
    if request.health_profile is not None:
        profile = HealthProfile(
            diabetes_type=request.health_profile.diabetes_type,
            medications=tuple(request.health_profile.medications),
        )
    query = make_query(
        request.query,
        request.user_id,
        history=[turn.model_dump() for turn in request.conversation_history or []],
        profile=profile,
    )
    orchestrator = ResearchOrchestrator(config)

    async def event_generator():
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            request_id=orchestrator.request_id,
            user_id=request.user_id,
            query=request.query[:100],
        )
        try:
            async for event in orchestrator.research(query):
                yield {
                    "event": event.type.value,
                    "id": str(event.sequence),
                    "data": _json.dumps(event.to_payload(), default=str),
                }
        except asyncio.CancelledError:
            orchestrator.cancel()
            log_service.log_event(
                event_type="client_disconnected",
                message="Research stream closed by client",
                request_id=orchestrator.request_id,
            )
            raise
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in research stream",
                error=str(e),
                request_id=orchestrator.request_id,
            )
            error_event = streaming.error("Research stream failed unexpectedly.")
            error_event.sequence = orchestrator.channel.last_sequence + 1
            yield {
                "event": error_event.type.value,
                "id": str(error_event.sequence),
                "data": _json.dumps(error_event.to_payload()),
            }

    return EventSourceResponse(event_generator())
