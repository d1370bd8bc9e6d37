from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable

from medresearch.models.events import ResearchEvent
from medresearch.models.research import (
    APICall,
    CallStatus,
    Round,
    RoundPurpose,
    RoundStatus,
    SourceCollection,
    SourceItem,
)
from medresearch.services import logger as log_service
from medresearch.services import streaming
from medresearch.services.source_ranker import rate_source_quality
from medresearch.tools.base import KnowledgeProvider

Emit = Callable[[ResearchEvent], Any]


def distribute_budget(total: int, provider_names: list[str], weights: dict[str, float]) -> dict[str, int]:
    """Split a round budget across providers by weight (largest remainder).

    Every provider gets at least one result; providers without a configured
    weight share equally with weight 1.
    """
    if not provider_names:
        return {}
    total = max(total, len(provider_names))
    raw_weights = {name: max(weights.get(name, 1.0 if not weights else 0.0), 0.0) for name in provider_names}
    weight_sum = sum(raw_weights.values())
    if weight_sum <= 0:
        raw_weights = {name: 1.0 for name in provider_names}
        weight_sum = float(len(provider_names))

    spare = total - len(provider_names)
    shares = {name: spare * raw_weights[name] / weight_sum for name in provider_names}
    allocation = {name: 1 + math.floor(shares[name]) for name in provider_names}
    leftover = total - sum(allocation.values())
    by_remainder = sorted(
        provider_names,
        key=lambda name: (shares[name] - math.floor(shares[name]), raw_weights[name]),
        reverse=True,
    )
    for name in by_remainder[:leftover]:
        allocation[name] += 1
    return allocation


def round_status(calls: list[APICall]) -> RoundStatus:
    succeeded = sum(1 for call in calls if call.succeeded)
    if calls and succeeded == len(calls):
        return RoundStatus.COMPLETE
    if succeeded:
        return RoundStatus.PARTIAL
    return RoundStatus.FAILED


async def _run_call(
    provider: KnowledgeProvider,
    query: str,
    max_results: int,
    round_number: int,
    emit: Emit,
    completed: list[APICall],
) -> APICall:
    filters = provider.default_filters()
    emit(streaming.api_started(round_number, provider.name, max_results))
    started_at = time.time()
    t0 = time.monotonic()
    results: list[SourceItem] = []
    found = 0
    error: str | None = None
    try:
        response = await asyncio.wait_for(
            provider.search(query, filters, max_results),
            timeout=provider.timeout,
        )
        if response.error:
            error = response.error
        else:
            results = list(response.results)[:max_results]
            found = response.found
    except asyncio.TimeoutError:
        error = f"timed out after {provider.timeout:g}s"
    except Exception as exc:
        error = str(exc) or type(exc).__name__

    latency_ms = int((time.monotonic() - t0) * 1000)
    for item in results:
        if item.quality_rating is None:
            item.quality_rating = rate_source_quality(item)
    call = APICall(
        provider=provider.name,
        query=query,
        filters=filters,
        max_results=max_results,
        found=found,
        retrieved=len(results),
        status=CallStatus.FAILURE if error else CallStatus.SUCCESS,
        latency_ms=latency_ms,
        started_at=started_at,
        ended_at=time.time(),
        results=tuple(results),
        error=error,
    )
    log_service.log_provider_call(
        provider=provider.name,
        query=query,
        retrieved=call.retrieved,
        duration_ms=latency_ms,
        status=call.status.value,
        error=error,
    )
    completed.append(call)
    emit(streaming.api_completed(round_number, call))
    return call


async def execute_round(
    *,
    round_number: int,
    purpose: RoundPurpose,
    query: str,
    providers: list[KnowledgeProvider],
    budget: int,
    weights: dict[str, float],
    collection: SourceCollection,
    emit: Emit,
) -> Round:
    """Fan out one call per provider, wait for every call to settle, then merge.

    Each call has its own timeout and failure is recorded on its ``APICall``;
    sibling calls are never cancelled by another provider's failure.
    Cancellation of the caller propagates to all in-flight calls.
    """
    t0 = time.monotonic()
    allocation = distribute_budget(budget, [p.name for p in providers], weights)
    completed: list[APICall] = []

    raw = await asyncio.gather(
        *(
            _run_call(provider, query, allocation[provider.name], round_number, emit, completed)
            for provider in providers
        ),
        return_exceptions=True,
    )
    for provider, item in zip(providers, raw):
        if isinstance(item, BaseException) and not isinstance(item, Exception):
            raise item
        if isinstance(item, Exception):
            now = time.time()
            completed.append(
                APICall(
                    provider=provider.name,
                    query=query,
                    filters={},
                    max_results=allocation[provider.name],
                    found=0,
                    retrieved=0,
                    status=CallStatus.FAILURE,
                    latency_ms=0,
                    started_at=now,
                    ended_at=now,
                    error=str(item) or type(item).__name__,
                )
            )

    # Completion order, deduplicated within the round.
    round_items: dict[str, SourceItem] = {}
    for call in completed:
        for item in call.results:
            round_items.setdefault(item.dedup_key, item)
    merge = collection.merge(list(round_items.values()), round_number)

    status = round_status(completed)
    return Round(
        round_number=round_number,
        purpose=purpose,
        query=query,
        estimated_sources=sum(allocation.values()),
        api_calls=tuple(completed),
        sources=tuple(round_items.values()),
        new_source_count=merge.new,
        duration_ms=int((time.monotonic() - t0) * 1000),
        status=status,
    )
