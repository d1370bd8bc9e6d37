from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator
from uuid import uuid4

from loguru import logger

from medresearch.agents.citation_verifier import verify_citations
from medresearch.agents.planner import ResearchPlanner
from medresearch.agents.query_analyzer import QueryAnalyzer
from medresearch.agents.reflection import GapAnalyzer
from medresearch.agents.router import QueryRouter, detect_language
from medresearch.agents.synthesizer import SynthesisStreamer
from medresearch.engine import EngineConfig
from medresearch.errors import JourneyTimeoutError, ResearchError, RoutingError, SynthesisError
from medresearch.models.events import ResearchEvent
from medresearch.models.research import (
    HealthProfile,
    HistoryTurn,
    JourneyOutcome,
    Query,
    Reflection,
    ResearchJourney,
    RoundPurpose,
    RouterDecision,
    Tier,
)
from medresearch.services import logger as log_service
from medresearch.services import streaming
from medresearch.services.journey import build_summary, completeness_score, last_reflection
from medresearch.services.persistence import submit_journey
from medresearch.services.query_refiner import gap_fill_query, initial_query
from medresearch.services.recall import recall_turns
from medresearch.services.round_executor import execute_round
from medresearch.services.source_ranker import rank_sources
from medresearch.services.stopping import StoppingPolicy, evaluate_stopping_conditions

CANCELLED_MESSAGE = "Research was cancelled."


def make_query(
    text: str,
    user_id: str,
    history: list[dict[str, str]] | None = None,
    profile: HealthProfile | None = None,
) -> Query:
    """Build the immutable request input, detecting its language."""
    turns = tuple(
        HistoryTurn(role=str(turn.get("role", "user")), content=str(turn.get("content", "")))
        for turn in history or []
        if turn.get("content")
    )
    cleaned = " ".join(text.split())
    return Query(
        text=cleaned,
        user_id=user_id,
        language=detect_language(cleaned),
        profile=profile,
        history=turns,
    )


class ResearchOrchestrator:
    """Runs one research journey and publishes its events.

    Flow:
      1. Route the question to a tier (0 recall, 1 model, 2 hybrid, 3 deep)
      2. Tier 3: plan, then loop {round -> reflection -> stopping decision}
      3. Tier 2: a single round; tiers 0 and 1 skip retrieval
      4. Rank and select sources, stream the answer, verify citations

    One instance serves one request. Every stage publishes to an
    ``EventChannel`` that ``research()`` exposes as an async iterator; the
    journey is available on ``self.journey`` at any point.
    """

    def __init__(self, config: EngineConfig, request_id: str | None = None):
        self.config = config
        self.policy = config.policy
        self.request_id = request_id or uuid4().hex[:12]
        self.channel = streaming.EventChannel()
        self.journey: ResearchJourney | None = None
        self._task: asyncio.Task | None = None
        self._sink_tasks: set[asyncio.Task] = set()
        self._started = 0.0

        self.router = QueryRouter(
            config.router_llm or config.llm,
            config.router,
            config.pricing,
            confidence_threshold=self.policy.router_confidence_threshold,
        )
        self.planner = ResearchPlanner(config.llm, config.planner, config.pricing)
        self.query_analyzer = QueryAnalyzer(config.llm, config.analyzer or config.router, config.pricing)
        self.analyzer = GapAnalyzer(config.llm, config.reflection, config.pricing)
        self.synthesizer = SynthesisStreamer(config.llm, config.synthesis, config.pricing)

    # --- public API ---

    async def research(self, query: Query) -> AsyncIterator[ResearchEvent]:
        """Yield events until the terminal ``complete`` or ``error`` event.

        Closing the iterator early cancels the journey.
        """
        self.journey = ResearchJourney(request_id=self.request_id, query=query)
        self._task = asyncio.create_task(self._run(query))
        try:
            async for event in self.channel:
                yield event
        finally:
            if not self._task.done():
                self._task.cancel()

    def cancel(self) -> None:
        """Cancel the journey; a terminal ``error`` event with reason
        ``cancelled`` is published with whatever was produced so far."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the journey and any sink write it started."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        await asyncio.gather(*self._sink_tasks, return_exceptions=True)

    # --- internals ---

    def _emit(self, event: ResearchEvent) -> None:
        self.channel.publish(event)

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    async def _run(self, query: Query) -> None:
        journey = self.journey
        self._started = time.monotonic()
        log_service.log_research_step(self.request_id, "journey", "started", {"query": query.text[:200]})
        try:
            async with asyncio.timeout(self.policy.request_timeout_seconds):
                await self._execute(query)
        except TimeoutError:
            journey.outcome = JourneyOutcome.TIMED_OUT
            if journey.synthesis is not None and journey.synthesis.partial:
                journey.synthesis.finish_reason = "timeout"
            self._emit_failure(JourneyTimeoutError.user_message, reason="timeout")
        except asyncio.CancelledError:
            journey.outcome = JourneyOutcome.CANCELLED
            self._emit_failure(CANCELLED_MESSAGE, reason="cancelled")
            raise
        except RoutingError as exc:
            logger.warning(f"Routing failed for {self.request_id}: {exc}")
            journey.outcome = JourneyOutcome.FAILED
            journey.error = str(exc)
            self._emit(streaming.error(exc.user_message, reason="routing_failed", stage="routing"))
        except SynthesisError as exc:
            journey.outcome = JourneyOutcome.FAILED
            journey.error = str(exc)
            self._emit_failure(exc.user_message, reason="synthesis_failed", stage="synthesis")
        except Exception as exc:
            logger.exception(f"Research journey {self.request_id} failed")
            journey.outcome = JourneyOutcome.FAILED
            journey.error = str(exc)
            self._emit_failure(ResearchError.user_message, reason="error")
        finally:
            if journey.summary is None:
                journey.summary = build_summary(journey, self._elapsed_ms())
            log_service.log_research_step(
                self.request_id,
                "journey",
                journey.outcome.value,
                {"rounds": len(journey.rounds), "sources": len(journey.collection)},
            )
            submit_journey(self.config.sink, journey, self._sink_tasks)
            self.channel.close()

    def _emit_failure(self, message: str, *, reason: str, stage: str | None = None) -> None:
        journey = self.journey
        partial = journey.synthesis.response if journey.synthesis is not None else ""
        self._emit(
            streaming.error(
                message,
                reason=reason,
                stage=stage,
                partial_content=partial,
                coverage=journey.coverage(),
            )
        )

    async def _execute(self, query: Query) -> None:
        journey = self.journey
        self._emit(streaming.routing())
        t0 = time.monotonic()
        decision = await self.router.route(query)
        journey.record_latency("routing", int((time.monotonic() - t0) * 1000))
        journey.routing = decision
        log_service.log_research_step(self.request_id, "routing", "complete", decision.to_dict())
        self._emit(streaming.tier_selected(decision))

        if decision.tier == Tier.RECALL:
            await self._answer_recall(query, decision)
        elif decision.tier == Tier.MODEL:
            await self._synthesize(query, Tier.MODEL)
        elif decision.tier == Tier.HYBRID:
            await self._run_hybrid(query)
            await self._synthesize(query, Tier.HYBRID)
        else:
            await self._run_deep(query, decision)
            await self._synthesize(query, Tier.DEEP)

    async def _answer_recall(self, query: Query, decision: RouterDecision) -> None:
        turns = recall_turns(decision.search_terms, query.history)
        matches = sum(1 for turn in turns if turn.role == "user")
        self._emit(streaming.recall_results(matches, decision.search_terms))
        await self._synthesize(
            query,
            Tier.RECALL,
            recalled=turns,
            extra_metadata={"recall": {"matches": matches, "searchTerms": decision.search_terms}},
        )

    async def _source_weights(self, query: Query, query_text: str, round_number: int) -> dict[str, float]:
        if not self.policy.analyze_source_mix:
            return self.config.provider_weights
        t0 = time.monotonic()
        mix = await self.query_analyzer.analyze(
            query,
            query_text,
            [provider.name for provider in self.config.providers],
            self.config.provider_weights,
        )
        self.journey.record_latency("analysis", int((time.monotonic() - t0) * 1000))
        self.journey.source_mixes[round_number] = mix
        log_service.log_research_step(
            self.request_id, "analysis", "complete", {"round": round_number, **mix.to_dict()}
        )
        return mix.weights

    async def _run_round(self, query: Query, query_text: str, round_number: int, budget: int) -> None:
        journey = self.journey
        purpose = RoundPurpose.INITIAL if round_number == 1 else RoundPurpose.GAP_FILL
        weights = await self._source_weights(query, query_text, round_number)
        self._emit(streaming.round_started(round_number, query_text, budget, purpose.value))
        round_ = await execute_round(
            round_number=round_number,
            purpose=purpose,
            query=query_text,
            providers=self.config.providers,
            budget=budget,
            weights=weights,
            collection=journey.collection,
            emit=self._emit,
        )
        journey.rounds.append(round_)
        journey.record_latency("rounds", round_.duration_ms)
        log_service.log_research_step(
            self.request_id,
            "round",
            round_.status.value,
            {"round": round_number, "new": round_.new_source_count, "total": len(journey.collection)},
        )
        self._emit(streaming.round_complete(round_, len(journey.collection)))

    async def _run_hybrid(self, query: Query) -> None:
        await self._run_round(query, initial_query(query.text), 1, self.policy.hybrid_budget)

    async def _run_deep(self, query: Query, decision: RouterDecision) -> None:
        journey = self.journey
        self._emit(streaming.planning_started())
        t0 = time.monotonic()
        plan = await self.planner.plan(query, decision)
        journey.record_latency("planning", int((time.monotonic() - t0) * 1000))
        journey.plan = plan
        self._emit(streaming.planning_complete(plan))

        max_rounds = max(self.policy.max_rounds, 1)
        stopping_policy = StoppingPolicy(
            source_ceiling=self.policy.source_ceiling,
            gap_score_threshold=self.policy.gap_score_stop_threshold,
        )
        previous: Reflection | None = None
        round_number = 0
        while True:
            round_number += 1
            if round_number == 1:
                query_text = initial_query(query.text, plan.focus_areas)
                budget = self.policy.initial_budget
            else:
                query_text = gap_fill_query(query.text, previous)
                budget = self.policy.gap_fill_budget
            await self._run_round(query, query_text, round_number, budget)
            current = journey.rounds[-1]

            reflection: Reflection | None = None
            if round_number < max_rounds:
                self._emit(streaming.reflection_started(round_number))
                t0 = time.monotonic()
                reflection = await self.analyzer.reflect(
                    query, plan, journey.rounds, journey.collection, max_rounds
                )
                journey.record_latency("reflection", int((time.monotonic() - t0) * 1000))
                journey.reflections[round_number] = reflection
                self._emit(streaming.reflection_complete(round_number, reflection))

            stop = evaluate_stopping_conditions(
                round_number,
                max_rounds,
                current,
                journey.rounds,
                reflection,
                stopping_policy,
            )
            journey.stopping.append(stop)
            log_service.log_research_step(self.request_id, "stopping", "evaluated", stop.to_dict())
            if stop.should_stop:
                return
            previous = reflection

    async def _synthesize(
        self,
        query: Query,
        tier: Tier,
        recalled: list[HistoryTurn] | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> None:
        journey = self.journey
        researched = tier in (Tier.HYBRID, Tier.DEEP)
        top_sources = []
        if researched:
            self._emit(streaming.source_selection_started(len(journey.collection)))
            journey.ranking = rank_sources(
                journey.collection.items(),
                query.text,
                weights=self.policy.rank_weights,
                min_score=self.policy.rank_min_score,
                top_n=self.policy.rank_top_n,
                extended_top_n=self.policy.rank_extended_top_n,
                high_quality_score=self.policy.rank_high_quality_score,
                near_duplicate_similarity=self.policy.rank_near_duplicate_similarity,
                token_budget=self.policy.rank_token_budget,
            )
            journey.record_latency("ranking", journey.ranking.latency_ms)
            top_sources = list(journey.ranking.top_sources)
            self._emit(streaming.synthesis_preparation(len(top_sources)))

        self._emit(streaming.synthesis_started(len(journey.rounds), len(journey.collection)))
        synthesis = self.synthesizer.prepare(len(top_sources))
        journey.synthesis = synthesis
        system, messages = self.synthesizer.build_messages(query, tier, top_sources, recalled)
        try:
            await self.synthesizer.stream(
                synthesis,
                system,
                messages,
                on_token=lambda text: self._emit(streaming.token(text)),
            )
        finally:
            journey.record_latency("synthesis", synthesis.latency_ms)

        if researched:
            journey.verification = verify_citations(
                synthesis.response,
                top_sources,
                accurate_threshold=self.policy.citation_accurate_threshold,
                nuance_threshold=self.policy.citation_nuance_threshold,
            )
            journey.record_latency("verification", journey.verification.latency_ms)

        journey.outcome = JourneyOutcome.COMPLETED
        journey.summary = build_summary(journey, self._elapsed_ms())
        self._emit(
            streaming.complete(
                sources=[
                    {**ranked.source.to_dict(), "rank": ranked.rank, "score": round(ranked.overall_score, 4)}
                    for ranked in top_sources
                ],
                metadata=self._metadata(extra_metadata),
                processing_tier=tier.label,
                research_summary=self._research_summary() if researched else None,
                thinking_summary=self._thinking_summary(),
            )
        )

    def _metadata(self, extra: dict[str, Any] | None) -> dict[str, Any]:
        journey = self.journey
        metadata: dict[str, Any] = {
            "requestId": self.request_id,
            "tier": int(journey.routing.tier),
            "coverage": journey.coverage(),
            "routing": journey.routing.to_dict(),
            "synthesis": journey.synthesis.to_dict(),
            "summary": journey.summary.to_dict(),
        }
        if journey.plan is not None:
            metadata["plan"] = journey.plan.to_dict()
        if journey.rounds:
            metadata["rounds"] = [r.to_dict() for r in journey.rounds]
        if journey.source_mixes:
            metadata["sourceMix"] = {str(n): mix.to_dict() for n, mix in journey.source_mixes.items()}
        if journey.stopping:
            metadata["stopping"] = journey.stopping[-1].to_dict()
        if journey.ranking is not None:
            ranking = journey.ranking.to_dict()
            ranking.pop("topSources", None)
            metadata["ranking"] = ranking
        if journey.verification is not None:
            metadata["citationVerification"] = journey.verification.to_dict()
        if extra:
            metadata.update(extra)
        return metadata

    def _research_summary(self) -> dict[str, Any]:
        journey = self.journey
        reflection = last_reflection(journey)
        return {
            "totalRounds": len(journey.rounds),
            "totalSources": len(journey.collection),
            "selectedSources": journey.ranking.selected if journey.ranking else 0,
            "sourcesByType": journey.collection.count_by_type(),
            "evidenceQuality": reflection.evidence_quality.value if reflection else None,
            "completeness": completeness_score(journey.rounds, reflection),
            "stoppingReason": journey.stopping[-1].reason if journey.stopping else None,
        }

    def _thinking_summary(self) -> str:
        journey = self.journey
        decision = journey.routing
        parts = [f"Routed to {decision.tier.label} (confidence {decision.confidence:.2f})."]
        if journey.plan is not None and journey.plan.focus_areas:
            parts.append(f"Focus areas: {', '.join(journey.plan.focus_areas)}.")
        if journey.rounds:
            parts.append(f"{len(journey.rounds)} round(s), {len(journey.collection)} unique sources.")
        if journey.stopping:
            parts.append(f"Stopped: {journey.stopping[-1].reason}.")
        if journey.ranking is not None:
            parts.append(f"{journey.ranking.selected} sources selected for the answer.")
        return " ".join(parts)
