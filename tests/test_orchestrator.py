"""End-to-end tests for the research orchestrator with scripted model and providers."""
import asyncio

import pytest

from medresearch.agents.orchestrator import ResearchOrchestrator, make_query
from medresearch.models.events import EventType
from medresearch.models.research import JourneyOutcome, StoppingCondition
from tests.fakes import (
    PLAN_REPLY,
    FakeLLM,
    FakeProvider,
    make_config,
    make_source,
    reflection_reply,
    router_reply,
)

DEEP_QUESTION = "GLP-1 agonistleri kapsamlı araştır"
HYBRID_QUESTION = "Metformin yan etkilerini araştır"


def stage_types(events):
    """Event types without the per-call and per-token noise."""
    skip = {EventType.API_STARTED, EventType.API_COMPLETED, EventType.TOKEN}
    return [e.type for e in events if e.type not in skip]


def assert_well_formed(events):
    assert [e.sequence for e in events] == list(range(1, len(events) + 1))
    assert events[-1].is_terminal
    assert sum(1 for e in events if e.is_terminal) == 1


async def run(config, text, history=None):
    orchestrator = ResearchOrchestrator(config, request_id="req-test")
    events = [event async for event in orchestrator.research(make_query(text, "u1", history))]
    await orchestrator.wait_closed()
    assert_well_formed(events)
    return orchestrator, events


def default_providers():
    return [
        FakeProvider("pubmed", [make_source(i) for i in range(4)]),
        FakeProvider("web", [make_source(i, "web") for i in range(4, 6)]),
    ]


class TestModelTier:
    @pytest.mark.asyncio
    async def test_answers_without_research(self):
        providers = default_providers()
        llm = FakeLLM(replies={"router": router_reply(1)})
        orchestrator, events = await run(make_config(llm, providers), "A1C nedir?")

        assert stage_types(events) == [
            EventType.ROUTING,
            EventType.TIER_SELECTED,
            EventType.SYNTHESIS_STARTED,
            EventType.COMPLETE,
        ]
        assert [e.data["content"] for e in events if e.type == EventType.TOKEN] == llm.messages.tokens
        complete = events[-1].data
        assert complete["sources"] == []
        assert complete["processingTier"] == "model"
        assert complete["metadata"]["coverage"] == {"rounds": 0, "sourceCount": 0}
        assert "researchSummary" not in complete
        assert "citationVerification" not in complete["metadata"]
        assert all(p.queries == [] for p in providers)
        assert orchestrator.journey.outcome == JourneyOutcome.COMPLETED
        assert orchestrator.journey.rounds == []


class TestRecallTier:
    @pytest.mark.asyncio
    async def test_recall_answers_from_history(self):
        llm = FakeLLM(replies={})
        history = [
            {"role": "user", "content": "Metformin dozu ne olmalı?"},
            {"role": "assistant", "content": "Genellikle günde iki kez 500 mg ile başlanır."},
        ]
        _, events = await run(
            make_config(llm, default_providers()),
            "Geçen sefer metformin hakkında ne konuşmuştuk?",
            history,
        )

        assert stage_types(events) == [
            EventType.ROUTING,
            EventType.TIER_SELECTED,
            EventType.RECALL_RESULTS,
            EventType.SYNTHESIS_STARTED,
            EventType.COMPLETE,
        ]
        assert llm.messages.calls == []
        assert events[1].data["tier"] == 0
        assert events[2].data["count"] == 1
        assert "500 mg" in llm.messages.prompts["synthesis"][0]
        assert events[-1].data["metadata"]["recall"]["matches"] == 1


class TestHybridTier:
    @pytest.mark.asyncio
    async def test_single_round_then_cited_answer(self):
        providers = default_providers()
        llm = FakeLLM(replies={"router": router_reply(2)})
        orchestrator, events = await run(make_config(llm, providers, hybrid_budget=10), HYBRID_QUESTION)

        assert stage_types(events) == [
            EventType.ROUTING,
            EventType.TIER_SELECTED,
            EventType.ROUND_STARTED,
            EventType.ROUND_COMPLETE,
            EventType.SOURCE_SELECTION_STARTED,
            EventType.SYNTHESIS_PREPARATION,
            EventType.SYNTHESIS_STARTED,
            EventType.COMPLETE,
        ]
        round_started = next(e for e in events if e.type == EventType.ROUND_STARTED)
        assert round_started.data["estimatedSources"] == 10
        assert round_started.data["purpose"] == "initial"

        complete = events[-1].data
        assert complete["processingTier"] == "hybrid_research"
        assert len(complete["sources"]) == 6
        assert [s["rank"] for s in complete["sources"]] == list(range(1, 7))
        assert complete["researchSummary"]["totalRounds"] == 1
        assert complete["metadata"]["citationVerification"]["available"] is True
        assert "topSources" not in complete["metadata"]["ranking"]
        assert "[1] " in llm.messages.prompts["synthesis"][0]
        assert orchestrator.journey.plan is None
        assert orchestrator.journey.reflections == {}

    @pytest.mark.asyncio
    async def test_round_budget_follows_analyzed_source_mix(self):
        providers = default_providers()
        llm = FakeLLM(
            replies={
                "router": router_reply(2),
                "analyzer": {"category": "drug_safety", "ratios": {"pubmed": 0.75, "web": 0.25}, "confidence": 0.9},
            }
        )
        orchestrator, events = await run(make_config(llm, providers, hybrid_budget=10), HYBRID_QUESTION)

        assert [p.max_results for p in providers] == [[7], [3]]
        round_started = next(e for e in events if e.type == EventType.ROUND_STARTED)
        assert round_started.data["estimatedSources"] == 10
        mix = orchestrator.journey.source_mixes[1]
        assert mix.category == "drug_safety"
        assert mix.is_fallback is False
        assert events[-1].data["metadata"]["sourceMix"]["1"]["category"] == "drug_safety"
        # router, analyzer and synthesis input tokens
        assert orchestrator.journey.summary.input_tokens == 50 + 50 + 120

    @pytest.mark.asyncio
    async def test_failed_analysis_uses_configured_weights(self):
        providers = default_providers()
        llm = FakeLLM(replies={"router": router_reply(2), "analyzer": RuntimeError("rate limited")})
        config = make_config(llm, providers, hybrid_budget=10)
        config.provider_weights = {"pubmed": 0.25, "web": 0.75}
        orchestrator, events = await run(config, HYBRID_QUESTION)

        assert [p.max_results for p in providers] == [[3], [7]]
        assert orchestrator.journey.source_mixes[1].is_fallback is True
        assert events[-1].type == EventType.COMPLETE

    @pytest.mark.asyncio
    async def test_analysis_can_be_switched_off(self):
        providers = default_providers()
        llm = FakeLLM(replies={"router": router_reply(2)})
        config = make_config(llm, providers, hybrid_budget=10, analyze_source_mix=False)
        config.provider_weights = {"pubmed": 0.25, "web": 0.75}
        orchestrator, _ = await run(config, HYBRID_QUESTION)

        assert "analyzer" not in llm.messages.calls
        assert orchestrator.journey.source_mixes == {}
        assert [p.max_results for p in providers] == [[3], [7]]


class TestDeepTier:
    @pytest.mark.asyncio
    async def test_stops_after_one_round_when_quality_sufficient(self):
        providers = [FakeProvider("pubmed", [make_source(i) for i in range(20)])]
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": reflection_reply(quality="high", decision="stop", not_covered=[], gap_score=0.9),
            }
        )
        orchestrator, events = await run(make_config(llm, providers, initial_budget=25), DEEP_QUESTION)

        assert stage_types(events) == [
            EventType.ROUTING,
            EventType.TIER_SELECTED,
            EventType.PLANNING_STARTED,
            EventType.PLANNING_COMPLETE,
            EventType.ROUND_STARTED,
            EventType.ROUND_COMPLETE,
            EventType.REFLECTION_STARTED,
            EventType.REFLECTION_COMPLETE,
            EventType.SOURCE_SELECTION_STARTED,
            EventType.SYNTHESIS_PREPARATION,
            EventType.SYNTHESIS_STARTED,
            EventType.COMPLETE,
        ]
        journey = orchestrator.journey
        assert len(journey.rounds) == 1
        assert StoppingCondition.QUALITY_SUFFICIENT in journey.stopping[-1].triggered_conditions
        metadata = events[-1].data["metadata"]
        assert metadata["plan"]["focusAreas"] == ["glycemic control", "long-term safety"]
        assert metadata["stopping"]["shouldStop"] is True
        assert events[-1].data["researchSummary"]["evidenceQuality"] == "high"

    @pytest.mark.asyncio
    async def test_gap_fill_rounds_until_max_rounds(self):
        provider = FakeProvider(
            "pubmed",
            per_round=[[make_source(i) for i in range(5)], [make_source(i) for i in range(5, 9)]],
        )
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": reflection_reply(not_covered=["renal dosing"]),
            }
        )
        config = make_config(llm, [provider], max_rounds=2, gap_fill_budget=15)
        orchestrator, events = await run(config, DEEP_QUESTION)

        assert provider.queries == [DEEP_QUESTION, f"{DEEP_QUESTION} renal dosing"]
        rounds_started = [e.data for e in events if e.type == EventType.ROUND_STARTED]
        assert [r["purpose"] for r in rounds_started] == ["initial", "gap_fill"]
        assert rounds_started[1]["estimatedSources"] == 15
        # No reflection after the final round.
        assert [e.data["round"] for e in events if e.type == EventType.REFLECTION_STARTED] == [1]
        assert llm.messages.calls.count("reflection") == 1

        journey = orchestrator.journey
        assert journey.stopping[-1].triggered_conditions == (StoppingCondition.MAX_ROUNDS,)
        assert len(journey.collection) == 9
        assert events[-1].data["metadata"]["coverage"] == {"rounds": 2, "sourceCount": 9}

    @pytest.mark.asyncio
    async def test_stops_on_diminishing_returns(self):
        provider = FakeProvider("pubmed", [make_source(i) for i in range(5)])
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": reflection_reply(),
            }
        )
        orchestrator, _ = await run(make_config(llm, [provider], max_rounds=4), DEEP_QUESTION)
        journey = orchestrator.journey
        assert len(journey.rounds) == 2
        assert journey.rounds[1].new_source_count == 0
        assert StoppingCondition.DIMINISHING_RETURNS in journey.stopping[-1].triggered_conditions

    @pytest.mark.asyncio
    async def test_stops_when_source_ceiling_exceeded(self):
        provider = FakeProvider(
            "pubmed",
            per_round=[[make_source(i) for i in range(30)], [make_source(i) for i in range(30, 60)]],
        )
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": reflection_reply(),
            }
        )
        config = make_config(llm, [provider], max_rounds=4, initial_budget=40, gap_fill_budget=40)
        orchestrator, events = await run(config, DEEP_QUESTION)

        journey = orchestrator.journey
        assert len(journey.rounds) == 2
        assert len(journey.collection) == 60
        assert journey.stopping[-1].triggered_conditions == (StoppingCondition.SOURCE_CEILING,)
        assert events[-1].type == EventType.COMPLETE

    @pytest.mark.asyncio
    async def test_all_providers_failing_still_answers(self):
        providers = [
            FakeProvider("pubmed", error=RuntimeError("503")),
            FakeProvider("web", error=RuntimeError("quota")),
        ]
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": reflection_reply(),
            }
        )
        orchestrator, events = await run(make_config(llm, providers), DEEP_QUESTION)

        conditions = orchestrator.journey.stopping[-1].triggered_conditions
        assert StoppingCondition.ALL_PROVIDERS_FAILED in conditions
        assert len(orchestrator.journey.rounds) == 1
        api_events = [e for e in events if e.type == EventType.API_COMPLETED]
        assert [e.data["success"] for e in api_events] == [False, False]
        complete = events[-1]
        assert complete.type == EventType.COMPLETE
        assert complete.data["sources"] == []

    @pytest.mark.asyncio
    async def test_planner_failure_uses_default_plan(self):
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": RuntimeError("planner down"),
                "reflection": reflection_reply(quality="high", decision="stop", not_covered=[]),
            }
        )
        _, events = await run(make_config(llm, default_providers()), DEEP_QUESTION)
        plan_event = next(e for e in events if e.type == EventType.PLANNING_COMPLETE)
        assert plan_event.data["plan"]["isDefault"] is True
        assert events[-1].type == EventType.COMPLETE

    @pytest.mark.asyncio
    async def test_reflection_failure_stops_conservatively(self):
        llm = FakeLLM(
            replies={
                "router": router_reply(3),
                "planner": PLAN_REPLY,
                "reflection": RuntimeError("reflection down"),
            }
        )
        orchestrator, events = await run(make_config(llm, default_providers()), DEEP_QUESTION)
        reflection_event = next(e for e in events if e.type == EventType.REFLECTION_COMPLETE)
        assert reflection_event.data["reflection"]["isFallback"] is True
        assert len(orchestrator.journey.rounds) == 1
        assert StoppingCondition.REFLECTION_STOP in orchestrator.journey.stopping[-1].triggered_conditions
        assert events[-1].type == EventType.COMPLETE


class TestFailures:
    @pytest.mark.asyncio
    async def test_routing_failure_is_terminal(self):
        providers = default_providers()
        llm = FakeLLM(replies={"router": RuntimeError("router down")})
        orchestrator, events = await run(make_config(llm, providers), "How does insulin work?")

        assert [e.type for e in events] == [EventType.ROUTING, EventType.ERROR]
        error = events[-1].data
        assert error["reason"] == "routing_failed"
        assert error["stage"] == "routing"
        assert "partialContent" not in error
        assert llm.messages.stream_calls == 0
        assert all(p.queries == [] for p in providers)
        assert orchestrator.journey.outcome == JourneyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_synthesis_failure_returns_partial_answer(self):
        llm = FakeLLM(replies={"router": router_reply(1)}, fail_after=2)
        orchestrator, events = await run(make_config(llm, default_providers()), "How does insulin work?")

        error = events[-1]
        assert error.type == EventType.ERROR
        assert error.data["reason"] == "synthesis_failed"
        assert error.data["partialContent"] == "Metformin lowers "
        assert error.data["partial"] is True
        assert orchestrator.journey.synthesis.partial is True
        assert orchestrator.journey.outcome == JourneyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_cancel_during_synthesis(self):
        llm = FakeLLM(replies={"router": router_reply(1)}, token_delay=0.05)
        orchestrator = ResearchOrchestrator(make_config(llm, default_providers()))
        events = []
        async for event in orchestrator.research(make_query("How does insulin work?", "u1")):
            events.append(event)
            if sum(1 for e in events if e.type == EventType.TOKEN) == 2 and event.type == EventType.TOKEN:
                orchestrator.cancel()
        await orchestrator.wait_closed()

        assert_well_formed(events)
        error = events[-1].data
        assert error["reason"] == "cancelled"
        streamed = "".join(e.data["content"] for e in events if e.type == EventType.TOKEN)
        assert error["partialContent"] == streamed
        assert orchestrator.journey.outcome == JourneyOutcome.CANCELLED
        assert orchestrator.journey.synthesis.finish_reason == "cancelled"

    @pytest.mark.asyncio
    async def test_request_timeout_returns_partial_answer(self):
        llm = FakeLLM(replies={"router": router_reply(1)}, token_delay=0.05)
        config = make_config(llm, default_providers(), request_timeout_seconds=0.12)
        orchestrator, events = await run(config, "How does insulin work?")

        error = events[-1].data
        assert error["reason"] == "timeout"
        assert error["coverage"] == {"rounds": 0, "sourceCount": 0}
        streamed = "".join(e.data["content"] for e in events if e.type == EventType.TOKEN)
        assert error["partialContent"] == streamed
        assert orchestrator.journey.outcome == JourneyOutcome.TIMED_OUT
        assert orchestrator.journey.synthesis.finish_reason == "timeout"


@pytest.mark.asyncio
async def test_finished_journey_goes_to_sink():
    received = []

    async def sink(journey):
        received.append(journey)

    config = make_config(FakeLLM(replies={"router": router_reply(1)}), default_providers())
    config.sink = sink
    orchestrator, _ = await run(config, "A1C nedir?")
    await asyncio.sleep(0)

    assert received == [orchestrator.journey]
    assert received[0].summary is not None
    assert received[0].summary.tier == "model"


def test_make_query_detects_language_and_drops_empty_turns():
    query = make_query(
        "  Metformin   nedir? ",
        "u1",
        history=[{"role": "user", "content": ""}, {"role": "assistant", "content": "Merhaba"}],
    )
    assert query.text == "Metformin nedir?"
    assert query.language == "tr"
    assert len(query.history) == 1
