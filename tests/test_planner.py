"""Tests for the deep-research planner."""
import pytest

from medresearch.agents.orchestrator import make_query
from medresearch.agents.planner import ResearchPlanner
from medresearch.engine import StageModel
from medresearch.models.research import RouterDecision, Tier
from tests.fakes import PLAN_REPLY, FakeLLM

STAGE = StageModel(model="test/planner", temperature=0.3)
DECISION = RouterDecision(tier=Tier.DEEP, reasoning="explicit deep request", confidence=0.95)


@pytest.mark.asyncio
async def test_plan_parses_reply():
    planner = ResearchPlanner(FakeLLM(replies={"planner": PLAN_REPLY}), STAGE)
    plan = await planner.plan(make_query("GLP-1 agonistleri kapsamlı araştır", "u1"), DECISION)
    assert plan.estimated_rounds == 2
    assert plan.focus_areas == ("glycemic control", "long-term safety")
    assert plan.is_default is False
    assert plan.metrics.model == "test/planner"


@pytest.mark.asyncio
async def test_plan_dedupes_focus_areas_case_insensitively():
    reply = {**PLAN_REPLY, "focusAreas": ["Weight loss", "weight loss", "Cardiovascular outcomes"]}
    planner = ResearchPlanner(FakeLLM(replies={"planner": reply}), STAGE)
    plan = await planner.plan(make_query("Deep research on semaglutide", "u1"), DECISION)
    assert plan.focus_areas == ("Weight loss", "Cardiovascular outcomes")


@pytest.mark.asyncio
async def test_model_failure_yields_default_plan():
    planner = ResearchPlanner(FakeLLM(replies={"planner": RuntimeError("boom")}), STAGE)
    plan = await planner.plan(make_query("Deep research on semaglutide", "u1"), DECISION)
    assert plan.is_default is True
    assert plan.estimated_rounds == 2
    assert plan.focus_areas == ()


@pytest.mark.asyncio
async def test_invalid_json_yields_default_plan():
    planner = ResearchPlanner(FakeLLM(replies={"planner": "three rounds please"}), STAGE)
    plan = await planner.plan(make_query("Deep research on semaglutide", "u1"), DECISION)
    assert plan.is_default is True


@pytest.mark.asyncio
async def test_bad_round_estimate_is_defaulted():
    reply = {**PLAN_REPLY, "estimatedRounds": "many"}
    planner = ResearchPlanner(FakeLLM(replies={"planner": reply}), STAGE)
    plan = await planner.plan(make_query("Deep research on semaglutide", "u1"), DECISION)
    assert plan.estimated_rounds == 2
    assert plan.is_default is False
