"""Tests for the per-round source mix."""
import pytest

from medresearch.agents.orchestrator import make_query
from medresearch.agents.query_analyzer import QueryAnalyzer, configured_mix
from medresearch.engine import StageModel
from tests.fakes import FakeLLM

STAGE = StageModel(model="test/analyzer", temperature=0.1, max_tokens=256)
PROVIDERS = ["pubmed", "medrxiv", "clinicaltrials", "web"]
WEIGHTS = {"pubmed": 0.45, "medrxiv": 0.15, "clinicaltrials": 0.15, "web": 0.25}
QUERY = make_query("Metformin yan etkilerini araştır", "u1")


async def analyze(reply, providers=PROVIDERS, weights=WEIGHTS):
    llm = FakeLLM(replies={"analyzer": reply})
    mix = await QueryAnalyzer(llm, STAGE).analyze(QUERY, "metformin side effects", providers, weights)
    return mix, llm


@pytest.mark.asyncio
async def test_reply_ratios_become_weights():
    mix, llm = await analyze(
        {
            "category": "drug_safety",
            "ratios": {"PubMed": 0.6, "medrxiv": 0.1, "clinicaltrials": 0.2, "web": 0.1},
            "confidence": 0.85,
        }
    )
    assert mix.category == "drug_safety"
    assert mix.weights == pytest.approx({"pubmed": 0.6, "medrxiv": 0.1, "clinicaltrials": 0.2, "web": 0.1})
    assert mix.confidence == 0.85
    assert mix.is_fallback is False
    assert mix.metrics.model == "test/analyzer"
    assert llm.messages.json_modes == [True]
    assert "pubmed, medrxiv, clinicaltrials, web" in llm.messages.prompts["analyzer"][0]


@pytest.mark.asyncio
async def test_ratios_are_normalized_and_unknown_sources_ignored():
    mix, _ = await analyze({"category": "treatment", "ratios": {"pubmed": 0.5, "clinicaltrials": 0.5, "scopus": 0.9}})
    assert mix.weights == pytest.approx({"pubmed": 0.5, "medrxiv": 0.0, "clinicaltrials": 0.5, "web": 0.0})

    mix, _ = await analyze({"ratios": {"pubmed": 0.3, "web": 0.3}})
    assert mix.weights == pytest.approx({"pubmed": 0.5, "medrxiv": 0.0, "clinicaltrials": 0.0, "web": 0.5})


@pytest.mark.asyncio
async def test_unknown_category_is_general():
    mix, _ = await analyze({"category": "cardiology", "ratios": {"pubmed": 1.0}, "confidence": "high"})
    assert mix.category == "general"
    assert mix.confidence == 0.5


@pytest.mark.asyncio
async def test_model_failure_falls_back_to_configured_weights():
    mix, _ = await analyze(RuntimeError("rate limited"))
    assert mix.is_fallback is True
    assert mix.weights == pytest.approx(WEIGHTS)
    assert mix.metrics.input_tokens == 0


@pytest.mark.asyncio
async def test_reply_without_ratios_falls_back_but_keeps_usage():
    mix, _ = await analyze({"category": "nutrition", "ratios": {"pubmed": 0, "web": -1}})
    assert mix.is_fallback is True
    assert mix.weights == pytest.approx(WEIGHTS)
    assert mix.metrics.input_tokens == 50


@pytest.mark.asyncio
async def test_single_provider_skips_the_model_call():
    mix, llm = await analyze(RuntimeError("not called"), providers=["pubmed"])
    assert mix.weights == {"pubmed": 1.0}
    assert mix.is_fallback is False
    assert llm.messages.calls == []


def test_configured_mix_without_weights_is_an_equal_split():
    mix = configured_mix(["pubmed", "web"], {}, is_fallback=True)
    assert mix.weights == {"pubmed": 0.5, "web": 0.5}
