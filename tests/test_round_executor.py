"""Tests for concurrent provider fan-out within one round."""
import asyncio

import pytest

from medresearch.models.events import EventType
from medresearch.models.research import RoundPurpose, RoundStatus, SourceCollection
from medresearch.services.round_executor import distribute_budget, execute_round
from tests.fakes import FakeProvider, make_source

WEIGHTS = {"pubmed": 0.45, "medrxiv": 0.15, "clinicaltrials": 0.15, "web": 0.25}


async def run_round(providers, collection=None, budget=25, round_number=1):
    events = []
    collection = collection if collection is not None else SourceCollection()
    round_ = await execute_round(
        round_number=round_number,
        purpose=RoundPurpose.INITIAL if round_number == 1 else RoundPurpose.GAP_FILL,
        query="metformin renal safety",
        providers=providers,
        budget=budget,
        weights=WEIGHTS,
        collection=collection,
        emit=events.append,
    )
    return round_, events, collection


@pytest.mark.asyncio
async def test_one_timeout_gives_partial_round():
    providers = [
        FakeProvider("pubmed", [make_source(1), make_source(2)]),
        FakeProvider("medrxiv", [make_source(3, "medrxiv")]),
        FakeProvider("clinicaltrials", [make_source(4, "clinicaltrials")]),
        FakeProvider("web", [make_source(5, "web")], delay=1.0, timeout=0.05),
    ]
    round_, events, collection = await run_round(providers)

    assert round_.status == RoundStatus.PARTIAL
    assert len(round_.api_calls) == 4
    failed = [call for call in round_.api_calls if not call.succeeded]
    assert [call.provider for call in failed] == ["web"]
    assert "timed out" in failed[0].error
    assert round_.new_source_count == 4
    assert len(collection) == 4

    completed = [e for e in events if e.type == EventType.API_COMPLETED]
    assert len(completed) == 4
    web_event = next(e for e in completed if e.data["api"] == "web")
    assert web_event.data["success"] is False
    assert web_event.data["count"] == 0
    assert "error" in web_event.data


@pytest.mark.asyncio
async def test_all_providers_failing_gives_failed_round():
    providers = [
        FakeProvider("pubmed", error=RuntimeError("503")),
        FakeProvider("web", error=ValueError("bad key")),
    ]
    round_, events, collection = await run_round(providers)
    assert round_.status == RoundStatus.FAILED
    assert round_.new_source_count == 0
    assert len(collection) == 0
    assert {call.error for call in round_.api_calls} == {"503", "bad key"}


@pytest.mark.asyncio
async def test_every_api_started_precedes_its_completion():
    providers = [
        FakeProvider("pubmed", [make_source(1)], delay=0.02),
        FakeProvider("medrxiv", [make_source(2, "medrxiv")]),
    ]
    _, events, _ = await run_round(providers)
    for name in ("pubmed", "medrxiv"):
        started = next(i for i, e in enumerate(events) if e.type == EventType.API_STARTED and e.data["api"] == name)
        done = next(i for i, e in enumerate(events) if e.type == EventType.API_COMPLETED and e.data["api"] == name)
        assert started < done


@pytest.mark.asyncio
async def test_duplicates_across_providers_are_merged():
    shared_doi = "10.1000/met.2024.1"
    providers = [
        FakeProvider("pubmed", [make_source(1, doi=shared_doi)]),
        FakeProvider("web", [make_source(9, "web", doi=f"https://doi.org/{shared_doi.upper()}")]),
    ]
    round_, _, collection = await run_round(providers)
    assert len(collection) == 1
    assert len(round_.sources) == 1
    assert round_.new_source_count == 1


@pytest.mark.asyncio
async def test_second_round_counts_only_new_sources():
    collection = SourceCollection()
    provider = FakeProvider("pubmed", per_round=[[make_source(1), make_source(2)], [make_source(2), make_source(3)]])
    await run_round([provider], collection)
    round_, _, _ = await run_round([provider], collection, budget=15, round_number=2)
    assert round_.new_source_count == 1
    assert len(collection) == 3
    assert collection.get(make_source(3).dedup_key).first_seen_round == 2


@pytest.mark.asyncio
async def test_results_get_quality_rating():
    round_, _, _ = await run_round([FakeProvider("pubmed", [make_source(1, doi="10.1/x")])])
    assert round_.sources[0].quality_rating == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_budget_is_split_by_weight():
    providers = [FakeProvider(name) for name in WEIGHTS]
    await run_round(providers, budget=25)
    assert {p.name: p.max_results[0] for p in providers} == {
        "pubmed": 11,
        "medrxiv": 4,
        "clinicaltrials": 4,
        "web": 6,
    }


@pytest.mark.asyncio
async def test_cancellation_propagates_to_calls():
    slow = FakeProvider("pubmed", [make_source(1)], delay=5.0, timeout=10.0)
    task = asyncio.create_task(run_round([slow]))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


class TestDistributeBudget:
    def test_weighted_split_sums_to_total(self):
        allocation = distribute_budget(10, ["a", "b"], {"a": 3.0, "b": 1.0})
        assert allocation == {"a": 7, "b": 3}

    def test_every_provider_gets_at_least_one(self):
        allocation = distribute_budget(2, ["a", "b", "c", "d"], {})
        assert allocation == {"a": 1, "b": 1, "c": 1, "d": 1}

    def test_unweighted_providers_share_equally(self):
        allocation = distribute_budget(10, ["a", "b", "c"], {})
        assert sum(allocation.values()) == 10
        assert max(allocation.values()) - min(allocation.values()) <= 1

    def test_no_providers(self):
        assert distribute_budget(10, [], {}) == {}
