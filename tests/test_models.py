"""Tests for source identity and the request-scoped collection."""
from itertools import permutations

from medresearch.models.research import SourceCollection, SourceType
from medresearch.tools.web_utils import canonical_url, normalize_doi
from tests.fakes import make_source


def test_dedup_key_prefers_doi():
    source = make_source(1, doi="https://doi.org/10.2337/DC23-0001")
    assert source.dedup_key == "doi:10.2337/dc23-0001"


def test_dedup_key_falls_back_to_canonical_url():
    source = make_source(1, url="https://WWW.Example.org/article/5/?utm_source=x#top")
    assert source.dedup_key == "url:https://example.org/article/5"


def test_dedup_key_falls_back_to_provider_id():
    source = make_source(7, url="not a url")
    assert source.dedup_key == "pubmed:pubmed:7"


def test_merge_counts_new_and_duplicates():
    collection = SourceCollection()
    first = collection.merge([make_source(1), make_source(2)], 1)
    second = collection.merge([make_source(2), make_source(3)], 2)
    assert (first.new, first.duplicates) == (2, 0)
    assert (second.new, second.duplicates) == (1, 1)
    assert len(collection) == 3


def test_merge_is_order_independent():
    doi = "10.1/shared"
    batch = [
        make_source(1, doi=doi, venue="Diabetes Care"),
        make_source(2, "web", doi=doi, source_type=SourceType.WEB),
        make_source(3),
    ]
    key_sets = []
    for order in permutations(batch):
        collection = SourceCollection()
        collection.merge(list(order), 1)
        key_sets.append(set(collection.keys()))
    assert all(keys == key_sets[0] for keys in key_sets)
    assert len(key_sets[0]) == 2


def test_merging_twice_is_idempotent():
    collection = SourceCollection()
    batch = [make_source(1), make_source(2)]
    collection.merge(batch, 1)
    result = collection.merge(batch, 2)
    assert result.new == 0
    assert len(collection) == 2


def test_more_complete_record_replaces_fields_but_keeps_identity():
    collection = SourceCollection()
    sparse = make_source(1, doi="10.1/abc", year=None, relevance=0.9)
    rich = make_source(
        2,
        "web",
        doi="10.1/abc",
        relevance=0.4,
        venue="Lancet",
        citations=120,
        authors=["A. Author"],
    )
    collection.merge([sparse], 1)
    result = collection.merge([rich], 2)

    stored = collection.get("doi:10.1/abc")
    assert result.refreshed == 1
    assert stored.id == "pubmed:1"
    assert stored.first_seen_round == 1
    assert stored.venue == "Lancet"
    assert stored.citation_count == 120
    assert stored.relevance_score == 0.9


def test_duplicate_keeps_highest_relevance():
    collection = SourceCollection()
    collection.merge([make_source(1, relevance=0.3)], 1)
    collection.merge([make_source(1, relevance=0.8)], 2)
    assert collection.items()[0].relevance_score == 0.8


def test_count_by_type():
    collection = SourceCollection()
    collection.merge([make_source(1), make_source(2, "web", source_type=SourceType.WEB)], 1)
    assert collection.count_by_type() == {"pubmed": 1, "medical_source": 1}


def test_url_helpers():
    assert canonical_url("ftp://example.org/x") is None
    assert canonical_url("http://example.org/a/") == "https://example.org/a"
    assert normalize_doi("doi: 10.5/XYZ") == "10.5/xyz"
    assert normalize_doi("") is None
