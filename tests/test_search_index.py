from datetime import datetime

import pytest
from conftest import GITHUB_CONFIG, record

from knowledge_ingestion.db import db_session
from knowledge_ingestion.item_store import ItemStore
from knowledge_ingestion.models import KnowledgeItem
from knowledge_ingestion.search import SearchIndexer, Tokenizer


@pytest.fixture()
def source_id(db, source_registry):
    with db_session() as s:
        return source_registry.register(
            s, name="platform", kind="github", configuration=GITHUB_CONFIG
        )


@pytest.fixture()
def store() -> ItemStore:
    return ItemStore()


def _add(store, source_id, reference, title, **fields):
    with db_session() as s:
        return store.upsert(s, source_id, record(reference, title, **fields)).item.id


def _search(store, query, **kwargs):
    with db_session() as s:
        return store.indexer.search(s, query, **kwargs)


def test_title_match_outranks_author_match(store, source_id):
    in_title = _add(store, source_id, "a", "Login crash on Safari", content="", author="sam")
    in_author = _add(store, source_id, "b", "Refactor session cache", content="", author="login")
    hits = _search(store, "login")
    assert [h.item_id for h in hits] == [in_title, in_author]
    assert hits[0].score > hits[1].score


def test_scores_accumulate_across_zones(store, source_id):
    everywhere = _add(
        store,
        source_id,
        "a",
        "Deploy pipeline",
        summary="deploy failures",
        content="the deploy step times out",
    )
    title_only = _add(store, source_id, "b", "Deploy docs", content="")
    hits = _search(store, "deploy")
    assert [h.item_id for h in hits] == [everywhere, title_only]


def test_ties_break_on_most_recently_updated(store, source_id):
    older = _add(store, source_id, "a", "Rotate keys", content="")
    newer = _add(store, source_id, "b", "Rotate keys", content="")
    with db_session() as s:
        s.get(KnowledgeItem, older).updated_at = datetime(2025, 1, 1)
        s.get(KnowledgeItem, newer).updated_at = datetime(2026, 1, 1)
    hits = _search(store, "rotate")
    assert [h.item_id for h in hits] == [newer, older]
    assert hits[0].score == hits[1].score


def test_match_all_requires_every_term(store, source_id):
    both = _add(store, source_id, "a", "Kafka consumer lag", content="")
    _add(store, source_id, "b", "Kafka upgrade", content="")
    assert len(_search(store, "kafka lag")) == 2
    assert [h.item_id for h in _search(store, "kafka lag", match_all=True)] == [both]


def test_source_filter_and_limit(store, source_id, source_registry):
    with db_session() as s:
        other = source_registry.register(
            s, name="mirror", kind="github", configuration=GITHUB_CONFIG
        )
    for ref in ("a", "b", "c"):
        _add(store, source_id, ref, "Incident review", content="")
    mine = _add(store, other, "z", "Incident review", content="")
    assert [h.item_id for h in _search(store, "incident", source_id=other)] == [mine]
    assert len(_search(store, "incident", limit=2)) == 2


def test_stale_items_are_invisible_until_reindexed(store, source_id):
    item_id = _add(store, source_id, "a", "Pager escalation", content="")
    with db_session() as s:
        s.get(KnowledgeItem, item_id).indexed_at = None
    assert _search(store, "pager") == []
    with db_session() as s:
        assert store.indexer.reindex_stale(s) == 1
    assert [h.item_id for h in _search(store, "pager")] == [item_id]


def test_empty_item_builds_empty_index(store, source_id):
    item = KnowledgeItem(title="", content=None, summary=None, author=None)
    assert SearchIndexer().build(item) == {}


def test_query_without_terms_returns_nothing(store, source_id):
    _add(store, source_id, "a", "Anything", content="")
    assert _search(store, "  ?! ") == []


def test_custom_stemmer_applies_to_index_and_query(db, source_id):
    stemming = ItemStore(SearchIndexer(Tokenizer(stemmer=lambda t: t.rstrip("s"))))
    item_id = _add(stemming, source_id, "a", "Flaky tests", content="")
    assert [h.item_id for h in _search(stemming, "test")] == [item_id]


def test_single_title_hit_beats_heavily_repeated_content(store, source_id):
    in_title = _add(store, source_id, "a", "Deploy pipeline", content="")
    _add(store, source_id, "b", "Refactor cache", content=" ".join(["deploy"] * 60))
    hits = _search(store, "deploy")
    assert hits[0].item_id == in_title
    assert hits[0].score > hits[1].score
