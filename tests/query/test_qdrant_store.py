from types import SimpleNamespace

import pytest
from qdrant_client.models import IsNullCondition

from ragcore.query.contracts import SearchFilters
from ragcore.query.qdrant_store import (
    QdrantKnowledgeStore,
    chunk_from_payload,
    fact_from_payload,
)
from ragcore.shared.errors import VectorSearchError


def _point(point_id, score=None, **payload):
    return SimpleNamespace(id=point_id, score=score, payload=payload)


class FakeQdrantClient:
    def __init__(self, points=None, pages=None, counts=None, error=None):
        self.points = points or []
        self.pages = list(pages or [])
        self.counts = counts or {}
        self.error = error
        self.calls = []

    def query_points(self, **kwargs):
        self.calls.append(("query_points", kwargs))
        if self.error:
            raise self.error
        return SimpleNamespace(points=self.points)

    def scroll(self, **kwargs):
        self.calls.append(("scroll", kwargs))
        if not self.pages:
            return [], None
        return self.pages.pop(0)

    def count(self, **kwargs):
        self.calls.append(("count", kwargs))
        item_id = kwargs["count_filter"].must[-1].match.value
        return SimpleNamespace(count=self.counts.get(item_id, 0))


def _filters(**kwargs):
    defaults = dict(roles=["definition", "heuristic"], min_token_count=12, min_char_count=60)
    defaults.update(kwargs)
    return SearchFilters(**defaults)


def _keys(conditions):
    return [getattr(c, "key", None) for c in conditions]


def test_search_converts_similarity_to_distance():
    client = FakeQdrantClient(
        points=[
            _point("p2", 0.80, chunk_id="c2", knowledge_item_id="d", text="b"),
            _point("p1", 0.95, chunk_id="c1", knowledge_item_id="d", text="a", domain="SaaS"),
        ]
    )
    store = QdrantKnowledgeStore(client, "chunks", timeout=5)

    candidates = store.search("org", "user", [0.1, 0.2], _filters(), limit=10)

    assert [c.chunk_id for c in candidates] == ["c1", "c2"]
    assert candidates[0].distance == pytest.approx(0.05)
    assert candidates[0].chunk.domain == "saas"
    _, kwargs = client.calls[0]
    assert kwargs["collection_name"] == "chunks"
    assert kwargs["query"] == [0.1, 0.2]
    assert kwargs["timeout"] == 5


def test_search_failure_raises_vector_search_error():
    store = QdrantKnowledgeStore(FakeQdrantClient(error=ConnectionError("refused")))
    with pytest.raises(VectorSearchError):
        store.search("org", "user", [0.1], _filters(), limit=5)


def test_build_filter_full_and_scoped():
    store = QdrantKnowledgeStore(FakeQdrantClient())
    filters = _filters(knowledge_item_ids=["d1"], folder_ids=["f1"])

    full = store.build_filter("org", "user", filters)
    assert _keys(full.must) == [
        "organization_id", "is_active", "user_id", "knowledge_item_id", "folder_ids",
        "source_variant", "role", "token_count", "char_count",
    ]
    assert full.must_not[0].key == "usage_policy"
    assert full.must_not[0].match.value == "never_generate"

    scoped = store.build_filter("org", "user", filters, scoped_only=True)
    assert _keys(scoped.must) == [
        "organization_id", "is_active", "user_id", "knowledge_item_id", "folder_ids",
    ]


def test_build_filter_without_variant_or_minimums():
    store = QdrantKnowledgeStore(FakeQdrantClient())
    filters = _filters(roles=[], min_token_count=0, min_char_count=0, source_variant=None)
    assert _keys(store.build_filter("org", "user", filters).must) == [
        "organization_id", "is_active", "user_id",
    ]


def test_keyword_search_pages_until_limit():
    pages = [
        ([_point("a", chunk_id="a", text="x")], "next"),
        ([_point("b", chunk_id="b", text="x")], None),
    ]
    client = FakeQdrantClient(pages=pages)
    chunks = QdrantKnowledgeStore(client).keyword_search("org", "user", "x", _filters(), limit=5)

    assert [c.chunk_id for c in chunks] == ["a", "b"]
    _, second = client.calls[1]
    assert second["offset"] == "next"
    assert second["scroll_filter"].must[-1].key == "text"


def test_count_active_chunks_per_document():
    client = FakeQdrantClient(counts={"d1": 1, "d2": 7})
    counts = QdrantKnowledgeStore(client).count_active_chunks("org", ["d1", "d2", "d1"])
    assert counts == {"d1": 1, "d2": 7}
    assert len(client.calls) == 2


def test_business_facts_admit_org_wide_rows():
    pages = [
        (
            [
                _point("f1", fact_id="f1", text="t", confidence=0.4),
                _point("f2", fact_id="f2", text="t", confidence=0.9),
            ],
            None,
        )
    ]
    client = FakeQdrantClient(pages=pages)
    facts = QdrantKnowledgeStore(client).business_facts("org", "user", limit=5)

    assert [f.fact_id for f in facts] == ["f2", "f1"]
    scroll_filter = client.calls[0][1]["scroll_filter"]
    assert scroll_filter.should[0].match.value == "user"
    assert isinstance(scroll_filter.should[1], IsNullCondition)


def test_structure_candidates_ordered_by_confidence():
    pages = [
        (
            [
                _point("s1", structure_id="s1", sections=[{"section": "A"}], confidence=0.4),
                _point("s2", structure_id="s2", sections=[], confidence=0.8, success_count=3),
            ],
            None,
        )
    ]
    store = QdrantKnowledgeStore(FakeQdrantClient(pages=pages))
    structures = store.structure_candidates("org", limit=5)
    assert [s.structure_id for s in structures] == ["s2", "s1"]


def test_chunk_from_payload_defaults():
    chunk = chunk_from_payload("pid", {"text": "hello", "created_at": "2024-03-01T10:00:00"})
    assert chunk.chunk_id == "pid"
    assert chunk.role == "other"
    assert chunk.is_active
    assert chunk.created_at.year == 2024
    assert chunk.confidence == 0.5
    assert chunk.item_confidence == 0.5
    assert fact_from_payload("f", {"text": "t"}).confidence == 0.5


def test_explicit_zero_confidence_is_kept():
    chunk = chunk_from_payload("pid", {"text": "t", "confidence": 0, "item_confidence": None})
    assert chunk.confidence == 0.0
    assert chunk.item_confidence == 0.5
