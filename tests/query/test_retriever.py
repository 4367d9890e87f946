"""
End-to-end retrieval scenarios over the in-memory store with pinned distances.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from structlog.testing import capture_logs

from ragcore.query.contracts import Fact
from ragcore.query.retriever import KnowledgeRetriever
from ragcore.shared.config import RetrievalConfig
from ragcore.shared.errors import VectorSearchError

ORG = "org-1"
USER = "user-1"

WEAK = dict(domain="seo", authority="low", confidence=0.1, item_confidence=0.1,
            time_horizon="unknown")


def _strong_docs(store, chunk_factory, count, start=0.25, step=0.01, prefix="s"):
    for i in range(count):
        store.add_chunk(chunk_factory(f"{prefix}{i}", f"{prefix}-doc{i}"), start + i * step)


class TestNearMatchProtection:
    def test_near_match_survives_low_composite(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("n1", "near-doc", role="heuristic", **WEAK), 0.04)
        _strong_docs(store, chunk_factory, 8)

        outcome = retriever.retrieve(ORG, USER, "pricing tiers for SaaS plans", "educational")

        assert outcome.mode == "semantic"
        assert len(outcome.chunks) == 5
        assert outcome.chunks[0].chunk_id == "n1"
        assert outcome.chunks[0].near_match
        assert [c.chunk_id for c in outcome.protected] == ["n1"]
        # Ranked by composite alone it would sit behind every strong chunk
        assert outcome.window[-1].chunk_id == "n1"

    def test_never_generate_excluded(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("banned", "d0", usage_policy="never_generate"), 0.02)
        _strong_docs(store, chunk_factory, 3)

        chunks = retriever.retrieve_knowledge_chunks(ORG, USER, "saas churn", "educational")
        assert "banned" not in [c.chunk_id for c in chunks]
        assert len(chunks) == 3


class TestRecallInjection:
    def test_sparse_document_injected(self, store, retriever, chunk_factory):
        for i in range(8):
            store.add_chunk(chunk_factory(f"big{i}", "big-doc"), 0.12 + i * 0.01)
        store.add_chunk(chunk_factory("solo", "solo-doc", role="causal_claim", **WEAK), 0.18)

        with capture_logs() as logs:
            outcome = retriever.retrieve(ORG, USER, "saas churn playbook", "educational")

        ids = [c.chunk_id for c in outcome.chunks]
        assert len(ids) == 5
        assert "solo" in ids
        assert outcome.injected == 1
        event = next(e for e in logs if e["event"] == "retriever_sparse_recall_injection")
        assert event["org"] == ORG
        assert event["knowledge_item_id"] == "solo-doc"

    def test_small_dense_document_injected(self, store, retriever, chunk_factory):
        for i in range(10):
            store.add_chunk(chunk_factory(f"big{i}", "big-doc"), 0.16 + i * 0.01)
        store.add_chunk(chunk_factory("m0", "mid-doc", role="causal_claim", **WEAK), 0.13)
        # Not vector-searchable, still counted as active chunks of the document
        for i in range(1, 4):
            store.add_chunk(chunk_factory(f"m{i}", "mid-doc", role="metric"))

        outcome = retriever.retrieve(ORG, USER, "saas churn playbook", "educational")

        ids = [c.chunk_id for c in outcome.chunks]
        assert len(ids) == 5
        assert "m0" in ids
        injected = [c for c in outcome.selected if c.recall_injected]
        assert [c.assist_reason.value for c in injected] == ["small_dense_assist"]

    def test_distant_sparse_document_not_injected(self, store, retriever, chunk_factory):
        for i in range(8):
            store.add_chunk(chunk_factory(f"big{i}", "big-doc"), 0.12 + i * 0.01)
        store.add_chunk(chunk_factory("solo", "solo-doc", role="causal_claim", **WEAK), 0.30)

        outcome = retriever.retrieve(ORG, USER, "saas churn playbook", "educational")
        assert "solo" not in [c.chunk_id for c in outcome.chunks]
        assert outcome.injected == 0


class TestFallbacks:
    def test_vector_failure_uses_keyword_search(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("k1", "d1"), 0.2)
        store.add_chunk(chunk_factory("k2", "d2", text="unrelated text " * 6), 0.1)

        with patch.object(store, "search", side_effect=VectorSearchError("down")):
            with capture_logs() as logs:
                outcome = retriever.retrieve(ORG, USER, "activation", "educational")

        assert outcome.mode == "keyword_fallback"
        assert outcome.fallback_reason == "VectorSearchError"
        assert [c.chunk_id for c in outcome.chunks] == ["k1"]
        assert outcome.chunks[0].retrieval_tier == "fallback"
        assert any(e["event"] == "retriever_keyword_fallback" for e in logs)

    def test_missing_embedder_uses_keyword_search(self, store, chunk_factory):
        store.add_chunk(chunk_factory("k1", "d1"), 0.2)
        retriever = KnowledgeRetriever(store)

        outcome = retriever.retrieve(ORG, USER, "activation", "educational")
        assert outcome.mode == "keyword_fallback"
        assert outcome.fallback_reason == "no_embedding"
        assert [c.chunk_id for c in outcome.chunks] == ["k1"]

    def test_empty_query_returns_recent(self, store, retriever, chunk_factory):
        now = datetime.now(timezone.utc)
        store.add_chunk(chunk_factory("old", "d1", created_at=now - timedelta(days=3)))
        store.add_chunk(chunk_factory("new", "d2", created_at=now))
        store.add_chunk(chunk_factory("undated", "d3"))

        outcome = retriever.retrieve(ORG, USER, "  ", "educational")
        assert outcome.mode == "recent"
        assert [c.chunk_id for c in outcome.chunks] == ["new", "old", "undated"]

    def test_recent_store_failure_returns_empty(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("new", "d1"))

        with patch.object(store, "recent_chunks", side_effect=VectorSearchError("qdrant down")):
            with capture_logs() as logs:
                chunks = retriever.retrieve_knowledge_chunks(ORG, USER, "", "educational")
                outcome = retriever.retrieve(ORG, USER, "", "educational")

        assert chunks == []
        assert outcome.mode == "recent"
        assert outcome.chunks == []
        failed = [e for e in logs if e["event"] == "retriever_recent_failed"]
        assert failed[0]["log_level"] == "error"
        assert failed[0]["error"] == "qdrant down"


class TestLimitsAndFilters:
    def test_persuasive_intent_caps_limit(self, store, retriever, chunk_factory):
        _strong_docs(store, chunk_factory, 10)
        chunks = retriever.retrieve_knowledge_chunks(
            ORG, USER, "pitch saas onboarding", "educational", limit=10
        )
        assert len(chunks) == 4

    def test_hard_limit(self, store, chunk_factory, embedder):
        config = RetrievalConfig(hard_limit=2)
        retriever = KnowledgeRetriever(store, embedder=embedder, config=config)
        _strong_docs(store, chunk_factory, 5)
        assert len(retriever.retrieve_knowledge_chunks(ORG, USER, "saas", "story")) == 2

    def test_item_filter_and_user_scope(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("a", "doc-a"), 0.2)
        store.add_chunk(chunk_factory("b", "doc-b"), 0.2)
        store.add_chunk(chunk_factory("other", "doc-a", user_id="someone-else"), 0.1)

        chunks = retriever.retrieve_knowledge_chunks(
            ORG, USER, "saas", "educational", filters={"knowledge_item_id": "doc-a"}
        )
        assert [c.chunk_id for c in chunks] == ["a"]

    def test_short_chunks_filtered(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("tiny", "d1", token_count=5), 0.2)
        store.add_chunk(chunk_factory("short", "d2", text="too short"), 0.2)
        store.add_chunk(chunk_factory("ok", "d3"), 0.3)

        chunks = retriever.retrieve_knowledge_chunks(ORG, USER, "saas", "educational")
        assert [c.chunk_id for c in chunks] == ["ok"]

    def test_repeat_calls_are_identical(self, store, retriever, chunk_factory):
        store.add_chunk(chunk_factory("n1", "near-doc", role="heuristic", **WEAK), 0.04)
        _strong_docs(store, chunk_factory, 8)

        first = retriever.retrieve_knowledge_chunks(ORG, USER, "saas pricing", "educational")
        second = retriever.retrieve_knowledge_chunks(ORG, USER, "saas pricing", "educational")
        assert [(c.chunk_id, c.score) for c in first] == [(c.chunk_id, c.score) for c in second]


def test_trace_explains_candidates(store, retriever, chunk_factory):
    _strong_docs(store, chunk_factory, 3)
    result = retriever.retrieve_knowledge_chunks_trace(ORG, USER, "saas churn", "educational")

    trace = result["trace"]
    assert len(result["chunks"]) == 3
    assert trace["mode"] == "semantic"
    assert trace["classification"]["domain"] == "saas"
    assert trace["weights"]["similarity"] == 0.5
    assert len(trace["selected"]) == 3
    assert set(trace["selected"][0]["features"]) >= {"similarity", "domain_match", "role_boost"}


class TestEnrichment:
    def test_disabled_by_default(self, store, retriever, chunk_factory):
        selected = [chunk_factory("a", "doc-a")]
        store.add_chunk(chunk_factory("m", "doc-a", role="metric"))
        assert retriever.enrich_for_chunks(selected) == []

    def test_enriches_from_selected_documents(self, store, chunk_factory, embedder):
        config = RetrievalConfig(enrichment={"enabled": True, "max_per_item": 2})
        retriever = KnowledgeRetriever(store, embedder=embedder, config=config)
        selected = [chunk_factory("a", "doc-a")]
        store.add_chunk(selected[0])
        for i in range(3):
            store.add_chunk(chunk_factory(f"m{i}", "doc-a", role="metric", confidence=0.9 - i / 10))
        store.add_chunk(chunk_factory("elsewhere", "doc-b", role="metric"))
        store.add_chunk(chunk_factory("foreign", "doc-a", role="metric", organization_id="org-2"))

        enriched = retriever.enrich_for_chunks(selected)
        assert [c.chunk_id for c in enriched] == ["m0", "m1"]
        assert all(c.retrieval_tier == "enrichment" for c in enriched)


def test_business_facts_include_org_wide(store, retriever):
    store.facts = [
        Fact("f1", "We sell to clinics", confidence=0.9, organization_id=ORG, user_id=USER),
        Fact("f2", "Founded 2019", confidence=0.5, organization_id=ORG),
        Fact("f3", "Private", confidence=1.0, organization_id=ORG, user_id="someone-else"),
        Fact("f4", "Other org", confidence=1.0, organization_id="org-2"),
    ]
    facts = retriever.retrieve_business_facts(ORG, USER)
    assert [f.fact_id for f in facts] == ["f1", "f2"]
