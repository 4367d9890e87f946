"""
Knowledge retrieval façade.

Two-stage pipeline per request:
1. recall: classify, expand, embed, vector search (`top_n` candidates),
   near-match flagging, composite scoring into a bounded Top-K window;
2. precision: variant preference, protected-first selection with the
   excerpt cap, sparse/small-dense recall injection, dedupe, truncate.

Any failure in the vector path degrades to keyword search, which returns
up to `limit` unranked chunks with no protection or injection.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Union

from ragcore.providers.embeddings import EmbeddingProvider
from ragcore.shared.config import RetrievalConfig
from ragcore.shared.observability import LoggerAdapter, get_logger, request_scope
from ragcore.shared.observability.metrics import (
    retrieval_fallback_total,
    retrieval_latency_ms,
    retrieval_requests_total,
)

from .classification import QueryClassification, QueryClassifier
from .contracts import Candidate, Chunk, Fact, RetrievalFilters, SearchFilters
from .expansion import QueryExpander
from .ranking import CompositeScorer
from .recall import NearMatchProtector, RecallInjector
from .selection import select_final
from .vector_store import KnowledgeStore

logger = get_logger(__name__)

FiltersArg = Union[RetrievalFilters, Dict[str, Any], None]


@dataclass
class RetrievalOutcome:
    """Everything one retrieval produced; `chunks` is the public result."""

    chunks: List[Chunk]
    mode: str  # semantic | recent | keyword_fallback
    limit: int
    classification: Optional[QueryClassification] = None
    selected: List[Candidate] = field(default_factory=list)
    window: List[Candidate] = field(default_factory=list)
    protected: List[Candidate] = field(default_factory=list)
    injected: int = 0
    fallback_reason: Optional[str] = None


class KnowledgeRetriever:
    def __init__(
        self,
        store: KnowledgeStore,
        embedder: Optional[EmbeddingProvider] = None,
        classifier: Optional[QueryClassifier] = None,
        expander: Optional[QueryExpander] = None,
        config: Optional[RetrievalConfig] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.classifier = classifier or QueryClassifier()
        self.expander = expander or QueryExpander()
        self.config = config or RetrievalConfig()
        self.scorer = CompositeScorer(self.config)
        self.protector = NearMatchProtector(self.config.near_match_distance)
        self.injectors = [
            RecallInjector.sparse(self.config.sparse_recall),
            RecallInjector.small_dense(self.config.small_dense_assist),
        ]

    # ---- public API ----------------------------------------------------

    def retrieve_knowledge_chunks(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        intent: str,
        limit: int = 5,
        filters: FiltersArg = None,
    ) -> List[Chunk]:
        """Ranked, protected and recall-guaranteed chunks for a query."""
        return self.retrieve(organization_id, user_id, query, intent, limit, filters).chunks

    def retrieve_knowledge_chunks_trace(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        intent: str,
        limit: int = 5,
        filters: FiltersArg = None,
    ) -> Dict[str, Any]:
        """Same pipeline as `retrieve_knowledge_chunks`, plus a per-candidate explanation."""
        outcome = self.retrieve(organization_id, user_id, query, intent, limit, filters)
        weights = self.config.weights.model_dump()
        classification = outcome.classification
        return {
            "chunks": outcome.chunks,
            "trace": {
                "mode": outcome.mode,
                "limit": outcome.limit,
                "fallback_reason": outcome.fallback_reason,
                "classification": {
                    "intent": classification.intent,
                    "domain": classification.domain,
                    "funnel_stage": classification.funnel_stage,
                    "source": classification.source,
                }
                if classification
                else None,
                "weights": weights,
                "window": [c.trace() for c in outcome.window],
                "selected": [c.trace() for c in outcome.selected],
                "protected_ids": [c.chunk_id for c in outcome.protected],
                "injected": outcome.injected,
            },
        }

    def enrich_for_chunks(
        self, selected: Sequence[Chunk], limit: int = 10, organization_id: Optional[str] = None
    ) -> List[Chunk]:
        """Metric/instruction chunks from the documents of already-selected chunks."""
        policy = self.config.enrichment
        if not selected or not policy.enabled:
            return []

        item_ids = list(dict.fromkeys(c.knowledge_item_id for c in selected if c.knowledge_item_id))
        if not item_ids:
            return []
        org = organization_id or next(
            (c.organization_id for c in selected if c.organization_id), None
        )
        max_total = min(limit, policy.max_total)
        selected_ids = {c.chunk_id for c in selected}

        try:
            fetch = max(max_total, policy.max_per_item * len(item_ids)) + len(selected_ids)
            rows = self.store.enrichment_chunks(org, item_ids, policy.roles, fetch)
        except Exception as exc:
            logger.warning("retriever_enrichment_failed", error=str(exc))
            return []

        per_item: Dict[str, int] = {}
        enriched = []
        for chunk in rows:
            if chunk.chunk_id in selected_ids or not chunk.is_generatable:
                continue
            if per_item.get(chunk.knowledge_item_id, 0) >= policy.max_per_item:
                continue
            per_item[chunk.knowledge_item_id] = per_item.get(chunk.knowledge_item_id, 0) + 1
            enriched.append(replace(chunk, retrieval_tier="enrichment"))
            if len(enriched) >= max_total:
                break
        return enriched

    def retrieve_business_facts(
        self, organization_id: str, user_id: str, limit: int = 8
    ) -> List[Fact]:
        try:
            return self.store.business_facts(organization_id, user_id, limit)
        except Exception as exc:
            logger.warning("retriever_business_facts_failed", error=str(exc))
            return []

    # ---- pipeline ------------------------------------------------------

    def effective_limit(self, limit: int, intent: str) -> int:
        return max(1, min(int(limit), self.config.intent_cap(intent), self.config.hard_limit))

    def search_filters(self, filters: RetrievalFilters) -> SearchFilters:
        return SearchFilters(
            roles=list(
                filters.vector_roles
                if filters.vector_roles is not None
                else self.config.vector_roles
            ),
            min_token_count=int(
                filters.min_token_count
                if filters.min_token_count is not None
                else self.config.min_token_count
            ),
            min_char_count=int(
                filters.min_char_count
                if filters.min_char_count is not None
                else self.config.min_char_count
            ),
            knowledge_item_ids=list(filters.knowledge_item_ids),
            folder_ids=list(filters.folder_ids),
            source_variant=self.config.source_variant,
        )

    def retrieve(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        intent: str,
        limit: int = 5,
        filters: FiltersArg = None,
    ) -> RetrievalOutcome:
        with request_scope(organization_id, user_id):
            return self._retrieve(organization_id, user_id, query, intent, limit, filters)

    def _retrieve(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        intent: str,
        limit: int,
        filters: FiltersArg,
    ) -> RetrievalOutcome:
        start_time = time.time()
        query = (query or "").strip()
        search_filters = self.search_filters(RetrievalFilters.from_mapping(filters))
        log = LoggerAdapter(logger, org=organization_id, user=user_id)

        classification = self.classifier.classify(query, intent)
        limit = self.effective_limit(limit, classification.intent)

        if not query:
            try:
                chunks = self.store.recent_chunks(organization_id, user_id, search_filters, limit)
            except Exception as exc:
                log.error("retriever_recent_failed", error=str(exc))
                retrieval_fallback_total.labels(reason="recent_failed").inc()
                chunks = []
            outcome = RetrievalOutcome(
                chunks=chunks, mode="recent", limit=limit, classification=classification
            )
        else:
            try:
                outcome = self._semantic(
                    organization_id, user_id, query, classification, limit, search_filters, log
                )
            except Exception as exc:
                log.warning("retriever_keyword_fallback", reason=str(exc))
                outcome = self._keyword_fallback(
                    organization_id, user_id, query, classification, limit, search_filters,
                    reason=type(exc).__name__,
                )

        retrieval_requests_total.labels(mode=outcome.mode).inc()
        retrieval_latency_ms.labels(mode=outcome.mode).observe((time.time() - start_time) * 1000)
        return outcome

    def _embed(self, classification: QueryClassification, query: str) -> List[float]:
        if self.embedder is None:
            return []
        return self.embedder.embed_query(self.expander.embedding_input(query, classification))

    def _semantic(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        classification: QueryClassification,
        limit: int,
        filters: SearchFilters,
        log: LoggerAdapter,
    ) -> RetrievalOutcome:
        vector = self._embed(classification, query)
        if not vector:
            return self._keyword_fallback(
                organization_id, user_id, query, classification, limit, filters,
                reason="no_embedding",
            )

        raw = self.store.search(
            organization_id, user_id, vector, filters, max(self.config.top_n, limit * 3)
        )
        window_size = self.scorer.window_size(limit)

        protected = self.protector.flag(raw)
        ranked = self.scorer.rank(list(raw), classification.domain)
        window = self.protector.reinsert(ranked[:window_size], protected, window_size)
        raw_window = raw[:window_size]

        selection = select_final(
            window,
            limit=limit,
            excerpt_cap=self.config.excerpt_cap,
            intent=classification.intent,
            query=query,
        )

        injected = 0
        if any(injector.enabled for injector in self.injectors) and raw_window:
            item_ids = list(dict.fromkeys(c.knowledge_item_id for c in raw_window))
            chunk_counts = self.store.count_active_chunks(organization_id, item_ids)
            for injector in self.injectors:
                injected += injector.apply(selection, raw_window, chunk_counts, query, log)

        final = selection.finalize()
        self.protector.verify(protected, final, query)

        log.info(
            "retriever_semantic",
            intent=classification.intent,
            domain=classification.domain,
            limit=limit,
            top_n=self.config.top_n,
            returned=len(raw),
            after_selection=len(final),
            protected=len(protected),
            injected=injected,
            excerpt_cap=self.config.excerpt_cap,
            soft_rejected_in_topk=sum(1 for c in window if c.soft_rejected),
            distances=[round(c.distance, 4) for c in raw[:5]],
        )

        return RetrievalOutcome(
            chunks=[c.to_chunk() for c in final],
            mode="semantic",
            limit=limit,
            classification=classification,
            selected=final,
            window=window,
            protected=protected,
            injected=injected,
        )

    def _keyword_fallback(
        self,
        organization_id: str,
        user_id: str,
        query: str,
        classification: QueryClassification,
        limit: int,
        filters: SearchFilters,
        reason: str,
    ) -> RetrievalOutcome:
        retrieval_fallback_total.labels(reason=reason).inc()
        needle = query[: self.config.keyword_prefix_chars]
        try:
            chunks = self.store.keyword_search(organization_id, user_id, needle, filters, limit)
        except Exception as exc:
            logger.error("retriever_keyword_fallback_failed", error=str(exc))
            chunks = []
        chunks = [
            replace(c, retrieval_tier="fallback") for c in chunks if c.is_generatable
        ][:limit]
        return RetrievalOutcome(
            chunks=chunks,
            mode="keyword_fallback",
            limit=limit,
            classification=classification,
            fallback_reason=reason,
        )
