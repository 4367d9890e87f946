"""
Qdrant-backed knowledge store.

Collections (cosine distance):
- chunks: one point per chunk; payload mirrors `Chunk` fields plus
  `char_count` and `created_at_ts` (epoch seconds, used for recency order)
- facts: payload mirrors `Fact`
- structures: payload mirrors `StructureCandidate` (`sections` as a list)

Qdrant returns cosine *similarity* as the point score; distance is 1 - score.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from qdrant_client.models import (
    Direction,
    FieldCondition,
    Filter,
    IsEmptyCondition,
    IsNullCondition,
    MatchAny,
    MatchText,
    MatchValue,
    OrderBy,
    PayloadField,
    Range,
)

from ragcore.shared.errors import VectorSearchError
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import vector_search_latency_ms

from .contracts import (
    NEVER_GENERATE,
    Candidate,
    Chunk,
    Fact,
    SearchFilters,
    StructureCandidate,
)

logger = get_logger(__name__)

_SCROLL_PAGE = 256


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _float_or(value: Any, default: float) -> float:
    # Missing or null fields take the model default; an explicit 0 is kept
    return default if value is None else float(value)


def chunk_from_payload(point_id: Any, payload: Dict[str, Any]) -> Chunk:
    return Chunk(
        chunk_id=str(payload.get("chunk_id") or point_id),
        knowledge_item_id=str(payload.get("knowledge_item_id") or ""),
        text=payload.get("text") or "",
        role=payload.get("role") or "other",
        chunk_type=payload.get("chunk_type") or "normalized",
        kind=payload.get("kind"),
        usage_policy=payload.get("usage_policy"),
        authority=payload.get("authority") or "medium",
        confidence=_float_or(payload.get("confidence"), 0.5),
        item_confidence=_float_or(payload.get("item_confidence"), 0.5),
        time_horizon=payload.get("time_horizon") or "unknown",
        token_count=int(payload.get("token_count") or 0),
        domain=payload.get("domain") or "",
        source_variant=payload.get("source_variant") or "normalized",
        organization_id=payload.get("organization_id"),
        user_id=payload.get("user_id"),
        is_active=bool(payload.get("is_active", True)),
        folder_ids=list(payload.get("folder_ids") or []),
        tags=list(payload.get("tags") or []),
        created_at=_parse_datetime(payload.get("created_at")),
    )


def fact_from_payload(point_id: Any, payload: Dict[str, Any]) -> Fact:
    return Fact(
        fact_id=str(payload.get("fact_id") or point_id),
        text=payload.get("text") or "",
        confidence=_float_or(payload.get("confidence"), 0.5),
        fact_type=payload.get("fact_type") or "general",
        knowledge_item_id=payload.get("knowledge_item_id"),
        organization_id=payload.get("organization_id"),
        user_id=payload.get("user_id"),
    )


def structure_from_payload(point_id: Any, payload: Dict[str, Any]) -> StructureCandidate:
    return StructureCandidate(
        structure_id=str(payload.get("structure_id") or point_id),
        sections=list(payload.get("sections") or []),
        intent=payload.get("intent"),
        funnel_stage=payload.get("funnel_stage"),
        cta_type=payload.get("cta_type") or "none",
        confidence=_float_or(payload.get("confidence"), 0.5),
        is_ephemeral=bool(payload.get("is_ephemeral", False)),
        origin=payload.get("origin") or "canonical",
        raw_text=payload.get("raw_text"),
        success_count=int(payload.get("success_count") or 0),
        last_used_at=_parse_datetime(payload.get("last_used_at")),
        organization_id=payload.get("organization_id"),
    )


class QdrantKnowledgeStore:
    def __init__(
        self,
        qdrant_client,
        collection_name: str = "knowledge_chunks",
        *,
        facts_collection_name: str = "business_facts",
        structures_collection_name: str = "swipe_structures",
        timeout: Optional[int] = None,
    ):
        self.client = qdrant_client
        self.collection_name = collection_name
        self.facts_collection_name = facts_collection_name
        self.structures_collection_name = structures_collection_name
        self.timeout = timeout

    # ---- filter construction -------------------------------------------

    @staticmethod
    def _generatable_conditions(organization_id: str, user_id: Optional[str]):
        must = [
            FieldCondition(key="organization_id", match=MatchValue(value=organization_id)),
            FieldCondition(key="is_active", match=MatchValue(value=True)),
        ]
        if user_id is not None:
            must.append(FieldCondition(key="user_id", match=MatchValue(value=user_id)))
        must_not = [
            FieldCondition(key="usage_policy", match=MatchValue(value=NEVER_GENERATE))
        ]
        return must, must_not

    @staticmethod
    def _scope_conditions(filters: SearchFilters) -> List[FieldCondition]:
        conditions = []
        if filters.knowledge_item_ids:
            conditions.append(
                FieldCondition(
                    key="knowledge_item_id", match=MatchAny(any=list(filters.knowledge_item_ids))
                )
            )
        if filters.folder_ids:
            conditions.append(
                FieldCondition(key="folder_ids", match=MatchAny(any=list(filters.folder_ids)))
            )
        return conditions

    def build_filter(
        self,
        organization_id: str,
        user_id: Optional[str],
        filters: SearchFilters,
        scoped_only: bool = False,
    ) -> Filter:
        must, must_not = self._generatable_conditions(organization_id, user_id)
        must.extend(self._scope_conditions(filters))
        if not scoped_only:
            if filters.source_variant:
                must.append(
                    FieldCondition(
                        key="source_variant", match=MatchValue(value=filters.source_variant)
                    )
                )
            if filters.roles:
                must.append(FieldCondition(key="role", match=MatchAny(any=list(filters.roles))))
            if filters.min_token_count > 0:
                must.append(
                    FieldCondition(key="token_count", range=Range(gte=filters.min_token_count))
                )
            if filters.min_char_count > 0:
                must.append(
                    FieldCondition(key="char_count", range=Range(gte=filters.min_char_count))
                )
        return Filter(must=must, must_not=must_not)

    # ---- reads ---------------------------------------------------------

    def _scroll_all(self, collection_name: str, scroll_filter: Filter, limit: Optional[int] = None):
        points = []
        offset = None
        while True:
            page_size = _SCROLL_PAGE if limit is None else min(_SCROLL_PAGE, limit - len(points))
            if page_size <= 0:
                break
            batch, offset = self.client.scroll(
                collection_name=collection_name,
                scroll_filter=scroll_filter,
                limit=page_size,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            points.extend(batch)
            if offset is None:
                break
        return points

    def search(
        self,
        organization_id: str,
        user_id: str,
        query_vector: Sequence[float],
        filters: SearchFilters,
        limit: int,
    ) -> List[Candidate]:
        query_filter = self.build_filter(organization_id, user_id, filters)
        start_time = time.time()
        try:
            query_kwargs: Dict[str, Any] = {
                "collection_name": self.collection_name,
                "query": list(query_vector),
                "limit": limit,
                "query_filter": query_filter,
                "with_payload": True,
            }
            if self.timeout:
                query_kwargs["timeout"] = self.timeout
            response = self.client.query_points(**query_kwargs)
        except Exception as exc:
            logger.error(
                "qdrant_search_failed",
                collection_name=self.collection_name,
                error=str(exc),
            )
            raise VectorSearchError(f"Qdrant search failed: {exc}") from exc
        finally:
            vector_search_latency_ms.labels(operation="search").observe(
                (time.time() - start_time) * 1000
            )

        candidates = []
        for point in response.points:
            chunk = chunk_from_payload(point.id, point.payload or {})
            distance = max(0.0, 1.0 - float(point.score))
            candidates.append(Candidate(chunk=chunk, distance=distance))
        candidates.sort(key=lambda c: (c.distance, c.chunk_id))
        return candidates

    def keyword_search(
        self,
        organization_id: str,
        user_id: str,
        text: str,
        filters: SearchFilters,
        limit: int,
    ) -> List[Chunk]:
        if not text:
            return []
        scroll_filter = self.build_filter(organization_id, user_id, filters, scoped_only=True)
        scroll_filter.must.append(FieldCondition(key="text", match=MatchText(text=text)))
        points = self._scroll_all(self.collection_name, scroll_filter, limit=limit)
        return [chunk_from_payload(p.id, p.payload or {}) for p in points]

    def recent_chunks(
        self, organization_id: str, user_id: str, filters: SearchFilters, limit: int
    ) -> List[Chunk]:
        points, _ = self.client.scroll(
            collection_name=self.collection_name,
            scroll_filter=self.build_filter(organization_id, user_id, filters),
            limit=limit,
            order_by=OrderBy(key="created_at_ts", direction=Direction.DESC),
            with_payload=True,
            with_vectors=False,
        )
        return [chunk_from_payload(p.id, p.payload or {}) for p in points]

    def count_active_chunks(
        self, organization_id: str, knowledge_item_ids: Iterable[str]
    ) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        must, must_not = self._generatable_conditions(organization_id, None)
        for item_id in dict.fromkeys(knowledge_item_ids):
            count_filter = Filter(
                must=must
                + [FieldCondition(key="knowledge_item_id", match=MatchValue(value=item_id))],
                must_not=must_not,
            )
            result = self.client.count(
                collection_name=self.collection_name, count_filter=count_filter, exact=True
            )
            counts[item_id] = int(result.count)
        return counts

    def enrichment_chunks(
        self,
        organization_id: str,
        knowledge_item_ids: Iterable[str],
        roles: Sequence[str],
        limit: int,
    ) -> List[Chunk]:
        item_ids = list(dict.fromkeys(knowledge_item_ids))
        if not item_ids or not roles:
            return []
        must, must_not = self._generatable_conditions(organization_id, None)
        must += [
            FieldCondition(key="knowledge_item_id", match=MatchAny(any=item_ids)),
            FieldCondition(key="role", match=MatchAny(any=list(roles))),
            FieldCondition(key="source_variant", match=MatchValue(value="normalized")),
        ]
        points = self._scroll_all(self.collection_name, Filter(must=must, must_not=must_not))
        chunks = [chunk_from_payload(p.id, p.payload or {}) for p in points]
        chunks.sort(key=lambda c: (-c.confidence, -c.token_count))
        return chunks[:limit]

    def business_facts(self, organization_id: str, user_id: str, limit: int) -> List[Fact]:
        # org-wide facts carry no user_id
        scroll_filter = Filter(
            must=[
                FieldCondition(key="organization_id", match=MatchValue(value=organization_id)),
            ],
            should=[
                FieldCondition(key="user_id", match=MatchValue(value=user_id)),
                IsNullCondition(is_null=PayloadField(key="user_id")),
                IsEmptyCondition(is_empty=PayloadField(key="user_id")),
            ],
        )
        points = self._scroll_all(self.facts_collection_name, scroll_filter)
        facts = [fact_from_payload(p.id, p.payload or {}) for p in points]
        facts.sort(key=lambda f: -f.confidence)
        return facts[:limit]

    def structure_candidates(
        self, organization_id: str, limit: int
    ) -> List[StructureCandidate]:
        scroll_filter = Filter(
            must=[
                FieldCondition(key="organization_id", match=MatchValue(value=organization_id))
            ],
            must_not=[
                FieldCondition(key="is_ephemeral", match=MatchValue(value=True)),
                FieldCondition(key="deleted", match=MatchValue(value=True)),
            ],
        )
        points = self._scroll_all(self.structures_collection_name, scroll_filter)
        structures = [structure_from_payload(p.id, p.payload or {}) for p in points]
        structures.sort(
            key=lambda s: (
                s.confidence,
                s.success_count,
                s.last_used_at.timestamp() if s.last_used_at else 0.0,
            ),
            reverse=True,
        )
        return structures[:limit]

    def structures_by_id(
        self, organization_id: str, structure_ids: Sequence[str]
    ) -> List[StructureCandidate]:
        if not structure_ids:
            return []
        scroll_filter = Filter(
            must=[
                FieldCondition(key="organization_id", match=MatchValue(value=organization_id)),
                FieldCondition(key="structure_id", match=MatchAny(any=list(structure_ids))),
            ]
        )
        points = self._scroll_all(self.structures_collection_name, scroll_filter)
        by_id = {}
        for p in points:
            structure = structure_from_payload(p.id, p.payload or {})
            by_id[structure.structure_id] = structure
        return [by_id[i] for i in structure_ids if i in by_id]
