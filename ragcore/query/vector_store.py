"""
Knowledge store interface and the in-process implementation.

Every read path excludes inactive chunks and chunks whose usage policy is
`never_generate`. Vector search returns candidates ordered by ascending
cosine distance; ranking happens later in `ranking.CompositeScorer`.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .contracts import Candidate, Chunk, Fact, SearchFilters, StructureCandidate


@runtime_checkable
class KnowledgeStore(Protocol):
    def search(
        self,
        organization_id: str,
        user_id: str,
        query_vector: Sequence[float],
        filters: SearchFilters,
        limit: int,
    ) -> List[Candidate]:
        """Nearest chunks by cosine distance, ascending. Raises VectorSearchError."""
        ...

    def keyword_search(
        self,
        organization_id: str,
        user_id: str,
        text: str,
        filters: SearchFilters,
        limit: int,
    ) -> List[Chunk]:
        """Case-insensitive substring match; only item/folder scoping applies."""
        ...

    def recent_chunks(
        self, organization_id: str, user_id: str, filters: SearchFilters, limit: int
    ) -> List[Chunk]:
        ...

    def count_active_chunks(
        self, organization_id: str, knowledge_item_ids: Iterable[str]
    ) -> Dict[str, int]:
        ...

    def enrichment_chunks(
        self,
        organization_id: str,
        knowledge_item_ids: Iterable[str],
        roles: Sequence[str],
        limit: int,
    ) -> List[Chunk]:
        ...

    def business_facts(self, organization_id: str, user_id: str, limit: int) -> List[Fact]:
        ...

    def structure_candidates(
        self, organization_id: str, limit: int
    ) -> List[StructureCandidate]:
        """Canonical structures only, best-known first."""
        ...

    def structures_by_id(
        self, organization_id: str, structure_ids: Sequence[str]
    ) -> List[StructureCandidate]:
        ...


def cosine_distances(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """1 - cosine similarity of `query` against every row of `matrix`."""
    q = np.asarray(query, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * q_norm
    sims = np.divide(
        matrix @ q, denom, out=np.zeros(matrix.shape[0], dtype=np.float64), where=denom > 0
    )
    return 1.0 - sims


class InMemoryKnowledgeStore:
    """
    Numpy-backed store holding chunks, facts and structures in process.

    Used for evaluation runs, small deployments and as the test double.
    Distances can be pinned per chunk (`pinned_distances`) so ranking
    scenarios are reproducible without crafting embeddings.
    """

    def __init__(
        self,
        chunks: Optional[Iterable[Chunk]] = None,
        facts: Optional[Iterable[Fact]] = None,
        structures: Optional[Iterable[StructureCandidate]] = None,
        pinned_distances: Optional[Dict[str, float]] = None,
    ):
        self.chunks: List[Chunk] = list(chunks or [])
        self.facts: List[Fact] = list(facts or [])
        self.structures: List[StructureCandidate] = list(structures or [])
        self.pinned_distances: Dict[str, float] = dict(pinned_distances or {})

    def add_chunk(self, chunk: Chunk, distance: Optional[float] = None) -> None:
        self.chunks.append(chunk)
        if distance is not None:
            self.pinned_distances[chunk.chunk_id] = distance

    def _scoped(self, organization_id: str, user_id: Optional[str]) -> List[Chunk]:
        return [
            c
            for c in self.chunks
            if c.organization_id == organization_id
            and (user_id is None or c.user_id == user_id)
        ]

    def search(
        self,
        organization_id: str,
        user_id: str,
        query_vector: Sequence[float],
        filters: SearchFilters,
        limit: int,
    ) -> List[Candidate]:
        eligible = [
            c
            for c in self._scoped(organization_id, user_id)
            if filters.admits(c)
            and (c.chunk_id in self.pinned_distances or c.embedding is not None)
        ]
        if not eligible:
            return []

        distances: Dict[str, float] = {}
        embedded = [c for c in eligible if c.chunk_id not in self.pinned_distances]
        if embedded:
            matrix = np.asarray([c.embedding for c in embedded], dtype=np.float64)
            for chunk, distance in zip(embedded, cosine_distances(query_vector, matrix)):
                distances[chunk.chunk_id] = float(distance)
        for chunk in eligible:
            if chunk.chunk_id in self.pinned_distances:
                distances[chunk.chunk_id] = float(self.pinned_distances[chunk.chunk_id])

        ordered = sorted(eligible, key=lambda c: (distances[c.chunk_id], c.chunk_id))
        return [
            Candidate(chunk=c, distance=max(0.0, distances[c.chunk_id]))
            for c in ordered[: max(0, limit)]
        ]

    def keyword_search(
        self,
        organization_id: str,
        user_id: str,
        text: str,
        filters: SearchFilters,
        limit: int,
    ) -> List[Chunk]:
        needle = (text or "").lower()
        if not needle:
            return []
        matches = [
            c
            for c in self._scoped(organization_id, user_id)
            if filters.admits(c, scoped_only=True) and needle in (c.text or "").lower()
        ]
        return matches[: max(0, limit)]

    def recent_chunks(
        self, organization_id: str, user_id: str, filters: SearchFilters, limit: int
    ) -> List[Chunk]:
        eligible = [c for c in self._scoped(organization_id, user_id) if filters.admits(c)]
        eligible.sort(
            key=lambda c: c.created_at.timestamp() if c.created_at else 0.0, reverse=True
        )
        return eligible[: max(0, limit)]

    def count_active_chunks(
        self, organization_id: str, knowledge_item_ids: Iterable[str]
    ) -> Dict[str, int]:
        wanted = set(knowledge_item_ids)
        counts = {item_id: 0 for item_id in wanted}
        for c in self._scoped(organization_id, None):
            if c.knowledge_item_id in wanted and c.is_generatable:
                counts[c.knowledge_item_id] += 1
        return counts

    def enrichment_chunks(
        self,
        organization_id: str,
        knowledge_item_ids: Iterable[str],
        roles: Sequence[str],
        limit: int,
    ) -> List[Chunk]:
        wanted = set(knowledge_item_ids)
        rows = [
            c
            for c in self._scoped(organization_id, None)
            if c.knowledge_item_id in wanted
            and c.role in roles
            and c.source_variant == "normalized"
            and c.is_generatable
        ]
        rows.sort(key=lambda c: (-c.confidence, -c.token_count))
        return rows[: max(0, limit)]

    def business_facts(self, organization_id: str, user_id: str, limit: int) -> List[Fact]:
        rows = [
            f
            for f in self.facts
            if f.organization_id == organization_id
            and (f.user_id is None or f.user_id == user_id)
        ]
        rows.sort(key=lambda f: -f.confidence)
        return rows[: max(0, limit)]

    def structure_candidates(
        self, organization_id: str, limit: int
    ) -> List[StructureCandidate]:
        rows = [
            s
            for s in self.structures
            if s.organization_id == organization_id and not s.is_ephemeral
        ]
        rows.sort(
            key=lambda s: (
                s.confidence,
                s.success_count,
                s.last_used_at.timestamp() if s.last_used_at else 0.0,
            ),
            reverse=True,
        )
        return rows[: max(0, limit)]

    def structures_by_id(
        self, organization_id: str, structure_ids: Sequence[str]
    ) -> List[StructureCandidate]:
        by_id = {
            s.structure_id: s
            for s in self.structures
            if s.organization_id == organization_id
        }
        return [by_id[i] for i in structure_ids if i in by_id]
