"""
Recall guarantees applied around the composite-ranked window.

- Near-match protection: candidates within `near_match_distance` of the query
  are flagged before scoring, re-inserted into the Top-K window if ranking
  pushed them out, and must survive the final cut.
- Sparse-document recall and small-dense assist: documents with few (or a
  moderate number of) active chunks get their best chunk forced into the
  selection when it is close enough by raw distance.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from ragcore.shared.config import SmallDenseAssistConfig, SparseRecallConfig
from ragcore.shared.observability import LoggerAdapter, get_logger
from ragcore.shared.observability.metrics import (
    invariant_violations_total,
    near_match_protected_total,
    recall_injections_total,
)

from .contracts import AssistReason, Candidate
from .selection import Selection

logger = get_logger(__name__)

NUMERIC_HINT = re.compile(r"(\$|\d|price|cost|amount|million|billion)", re.I)


class NearMatchProtector:
    def __init__(self, near_match_distance: float = 0.10):
        self.near_match_distance = near_match_distance

    def flag(self, candidates: List[Candidate]) -> List[Candidate]:
        """Mark near matches as protected; returns them in input order."""
        protected = []
        for candidate in candidates:
            is_near = candidate.distance <= self.near_match_distance
            candidate.near_match = is_near
            candidate.protected = is_near
            if is_near:
                protected.append(candidate)
        if protected:
            near_match_protected_total.inc(len(protected))
        return protected

    def reinsert(
        self, window: List[Candidate], protected: List[Candidate], window_size: int
    ) -> List[Candidate]:
        """Prepend protected candidates missing from the window, then re-bound it."""
        present = {c.chunk_id for c in window}
        prepend = []
        for candidate in protected:
            if candidate.chunk_id not in present:
                candidate.near_override = True
                prepend.append(candidate)
                present.add(candidate.chunk_id)
        if not prepend:
            return window
        return (prepend + window)[:window_size]

    def verify(
        self, protected: List[Candidate], final: List[Candidate], query: str = ""
    ) -> bool:
        """Log an error-level event if protected candidates existed and none survived."""
        if not protected or any(c.protected for c in final):
            return True
        invariant_violations_total.labels(invariant="protected_dropped").inc()
        logger.error(
            "retriever_invariant_violation_protected_dropped",
            query=query,
            protected_ids=[c.chunk_id for c in protected],
        )
        return False


def choose_best(candidates: List[Candidate], query: str) -> Optional[Candidate]:
    """Prefer a metric chunk for numeric/price-like queries, else minimum distance."""
    if not candidates:
        return None
    if NUMERIC_HINT.search(query or ""):
        metrics = [c for c in candidates if c.chunk.role == "metric"]
        if metrics:
            candidates = metrics
    return min(candidates, key=lambda c: (c.distance, c.chunk_id))


class RecallInjector:
    """One replace-or-append pass over the raw-distance Top-K window."""

    def __init__(
        self,
        reason: AssistReason,
        qualifies: Callable[[int], bool],
        distance_ceiling: float,
        max_injections: int,
        enabled: bool = True,
    ):
        self.reason = reason
        self.qualifies = qualifies
        self.distance_ceiling = distance_ceiling
        self.max_injections = max(0, max_injections)
        self.enabled = enabled

    @classmethod
    def sparse(cls, config: SparseRecallConfig) -> "RecallInjector":
        return cls(
            AssistReason.SPARSE_DOC_RECALL,
            lambda count: count <= config.chunk_threshold,
            config.distance_ceiling,
            config.max_injections,
            enabled=config.enabled,
        )

    @classmethod
    def small_dense(cls, config: SmallDenseAssistConfig) -> "RecallInjector":
        return cls(
            AssistReason.SMALL_DENSE_ASSIST,
            lambda count: config.min_chunks <= count <= config.max_chunks,
            config.distance_ceiling,
            config.max_injections,
            enabled=config.enabled,
        )

    @property
    def event_prefix(self) -> str:
        if self.reason == AssistReason.SPARSE_DOC_RECALL:
            return "retriever_sparse_recall"
        return "retriever_small_dense"

    def candidates_by_document(
        self, raw_window: List[Candidate], chunk_counts: Dict[str, int]
    ) -> "OrderedDict[str, List[Candidate]]":
        grouped: "OrderedDict[str, List[Candidate]]" = OrderedDict()
        for candidate in raw_window:
            item_id = candidate.knowledge_item_id
            if not item_id:
                continue
            count = int(chunk_counts.get(item_id, 0))
            if self.qualifies(count) and candidate.distance <= self.distance_ceiling:
                grouped.setdefault(item_id, []).append(candidate)
        return grouped

    def apply(
        self,
        selection: Selection,
        raw_window: List[Candidate],
        chunk_counts: Dict[str, int],
        query: str,
        log: Optional[LoggerAdapter] = None,
    ) -> int:
        """Inject into `selection` in place; returns the number of injections."""
        if not self.enabled or not raw_window or self.max_injections == 0:
            return 0
        log = log or LoggerAdapter(logger)

        injected = 0
        for item_id, candidates in self.candidates_by_document(raw_window, chunk_counts).items():
            if injected >= self.max_injections:
                break
            if selection.has_protected_from(item_id):
                continue
            best = choose_best(candidates, query)
            if best is None or selection.contains(best.chunk_id):
                continue

            replace_idx = selection.replace_index(item_id)
            if replace_idx is not None:
                existing = selection.items[replace_idx]
                if not best.distance < existing.distance:
                    continue
                if not selection.replace(replace_idx, best):
                    continue
                action = "replace"
                log.info(
                    f"{self.event_prefix}_replace",
                    knowledge_item_id=item_id,
                    replaced_chunk_id=existing.chunk_id,
                )
            else:
                if not selection.append(best):
                    continue
                action = "append"

            best.recall_injected = True
            best.assist_reason = self.reason
            injected += 1
            recall_injections_total.labels(reason=self.reason.value, action=action).inc()
            log.info(
                f"{self.event_prefix}_injection",
                knowledge_item_id=item_id,
                chunk_id=best.chunk_id,
                distance=round(best.distance, 6),
                reason=self.reason.value,
            )
        return injected
