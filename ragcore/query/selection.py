"""Final cut over the ranked Top-K window."""

from __future__ import annotations

from functools import cmp_to_key
from typing import Iterable, List, Optional

from ragcore.shared.observability import get_logger

from .contracts import Candidate

logger = get_logger(__name__)

NO_VARIANT_PREFERENCE_INTENTS = frozenset({"story", "example"})


def _variant_order(a: Candidate, b: Candidate) -> int:
    if a.composite != b.composite:
        return -1 if a.composite < b.composite else 1
    if a.knowledge_item_id and a.knowledge_item_id == b.knowledge_item_id:
        a_norm = a.chunk.source_variant == "normalized"
        b_norm = b.chunk.source_variant == "normalized"
        if a_norm != b_norm:
            return -1 if a_norm else 1
    return 0


def prefer_normalized(window: List[Candidate], intent: Optional[str]) -> List[Candidate]:
    """Stable reorder: on equal composite, normalized before raw within one document."""
    if (intent or "") in NO_VARIANT_PREFERENCE_INTENTS:
        return list(window)
    return sorted(window, key=cmp_to_key(_variant_order))


def dedupe_by_id(candidates: Iterable[Candidate]) -> List[Candidate]:
    seen = set()
    unique = []
    for candidate in candidates:
        if not candidate.chunk_id or candidate.chunk_id in seen:
            continue
        seen.add(candidate.chunk_id)
        unique.append(candidate)
    return unique


class Selection:
    """
    Mutable final selection with excerpt-cap accounting.

    Holds at most `limit` candidates once built; recall injectors mutate it
    through `replace` and `append`.
    """

    def __init__(self, limit: int, excerpt_cap: int):
        self.limit = limit
        self.excerpt_cap = excerpt_cap
        self.excerpt_used = 0
        self.items: List[Candidate] = []

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def excerpt_room(self) -> bool:
        return self.excerpt_used < self.excerpt_cap

    def has_protected_from(self, knowledge_item_id: str) -> bool:
        return any(
            c.knowledge_item_id == knowledge_item_id and c.protected for c in self.items
        )

    def contains(self, chunk_id: str) -> bool:
        return any(c.chunk_id == chunk_id for c in self.items)

    def replace_index(self, knowledge_item_id: str) -> Optional[int]:
        """Index of the worst-distance chunk from a document; None if it has a protected one."""
        worst_idx = None
        worst_distance = -1.0
        for idx, c in enumerate(self.items):
            if c.knowledge_item_id != knowledge_item_id:
                continue
            if c.protected:
                return None
            if c.distance > worst_distance:
                worst_distance = c.distance
                worst_idx = idx
        return worst_idx

    def add_protected(self, candidate: Candidate) -> None:
        if candidate.is_excerpt:
            if self.excerpt_room:
                self.excerpt_used += 1
            else:
                candidate.excerpt_cap_bypassed = True
                logger.info(
                    "retriever_excerpt_cap_bypassed",
                    chunk_id=candidate.chunk_id,
                    knowledge_item_id=candidate.knowledge_item_id,
                    distance=round(candidate.distance, 4),
                )
        self.items.append(candidate)

    def add(self, candidate: Candidate) -> bool:
        if candidate.is_excerpt:
            if not self.excerpt_room:
                return False
            self.excerpt_used += 1
        self.items.append(candidate)
        return True

    def replace(self, idx: int, candidate: Candidate) -> bool:
        existing = self.items[idx]
        if candidate.is_excerpt and not existing.is_excerpt:
            if not self.excerpt_room:
                return False
            self.excerpt_used += 1
        elif existing.is_excerpt and not candidate.is_excerpt:
            self.excerpt_used = max(0, self.excerpt_used - 1)
        self.items[idx] = candidate
        return True

    def append(self, candidate: Candidate) -> bool:
        """
        Append an injected candidate. When the selection is full, the last
        candidate that is neither protected nor injected makes room.
        """
        if candidate.is_excerpt and not self.excerpt_room:
            return False
        if len(self.items) >= self.limit:
            victim = self._displaceable_index()
            if victim is None:
                return False
            if self.items.pop(victim).is_excerpt:
                self.excerpt_used -= 1
        if candidate.is_excerpt:
            self.excerpt_used += 1
        self.items.append(candidate)
        return True

    def _displaceable_index(self) -> Optional[int]:
        for idx in range(len(self.items) - 1, -1, -1):
            c = self.items[idx]
            if not (c.protected or c.recall_injected):
                return idx
        return None

    def finalize(self) -> List[Candidate]:
        self.items = dedupe_by_id(self.items)[: self.limit]
        return self.items


def select_final(
    window: List[Candidate],
    limit: int,
    excerpt_cap: int,
    intent: Optional[str] = None,
    query: str = "",
) -> Selection:
    """
    Protected candidates first (by raw distance, may bypass the excerpt cap),
    then non-protected in window order while honoring the cap, up to `limit`.
    """
    ordered = prefer_normalized(window, intent)
    protected = sorted(
        (c for c in ordered if c.protected), key=lambda c: (c.distance, c.chunk_id)
    )
    others = [c for c in ordered if not c.protected]

    if len(protected) > limit:
        logger.warning(
            "retriever_protected_overflow",
            query=query,
            protected_count=len(protected),
            return_k=limit,
        )

    selection = Selection(limit=limit, excerpt_cap=excerpt_cap)
    seen = set()
    for candidate in protected:
        if candidate.chunk_id in seen:
            continue
        seen.add(candidate.chunk_id)
        selection.add_protected(candidate)
    for candidate in others:
        if len(selection) >= limit:
            break
        if candidate.chunk_id in seen:
            continue
        if selection.add(candidate):
            seen.add(candidate.chunk_id)
    return selection
