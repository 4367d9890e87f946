"""Request-scoped data types shared by retrieval, structure resolution and assembly.

Instances are built from store rows for a single request and never written
back; the core only annotates them (score, tier, flags) while ranking.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

NEVER_GENERATE = "never_generate"
INSPIRATION_ONLY = "inspiration_only"

ROLE_KIND_MAP = {
    "definition": "fact",
    "metric": "fact",
    "causal_claim": "fact",
    "belief_high": "angle",
    "belief_medium": "angle",
    "strategic_claim": "angle",
    "heuristic": "angle",
    "example": "example",
    "quote": "quote",
}

_DOMAIN_ALIASES = {
    "search": "seo",
    "seo": "seo",
    "content": "content marketing",
    "content marketing": "content marketing",
    "saas": "saas",
    "monetization": "monetization",
    "growth": "growth",
    "business": "business strategy",
    "strategy": "business strategy",
    "business strategy": "business strategy",
}


def normalize_domain(domain: Optional[str]) -> str:
    """Trim, collapse whitespace, lowercase, then map known aliases."""
    value = re.sub(r"\s+", " ", (domain or "").strip()).lower()
    return _DOMAIN_ALIASES.get(value, value)


class AssistReason(str, Enum):
    SPARSE_DOC_RECALL = "sparse_doc_recall"
    SMALL_DENSE_ASSIST = "small_dense_assist"


class StructureResolutionKind(str, Enum):
    AUTO_MATCHED = "auto_matched"
    EPHEMERAL_FALLBACK = "ephemeral_fallback"
    USER_SELECTED = "user_selected"


@dataclass
class Chunk:
    """A minimal retrievable unit of knowledge text."""

    chunk_id: str
    knowledge_item_id: str
    text: str
    role: str = "other"
    chunk_type: str = "normalized"
    kind: Optional[str] = None
    usage_policy: Optional[str] = None
    authority: str = "medium"
    confidence: float = 0.5
    item_confidence: float = 0.5
    time_horizon: str = "unknown"
    token_count: int = 0
    domain: str = ""
    source_variant: str = "normalized"
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    is_active: bool = True
    folder_ids: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    created_at: Optional[datetime] = None

    # Set on output
    score: Optional[float] = None
    retrieval_tier: str = "primary"
    near_match: bool = False

    def __post_init__(self):
        self.domain = normalize_domain(self.domain)

    @property
    def resolved_kind(self) -> str:
        if self.usage_policy == INSPIRATION_ONLY:
            return "angle"
        if self.kind:
            return self.kind
        return ROLE_KIND_MAP.get(self.role, "fact")

    @property
    def is_generatable(self) -> bool:
        return self.is_active and self.usage_policy != NEVER_GENERATE


@dataclass
class ScoreFeatures:
    """Per-candidate feature values feeding the weighted score."""

    similarity: float = 0.0
    domain_match: float = 0.0
    role_score: float = 0.0
    authority_score: float = 0.0
    confidence_score: float = 0.0
    time_score: float = 0.0
    role_boost: float = 1.0

    def as_dict(self) -> Dict[str, float]:
        return {
            "similarity": round(self.similarity, 6),
            "domain_match": self.domain_match,
            "role_score": self.role_score,
            "authority_score": self.authority_score,
            "confidence_score": round(self.confidence_score, 6),
            "time_score": self.time_score,
            "role_boost": self.role_boost,
        }


@dataclass
class Candidate:
    """A chunk under consideration, tagged with ranking and recall state."""

    chunk: Chunk
    distance: float
    features: ScoreFeatures = field(default_factory=ScoreFeatures)
    weighted_score: float = 0.0
    composite: float = 1.0
    near_match: bool = False
    protected: bool = False
    near_override: bool = False
    recall_injected: bool = False
    soft_rejected: bool = False
    excerpt_cap_bypassed: bool = False
    assist_reason: Optional[AssistReason] = None

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def knowledge_item_id(self) -> str:
        return self.chunk.knowledge_item_id

    @property
    def similarity(self) -> float:
        return self.features.similarity

    @property
    def is_excerpt(self) -> bool:
        return self.chunk.chunk_type == "excerpt"

    def to_chunk(self) -> Chunk:
        """Copy of the chunk annotated with this candidate's weighted score."""
        return replace(
            self.chunk, score=round(self.weighted_score, 6), near_match=self.near_match
        )

    def trace(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "knowledge_item_id": self.knowledge_item_id,
            "distance": round(self.distance, 6),
            "weighted_score": round(self.weighted_score, 6),
            "composite": round(self.composite, 6),
            "features": self.features.as_dict(),
            "near_match": self.near_match,
            "protected": self.protected,
            "near_override": self.near_override,
            "recall_injected": self.recall_injected,
            "soft_rejected": self.soft_rejected,
            "excerpt_cap_bypassed": self.excerpt_cap_bypassed,
            "assist_reason": self.assist_reason.value if self.assist_reason else None,
        }


@dataclass
class Fact:
    """Structured business fact."""

    fact_id: str
    text: str
    confidence: float = 0.5
    fact_type: str = "general"
    knowledge_item_id: Optional[str] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class StructureCandidate:
    """Canonical (persisted) or ephemeral swipe structure."""

    structure_id: Optional[str]
    sections: List[Dict[str, Any]]
    intent: Optional[str] = None
    funnel_stage: Optional[str] = None
    cta_type: str = "none"
    confidence: float = 0.5
    fit_score: Optional[int] = None
    resolution: Optional[StructureResolutionKind] = None
    is_ephemeral: bool = False
    origin: str = "canonical"
    raw_text: Optional[str] = None
    success_count: int = 0
    last_used_at: Optional[datetime] = None
    organization_id: Optional[str] = None

    def to_context_dict(self) -> Dict[str, Any]:
        """Serializable form entering a generation context; raw text is stripped."""
        return {
            "id": self.structure_id,
            "intent": self.intent,
            "funnel_stage": self.funnel_stage,
            "cta_type": self.cta_type,
            "structure": self.sections,
            "confidence": self.confidence,
            "fit_score": self.fit_score,
            "structure_resolution": self.resolution.value if self.resolution else None,
            "origin": self.origin,
        }


@dataclass
class Template:
    """Output template reference; only its serialized data enters the budget."""

    template_id: Optional[str]
    template_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalFilters:
    """Caller-supplied scoping for knowledge chunk retrieval."""

    vector_roles: Optional[List[str]] = None
    min_token_count: Optional[int] = None
    min_char_count: Optional[int] = None
    knowledge_item_ids: List[str] = field(default_factory=list)
    folder_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, filters: Optional[Dict[str, Any]]) -> "RetrievalFilters":
        """Build filters from a loose mapping; single ids are promoted to lists."""
        if isinstance(filters, RetrievalFilters):
            return filters
        filters = dict(filters or {})

        def _ids(plural: str, singular: str) -> List[str]:
            values = filters.get(plural) or []
            if isinstance(values, (str, int)):
                values = [values]
            ids = [str(v) for v in values if str(v).strip()]
            single = filters.get(singular)
            if single and str(single) not in ids:
                ids.insert(0, str(single))
            return ids

        roles = filters.get("vector_roles")
        if isinstance(roles, str):
            roles = [roles]
        return cls(
            vector_roles=[r for r in roles if r] if roles else None,
            min_token_count=filters.get("min_token_count"),
            min_char_count=filters.get("min_char_count"),
            knowledge_item_ids=_ids("knowledge_item_ids", "knowledge_item_id"),
            folder_ids=_ids("folder_ids", "folder_id"),
        )


@dataclass
class SearchFilters:
    """Fully resolved filter set handed to a KnowledgeStore."""

    roles: List[str]
    min_token_count: int
    min_char_count: int
    knowledge_item_ids: List[str] = field(default_factory=list)
    folder_ids: List[str] = field(default_factory=list)
    source_variant: Optional[str] = "normalized"

    def admits(self, chunk: Chunk, scoped_only: bool = False) -> bool:
        """Whether a chunk passes these filters (in-process stores)."""
        if not chunk.is_generatable:
            return False
        if self.knowledge_item_ids and chunk.knowledge_item_id not in self.knowledge_item_ids:
            return False
        if self.folder_ids and not set(self.folder_ids) & set(chunk.folder_ids):
            return False
        if scoped_only:
            return True
        if self.source_variant and chunk.source_variant != self.source_variant:
            return False
        if self.roles and chunk.role not in self.roles:
            return False
        if chunk.token_count < self.min_token_count:
            return False
        if len(chunk.text or "") < self.min_char_count:
            return False
        return True
