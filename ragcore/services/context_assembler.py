"""
Generation context assembly and token-budget enforcement.

Assembly order:
1. Near-match chunks are elevated to VIP alongside explicit VIP chunks.
2. At most one structure enters the context, with raw text stripped.
3. Template and structure JSON overhead is reserved up front.
4. VIP chunks, then VIP facts, are admitted while they fit; items that do
   not fit are skipped.
5. Business context is admitted unconditionally and may overrun the budget.
6. Remaining chunks, facts and user context are admitted greedily by
   density (score per token) while they fit.

Business context is prepended to the admitted user context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ragcore.query.contracts import Chunk, Fact, StructureCandidate, Template
from ragcore.shared.config import ContextConfig
from ragcore.shared.errors import InsufficientContextError
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import (
    context_pruned_items_total,
    context_tokens_used,
)

from .context_budget_manager import (
    ContextBudgetManager,
    estimate_json_tokens,
    estimate_tokens,
)
from .decision_trace import DecisionTraceCollector

logger = get_logger(__name__)


@dataclass
class ContextParts:
    """Everything a caller can hand to the assembler for one generation."""

    template: Optional[Template] = None
    chunks: List[Chunk] = field(default_factory=list)
    vip_chunks: List[Chunk] = field(default_factory=list)
    enrichment_chunks: List[Chunk] = field(default_factory=list)
    facts: List[Fact] = field(default_factory=list)
    vip_facts: List[Fact] = field(default_factory=list)
    structures: List[StructureCandidate] = field(default_factory=list)
    vip_structures: List[StructureCandidate] = field(default_factory=list)
    user_context: str = ""
    business_context: str = ""
    business_summary: Optional[str] = None
    reference_ids: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    decision_trace: Optional[DecisionTraceCollector] = None


@dataclass(frozen=True)
class GenerationContext:
    """Immutable result of one assembly."""

    template: Optional[Template]
    chunks: List[Chunk]
    vip_chunks: List[Chunk]
    enrichment_chunks: List[Chunk]
    facts: List[Fact]
    structure: Optional[Dict[str, Any]]
    user_context: str
    business_summary: Optional[str]
    options: Dict[str, Any]
    usage: Dict[str, int]
    provided_counts: Dict[str, int]
    used_counts: Dict[str, int]
    pruned_counts: Dict[str, int]
    snapshot: Dict[str, Any]
    decision_trace: List[Dict[str, Any]] = field(default_factory=list)

    def snapshot_ids(self) -> Dict[str, Any]:
        return dict(self.snapshot)

    def token_usage(self) -> Dict[str, int]:
        return dict(self.usage)

    def missing_inputs(self, template: Optional[Template] = None) -> List[str]:
        """Names of missing inputs; empty when generation can be attempted."""
        missing = []
        if (template or self.template) is None:
            missing.append("template")
        has_knowledge = bool(self.chunks) or bool(self.facts)
        if not has_knowledge and not (self.user_context or "").strip():
            missing.append("knowledge")
        return missing

    def has_minimum_viable_context(self, template: Optional[Template] = None) -> bool:
        return not self.missing_inputs(template)

    def ensure_minimum_viable_context(
        self, template: Optional[Template] = None
    ) -> "GenerationContext":
        missing = self.missing_inputs(template)
        if missing:
            logger.warning("context_insufficient", missing=missing)
            raise InsufficientContextError(missing)
        return self


@dataclass
class _Item:
    kind: str  # chunk | fact | user
    payload: Any
    tokens: int
    density: float


def _density(score: float, tokens: int) -> float:
    return score / tokens if tokens > 0 else score


class ContextAssembler:
    def __init__(self, config: Optional[ContextConfig] = None):
        self.config = config or ContextConfig()

    def assemble(self, parts: ContextParts) -> GenerationContext:
        cfg = self.config
        budget_tokens = int(parts.options.get("context_token_budget", cfg.context_token_budget))
        trace = parts.decision_trace
        if trace is None:
            trace = DecisionTraceCollector()

        # VIP set: explicit VIP chunks plus near matches, deduped by id.
        vip_chunks: List[Chunk] = []
        seen = set()
        for chunk in list(parts.vip_chunks) + [c for c in parts.chunks if c.near_match]:
            if chunk.chunk_id not in seen:
                seen.add(chunk.chunk_id)
                vip_chunks.append(chunk)
        regular_chunks = [c for c in parts.chunks if c.chunk_id not in seen]

        vip_fact_ids = {f.fact_id for f in parts.vip_facts}
        vip_facts = list(parts.vip_facts)[: cfg.max_facts]
        regular_facts = [f for f in parts.facts if f.fact_id not in vip_fact_ids]
        # Caps bound admission only; capped-off items count as pruned
        admit_limit = {
            "chunk": cfg.max_chunks,
            "fact": max(0, cfg.max_facts - len(vip_facts)),
            "user": 1,
        }
        admitted = {"chunk": 0, "fact": 0, "user": 0}

        structures = (list(parts.vip_structures) + list(parts.structures))[: cfg.max_structures]
        structure = structures[0].to_context_dict() if structures else None

        budget = ContextBudgetManager(budget_tokens)
        template_data = parts.template.template_data if parts.template else {}
        budget.consume(estimate_json_tokens(template_data), "template", force=True)
        budget.consume(
            estimate_json_tokens([structure] if structure else []), "structure", force=True
        )

        out_chunks: List[Chunk] = []
        out_facts: List[Fact] = []
        for chunk in vip_chunks:
            if budget.try_consume(estimate_tokens(chunk.text), "chunks"):
                out_chunks.append(chunk)
            else:
                trace.record(
                    "context_budget", "ContextAssembler", "skipped", "vip_over_budget",
                    chunk_id=chunk.chunk_id,
                )
        for fact in vip_facts:
            if budget.try_consume(estimate_tokens(fact.text), "facts"):
                out_facts.append(fact)

        business = (parts.business_context or "").strip()
        if business:
            budget.consume(estimate_tokens(business), "business_context", force=True)

        user_text = (parts.user_context or "").strip()
        items = self._scored_items(regular_chunks, regular_facts, user_text)
        out_user = ""
        used_user = 0
        for item in sorted(items, key=lambda i: i.density, reverse=True):
            if admitted[item.kind] >= admit_limit[item.kind]:
                continue
            if not budget.try_consume(item.tokens, _CATEGORY[item.kind]):
                continue
            admitted[item.kind] += 1
            if item.kind == "chunk":
                out_chunks.append(item.payload)
            elif item.kind == "fact":
                out_facts.append(item.payload)
            else:
                out_user = item.payload
                used_user = 1

        if business:
            out_user = f"{business}\n\n{out_user}" if out_user else business

        provided = {
            "chunks": len(regular_chunks),
            "facts": len(regular_facts),
            "user": 1 if user_text else 0,
        }
        used = {
            "chunks": len(out_chunks) - sum(1 for c in out_chunks if c.chunk_id in seen),
            "facts": len(out_facts) - sum(1 for f in out_facts if f.fact_id in vip_fact_ids),
            "user": used_user,
        }
        pruned = {key: max(0, provided[key] - used[key]) for key in provided}
        usage = budget.report()

        snapshot = {
            "template_id": parts.template.template_id if parts.template else None,
            "chunk_ids": [c.chunk_id for c in out_chunks if c.chunk_id],
            "fact_ids": [f.fact_id for f in out_facts if f.fact_id],
            "swipe_ids": [s.structure_id for s in structures if s.structure_id],
            "reference_ids": list(parts.reference_ids),
        }

        for category, count in pruned.items():
            if count:
                context_pruned_items_total.labels(category=category).inc(count)
        context_tokens_used.observe(usage["total"])
        trace.record(
            "context_assembly",
            "ContextAssembler",
            "applied",
            budget=budget_tokens,
            total_tokens=usage["total"],
            pruned=pruned,
        )
        logger.info(
            "context_assembled",
            budget=budget_tokens,
            usage=usage,
            provided_counts=provided,
            used_counts=used,
            pruned_counts=pruned,
            vip_chunks=len(vip_chunks),
            structure_resolution=structure.get("structure_resolution") if structure else None,
        )

        return GenerationContext(
            template=parts.template,
            chunks=out_chunks,
            vip_chunks=vip_chunks,
            enrichment_chunks=list(parts.enrichment_chunks),
            facts=out_facts,
            structure=structure,
            user_context=out_user,
            business_summary=parts.business_summary or None,
            options={**parts.options, "context_token_budget": budget_tokens},
            usage=usage,
            provided_counts=provided,
            used_counts=used,
            pruned_counts=pruned,
            snapshot=snapshot,
            decision_trace=trace.as_list(),
        )

    def _scored_items(
        self, chunks: Sequence[Chunk], facts: Sequence[Fact], user_text: str
    ) -> List[_Item]:
        items = []
        for chunk in chunks:
            tokens = estimate_tokens(chunk.text)
            score = chunk.score if chunk.score is not None else self.config.default_chunk_score
            items.append(_Item("chunk", chunk, tokens, _density(float(score), tokens)))
        for fact in facts:
            tokens = estimate_tokens(fact.text)
            items.append(_Item("fact", fact, tokens, _density(float(fact.confidence), tokens)))
        if user_text:
            tokens = estimate_tokens(user_text)
            items.append(
                _Item("user", user_text, tokens, self.config.user_context_score / max(1, tokens))
            )
        return items


_CATEGORY = {"chunk": "chunks", "fact": "facts", "user": "user"}


def check_minimum_viable_context(context: GenerationContext) -> List[str]:
    return context.missing_inputs()


def ensure_minimum_viable_context(context: GenerationContext) -> GenerationContext:
    return context.ensure_minimum_viable_context()


def apply_chunk_kind_policy(
    chunks: Sequence[Chunk], config: Optional[ContextConfig] = None
) -> Tuple[List[Chunk], Dict[str, int]]:
    """Facts first, then capped angles and examples, then quotes.

    Angles are dropped entirely when no fact chunk is present and the
    config requires a fact for angles.
    """
    config = config or ContextConfig()
    buckets: Dict[str, List[Chunk]] = {"fact": [], "angle": [], "example": [], "quote": []}
    for chunk in chunks:
        kind = chunk.resolved_kind
        buckets.get(kind, buckets["fact"]).append(chunk)

    if config.require_fact_for_angles and not buckets["fact"]:
        buckets["angle"] = []
    buckets["angle"] = buckets["angle"][: config.max_angles]
    buckets["example"] = buckets["example"][: config.max_examples]

    ordered = buckets["fact"] + buckets["angle"] + buckets["example"] + buckets["quote"]
    breakdown = {
        "facts": len(buckets["fact"]),
        "angles": len(buckets["angle"]),
        "examples": len(buckets["example"]),
        "quotes": len(buckets["quote"]),
    }
    return ordered, breakdown


def assemble_context(
    parts: ContextParts,
    config: Optional[ContextConfig] = None,
    apply_kind_policy: bool = True,
) -> GenerationContext:
    """Apply the chunk-kind policy to ranked chunks, then assemble."""
    config = config or ContextConfig()
    if apply_kind_policy and parts.chunks:
        ordered, breakdown = apply_chunk_kind_policy(parts.chunks, config)
        trace = parts.decision_trace
        if trace is None:
            trace = DecisionTraceCollector()
        trace.record("chunk_kind_policy", "ContextAssembler", "applied", **breakdown)
        parts = ContextParts(**{**parts.__dict__, "chunks": ordered, "decision_trace": trace})
    return ContextAssembler(config).assemble(parts)
