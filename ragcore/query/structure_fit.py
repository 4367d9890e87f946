"""
Structural-fit scoring and structure resolution.

fit = count (0-40, band-aware) + shape (0-30, hint-aware) + cta (0-10)
    + simplicity (0-10) + intent (+5) + funnel (+5), clamped to [0, 100].

The best canonical candidate is accepted at `min_fit_score` or above;
otherwise an ephemeral structure is generated and returned with a fixed
low confidence. Ephemeral structures are never persisted.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from ragcore.services.ephemeral_structures import EphemeralStructureGenerator
from ragcore.shared.config import StructureConfig
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import structure_resolutions_total

from .contracts import StructureCandidate, StructureResolutionKind
from .vector_store import KnowledgeStore

logger = get_logger(__name__)

LENGTH_BAND_RANGES = {"short": (3, 5), "medium": (4, 7), "long": (6, 10)}

STORY_MARKERS = ("pivot", "turn", "reframe", "twist")
LIST_MARKERS = ("list", "steps", "breakdown", "takeaways")
CTA_MARKERS = ("cta", "call to action", "subscribe", "follow")


def _blob(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str).lower()


def derive_length_band(signature: Optional[Sequence[Any]]) -> Optional[str]:
    if not signature:
        return None
    n = len(signature)
    if n <= 5:
        return "short"
    if n <= 7:
        return "medium"
    return "long"


def derive_shape_hint(signature: Optional[Sequence[Any]]) -> Optional[str]:
    if not signature:
        return None
    joined = _blob(list(signature))
    if "story" in joined:
        return "story"
    if "list" in joined or "steps" in joined or "takeaways" in joined:
        return "list"
    if "argument" in joined or "contrarian" in joined:
        return "argument"
    return None


class StructureFitScorer:
    def count_score(self, count: int, length_band: Optional[str]) -> int:
        if length_band:
            low, high = LENGTH_BAND_RANGES.get(length_band, (3, 8))
            if low <= count <= high:
                return 40
            distance = low - count if count < low else count - high
            return max(0, 40 - distance * 10)
        return 30 if 4 <= count <= 7 else 15

    def shape_score(self, blob: str, shape_hint: Optional[str]) -> int:
        if shape_hint == "story":
            return 30 if any(m in blob for m in STORY_MARKERS) else 10
        if shape_hint == "list":
            return 30 if any(m in blob for m in LIST_MARKERS) else 10
        if shape_hint:
            return 10
        return 0

    def cta_score(self, blob: str, cta_required: bool) -> int:
        if not any(m in blob for m in CTA_MARKERS):
            return 0
        return 10 if cta_required else 6

    def simplicity_score(self, count: int, length_band: Optional[str]) -> int:
        if length_band == "short" and count > 7:
            return 0
        if length_band == "short" and count > 5:
            return 5
        return 10

    def score(
        self,
        candidate: StructureCandidate,
        length_band: Optional[str] = None,
        shape_hint: Optional[str] = None,
        intent: Optional[str] = None,
        funnel_stage: Optional[str] = None,
        cta_required: bool = False,
    ) -> int:
        sections = candidate.sections or []
        count = len(sections)
        blob = _blob(sections)

        total = (
            self.count_score(count, length_band)
            + self.shape_score(blob, shape_hint)
            + self.cta_score(blob, cta_required)
            + self.simplicity_score(count, length_band)
        )
        if intent and candidate.intent and candidate.intent == intent:
            total += 5
        if funnel_stage and candidate.funnel_stage and candidate.funnel_stage == funnel_stage:
            total += 5
        return int(max(0, min(100, total)))


@dataclass
class StructureResolution:
    selected: List[StructureCandidate]
    scores: Dict[str, int] = field(default_factory=dict)
    rejected: Dict[str, int] = field(default_factory=dict)
    ephemeral_meta: Optional[Dict[str, Any]] = None

    @property
    def structure(self) -> Optional[StructureCandidate]:
        return self.selected[0] if self.selected else None


class StructureResolver:
    def __init__(
        self,
        store: KnowledgeStore,
        generator: Optional[EphemeralStructureGenerator] = None,
        scorer: Optional[StructureFitScorer] = None,
        config: Optional[StructureConfig] = None,
    ):
        self.store = store
        self.generator = generator or EphemeralStructureGenerator()
        self.scorer = scorer or StructureFitScorer()
        self.config = config or StructureConfig()

    def resolve_structure(
        self,
        organization_id: str,
        intent: Optional[str],
        funnel_stage: Optional[str],
        platform: str = "",
        prompt: str = "",
        requested_signature: Optional[Sequence[Any]] = None,
    ) -> StructureResolution:
        """Pick the best-fitting canonical structure or fall back to an ephemeral one."""
        length_band = derive_length_band(requested_signature)
        shape_hint = derive_shape_hint(requested_signature)

        try:
            candidates = self.store.structure_candidates(
                organization_id, max(1, self.config.candidate_limit)
            )
        except Exception as exc:
            logger.warning("structure_candidates_failed", error=str(exc))
            candidates = []

        scores: Dict[str, int] = {}
        best: Optional[StructureCandidate] = None
        best_score = -1
        for candidate in candidates:
            if candidate.is_ephemeral:
                continue
            fit = self.scorer.score(
                candidate,
                length_band=length_band,
                shape_hint=shape_hint,
                intent=intent,
                funnel_stage=funnel_stage,
            )
            scores[str(candidate.structure_id)] = fit
            if fit > best_score:
                best_score = fit
                best = candidate

        min_fit = self.config.min_fit_score
        if best is not None and best_score >= min_fit:
            # Stored candidates are never modified; the result is a copy
            best = replace(
                best,
                sections=list(best.sections),
                fit_score=best_score,
                resolution=StructureResolutionKind.AUTO_MATCHED,
            )
            structure_resolutions_total.labels(resolution="auto_matched").inc()
            logger.info(
                "structure_auto_matched",
                structure_id=best.structure_id,
                fit_score=best_score,
                platform=platform,
            )
            return StructureResolution(
                selected=[best],
                scores=scores,
                rejected={k: v for k, v in scores.items() if v < min_fit},
            )

        generated = self.generator.generate(
            prompt, intent=intent, length_band=length_band, shape_hint=shape_hint
        )
        ephemeral = StructureCandidate(
            structure_id=None,
            sections=generated.sections,
            intent=intent or "",
            funnel_stage=funnel_stage or "",
            cta_type="none",
            confidence=self.config.ephemeral_confidence,
            fit_score=best_score if best_score >= 0 else None,
            resolution=StructureResolutionKind.EPHEMERAL_FALLBACK,
            is_ephemeral=True,
            origin="ephemeral",
            organization_id=organization_id,
        )
        structure_resolutions_total.labels(resolution="ephemeral_fallback").inc()
        logger.info(
            "structure_ephemeral_fallback",
            best_fit_score=ephemeral.fit_score,
            candidates=len(scores),
            source=generated.source,
            platform=platform,
        )
        return StructureResolution(
            selected=[ephemeral],
            scores=scores,
            rejected=dict(scores),
            ephemeral_meta={
                "model": generated.model,
                "source": generated.source,
                "usage": generated.usage,
            },
        )

    def resolve_user_selected(
        self, organization_id: str, structure_ids: Sequence[str]
    ) -> StructureResolution:
        """Load caller-chosen structures without scoring them."""
        try:
            structures = self.store.structures_by_id(organization_id, list(structure_ids))
        except Exception as exc:
            logger.warning("structure_user_selected_failed", error=str(exc))
            structures = []
        structures = [
            replace(
                s, sections=list(s.sections), resolution=StructureResolutionKind.USER_SELECTED
            )
            for s in structures
        ]
        if structures:
            structure_resolutions_total.labels(resolution="user_selected").inc()
        return StructureResolution(selected=structures)
