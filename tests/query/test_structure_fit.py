from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from ragcore.query.contracts import StructureCandidate, StructureResolutionKind
from ragcore.query.structure_fit import (
    StructureFitScorer,
    StructureResolver,
    derive_length_band,
    derive_shape_hint,
)
from ragcore.query.vector_store import InMemoryKnowledgeStore, KnowledgeStore
from ragcore.services.ephemeral_structures import SKELETON

ORG = "org-1"

STORY_SECTIONS = [
    {"section": "Hook", "purpose": "Grab attention"},
    {"section": "Pivot", "purpose": "Shift the frame"},
    {"section": "Lesson", "purpose": "State the insight"},
    {"section": "Takeaway", "purpose": "Summarize"},
    {"section": "CTA", "purpose": "Invite a reply"},
]


def _sections(n, label="Part"):
    return [{"section": f"{label} {i}", "purpose": "Say one thing"} for i in range(n)]


def _structure(structure_id, sections, intent="story", funnel_stage="awareness", **kwargs):
    return StructureCandidate(
        structure_id=structure_id,
        sections=sections,
        intent=intent,
        funnel_stage=funnel_stage,
        organization_id=ORG,
        **kwargs,
    )


@pytest.mark.parametrize(
    "signature,band",
    [(None, None), ([], None), (["a"] * 5, "short"), (["a"] * 7, "medium"), (["a"] * 8, "long")],
)
def test_derive_length_band(signature, band):
    assert derive_length_band(signature) == band


def test_derive_shape_hint():
    assert derive_shape_hint(["Story hook", "Pivot"]) == "story"
    assert derive_shape_hint([{"section": "Steps"}]) == "list"
    assert derive_shape_hint(["Contrarian claim"]) == "argument"
    assert derive_shape_hint(["Intro", "Body"]) is None
    assert derive_shape_hint(None) is None


class TestStructureFitScorer:
    def test_full_match(self):
        candidate = _structure("s1", STORY_SECTIONS)
        score = StructureFitScorer().score(
            candidate, length_band="short", shape_hint="story",
            intent="story", funnel_stage="awareness",
        )
        # count 40 + shape 30 + cta 6 + simplicity 10 + intent 5 + funnel 5
        assert score == 96

    def test_required_cta_scores_higher(self):
        candidate = _structure("s1", STORY_SECTIONS)
        scorer = StructureFitScorer()
        assert scorer.score(candidate, "short", "story", cta_required=True) == 90
        assert scorer.score(candidate, "short", "story") == 86

    def test_too_many_sections_for_short_band(self):
        scorer = StructureFitScorer()
        assert scorer.count_score(8, "short") == 10
        assert scorer.simplicity_score(8, "short") == 0
        assert scorer.simplicity_score(6, "short") == 5
        assert scorer.score(_structure("s", _sections(8)), "short") == 10

    def test_no_band(self):
        scorer = StructureFitScorer()
        assert scorer.count_score(2, None) == 15
        assert scorer.count_score(5, None) == 30
        assert scorer.score(_structure("s", _sections(2))) == 25

    def test_shape_mismatch(self):
        scorer = StructureFitScorer()
        assert scorer.shape_score("plain sections", "story") == 10
        assert scorer.shape_score("the breakdown", "list") == 30
        assert scorer.shape_score("anything", "argument") == 10
        assert scorer.shape_score("anything", None) == 0

    def test_empty_sections(self):
        assert StructureFitScorer().score(_structure("s", [])) == 25


class TestStructureResolver:
    def test_auto_matches_best_canonical(self):
        store = InMemoryKnowledgeStore(
            structures=[_structure("poor", _sections(8)), _structure("good", STORY_SECTIONS)]
        )
        signature = ["Story hook", "Pivot", "Lesson", "Takeaway", "CTA"]

        with capture_logs() as logs:
            result = StructureResolver(store).resolve_structure(
                ORG, "story", "awareness", requested_signature=signature
            )

        assert result.structure.structure_id == "good"
        assert result.structure.resolution == StructureResolutionKind.AUTO_MATCHED
        assert result.structure.fit_score == 96
        assert result.rejected == {"poor": 30}
        assert result.ephemeral_meta is None
        assert any(e["event"] == "structure_auto_matched" for e in logs)

    def test_ephemeral_fallback_below_threshold(self):
        store = MagicMock(spec=KnowledgeStore)
        store.structure_candidates.return_value = [_structure("weak", _sections(2))]

        result = StructureResolver(store).resolve_structure(ORG, "story", "decision", prompt="x")

        structure = result.structure
        assert structure.structure_id is None
        assert structure.is_ephemeral
        assert structure.origin == "ephemeral"
        assert structure.confidence == 0.3
        assert structure.fit_score == 30
        assert structure.resolution == StructureResolutionKind.EPHEMERAL_FALLBACK
        assert structure.sections == SKELETON
        assert result.rejected == {"weak": 30}
        assert result.ephemeral_meta["source"] == "hardcoded"
        assert [call[0] for call in store.method_calls] == ["structure_candidates"]

    def test_ephemeral_candidates_are_not_scored(self):
        store = MagicMock(spec=KnowledgeStore)
        store.structure_candidates.return_value = [
            _structure("old-ephemeral", STORY_SECTIONS, is_ephemeral=True)
        ]
        result = StructureResolver(store).resolve_structure(ORG, "story", "awareness")

        assert result.scores == {}
        assert result.structure.is_ephemeral
        assert result.structure.fit_score is None

    def test_store_failure_falls_back(self):
        store = MagicMock(spec=KnowledgeStore)
        store.structure_candidates.side_effect = RuntimeError("db gone")

        with capture_logs() as logs:
            result = StructureResolver(store).resolve_structure(ORG, "story", "awareness")

        assert result.structure.is_ephemeral
        assert any(e["event"] == "structure_candidates_failed" for e in logs)

    def test_resolve_user_selected(self):
        store = InMemoryKnowledgeStore(
            structures=[_structure("a", STORY_SECTIONS), _structure("b", _sections(4))]
        )
        result = StructureResolver(store).resolve_user_selected(ORG, ["b", "missing"])

        assert [s.structure_id for s in result.selected] == ["b"]
        assert result.selected[0].resolution == StructureResolutionKind.USER_SELECTED
        assert result.selected[0].fit_score is None

    def test_stored_structures_are_left_untouched(self):
        stored = _structure("good", STORY_SECTIONS)
        store = InMemoryKnowledgeStore(structures=[stored])
        resolver = StructureResolver(store)
        signature = ["Story hook", "Pivot", "Lesson", "Takeaway", "CTA"]

        first = resolver.resolve_structure(ORG, "story", "awareness", requested_signature=signature)
        resolver.resolve_user_selected(ORG, ["good"])

        assert first.structure is not stored
        assert first.structure.resolution == StructureResolutionKind.AUTO_MATCHED
        assert first.structure.fit_score == 96
        assert stored.resolution is None
        assert stored.fit_score is None
