import pytest

from ragcore.services import BudgetExceeded, ContextBudgetManager, DecisionTraceCollector
from ragcore.services.context_budget_manager import estimate_json_tokens, estimate_tokens


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("a") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_json_tokens({}) == 1
    assert estimate_json_tokens(None) == 0


class TestContextBudgetManager:
    def test_rejects_non_positive_budget(self):
        with pytest.raises(ValueError):
            ContextBudgetManager(0)

    def test_consume_and_remaining(self):
        budget = ContextBudgetManager(100)
        budget.consume(30, "chunks")
        budget.consume(20, "facts")

        assert budget.used == 50
        assert budget.remaining == 50
        assert budget.usage["chunks"] == 30

    def test_overrun_raises_with_reason(self):
        budget = ContextBudgetManager(10)
        budget.consume(8, "chunks")
        with pytest.raises(BudgetExceeded) as excinfo:
            budget.consume(5, "facts")

        assert excinfo.value.limit_reason == "token_cap"
        assert excinfo.value.usage["chunks"] == 8
        assert budget.used == 8

    def test_try_consume(self):
        budget = ContextBudgetManager(10)
        assert budget.try_consume(10, "user")
        assert not budget.try_consume(1, "user")

    def test_forced_consumption_may_overrun(self):
        budget = ContextBudgetManager(10)
        budget.consume(25, "business_context", force=True)
        assert budget.remaining == -15
        assert not budget.can_consume(1)

    def test_unknown_category(self):
        with pytest.raises(ValueError, match="Unknown budget category"):
            ContextBudgetManager(10).consume(1, "swipes")

    def test_report_shape(self):
        budget = ContextBudgetManager(100)
        budget.consume(3, "structure")
        budget.consume(2, "template")
        assert budget.report() == {
            "chunks_tokens": 0,
            "facts_tokens": 0,
            "user_tokens": 0,
            "business_context_tokens": 0,
            "template_tokens": 2,
            "swipe_tokens": 3,
            "total": 5,
        }


def test_decision_trace_records_in_order():
    trace = DecisionTraceCollector()
    assert len(trace) == 0

    trace.record("retrieval", "KnowledgeRetriever", "fallback", "VectorSearchError", tier=2)
    trace.record("structure", "StructureResolver", "applied")

    entries = trace.as_list()
    assert [e["stage"] for e in entries] == ["retrieval", "structure"]
    assert entries[0]["reason"] == "VectorSearchError"
    assert entries[0]["details"] == {"tier": 2}
    assert entries[1]["details"] == {}
