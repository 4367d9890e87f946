"""
Service layer for context building.

Each service encapsulates one concern (ephemeral structures, budgeting,
assembly, decision tracing) so callers can stay thin.
"""

from .context_assembler import (  # noqa: F401
    ContextAssembler,
    ContextParts,
    GenerationContext,
    apply_chunk_kind_policy,
    assemble_context,
    check_minimum_viable_context,
    ensure_minimum_viable_context,
)
from .context_budget_manager import BudgetExceeded, ContextBudgetManager  # noqa: F401
from .decision_trace import DecisionTraceCollector  # noqa: F401
from .ephemeral_structures import EphemeralStructureGenerator  # noqa: F401

__all__ = [
    "BudgetExceeded",
    "ContextAssembler",
    "ContextBudgetManager",
    "ContextParts",
    "DecisionTraceCollector",
    "EphemeralStructureGenerator",
    "GenerationContext",
    "apply_chunk_kind_policy",
    "assemble_context",
    "check_minimum_viable_context",
    "ensure_minimum_viable_context",
]
