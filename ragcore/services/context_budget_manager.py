"""
ContextBudgetManager tracks token spend for one generation context.

It provides per-category accounting (template, structure, chunks, facts,
user, business_context) and raises BudgetExceeded with a limit_reason so the
assembler can skip items that do not fit rather than truncating text.
Forced admissions (business context) are recorded even when they overrun the
budget.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict

CATEGORIES = ("template", "structure", "chunks", "facts", "user", "business_context")

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough heuristic: 1 token per 4 characters, at least 1 for non-empty text."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def estimate_json_tokens(payload: Any) -> int:
    if payload is None:
        return 0
    return estimate_tokens(json.dumps(payload, ensure_ascii=False, default=str))


class BudgetExceeded(RuntimeError):
    """Raised when consuming tokens would exceed the context budget."""

    def __init__(self, limit_reason: str, message: str, usage: Dict[str, int]):
        super().__init__(message)
        self.limit_reason = limit_reason
        self.usage = usage


@dataclass
class ContextBudgetManager:
    token_budget: int
    _usage: Dict[str, int] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.token_budget <= 0:
            raise ValueError("Budget must be a positive integer")
        self._usage = {category: 0 for category in CATEGORIES}

    @property
    def used(self) -> int:
        return sum(self._usage.values())

    @property
    def remaining(self) -> int:
        return self.token_budget - self.used

    @property
    def usage(self) -> Dict[str, int]:
        return dict(self._usage)

    def can_consume(self, tokens: int) -> bool:
        return self.used + tokens <= self.token_budget

    def consume(self, tokens: int, category: str, force: bool = False) -> None:
        if category not in self._usage:
            raise ValueError(f"Unknown budget category '{category}'")
        if not force and not self.can_consume(tokens):
            raise BudgetExceeded(
                limit_reason="token_cap",
                message=(
                    f"Budget exhausted (category={category}, tokens={tokens}, "
                    f"used={self.used}, budget={self.token_budget})"
                ),
                usage=self.usage,
            )
        self._usage[category] += tokens

    def try_consume(self, tokens: int, category: str) -> bool:
        try:
            self.consume(tokens, category)
        except BudgetExceeded:
            return False
        return True

    def report(self) -> Dict[str, int]:
        """Usage in the shape recorded on a GenerationContext."""
        return {
            "chunks_tokens": self._usage["chunks"],
            "facts_tokens": self._usage["facts"],
            "user_tokens": self._usage["user"],
            "business_context_tokens": self._usage["business_context"],
            "template_tokens": self._usage["template"],
            "swipe_tokens": self._usage["structure"],
            "total": self.used,
        }
