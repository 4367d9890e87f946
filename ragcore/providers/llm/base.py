"""Strict-JSON chat completion protocol used by classification and structure generation."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


@dataclass
class CompletionMeta:
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class JsonCompletionClient(Protocol):
    def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.0,
        model: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], CompletionMeta]:
        """
        Run one chat completion constrained to a JSON object.

        Raises:
            CompletionError: transport failure, non-2xx, or a non-object body
        """
        ...
