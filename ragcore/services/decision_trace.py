"""Ordered record of what each stage attempted, applied or skipped, and why."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class DecisionTraceEntry:
    stage: str
    component: str
    status: str  # applied | skipped | fallback | error
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class DecisionTraceCollector:
    def __init__(self) -> None:
        self._entries: List[DecisionTraceEntry] = []

    def record(
        self,
        stage: str,
        component: str,
        status: str,
        reason: Optional[str] = None,
        **details: Any,
    ) -> DecisionTraceEntry:
        entry = DecisionTraceEntry(
            stage=stage, component=component, status=status, reason=reason, details=details
        )
        self._entries.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def as_list(self) -> List[Dict[str, Any]]:
        return [asdict(entry) for entry in self._entries]
