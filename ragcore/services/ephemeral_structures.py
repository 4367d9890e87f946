"""
On-the-fly writing structures for prompts no canonical structure fits.

Generated structures are request-scoped: nothing here (or in the resolver
that calls it) writes them to a store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ragcore.providers.llm import JsonCompletionClient
from ragcore.shared.errors import CompletionError, StructureGenerationError
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import ephemeral_generation_total

logger = get_logger(__name__)

MIN_SECTIONS = 3
MAX_SECTIONS = 6
MAX_SECTION_CHARS = 60
MAX_PURPOSE_CHARS = 200

SYSTEM_PROMPT = (
    "You generate a minimal writing structure only. Return STRICT JSON only.\n"
    "Hard constraints:\n"
    "- Output 3-6 sections only.\n"
    "- Each section MUST be an object with keys: section, purpose (both strings).\n"
    "- No content wording, no examples, no platform labels.\n"
    "- Return top-level JSON with keys: structure (array), confidence (0-100), "
    "origin ('ephemeral')."
)
RETRY_SUFFIX = (
    "\n\nIMPORTANT: Your previous response was invalid. "
    "Return ONLY JSON with the required shape."
)

SKELETON = [
    {"section": "Hook", "purpose": "Create tension or interest"},
    {"section": "Context", "purpose": "Clarify what this is about"},
    {"section": "Core Point", "purpose": "State the main idea clearly"},
    {"section": "Takeaways", "purpose": "Explain or list the key points"},
    {"section": "CTA", "purpose": "Invite the reader to take an optional next step"},
]


@dataclass
class GeneratedStructure:
    sections: List[Dict[str, str]]
    source: str  # llm | llm_retry | hardcoded
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


def normalize_sections(raw: Any) -> List[Dict[str, str]]:
    """Keep `{section, purpose}` rows with both fields non-empty, trimmed to length."""
    if not isinstance(raw, list):
        return []
    sections = []
    for row in raw:
        if not isinstance(row, dict):
            continue
        section = str(row.get("section") or "").strip()
        purpose = str(row.get("purpose") or "").strip()
        if not section or not purpose:
            continue
        sections.append(
            {"section": section[:MAX_SECTION_CHARS], "purpose": purpose[:MAX_PURPOSE_CHARS]}
        )
    return sections


def is_valid_structure(sections: List[Dict[str, str]]) -> bool:
    return MIN_SECTIONS <= len(sections) <= MAX_SECTIONS


def build_user_prompt(
    prompt: str,
    intent: Optional[str] = None,
    length_band: Optional[str] = None,
    shape_hint: Optional[str] = None,
) -> str:
    lines = []
    if intent:
        lines.append(f"Requested intent (optional): {intent}")
    if length_band:
        lines.append(f"Requested length band (optional): {length_band}")
    if shape_hint:
        lines.append(f"Requested shape hint (optional): {shape_hint}")
    lines.append(f"Prompt: {prompt}")
    return "\n".join(lines)


class EphemeralStructureGenerator:
    def __init__(self, client: Optional[JsonCompletionClient] = None, model: Optional[str] = None):
        self.client = client
        self.model = model

    def generate(
        self,
        prompt: str,
        intent: Optional[str] = None,
        length_band: Optional[str] = None,
        shape_hint: Optional[str] = None,
    ) -> GeneratedStructure:
        """LLM attempt, one stricter retry, then the hardcoded skeleton. Never raises."""
        user = build_user_prompt((prompt or "").strip(), intent, length_band, shape_hint)

        attempts = [("llm", SYSTEM_PROMPT, 0.2), ("llm_retry", SYSTEM_PROMPT + RETRY_SUFFIX, 0.0)]
        if self.client is not None:
            for source, system, temperature in attempts:
                try:
                    result = self._attempt(system, user, temperature, source)
                except StructureGenerationError as exc:
                    logger.warning(
                        "ephemeral_structure_attempt_failed", source=source, error=str(exc)
                    )
                    continue
                ephemeral_generation_total.labels(source=source).inc()
                return result

        ephemeral_generation_total.labels(source="hardcoded").inc()
        return GeneratedStructure(sections=[dict(s) for s in SKELETON], source="hardcoded")

    def _attempt(
        self, system: str, user: str, temperature: float, source: str
    ) -> GeneratedStructure:
        try:
            data, meta = self.client.complete_json(
                system, user, temperature=temperature, model=self.model
            )
        except CompletionError as exc:
            raise StructureGenerationError(str(exc)) from exc
        except Exception as exc:
            raise StructureGenerationError(f"unexpected generator failure: {exc}") from exc

        sections = normalize_sections(data.get("structure") if isinstance(data, dict) else None)
        if not is_valid_structure(sections):
            raise StructureGenerationError(f"invalid structure with {len(sections)} sections")
        return GeneratedStructure(
            sections=sections, source=source, model=meta.model, usage=dict(meta.usage or {})
        )
