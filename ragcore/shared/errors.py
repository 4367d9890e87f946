"""Error taxonomy.

Upstream-unavailable errors (embedding, classification, vector search,
structure generation) are raised by adapters and always caught at the
component seam that owns the fallback. `InsufficientContextError` is the
only terminal, caller-visible error.
"""

from typing import List, Optional


class RagCoreError(RuntimeError):
    """Base class for ragcore errors."""


class EmbeddingProviderError(RagCoreError):
    pass


class ClassificationError(RagCoreError):
    pass


class VectorSearchError(RagCoreError):
    pass


class StructureGenerationError(RagCoreError):
    pass


class CompletionError(RagCoreError):
    """Chat completion call failed or returned something other than a JSON object."""


class InsufficientContextError(RagCoreError):
    """Raised when a generation context lacks the minimum viable inputs."""

    def __init__(self, missing: List[str], message: Optional[str] = None):
        self.missing = list(missing)
        self.issue = "missing_context"
        super().__init__(
            message
            or "Cannot generate meaningful content: missing knowledge sources ("
            + ", ".join(self.missing)
            + ")"
        )
