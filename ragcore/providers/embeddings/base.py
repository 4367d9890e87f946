"""
Embedding provider protocol.

Providers used by retrieval must never raise: a failed upstream call
degrades to `deterministic_vector`, and an empty list signals that no
embedding could be produced at all (callers then fall back to keyword
search).
"""

import zlib
from typing import List, Protocol, Sequence, runtime_checkable


@runtime_checkable
class EmbeddingProvider(Protocol):
    @property
    def dims(self) -> int:
        ...

    @property
    def model_id(self) -> str:
        ...

    @property
    def provider_name(self) -> str:
        ...

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """
        Embed many inputs, preserving order.

        Returns:
            One vector per input, each of length `dims`
        """
        ...

    def embed_query(self, text: str) -> List[float]:
        """
        Embed a single query.

        Returns:
            Vector of length `dims`, or [] if nothing could be produced
        """
        ...


def fit_dimensions(vector: Sequence[float], dims: int) -> List[float]:
    """Pad with zeros or truncate so the vector has exactly `dims` entries."""
    values = [float(v) for v in vector]
    if len(values) >= dims:
        return values[:dims]
    return values + [0.0] * (dims - len(values))


def deterministic_vector(text: str, dims: int) -> List[float]:
    """Stable pseudo-embedding: per-dimension CRC32 of `text|i` mapped to [-1, 1]."""
    vector = []
    for i in range(dims):
        h = zlib.crc32(f"{text}|{i}".encode("utf-8")) & 0xFFFFFFFF
        vector.append(h / 4294967295 * 2.0 - 1.0)
    return vector
