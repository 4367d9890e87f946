"""Offline embedding provider for evaluation runs and tests."""

from typing import List

from .base import deterministic_vector


class DeterministicEmbeddingProvider:
    def __init__(self, dims: int = 1536, model_id: str = "deterministic-crc32"):
        self._dims = dims
        self._model_id = model_id

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_name(self) -> str:
        return "deterministic"

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [deterministic_vector(str(t), self._dims) for t in texts]

    def embed_query(self, text: str) -> List[float]:
        return deterministic_vector(str(text), self._dims)
