from .base import EmbeddingProvider, deterministic_vector, fit_dimensions
from .deterministic import DeterministicEmbeddingProvider
from .http import OpenAICompatibleEmbeddingProvider

__all__ = [
    "EmbeddingProvider",
    "DeterministicEmbeddingProvider",
    "OpenAICompatibleEmbeddingProvider",
    "deterministic_vector",
    "fit_dimensions",
]
