"""
OpenAI-compatible embedding provider over httpx.

Posts to `{base_url}/v1/embeddings`. Non-2xx responses, transport errors and
malformed bodies are logged and degrade to deterministic vectors so that a
retrieval request never fails because the embedding service is down.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from ragcore.shared.errors import EmbeddingProviderError
from ragcore.shared.observability import get_logger
from ragcore.shared.observability.metrics import embedding_requests_total
from ragcore.shared.resilience import CircuitBreaker

from .base import deterministic_vector, fit_dimensions

logger = get_logger(__name__)


class OpenAICompatibleEmbeddingProvider:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        timeout: float = 20.0,
        client: Optional[httpx.Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._model_id = model
        self._dims = dims
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers
        )
        self._breaker = circuit_breaker or CircuitBreaker(name="embeddings")

    @property
    def dims(self) -> int:
        return self._dims

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def provider_name(self) -> str:
        return "openai-compatible"

    def close(self) -> None:
        self._client.close()

    def _request(self, texts: List[str]) -> List[List[float]]:
        payload: Dict[str, Any] = {
            "model": self._model_id,
            "input": texts,
            "encoding_format": "float",
        }
        try:
            response = self._client.post("/v1/embeddings", json=payload)
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(f"Embedding transport error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise EmbeddingProviderError(
                f"Embedding service HTTP {response.status_code}: {response.text[:300]}"
            )
        try:
            rows = response.json()["data"]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingProviderError("Embedding response missing data") from exc

        vectors = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            vectors.append(fit_dimensions(embedding, self._dims) if embedding else [])
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Embedding count mismatch: sent {len(texts)}, got {len(vectors)}"
            )
        return vectors

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        texts = [str(t) for t in texts]
        if not texts:
            return []

        if self._breaker.allow_request():
            try:
                vectors = self._request(texts)
            except EmbeddingProviderError as exc:
                self._breaker.record_failure()
                embedding_requests_total.labels(status="error").inc()
                logger.warning("embeddings_batch_failed", error=str(exc), count=len(texts))
            else:
                self._breaker.record_success()
                embedding_requests_total.labels(status="ok").inc()
                logger.debug("embeddings_batch_ok", count=len(vectors))
                return vectors

        embedding_requests_total.labels(status="fallback").inc()
        logger.info(
            "embeddings_batch_fallback_deterministic", count=len(texts), dim=self._dims
        )
        return [deterministic_vector(t, self._dims) for t in texts]

    def embed_query(self, text: str) -> List[float]:
        vectors = self.embed_documents([text])
        return vectors[0] if vectors else []
