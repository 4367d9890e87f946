"""OpenAI-compatible chat completion client returning decoded JSON objects."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

import httpx

from ragcore.shared.errors import CompletionError
from ragcore.shared.observability import get_logger
from ragcore.shared.resilience import CircuitBreaker

from .base import CompletionMeta

logger = get_logger(__name__)


class OpenAICompatibleJsonClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        max_tokens: int = 800,
        client: Optional[httpx.Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"), timeout=timeout, headers=headers
        )
        self._breaker = circuit_breaker or CircuitBreaker(name="chat_completions")

    def close(self) -> None:
        self._client.close()

    def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.0,
        model: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], CompletionMeta]:
        if not self._breaker.allow_request():
            raise CompletionError("chat completion circuit open")

        payload = {
            "model": model or self._model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
            "max_tokens": self._max_tokens,
        }
        try:
            response = self._client.post("/v1/chat/completions", json=payload)
        except httpx.HTTPError as exc:
            self._breaker.record_failure()
            raise CompletionError(f"chat completion transport error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            self._breaker.record_failure()
            raise CompletionError(
                f"chat completion HTTP {response.status_code}: {response.text[:300]}"
            )
        self._breaker.record_success()

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
            decoded = json.loads(content) if isinstance(content, str) else content
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CompletionError("chat completion returned malformed content") from exc
        if not isinstance(decoded, dict):
            raise CompletionError("chat completion content is not a JSON object")

        meta = CompletionMeta(model=body.get("model"), usage=body.get("usage") or {})
        logger.debug("chat_completion_ok", model=meta.model)
        return decoded, meta
