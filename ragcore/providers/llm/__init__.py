from .base import CompletionMeta, JsonCompletionClient
from .http import OpenAICompatibleJsonClient

__all__ = ["CompletionMeta", "JsonCompletionClient", "OpenAICompatibleJsonClient"]
