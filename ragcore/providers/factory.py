"""
Provider factory: builds collaborators from Config (YAML) and Settings (env).

Selection:
- EMBEDDINGS_PROVIDER=deterministic forces the offline provider
- otherwise an OpenAI-compatible endpoint at EMBEDDING_BASE_URL
- LLM_API_KEY unset → no completion client (classification is heuristic-only,
  ephemeral structures use the hardcoded skeleton)
- vector_store.backend selects Qdrant (QDRANT_HOST/QDRANT_PORT) or the
  in-memory store
"""

import os
from typing import Optional

from qdrant_client import QdrantClient

from ragcore.providers.embeddings import (
    DeterministicEmbeddingProvider,
    EmbeddingProvider,
    OpenAICompatibleEmbeddingProvider,
)
from ragcore.providers.llm import JsonCompletionClient, OpenAICompatibleJsonClient
from ragcore.query.classification import QueryClassifier
from ragcore.query.qdrant_store import QdrantKnowledgeStore
from ragcore.query.retriever import KnowledgeRetriever
from ragcore.query.structure_fit import StructureResolver
from ragcore.query.vector_store import InMemoryKnowledgeStore, KnowledgeStore
from ragcore.services.context_assembler import ContextAssembler
from ragcore.services.ephemeral_structures import EphemeralStructureGenerator
from ragcore.shared.config import Config, Settings, get_config, get_settings
from ragcore.shared.observability import get_logger

logger = get_logger(__name__)


class ProviderFactory:
    @staticmethod
    def create_embedding_provider(
        config: Optional[Config] = None, settings: Optional[Settings] = None
    ) -> EmbeddingProvider:
        config = config or get_config()
        settings = settings or get_settings()
        embedding = config.embedding

        provider = (os.getenv("EMBEDDINGS_PROVIDER") or "").strip().lower()
        if provider == "deterministic":
            logger.info("embedding_provider_selected", provider="deterministic")
            return DeterministicEmbeddingProvider(dims=embedding.dims)

        logger.info(
            "embedding_provider_selected",
            provider="openai-compatible",
            model=embedding.model_id,
            dims=embedding.dims,
        )
        return OpenAICompatibleEmbeddingProvider(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_api_key,
            model=embedding.model_id,
            dims=embedding.dims,
            timeout=embedding.timeout_seconds,
        )

    @staticmethod
    def create_completion_client(
        config: Optional[Config] = None, settings: Optional[Settings] = None
    ) -> Optional[JsonCompletionClient]:
        config = config or get_config()
        settings = settings or get_settings()
        if not settings.llm_api_key:
            logger.info("completion_client_disabled", reason="missing_api_key")
            return None
        return OpenAICompatibleJsonClient(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=config.llm.model,
            timeout=config.llm.timeout_seconds,
            max_tokens=config.llm.max_tokens,
        )

    @staticmethod
    def create_knowledge_store(
        config: Optional[Config] = None, settings: Optional[Settings] = None
    ) -> KnowledgeStore:
        config = config or get_config()
        settings = settings or get_settings()
        store_cfg = config.vector_store

        if store_cfg.backend == "memory":
            logger.info("knowledge_store_selected", backend="memory")
            return InMemoryKnowledgeStore()

        logger.info(
            "knowledge_store_selected",
            backend="qdrant",
            host=settings.qdrant_host,
            port=settings.qdrant_port,
            collection=store_cfg.collection_name,
        )
        client = QdrantClient(
            host=settings.qdrant_host,
            port=settings.qdrant_port,
            timeout=store_cfg.query_timeout_seconds,
        )
        return QdrantKnowledgeStore(
            client,
            store_cfg.collection_name,
            facts_collection_name=store_cfg.facts_collection_name,
            structures_collection_name=store_cfg.structures_collection_name,
            timeout=store_cfg.query_timeout_seconds,
        )

    @classmethod
    def create_retriever(
        cls,
        config: Optional[Config] = None,
        settings: Optional[Settings] = None,
        store: Optional[KnowledgeStore] = None,
    ) -> KnowledgeRetriever:
        config = config or get_config()
        settings = settings or get_settings()
        client = cls.create_completion_client(config, settings)
        return KnowledgeRetriever(
            store or cls.create_knowledge_store(config, settings),
            embedder=cls.create_embedding_provider(config, settings),
            classifier=QueryClassifier(client, model=config.llm.model),
            config=config.retrieval,
        )

    @classmethod
    def create_structure_resolver(
        cls,
        config: Optional[Config] = None,
        settings: Optional[Settings] = None,
        store: Optional[KnowledgeStore] = None,
    ) -> StructureResolver:
        config = config or get_config()
        settings = settings or get_settings()
        generator = EphemeralStructureGenerator(
            cls.create_completion_client(config, settings),
            model=config.structures.ephemeral_model,
        )
        return StructureResolver(
            store or cls.create_knowledge_store(config, settings),
            generator=generator,
            config=config.structures,
        )

    @staticmethod
    def create_context_assembler(config: Optional[Config] = None) -> ContextAssembler:
        config = config or get_config()
        return ContextAssembler(config.context)
