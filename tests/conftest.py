# Shared fixtures: in-memory store, offline embeddings, chunk builders

import os
from pathlib import Path
from typing import Optional

import pytest

project_root = Path(__file__).parent.parent

os.environ["ENV"] = "development"
os.environ.setdefault("CONFIG_PATH", str(project_root / "config" / "development.yaml"))
os.environ.setdefault("EMBEDDINGS_PROVIDER", "deterministic")

from ragcore.providers.embeddings import DeterministicEmbeddingProvider  # noqa: E402
from ragcore.query.contracts import Chunk  # noqa: E402
from ragcore.query.retriever import KnowledgeRetriever  # noqa: E402
from ragcore.query.vector_store import InMemoryKnowledgeStore  # noqa: E402
from ragcore.shared.config import RetrievalConfig  # noqa: E402

ORG = "org-1"
USER = "user-1"

FILLER = (
    "Retention curves flatten once activation is fixed; pricing experiments "
    "should follow onboarding work rather than precede it."
)


def make_chunk(
    chunk_id: str,
    knowledge_item_id: str,
    *,
    text: Optional[str] = None,
    role: str = "definition",
    domain: str = "saas",
    authority: str = "high",
    confidence: float = 0.8,
    item_confidence: float = 0.8,
    time_horizon: str = "current",
    chunk_type: str = "normalized",
    token_count: int = 40,
    usage_policy: Optional[str] = None,
    source_variant: str = "normalized",
    organization_id: str = ORG,
    user_id: str = USER,
    **extra,
) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        knowledge_item_id=knowledge_item_id,
        text=text or f"{chunk_id}: {FILLER}",
        role=role,
        domain=domain,
        authority=authority,
        confidence=confidence,
        item_confidence=item_confidence,
        time_horizon=time_horizon,
        chunk_type=chunk_type,
        token_count=token_count,
        usage_policy=usage_policy,
        source_variant=source_variant,
        organization_id=organization_id,
        user_id=user_id,
        **extra,
    )


@pytest.fixture
def chunk_factory():
    return make_chunk


@pytest.fixture
def store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def embedder():
    return DeterministicEmbeddingProvider(dims=16)


@pytest.fixture
def retrieval_config():
    return RetrievalConfig()


@pytest.fixture
def retriever(store, embedder, retrieval_config):
    return KnowledgeRetriever(store, embedder=embedder, config=retrieval_config)
