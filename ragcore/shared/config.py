# Configuration loader with environment variable support.
# YAML file per environment (config/<env>.yaml), overridable via CONFIG_PATH.

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RagBaseModel

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_ROLES = ["strategic_claim", "heuristic", "causal_claim", "definition"]


class ScoringWeights(BaseModel):
    """Weights of the composite relevance score (must sum to 1.0)."""

    similarity: float = 0.50
    domain: float = 0.15
    role: float = 0.15
    authority: float = 0.10
    confidence: float = 0.05
    time: float = 0.05

    @model_validator(mode="after")
    def validate_sum(self):
        total = (
            self.similarity
            + self.domain
            + self.role
            + self.authority
            + self.confidence
            + self.time
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"scoring weights must sum to 1.0, got {total:.4f}")
        return self


class SparseRecallConfig(BaseModel):
    """Guarantee for documents with very few chunks."""

    enabled: bool = True
    chunk_threshold: int = Field(default=2, ge=1)
    distance_ceiling: float = Field(default=0.20, ge=0.0, le=2.0)
    max_injections: int = Field(default=1, ge=0)


class SmallDenseAssistConfig(BaseModel):
    """Guarantee for small documents whose chunks all compete for the same slot."""

    enabled: bool = True
    min_chunks: int = Field(default=3, ge=1)
    max_chunks: int = Field(default=6, ge=1)
    distance_ceiling: float = Field(default=0.15, ge=0.0, le=2.0)
    max_injections: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def validate_range(self):
        if self.min_chunks > self.max_chunks:
            raise ValueError("small_dense_assist.min_chunks must be <= max_chunks")
        return self


class EnrichmentConfig(BaseModel):
    enabled: bool = False
    roles: List[str] = Field(default_factory=lambda: ["metric", "instruction"])
    max_per_item: int = Field(default=3, ge=1)
    max_total: int = Field(default=10, ge=1)


class RetrievalConfig(BaseModel):
    """Knowledge chunk retrieval, scoring and recall guarantees."""

    top_n: int = Field(default=50, gt=0)
    hard_limit: int = Field(default=20, gt=0)
    near_match_distance: float = Field(default=0.10, ge=0.0)
    soft_score_limit: float = Field(default=0.90, ge=0.0, le=1.0)
    excerpt_cap: int = Field(default=2, ge=0)
    min_token_count: int = Field(default=12, ge=0)
    min_char_count: int = Field(default=60, ge=0)
    keyword_prefix_chars: int = Field(default=64, gt=0)
    # None admits raw variants too; selection then prefers normalized within an item
    source_variant: Optional[str] = "normalized"
    vector_roles: List[str] = Field(default_factory=lambda: list(DEFAULT_VECTOR_ROLES))
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    role_priorities: Dict[str, float] = Field(
        default_factory=lambda: {
            "definition": 1.0,
            "strategic_claim": 0.9,
            "heuristic": 0.8,
            "causal_claim": 0.7,
            "instruction": 0.6,
            "metric": 0.5,
        }
    )
    role_boosts: Dict[str, float] = Field(
        default_factory=lambda: {
            "strategic_claim": 1.10,
            "causal_claim": 1.05,
            "heuristic": 1.00,
            "definition": 0.95,
        }
    )
    max_per_intent: Dict[str, int] = Field(
        default_factory=lambda: {
            "educational": 5,
            "persuasive": 4,
            "story": 6,
            "contrarian": 5,
            "emotional": 5,
            "*": 5,
        }
    )
    sparse_recall: SparseRecallConfig = Field(default_factory=SparseRecallConfig)
    small_dense_assist: SmallDenseAssistConfig = Field(
        default_factory=SmallDenseAssistConfig
    )
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)

    def intent_cap(self, intent: Optional[str]) -> int:
        key = (intent or "").strip().lower()
        return int(self.max_per_intent.get(key, self.max_per_intent.get("*", 5)))


class StructureConfig(BaseModel):
    candidate_limit: int = Field(default=10, gt=0)
    min_fit_score: int = Field(default=55, ge=0, le=100)
    ephemeral_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    ephemeral_model: Optional[str] = None


class ContextConfig(BaseModel):
    """Generation context budget and per-category caps."""

    context_token_budget: int = Field(default=1800, gt=0)
    max_chunks: int = Field(default=5, ge=0)
    max_facts: int = Field(default=8, ge=0)
    max_structures: int = Field(default=1, ge=0, le=1)
    max_angles: int = Field(default=1, ge=0)
    max_examples: int = Field(default=1, ge=0)
    require_fact_for_angles: bool = True
    user_context_score: float = Field(default=0.4, ge=0.0)
    default_chunk_score: float = Field(default=0.5, ge=0.0)


class EmbeddingConfig(BaseModel):
    model_id: str = "text-embedding-3-small"
    dims: int = Field(default=1536, gt=0)
    timeout_seconds: float = Field(default=20.0, gt=0)
    batch_size: int = Field(default=64, gt=0)


class LLMConfig(BaseModel):
    model: str = "gpt-4o-mini"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_tokens: int = Field(default=800, gt=0)


class VectorStoreConfig(BaseModel):
    backend: str = "qdrant"
    collection_name: str = "knowledge_chunks"
    facts_collection_name: str = "business_facts"
    structures_collection_name: str = "swipe_structures"
    query_timeout_seconds: int = Field(default=10, gt=0)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        valid = {"qdrant", "memory"}
        if v not in valid:
            raise ValueError(f"backend must be one of {valid}, got {v}")
        return v


class AppConfig(BaseModel):
    name: str = "ragcore"
    version: str = "0.3.0"


class Config(RagBaseModel):
    """Top-level config; one attribute per YAML section."""

    app: AppConfig = Field(default_factory=AppConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    structures: StructureConfig = Field(default_factory=StructureConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)


class Settings(BaseSettings):
    """Endpoints, credentials and selection of the YAML file, from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Embedding service (OpenAI-compatible)
    embedding_base_url: str = Field(
        default="https://api.openai.com", alias="EMBEDDING_BASE_URL"
    )
    embedding_api_key: Optional[str] = Field(default=None, alias="EMBEDDING_API_KEY")

    # Chat completion service (OpenAI-compatible)
    llm_base_url: str = Field(default="https://api.openai.com", alias="LLM_BASE_URL")
    llm_api_key: Optional[str] = Field(default=None, alias="LLM_API_KEY")

    # Qdrant
    qdrant_host: str = Field(default="localhost", alias="QDRANT_HOST")
    qdrant_port: int = Field(default=6333, alias="QDRANT_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def _config_file(settings: Settings) -> Path:
    if settings.config_path:
        return Path(settings.config_path)
    return Path(__file__).resolve().parents[2] / "config" / f"{settings.env}.yaml"


def load_config() -> tuple[Config, Settings]:
    """
    Read `config/<ENV>.yaml` (or the file named by CONFIG_PATH) and the
    environment. Sections missing from the file keep their model defaults.

    Raises:
        FileNotFoundError: the YAML file does not exist
        pydantic.ValidationError: a section fails validation
    """
    settings = Settings()
    path = _config_file(settings)
    if not path.is_file():
        raise FileNotFoundError(f"No ragcore config at {path}")

    logger.info("Loading ragcore config %s (env=%s)", path, settings.env)
    raw = yaml.safe_load(path.read_text()) or {}
    return Config.model_validate(raw), settings


# Process-wide cache filled on first access
_cache: Dict[str, object] = {}


def reload_config() -> tuple[Config, Settings]:
    """Re-read config and settings and replace the cached pair."""
    config, settings = load_config()
    _cache.update(config=config, settings=settings)
    return config, settings


init_config = reload_config


def get_config() -> Config:
    if "config" not in _cache:
        reload_config()
    return _cache["config"]


def get_settings() -> Settings:
    if "settings" not in _cache:
        reload_config()
    return _cache["settings"]
