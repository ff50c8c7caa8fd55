"""
Configuration Management for the Context Engine

Loads configuration from ~/.context-engine/config.json and environment variables.
Every section validates itself on construction so a malformed configuration
fails fast instead of producing silently-wrong rankings later.
"""

import os
import json
import math
import logging
from pathlib import Path
from dataclasses import dataclass, field

from .errors import ConfigurationError

logger = logging.getLogger("context_engine.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".context-engine"
CONFIG_PATH = CONFIG_DIR / "config.json"
DATA_DIR = CONFIG_DIR / "data"


def _check_unit_interval(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be within [0, 1], got {value!r}")


def _check_positive(name: str, value, allow_zero: bool = False) -> None:
    if not isinstance(value, (int, float)) or math.isnan(value) or math.isinf(value):
        raise ConfigurationError(f"{name} must be a finite number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    cache_size: int = 1024
    batch_size: int = 32

    def __post_init__(self):
        _check_positive("embedding.cache_size", self.cache_size, allow_zero=True)
        _check_positive("embedding.batch_size", self.batch_size)


@dataclass
class VectorIndexConfig:
    """Vector index backend configuration"""
    backend: str = "memory"  # "memory" or "qdrant"
    url: str = "http://localhost:6333"
    api_key: str = ""
    collection: str = "contexts"
    vector_size: int = 384

    def __post_init__(self):
        if self.backend not in ("memory", "qdrant"):
            raise ConfigurationError(f"Unknown vector index backend: {self.backend!r}")
        _check_positive("vector_index.vector_size", self.vector_size)


@dataclass
class StorageConfig:
    """Context storage configuration"""
    batch_size: int = 50
    enable_versioning: bool = True
    max_versions: int = 10
    data_path: str = ""  # JSON persistence for the in-memory primary store ("" = memory only)
    max_recorded_failures: int = 1000

    def __post_init__(self):
        _check_positive("storage.batch_size", self.batch_size)
        _check_positive("storage.max_versions", self.max_versions)
        _check_positive("storage.max_recorded_failures", self.max_recorded_failures)


@dataclass
class RerankWeights:
    """
    Re-ranking weights.

    They are expected to sum to 1 for interpretability but that is not
    enforced; only missing, negative or non-finite weights are rejected.
    """
    semantic: float = 0.6
    freshness: float = 0.2
    usage: float = 0.1
    confidence: float = 0.1

    def __post_init__(self):
        for name in ("semantic", "freshness", "usage", "confidence"):
            value = getattr(self, name)
            if value is None:
                raise ConfigurationError(f"retrieval.weights.{name} is missing")
            _check_positive(f"retrieval.weights.{name}", value, allow_zero=True)
        if self.total == 0:
            raise ConfigurationError("retrieval.weights must not all be zero")

    @property
    def total(self) -> float:
        return self.semantic + self.freshness + self.usage + self.confidence


@dataclass
class RetrievalConfig:
    """Context retriever configuration"""
    default_limit: int = 10
    default_min_similarity: float = 0.0
    entity_confidence_threshold: float = 0.7
    enable_query_expansion: bool = True
    enable_diversity_selection: bool = True
    duplicate_threshold: float = 0.9
    freshness_decay_rate: float = 1.0 / 365  # per day
    max_context_age_days: float = 0  # 0 = no age limit
    early_stop_similarity: float = 0.8
    weights: RerankWeights = field(default_factory=RerankWeights)

    def __post_init__(self):
        if isinstance(self.weights, dict):
            self.weights = RerankWeights(**self.weights)
        _check_positive("retrieval.default_limit", self.default_limit)
        _check_unit_interval("retrieval.default_min_similarity", self.default_min_similarity)
        _check_unit_interval("retrieval.entity_confidence_threshold", self.entity_confidence_threshold)
        _check_unit_interval("retrieval.duplicate_threshold", self.duplicate_threshold)
        _check_unit_interval("retrieval.early_stop_similarity", self.early_stop_similarity)
        _check_positive("retrieval.freshness_decay_rate", self.freshness_decay_rate, allow_zero=True)
        _check_positive("retrieval.max_context_age_days", self.max_context_age_days, allow_zero=True)


@dataclass
class UsageTrackingConfig:
    """Background usage write-back configuration"""
    enabled: bool = True
    workers: int = 4
    queue_size: int = 1000

    def __post_init__(self):
        _check_positive("usage_tracking.workers", self.workers)
        _check_positive("usage_tracking.queue_size", self.queue_size)


@dataclass
class EvolutionConfig:
    """Context evolution configuration"""
    temporal_decay_rate: float = 0.01  # per day
    min_confidence_threshold: float = 0.3
    feedback_smoothing: float = 0.2
    batch_size: int = 100
    delete_below_threshold: bool = False
    change_epsilon: float = 1e-6

    def __post_init__(self):
        _check_positive("evolution.temporal_decay_rate", self.temporal_decay_rate, allow_zero=True)
        _check_unit_interval("evolution.min_confidence_threshold", self.min_confidence_threshold)
        _check_unit_interval("evolution.feedback_smoothing", self.feedback_smoothing)
        _check_positive("evolution.batch_size", self.batch_size)
        _check_positive("evolution.change_epsilon", self.change_epsilon, allow_zero=True)


@dataclass
class ContextEngineConfig:
    """Main context engine configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector_index: VectorIndexConfig = field(default_factory=VectorIndexConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    usage_tracking: UsageTrackingConfig = field(default_factory=UsageTrackingConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _section(data: dict, name: str) -> dict:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{name}' must be an object")
    return value


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = _section(data, "embedding")
    return EmbeddingConfig(
        model=embedding_data.get("model", EmbeddingConfig.model),
        cache_size=embedding_data.get("cache_size", 1024),
        batch_size=embedding_data.get("batch_size", 32),
    )


def _parse_vector_index_config(data: dict) -> VectorIndexConfig:
    """Parse vector_index section from config dict"""
    index_data = _section(data, "vector_index")
    return VectorIndexConfig(
        backend=index_data.get("backend", "memory"),
        url=index_data.get("url", "http://localhost:6333"),
        api_key=index_data.get("api_key", ""),
        collection=index_data.get("collection", "contexts"),
        vector_size=index_data.get("vector_size", 384),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    """Parse storage section from config dict"""
    storage_data = _section(data, "storage")
    return StorageConfig(
        batch_size=storage_data.get("batch_size", 50),
        enable_versioning=storage_data.get("enable_versioning", True),
        max_versions=storage_data.get("max_versions", 10),
        data_path=storage_data.get("data_path", ""),
        max_recorded_failures=storage_data.get("max_recorded_failures", 1000),
    )


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    """Parse retrieval section, including nested re-ranking weights"""
    retrieval_data = _section(data, "retrieval")
    weights_data = _section(retrieval_data, "weights")
    return RetrievalConfig(
        default_limit=retrieval_data.get("default_limit", 10),
        default_min_similarity=retrieval_data.get("default_min_similarity", 0.0),
        entity_confidence_threshold=retrieval_data.get("entity_confidence_threshold", 0.7),
        enable_query_expansion=retrieval_data.get("enable_query_expansion", True),
        enable_diversity_selection=retrieval_data.get("enable_diversity_selection", True),
        duplicate_threshold=retrieval_data.get("duplicate_threshold", 0.9),
        freshness_decay_rate=retrieval_data.get("freshness_decay_rate", 1.0 / 365),
        max_context_age_days=retrieval_data.get("max_context_age_days", 0),
        early_stop_similarity=retrieval_data.get("early_stop_similarity", 0.8),
        weights=RerankWeights(
            semantic=weights_data.get("semantic", 0.6),
            freshness=weights_data.get("freshness", 0.2),
            usage=weights_data.get("usage", 0.1),
            confidence=weights_data.get("confidence", 0.1),
        ),
    )


def _parse_usage_tracking_config(data: dict) -> UsageTrackingConfig:
    """Parse usage_tracking section from config dict"""
    usage_data = _section(data, "usage_tracking")
    return UsageTrackingConfig(
        enabled=usage_data.get("enabled", True),
        workers=usage_data.get("workers", 4),
        queue_size=usage_data.get("queue_size", 1000),
    )


def _parse_evolution_config(data: dict) -> EvolutionConfig:
    """Parse evolution section from config dict"""
    evolution_data = _section(data, "evolution")
    return EvolutionConfig(
        temporal_decay_rate=evolution_data.get("temporal_decay_rate", 0.01),
        min_confidence_threshold=evolution_data.get("min_confidence_threshold", 0.3),
        feedback_smoothing=evolution_data.get("feedback_smoothing", 0.2),
        batch_size=evolution_data.get("batch_size", 100),
        delete_below_threshold=evolution_data.get("delete_below_threshold", False),
        change_epsilon=evolution_data.get("change_epsilon", 1e-6),
    )


def load_config(path: Path = None) -> ContextEngineConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.context-engine/config.json)
    3. Default values

    An unreadable or non-JSON file falls back to defaults with a warning.
    A readable file with invalid values raises ConfigurationError.
    """
    config = ContextEngineConfig()
    path = path or CONFIG_PATH

    # Load from config file if exists
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", path, e)
            data = None

        if data is not None:
            config.embedding = _parse_embedding_config(data)
            config.vector_index = _parse_vector_index_config(data)
            config.storage = _parse_storage_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.usage_tracking = _parse_usage_tracking_config(data)
            config.evolution = _parse_evolution_config(data)

    # Environment variable overrides
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("CONTEXT_ENGINE_VECTOR_BACKEND"):
        config.vector_index = VectorIndexConfig(
            backend=os.getenv("CONTEXT_ENGINE_VECTOR_BACKEND"),
            url=config.vector_index.url,
            api_key=config.vector_index.api_key,
            collection=config.vector_index.collection,
            vector_size=config.vector_index.vector_size,
        )
    if os.getenv("QDRANT_URL"):
        config.vector_index.url = os.getenv("QDRANT_URL")
    if os.getenv("QDRANT_API_KEY"):
        config.vector_index.api_key = os.getenv("QDRANT_API_KEY")
        config._env_sourced_keys.add("api_key")
    if os.getenv("CONTEXT_ENGINE_COLLECTION"):
        config.vector_index.collection = os.getenv("CONTEXT_ENGINE_COLLECTION")

    if os.getenv("CONTEXT_ENGINE_DATA_PATH"):
        config.storage.data_path = os.getenv("CONTEXT_ENGINE_DATA_PATH")

    if os.getenv("CONTEXT_ENGINE_DECAY_RATE"):
        try:
            rate = float(os.getenv("CONTEXT_ENGINE_DECAY_RATE"))
        except ValueError:
            raise ConfigurationError("CONTEXT_ENGINE_DECAY_RATE must be a number") from None
        _check_positive("evolution.temporal_decay_rate", rate, allow_zero=True)
        config.evolution.temporal_decay_rate = rate

    return config


def save_config(config: ContextEngineConfig, path: Path = None) -> None:
    """Save configuration to file.

    The vector index API key is written as an empty string when it was
    sourced from the environment so that secrets are not persisted to disk.
    """
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())
    weights = config.retrieval.weights

    data = {
        "embedding": {
            "model": config.embedding.model,
            "cache_size": config.embedding.cache_size,
            "batch_size": config.embedding.batch_size,
        },
        "vector_index": {
            "backend": config.vector_index.backend,
            "url": config.vector_index.url,
            "api_key": "" if "api_key" in env_sourced else config.vector_index.api_key,
            "collection": config.vector_index.collection,
            "vector_size": config.vector_index.vector_size,
        },
        "storage": {
            "batch_size": config.storage.batch_size,
            "enable_versioning": config.storage.enable_versioning,
            "max_versions": config.storage.max_versions,
            "data_path": config.storage.data_path,
            "max_recorded_failures": config.storage.max_recorded_failures,
        },
        "retrieval": {
            "default_limit": config.retrieval.default_limit,
            "default_min_similarity": config.retrieval.default_min_similarity,
            "entity_confidence_threshold": config.retrieval.entity_confidence_threshold,
            "enable_query_expansion": config.retrieval.enable_query_expansion,
            "enable_diversity_selection": config.retrieval.enable_diversity_selection,
            "duplicate_threshold": config.retrieval.duplicate_threshold,
            "freshness_decay_rate": config.retrieval.freshness_decay_rate,
            "max_context_age_days": config.retrieval.max_context_age_days,
            "early_stop_similarity": config.retrieval.early_stop_similarity,
            "weights": {
                "semantic": weights.semantic,
                "freshness": weights.freshness,
                "usage": weights.usage,
                "confidence": weights.confidence,
            },
        },
        "usage_tracking": {
            "enabled": config.usage_tracking.enabled,
            "workers": config.usage_tracking.workers,
            "queue_size": config.usage_tracking.queue_size,
        },
        "evolution": {
            "temporal_decay_rate": config.evolution.temporal_decay_rate,
            "min_confidence_threshold": config.evolution.min_confidence_threshold,
            "feedback_smoothing": config.evolution.feedback_smoothing,
            "batch_size": config.evolution.batch_size,
            "delete_below_threshold": config.evolution.delete_below_threshold,
            "change_epsilon": config.evolution.change_epsilon,
        },
    }

    with open(path, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    path.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)


def ensure_data_path(config: ContextEngineConfig) -> ContextEngineConfig:
    """
    Give a config without storage.data_path the default file under DATA_DIR.

    Creates the config and data directories. An explicit data_path is left
    untouched.
    """
    ensure_directories()
    if not config.storage.data_path:
        config.storage.data_path = str(DATA_DIR / "contexts.json")
        logger.info("Using default data path %s", config.storage.data_path)
    return config
