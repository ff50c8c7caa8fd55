"""Tests for configuration loading, saving and validation."""

import json
import math
import os
import stat
import pytest
from unittest.mock import patch


class TestDefaults:
    def test_rerank_weight_defaults(self):
        from context_engine.common.config import RerankWeights
        w = RerankWeights()
        assert (w.semantic, w.freshness, w.usage, w.confidence) == (0.6, 0.2, 0.1, 0.1)
        assert w.total == pytest.approx(1.0)

    def test_section_defaults(self):
        from context_engine.common.config import ContextEngineConfig
        cfg = ContextEngineConfig()
        assert cfg.storage.batch_size == 50
        assert cfg.storage.max_versions == 10
        assert cfg.retrieval.default_limit == 10
        assert cfg.retrieval.entity_confidence_threshold == 0.7
        assert cfg.retrieval.duplicate_threshold == 0.9
        assert cfg.retrieval.freshness_decay_rate == pytest.approx(1 / 365)
        assert cfg.evolution.temporal_decay_rate == 0.01
        assert cfg.evolution.min_confidence_threshold == 0.3
        assert cfg.evolution.feedback_smoothing == 0.2
        assert cfg.usage_tracking.workers == 4
        assert cfg.usage_tracking.queue_size == 1000
        assert cfg.vector_index.backend == "memory"


class TestValidation:
    @pytest.mark.parametrize("field", ["semantic", "freshness", "usage", "confidence"])
    def test_negative_weight_rejected(self, field):
        from context_engine.common.config import RerankWeights
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            RerankWeights(**{field: -0.1})

    def test_nan_weight_rejected(self):
        from context_engine.common.config import RerankWeights
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            RerankWeights(semantic=math.nan)

    def test_missing_weight_rejected(self):
        from context_engine.common.config import RerankWeights
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            RerankWeights(usage=None)

    def test_all_zero_weights_rejected(self):
        from context_engine.common.config import RerankWeights
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            RerankWeights(semantic=0, freshness=0, usage=0, confidence=0)

    def test_threshold_outside_unit_interval_rejected(self):
        from context_engine.common.config import RetrievalConfig, EvolutionConfig
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            RetrievalConfig(duplicate_threshold=1.5)
        with pytest.raises(ConfigurationError):
            EvolutionConfig(min_confidence_threshold=-0.1)

    def test_configuration_error_is_validation_error(self):
        from context_engine.common.config import StorageConfig
        from context_engine.common.errors import ValidationError
        with pytest.raises(ValidationError):
            StorageConfig(batch_size=0)

    def test_unknown_backend_rejected(self):
        from context_engine.common.config import VectorIndexConfig
        from context_engine.common.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            VectorIndexConfig(backend="faiss")

    def test_weights_accepted_as_dict(self):
        from context_engine.common.config import RetrievalConfig, RerankWeights
        cfg = RetrievalConfig(weights={"semantic": 0.7, "freshness": 0.1, "usage": 0.1, "confidence": 0.1})
        assert isinstance(cfg.weights, RerankWeights)
        assert cfg.weights.semantic == 0.7


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        from context_engine.common.config import load_config
        cfg = load_config(tmp_path / "absent.json")
        assert cfg.retrieval.default_limit == 10

    def test_malformed_file_warns_and_uses_defaults(self, tmp_path, caplog):
        from context_engine.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")

        cfg = load_config(config_file)

        assert cfg.storage.batch_size == 50
        assert "Failed to load config file" in caplog.text

    def test_file_values_loaded(self, tmp_path):
        from context_engine.common.config import load_config
        config_data = {
            "retrieval": {"default_limit": 5, "weights": {"semantic": 0.8, "freshness": 0.1}},
            "evolution": {"temporal_decay_rate": 0.05, "delete_below_threshold": True},
            "vector_index": {"backend": "qdrant", "collection": "ctx"},
        }
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps(config_data))

        with patch("context_engine.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.retrieval.default_limit == 5
        assert cfg.retrieval.weights.semantic == 0.8
        assert cfg.retrieval.weights.usage == 0.1
        assert cfg.evolution.temporal_decay_rate == 0.05
        assert cfg.evolution.delete_below_threshold is True
        assert cfg.vector_index.backend == "qdrant"
        assert cfg.vector_index.collection == "ctx"

    def test_invalid_file_values_raise(self, tmp_path):
        from context_engine.common.config import load_config
        from context_engine.common.errors import ConfigurationError
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"retrieval": {"weights": {"semantic": -1}}}))

        with pytest.raises(ConfigurationError):
            load_config(config_file)

    def test_env_var_overrides(self, tmp_path):
        from context_engine.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        env = {
            "QDRANT_URL": "http://qdrant:6333",
            "QDRANT_API_KEY": "secret",
            "CONTEXT_ENGINE_VECTOR_BACKEND": "qdrant",
            "EMBEDDING_MODEL": "BAAI/bge-small-en-v1.5",
            "CONTEXT_ENGINE_DECAY_RATE": "0.02",
        }
        with patch.dict(os.environ, env, clear=False):
            cfg = load_config(config_file)

        assert cfg.vector_index.backend == "qdrant"
        assert cfg.vector_index.url == "http://qdrant:6333"
        assert cfg.vector_index.api_key == "secret"
        assert cfg.embedding.model == "BAAI/bge-small-en-v1.5"
        assert cfg.evolution.temporal_decay_rate == 0.02

    def test_invalid_env_decay_rate_raises(self, tmp_path):
        from context_engine.common.config import load_config
        from context_engine.common.errors import ConfigurationError
        with patch.dict(os.environ, {"CONTEXT_ENGINE_DECAY_RATE": "fast"}, clear=False):
            with pytest.raises(ConfigurationError):
                load_config(tmp_path / "absent.json")


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        from context_engine.common.config import ContextEngineConfig, RetrievalConfig, load_config, save_config
        config_file = tmp_path / "config.json"
        cfg = ContextEngineConfig(retrieval=RetrievalConfig(default_limit=7, duplicate_threshold=0.8))

        save_config(cfg, config_file)
        loaded = load_config(config_file)

        assert loaded.retrieval.default_limit == 7
        assert loaded.retrieval.duplicate_threshold == 0.8

    def test_file_permissions(self, tmp_path):
        from context_engine.common.config import ContextEngineConfig, save_config
        config_file = tmp_path / "config.json"
        save_config(ContextEngineConfig(), config_file)
        assert stat.S_IMODE(config_file.stat().st_mode) == 0o600

    def test_save_config_omits_env_keys(self, tmp_path):
        from context_engine.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{}")

        with patch.dict(os.environ, {"QDRANT_API_KEY": "from-env"}, clear=False):
            cfg = load_config(config_file)
            save_config(cfg, config_file)

        saved = json.loads(config_file.read_text())
        assert saved["vector_index"]["api_key"] == ""

    def test_save_config_keeps_file_keys(self, tmp_path):
        from context_engine.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"vector_index": {"api_key": "from-file"}}))

        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("QDRANT_API_KEY", None)
            cfg = load_config(config_file)
            save_config(cfg, config_file)

        saved = json.loads(config_file.read_text())
        assert saved["vector_index"]["api_key"] == "from-file"

    def test_embedding_mode_not_persisted(self, tmp_path):
        from context_engine.common.config import ContextEngineConfig, save_config
        config_file = tmp_path / "config.json"
        save_config(ContextEngineConfig(), config_file)

        saved = json.loads(config_file.read_text())
        assert set(saved["embedding"]) == {"model", "cache_size", "batch_size"}


class TestEnsureDataPath:
    def test_unset_path_uses_data_dir(self, tmp_path):
        from context_engine.common.config import ContextEngineConfig, ensure_data_path
        config_dir = tmp_path / "home"
        data_dir = config_dir / "data"

        with patch("context_engine.common.config.CONFIG_DIR", config_dir), \
                patch("context_engine.common.config.DATA_DIR", data_dir):
            cfg = ensure_data_path(ContextEngineConfig())

        assert cfg.storage.data_path == str(data_dir / "contexts.json")
        assert data_dir.is_dir()

    def test_explicit_path_kept(self, tmp_path):
        from context_engine.common.config import ContextEngineConfig, ensure_data_path
        cfg = ContextEngineConfig()
        cfg.storage.data_path = str(tmp_path / "mine.json")

        with patch("context_engine.common.config.CONFIG_DIR", tmp_path / "home"), \
                patch("context_engine.common.config.DATA_DIR", tmp_path / "home" / "data"):
            ensure_data_path(cfg)

        assert cfg.storage.data_path == str(tmp_path / "mine.json")

    @pytest.mark.asyncio
    async def test_store_persists_under_default_path(self, tmp_path, embedder):
        from context_engine import create_engine
        from context_engine.common.config import ContextEngineConfig, ensure_data_path
        data_dir = tmp_path / "home" / "data"

        with patch("context_engine.common.config.CONFIG_DIR", tmp_path / "home"), \
                patch("context_engine.common.config.DATA_DIR", data_dir):
            cfg = ensure_data_path(ContextEngineConfig())
        engine = create_engine(cfg, embedding_provider=embedder)
        await engine.storage.create({
            "workspace_id": "ws-1", "tier": "workspace", "type": "file", "content": "persisted",
        })
        await engine.close()

        saved = json.loads((data_dir / "contexts.json").read_text())
        assert [c["content"] for c in saved["contexts"]] == ["persisted"]
