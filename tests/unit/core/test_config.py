"""
Unit Tests for Config

Defaults, environment overrides and validation.
"""

import importlib
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))

from persona.core.config import Config


@pytest.mark.unit
class TestConfigDefaults:

    def test_pipeline_defaults(self):
        assert Config.SEGMENTER_MIN_CHARS == 5
        assert Config.TTS_MAX_CONCURRENCY == 3
        assert Config.TTS_MAX_PENDING == 6

    def test_memory_defaults(self):
        assert Config.MEMORY_CACHE_TTL_SEC == 60
        assert Config.MEMORY_CACHE_MAX_ENTRIES == 2048
        assert Config.MEMORY_SIMILARITY_THRESHOLD == 0.7
        assert Config.MEMORY_TOP_K == 10
        assert Config.MEMORY_DEDUP_THRESHOLD == 0.95

    def test_provider_defaults(self):
        assert Config.TTS_API_MODEL == "eleven_turbo_v2_5"
        assert Config.TTS_OUTPUT_FORMAT == "mp3_44100_128"
        assert Config.EMBEDDING_MODEL == "text-embedding-3-small"
        assert Config.EMBEDDING_DIMENSIONS == 1536
        assert Config.SUPABASE_MATCH_FUNCTION == "match_memory_fragments"

    def test_paths_are_path_objects(self):
        assert isinstance(Config.DATA_DIR, Path)
        assert isinstance(Config.DATABASE_PATH, Path)


@pytest.mark.unit
class TestConfigEnvironment:

    def test_environment_overrides(self, monkeypatch):
        import persona.core.config as config_module

        monkeypatch.setenv("PERSONA_TTS_MAX_CONCURRENCY", "5")
        monkeypatch.setenv("PERSONA_MEMORY_THRESHOLD", "0.8")
        try:
            reloaded = importlib.reload(config_module)
            assert reloaded.Config.TTS_MAX_CONCURRENCY == 5
            assert reloaded.Config.MEMORY_SIMILARITY_THRESHOLD == 0.8
        finally:
            monkeypatch.undo()
            importlib.reload(config_module)


@pytest.mark.unit
class TestConfigValidation:

    def test_validate_creates_directories(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "DATA_DIR", tmp_path / "data")
        monkeypatch.setattr(Config, "DATABASE_PATH", tmp_path / "db" / "persona.db")

        assert Config.validate() is True
        assert (tmp_path / "data").is_dir()
        assert (tmp_path / "db").is_dir()

    def test_validate_rejects_bad_threshold(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "DATA_DIR", tmp_path)
        monkeypatch.setattr(Config, "DATABASE_PATH", tmp_path / "persona.db")
        monkeypatch.setattr(Config, "MEMORY_SIMILARITY_THRESHOLD", 1.5)

        assert Config.validate() is False

    def test_validate_rejects_pending_below_concurrency(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Config, "DATA_DIR", tmp_path)
        monkeypatch.setattr(Config, "DATABASE_PATH", tmp_path / "persona.db")
        monkeypatch.setattr(Config, "TTS_MAX_PENDING", 1)

        assert Config.validate() is False
