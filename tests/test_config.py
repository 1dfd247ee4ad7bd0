"""Tests for config loading and environment overrides."""

import json
import os
from unittest.mock import patch

import pytest

import chronicler.proxy.config as config_module
from chronicler.proxy.config import DEFAULT_CONFIG, Config, get_config


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return path
    return write


class TestLoad:

    def test_file_values_override_defaults(self, config_file):
        cfg = Config.load(config_file({"model_fast": "llama3.2:3b", "proxy_port": 4100}))
        assert cfg.model_fast == "llama3.2:3b"
        assert cfg.proxy_port == 4100
        assert cfg.model_quality == DEFAULT_CONFIG["model_quality"]

    def test_unknown_keys_ignored(self, config_file):
        cfg = Config.load(config_file({"theme": True, "model_preference": "speed"}))
        assert cfg.model_preference == "speed"
        assert not hasattr(cfg, "theme")

    def test_missing_explicit_file_uses_defaults(self, tmp_path):
        cfg = Config.load(tmp_path / "absent.json")
        assert cfg.proxy_port == DEFAULT_CONFIG["proxy_port"]
        assert not (tmp_path / "absent.json").exists()

    def test_broken_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        assert Config.load(path).ollama_url == DEFAULT_CONFIG["ollama_url"]

    def test_invalid_preference_falls_back(self, config_file):
        assert Config.load(config_file({"model_preference": "turbo"})).model_preference == "balanced"

    def test_data_path_expands_user(self, config_file):
        cfg = Config.load(config_file({"data_dir": "~/campaign-data"}))
        assert "~" not in str(cfg.data_path)


class TestEnvironment:

    def test_typed_overrides(self, config_file):
        env = {
            "CHRONICLER_PROXY_PORT": "4000",
            "CHRONICLER_OLLAMA_TEMPERATURE": "0.2",
            "CHRONICLER_MODEL_QUALITY": "qwen3:30b",
        }
        with patch.dict(os.environ, env):
            cfg = Config.load(config_file({}))
        assert cfg.proxy_port == 4000
        assert cfg.ollama_temperature == 0.2
        assert cfg.model_quality == "qwen3:30b"

    def test_invalid_number_ignored(self, config_file):
        with patch.dict(os.environ, {"CHRONICLER_AGENT_MAX_ITERATIONS": "lots"}):
            cfg = Config.load(config_file({"agent_max_iterations": 8}))
        assert cfg.agent_max_iterations == 8


class TestSingleton:

    def test_get_config_is_cached(self, config_file):
        previous = config_module._config
        config_module._config = None
        try:
            first = get_config(str(config_file({"proxy_port": 4200})))
            assert get_config() is first
            assert first.proxy_port == 4200
        finally:
            config_module._config = previous
