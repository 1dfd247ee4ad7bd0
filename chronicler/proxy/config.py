"""Configuration management for the Chronicler proxy."""

from __future__ import annotations

import os
import json
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

APP_DIR_NAME = ".chronicler"
CONFIG_FILENAME = "config.json"

DEFAULT_CONFIG = {
    "ollama_url": "http://127.0.0.1:11434",
    "ollama_timeout": 600.0,
    "ollama_num_ctx": 32768,
    "ollama_temperature": 0.7,
    "ollama_keep_alive": "10m",
    "model_fast": "qwen3:8b",
    "model_balanced": "qwen3:14b",
    "model_quality": "qwen3:32b",
    "model_preference": "balanced",
    "proxy_host": "127.0.0.1",
    "proxy_port": 3100,
    "agent_max_iterations": 15,
    "agent_max_tokens": 4096,
    "tool_response_role": "tool",
    "stream_flush_interval_ms": 16,
    "ephemeral_fade_ms": 1500,
    "campaign_summary_ttl": 300.0,
    "data_dir": str(Path.home() / APP_DIR_NAME),
    "entities_api_url": "",
    "entities_seed_file": "",
}

MODEL_PREFERENCES = ("speed", "balanced", "quality")


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.chronicler/config.json."""

    # Ollama
    ollama_url: str
    ollama_timeout: float
    ollama_num_ctx: int
    ollama_temperature: float
    ollama_keep_alive: str

    # Model tiers
    model_fast: str
    model_balanced: str
    model_quality: str
    model_preference: str

    # Proxy server
    proxy_host: str
    proxy_port: int

    # Agent loop controls
    agent_max_iterations: int
    agent_max_tokens: int
    tool_response_role: str

    # Conversation rendering
    stream_flush_interval_ms: int
    ephemeral_fade_ms: int

    # Collaborators
    campaign_summary_ttl: float
    data_dir: str
    entities_api_url: str
    entities_seed_file: str

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from specified path or default ~/.chronicler/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            config_dir.mkdir(parents=True, exist_ok=True)

        current_config = DEFAULT_CONFIG.copy()

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    user_config = json.load(f)
                current_config.update(
                    {k: v for k, v in user_config.items() if k in DEFAULT_CONFIG}
                )
                unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
                if unknown:
                    logger.warning(f"Ignoring unknown config keys in {config_file}: {unknown}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}, using defaults")

        # Environment overrides, e.g. CHRONICLER_MODEL_PREFERENCE=quality
        for key in current_config:
            env_key = f"CHRONICLER_{key.upper()}"
            if env_key not in os.environ:
                continue
            val = os.environ[env_key]
            default_val = DEFAULT_CONFIG.get(key)
            try:
                if isinstance(default_val, bool):
                    current_config[key] = val.lower() in ("true", "1", "yes")
                elif isinstance(default_val, int):
                    current_config[key] = int(val)
                elif isinstance(default_val, float):
                    current_config[key] = float(val)
                else:
                    current_config[key] = val
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_key}: {val!r}")

        if current_config["model_preference"] not in MODEL_PREFERENCES:
            logger.warning(
                f"Unknown model_preference {current_config['model_preference']!r}, using 'balanced'"
            )
            current_config["model_preference"] = "balanced"

        return cls(**current_config)


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config
