"""Configuration management for the workdispatch runtime."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("workdispatch.config")

APP_DIR_NAME = ".workdispatch"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "WORKDISPATCH_"

MAX_ITERATIONS_ENV = "LLM_MAX_ITERATIONS"
DEFAULT_MAX_ITERATIONS = 15

DEFAULT_CONFIG = {
    "ollama_url": "http://127.0.0.1:11434",
    "ollama_model": "llama3.1:8b",
    "ollama_timeout": 300.0,
    "ollama_num_ctx": 32768,
    "ollama_temperature": 0.4,
    "ollama_max_retries": 2,
    "server_host": "127.0.0.1",
    "server_port": 3000,
    "llm_provider": "ollama",
    "llm_max_iterations": DEFAULT_MAX_ITERATIONS,
    "trigger_prefix": "server:",
    "flush_interval": 1.0,
    "max_buffer_size": 100,
    "max_pending_events": 1000,
    "processed_ids_cap": 10000,
    "processed_ids_keep": 5000,
    "history_cap": 100,
    "history_evict": 20,
    "tool_result_max_chars": 4000,
    "validation_profile": "default",
    "stores": ["default"],
}

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")


@dataclass(frozen=True)
class Config:
    """Runtime configuration loaded from ~/.workdispatch/config.json."""

    # Ollama
    ollama_url: str
    ollama_model: str
    ollama_timeout: float
    ollama_num_ctx: int
    ollama_temperature: float
    ollama_max_retries: int

    # HTTP server
    server_host: str
    server_port: int

    # Provider selection: "ollama", "stub" or "none" (echo)
    llm_provider: str

    # Agentic loop
    llm_max_iterations: int
    tool_result_max_chars: int
    validation_profile: str

    # Dispatcher
    trigger_prefix: str
    flush_interval: float
    max_buffer_size: int
    max_pending_events: int
    processed_ids_cap: int
    processed_ids_keep: int
    history_cap: int
    history_evict: int
    stores: list[str] = field(default_factory=lambda: ["default"])

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from the given path or the default ~/.workdispatch/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            config_dir.mkdir(parents=True, exist_ok=True)

        current_config = dict(DEFAULT_CONFIG)

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    user_config = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
                user_config = {}
            for key, value in user_config.items():
                if key not in DEFAULT_CONFIG:
                    logger.warning(f"Ignoring unknown config key: {key}")
                    continue
                current_config[key] = value
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}, using defaults")

        # Environment overrides, e.g. WORKDISPATCH_SERVER_PORT=4000
        for key in current_config:
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key not in os.environ:
                continue
            val = os.environ[env_key]
            default_val = DEFAULT_CONFIG[key]
            try:
                current_config[key] = _cast_env_value(val, default_val)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_key}: {val!r}")

        return cls(**current_config)


def _cast_env_value(val: str, default_val: Any) -> Any:
    # bool must be checked before int
    if isinstance(default_val, bool):
        return val.lower() in ("true", "1", "yes")
    if isinstance(default_val, int):
        return int(val)
    if isinstance(default_val, float):
        return float(val)
    if isinstance(default_val, list):
        return [item.strip() for item in val.split(",") if item.strip()]
    return val


def resolve_max_iterations(raw: Any) -> int:
    """Turn a raw ceiling value into a usable iteration count.

    Integers are taken as-is, strings are read by their leading integer
    ("12abc" is 12), and anything unparsable falls back to 15. The result
    is never below 1.
    """
    value: int | None = None
    if isinstance(raw, bool):
        value = None
    elif isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        value = int(raw) if raw == raw and raw not in (float("inf"), float("-inf")) else None
    elif isinstance(raw, str):
        match = _INT_PREFIX.match(raw)
        if match:
            value = int(match.group(1))

    if value is None:
        value = DEFAULT_MAX_ITERATIONS
    return max(1, value)


def max_iterations_from_env(config: Config | None = None) -> int:
    """Read LLM_MAX_ITERATIONS at call time, falling back to the config value."""
    raw = os.environ.get(MAX_ITERATIONS_ENV)
    if raw is None:
        raw = config.llm_max_iterations if config is not None else DEFAULT_MAX_ITERATIONS
    return resolve_max_iterations(raw)


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


def reset_config() -> None:
    global _config
    _config = None
