"""Tests for configuration loading and the iteration ceiling rule."""

import json

import pytest

from workdispatch.runtime import config as config_module
from workdispatch.runtime.config import (
    DEFAULT_CONFIG,
    Config,
    get_config,
    max_iterations_from_env,
    reset_config,
    resolve_max_iterations,
)


# ═══════════════════════════════════════════════════════════════
# Iteration Ceiling Parsing
# ═══════════════════════════════════════════════════════════════

class TestResolveMaxIterations:

    @pytest.mark.parametrize("raw,expected", [
        ("7", 7),
        (" 12 ", 12),
        ("12abc", 12),
        ("+3", 3),
        ("1", 1),
        ("0", 1),
        ("-5", 1),
        ("invalid", 15),
        ("", 15),
        (None, 15),
        (7, 7),
        (-2, 1),
        (4.9, 4),
        (float("nan"), 15),
        (float("inf"), 15),
        (True, 15),
    ])
    def test_values(self, raw, expected):
        assert resolve_max_iterations(raw) == expected

    def test_env_read_at_call_time(self, monkeypatch):
        monkeypatch.setenv("LLM_MAX_ITERATIONS", "4")
        assert max_iterations_from_env() == 4
        monkeypatch.setenv("LLM_MAX_ITERATIONS", "9")
        assert max_iterations_from_env() == 9

    def test_env_falls_back_to_config(self, config):
        assert max_iterations_from_env(config) == config.llm_max_iterations
        assert max_iterations_from_env() == 15


# ═══════════════════════════════════════════════════════════════
# Config Loading
# ═══════════════════════════════════════════════════════════════

class TestConfigLoad:

    def test_explicit_file_merged(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"server_port": 4100, "trigger_prefix": "bot:"}))
        cfg = Config.load(path)
        assert cfg.server_port == 4100
        assert cfg.trigger_prefix == "bot:"
        assert cfg.ollama_url == DEFAULT_CONFIG["ollama_url"]

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"not_a_key": 1}))
        cfg = Config.load(path)
        assert not hasattr(cfg, "not_a_key")

    def test_missing_explicit_file_uses_defaults(self, tmp_path):
        cfg = Config.load(tmp_path / "missing.json")
        assert cfg.flush_interval == DEFAULT_CONFIG["flush_interval"]

    def test_broken_json_uses_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert Config.load(path).server_port == DEFAULT_CONFIG["server_port"]

    def test_default_path_written(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module.Path, "home", lambda: tmp_path)
        Config.load()
        written = json.loads((tmp_path / ".workdispatch" / "config.json").read_text())
        assert written == DEFAULT_CONFIG

    def test_env_overrides_are_typed(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORKDISPATCH_SERVER_PORT", "5001")
        monkeypatch.setenv("WORKDISPATCH_FLUSH_INTERVAL", "0.25")
        monkeypatch.setenv("WORKDISPATCH_STORES", "alpha, beta")
        monkeypatch.setenv("WORKDISPATCH_LLM_PROVIDER", "stub")
        cfg = Config.load(tmp_path / "missing.json")
        assert cfg.server_port == 5001
        assert cfg.flush_interval == 0.25
        assert cfg.stores == ["alpha", "beta"]
        assert cfg.llm_provider == "stub"

    def test_invalid_env_override_keeps_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("WORKDISPATCH_SERVER_PORT", "not-a-port")
        assert Config.load(tmp_path / "missing.json").server_port == DEFAULT_CONFIG["server_port"]

    def test_config_is_frozen(self, config):
        with pytest.raises(Exception):
            config.server_port = 1

    def test_singleton(self, tmp_path):
        reset_config()
        try:
            first = get_config(str(tmp_path / "missing.json"))
            assert get_config() is first
        finally:
            reset_config()
