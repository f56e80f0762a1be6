from __future__ import annotations

import os
from pathlib import Path

import pytest

from ppe_runtime.config import RuntimeConfig
from ppe_runtime.errors import ConfigError


def test_from_env_reads_ppe_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PPE_PROVIDER", "OpenAI")
    monkeypatch.setenv("PPE_API_KEYS", "k1, k2,,")
    monkeypatch.setenv("PPE_SCRIPT_PATH", os.pathsep.join([str(tmp_path), ""]))
    monkeypatch.setenv("PPE_MAX_RETRIES", "2")
    monkeypatch.delenv("PPE_MODEL", raising=False)

    config = RuntimeConfig.from_env()

    assert config.provider == "openai"
    assert config.model == "gpt-4o-mini"
    assert config.api_keys == ["k1", "k2"]
    assert config.script_path == [tmp_path]
    assert config.max_retries == 2


def test_explicit_arguments_override_environment(monkeypatch) -> None:
    monkeypatch.setenv("PPE_PROVIDER", "openai")
    monkeypatch.setenv("PPE_MODEL", "gpt-4")
    config = RuntimeConfig.from_env(provider="ollama", model="llama3:8b", api_keys=[])
    assert config.provider == "ollama"
    assert config.model == "llama3:8b"
    assert config.api_keys == []


def test_invalid_integer_raises_config_error(monkeypatch) -> None:
    monkeypatch.setenv("PPE_CACHE_TTL", "soon")
    with pytest.raises(ConfigError):
        RuntimeConfig.from_env()
