from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .constants import (
    CACHE_TTL,
    DEFAULT_MAX_RETRIES,
    OLLAMA_BASE_URL,
    SCRIPT_PATH_ENV,
)
from .errors import ConfigError


def _split_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [k.strip() for k in raw.split(",") if k.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass
class RuntimeConfig:
    """Settings for a runtime instance; ``from_env`` fills gaps from PPE_* variables."""

    provider: str = "gemini"
    model: str = "gemini-1.5-flash"
    api_keys: List[str] = field(default_factory=list)
    ollama_url: str = OLLAMA_BASE_URL
    script_path: List[Path] = field(default_factory=list)
    max_retries: int = DEFAULT_MAX_RETRIES
    cache_ttl: int = CACHE_TTL

    @classmethod
    def from_env(
        cls,
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_keys: Optional[List[str]] = None,
    ) -> "RuntimeConfig":
        resolved_provider = (provider or os.getenv("PPE_PROVIDER", "gemini")).lower()
        resolved_model = model or os.getenv("PPE_MODEL") or _default_model(resolved_provider)
        keys = api_keys if api_keys is not None else _split_keys(os.getenv("PPE_API_KEYS"))
        search = [
            Path(os.path.expanduser(p))
            for p in os.getenv(SCRIPT_PATH_ENV, "").split(os.pathsep)
            if p.strip()
        ]
        return cls(
            provider=resolved_provider,
            model=resolved_model,
            api_keys=keys,
            ollama_url=os.getenv("PPE_OLLAMA_URL", OLLAMA_BASE_URL).rstrip("/"),
            script_path=search,
            max_retries=_int_env("PPE_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            cache_ttl=_int_env("PPE_CACHE_TTL", CACHE_TTL),
        )


def _default_model(provider: str) -> str:
    return {
        "gemini": "gemini-1.5-flash",
        "openai": "gpt-4o-mini",
        "anthropic": "claude-3-haiku-20240307",
        "ollama": "llama3",
    }.get(provider, "gemini-1.5-flash")
