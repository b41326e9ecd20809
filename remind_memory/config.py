"""Configuration loading: YAML file + environment variable overrides.

Settings are resolved once at startup and handed to the store, ranker and
agent constructors. Nothing below the CLI / service layer reads the
environment directly.
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "remind"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULTS: dict[str, Any] = {
    "store": {
        "db_path": "",  # empty: <data_dir>/memory.db
        "busy_timeout": 5.0,
    },
    "embedding": {
        "provider": "ollama",  # ollama | openai
        "model": "mxbai-embed-large",
        "dimensions": 1024,
        "base_url": "",
        "api_key": "",
        "timeout": 10,
    },
    "search": {
        "limit": 10,
        "candidates": 10,
    },
    "agent": {
        "policy": "similarity",  # similarity | llm
        "max_steps": 5,
        "token_budget": 0,  # 0 disables the token budget
        "duplicate_threshold": 0.97,
        "related_threshold": 0.85,
    },
    "llm": {
        "backend": "",  # anthropic | openai | "" (auto-detect from keys)
        "model": "",
        "max_tokens": 1024,
        "timeout": 30,
    },
    "log_level": "INFO",
    "data_dir": str(DEFAULT_CONFIG_DIR / "data"),
}

_ENV_MAP: dict[str, tuple[str, ...]] = {
    "REMIND_DB_PATH": ("store", "db_path"),
    "REMIND_DATA_DIR": ("data_dir",),
    "REMIND_EMBED_PROVIDER": ("embedding", "provider"),
    "REMIND_EMBED_MODEL": ("embedding", "model"),
    "REMIND_EMBED_DIMENSIONS": ("embedding", "dimensions"),
    "REMIND_EMBED_URL": ("embedding", "base_url"),
    "REMIND_EMBED_API_KEY": ("embedding", "api_key"),
    "REMIND_POLICY": ("agent", "policy"),
    "REMIND_MAX_STEPS": ("agent", "max_steps"),
    "REMIND_TOKEN_BUDGET": ("agent", "token_budget"),
    "REMIND_LLM_BACKEND": ("llm", "backend"),
    "REMIND_LOG_LEVEL": ("log_level",),
}

_PROVIDERS = ("ollama", "openai")
_POLICIES = ("similarity", "llm")


class Settings:
    """Merged configuration from YAML + env vars."""

    def __init__(self, path: str | Path | None = None, *, overrides: dict | None = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._data: dict[str, Any] = {}
        self._load(overrides or {})

    def _load(self, overrides: dict):
        merged = _deep_copy(DEFAULTS)

        if self._path.exists():
            with open(self._path) as f:
                file_data = yaml.safe_load(f) or {}
            _deep_merge(merged, file_data)

        for env_key, path in _ENV_MAP.items():
            val = os.environ.get(env_key)
            if val is not None:
                _set_nested(merged, path, _coerce(val))

        _deep_merge(merged, overrides)
        self._data = merged

    # -- Accessors --

    @property
    def data_dir(self) -> Path:
        return Path(self._data["data_dir"]).expanduser()

    @property
    def db_path(self) -> Path:
        raw = self._data["store"]["db_path"]
        if raw:
            return Path(raw).expanduser()
        return self.data_dir / "memory.db"

    @property
    def busy_timeout(self) -> float:
        return float(self._data["store"]["busy_timeout"])

    @property
    def embed_provider(self) -> str:
        return str(self._data["embedding"]["provider"]).lower()

    @property
    def embed_model(self) -> str:
        return self._data["embedding"]["model"]

    @property
    def embed_dimensions(self) -> int:
        return int(self._data["embedding"]["dimensions"])

    @property
    def embed_base_url(self) -> str:
        return self._data["embedding"]["base_url"]

    @property
    def embed_api_key(self) -> str:
        return self._data["embedding"]["api_key"]

    @property
    def embed_timeout(self) -> float:
        return float(self._data["embedding"]["timeout"])

    @property
    def search_limit(self) -> int:
        return int(self._data["search"]["limit"])

    @property
    def candidate_limit(self) -> int:
        return int(self._data["search"]["candidates"])

    @property
    def policy(self) -> str:
        return str(self._data["agent"]["policy"]).lower()

    @property
    def max_steps(self) -> int:
        return int(self._data["agent"]["max_steps"])

    @property
    def token_budget(self) -> int | None:
        budget = int(self._data["agent"]["token_budget"])
        return budget or None

    @property
    def duplicate_threshold(self) -> float:
        return float(self._data["agent"]["duplicate_threshold"])

    @property
    def related_threshold(self) -> float:
        return float(self._data["agent"]["related_threshold"])

    @property
    def llm_backend(self) -> str:
        return str(self._data["llm"]["backend"]).lower()

    @property
    def llm_model(self) -> str:
        return self._data["llm"]["model"]

    @property
    def llm_max_tokens(self) -> int:
        return int(self._data["llm"]["max_tokens"])

    @property
    def llm_timeout(self) -> float:
        return float(self._data["llm"]["timeout"])

    @property
    def log_level(self) -> str:
        return str(self._data["log_level"]).upper()

    @property
    def error_log_dir(self) -> Path:
        return self.data_dir

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if config is valid."""
        errors = []
        if self.embed_provider not in _PROVIDERS:
            errors.append(f"embedding.provider must be one of {', '.join(_PROVIDERS)}")
        if self.embed_dimensions <= 0:
            errors.append("embedding.dimensions must be positive")
        if not self.embed_model:
            errors.append("embedding.model is required")
        if self.policy not in _POLICIES:
            errors.append(f"agent.policy must be one of {', '.join(_POLICIES)}")
        if self.max_steps < 1:
            errors.append("agent.max_steps must be at least 1")
        if not 0.0 < self.related_threshold <= self.duplicate_threshold <= 1.0:
            errors.append("agent thresholds must satisfy 0 < related <= duplicate <= 1")
        if self.search_limit < 1:
            errors.append("search.limit must be at least 1")
        return errors

    def raw(self) -> dict[str, Any]:
        return _deep_copy(self._data)


def _deep_copy(d: dict) -> dict:
    """Deep copy a config dict."""
    return copy.deepcopy(d)


def _deep_merge(base: dict, override: dict):
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v


def _set_nested(d: dict, keys: tuple, value):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _coerce(val: str):
    """Try to coerce string env var to int/bool."""
    if val.isdigit():
        return int(val)
    if val.lower() in ("true", "false"):
        return val.lower() == "true"
    return val
