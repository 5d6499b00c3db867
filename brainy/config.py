"""Configuration loading: YAML file + environment variable overrides."""

from __future__ import annotations

import copy
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


DEFAULT_CONFIG_DIR = Path.home() / ".config" / "brainy"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

STORAGE_BACKENDS = ("memory", "sqlite")

DEFAULTS: dict[str, Any] = {
    "env": "local",
    "telegram": {
        "bot_token": "",
        "username": "",
    },
    "openai": {
        "api_key": "",
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "temperature": 0.7,
        "timeout": 120,
    },
    "storage": {
        "backend": "memory",
        "path": "",
    },
    "context": {
        "max_tokens": 20000,
    },
    "analyzer": {
        "enabled": True,
        "interval": 3600,  # seconds between eligibility polls
        "cutoff": 86400,  # minimum seconds between two analyses of one user
        "min_messages": 3,
        "max_concurrent": 4,
        "request_timeout": 90,
    },
    "behavior": {
        "poll_timeout": 30,
    },
    "data_dir": str(DEFAULT_CONFIG_DIR / "data"),
}


class Config:
    """Merged configuration from YAML + env vars."""

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        merged = _deep_copy(DEFAULTS)

        if self._path.exists():
            try:
                with open(self._path) as f:
                    file_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"cannot parse {self._path}", component="config", detail=str(exc))
            if not isinstance(file_data, dict):
                raise ConfigError(f"{self._path} must contain a mapping", component="config")
            _deep_merge(merged, file_data)

        env_map = {
            "BRAINY_BOT_TOKEN": ("telegram", "bot_token"),
            "BRAINY_BOT_USERNAME": ("telegram", "username"),
            "BRAINY_OPENAI_API_KEY": ("openai", "api_key"),
            "BRAINY_MODEL": ("openai", "model"),
            "BRAINY_STORAGE_BACKEND": ("storage", "backend"),
            "BRAINY_STORAGE_PATH": ("storage", "path"),
            "BRAINY_DATA_DIR": ("data_dir",),
            "BRAINY_ENV": ("env",),
        }
        for env_key, path in env_map.items():
            val = os.environ.get(env_key)
            if val is not None:
                _set_nested(merged, path, _coerce(val))

        self._data = merged

    # -- Accessors --

    @property
    def path(self) -> Path:
        return self._path

    @property
    def env(self) -> str:
        return str(self._data["env"])

    @property
    def bot_token(self) -> str:
        return str(self._data["telegram"]["bot_token"])

    @property
    def bot_username(self) -> str:
        return str(self._data["telegram"]["username"]).lstrip("@")

    @property
    def api_key(self) -> str:
        return str(self._data["openai"]["api_key"])

    @property
    def base_url(self) -> str:
        return str(self._data["openai"]["base_url"]).rstrip("/")

    @property
    def model(self) -> str:
        return str(self._data["openai"]["model"])

    @property
    def temperature(self) -> float:
        return float(self._data["openai"]["temperature"])

    @property
    def completion_timeout(self) -> int:
        return int(self._data["openai"]["timeout"])

    @property
    def storage_backend(self) -> str:
        return str(self._data["storage"]["backend"]).lower()

    @property
    def sqlite_path(self) -> Path:
        path = self._data["storage"]["path"]
        if path:
            return Path(path).expanduser()
        return self.data_dir / "brainy.db"

    @property
    def max_tokens(self) -> int:
        return int(self._data["context"]["max_tokens"])

    @property
    def analyzer_enabled(self) -> bool:
        return bool(self._data["analyzer"]["enabled"])

    @property
    def analysis_interval(self) -> timedelta:
        return timedelta(seconds=int(self._data["analyzer"]["interval"]))

    @property
    def analysis_cutoff(self) -> timedelta:
        return timedelta(seconds=int(self._data["analyzer"]["cutoff"]))

    @property
    def min_messages(self) -> int:
        return int(self._data["analyzer"]["min_messages"])

    @property
    def max_concurrent_analyses(self) -> int:
        return int(self._data["analyzer"]["max_concurrent"])

    @property
    def analysis_timeout(self) -> int:
        return int(self._data["analyzer"]["request_timeout"])

    @property
    def poll_timeout(self) -> int:
        return int(self._data["behavior"]["poll_timeout"])

    @property
    def data_dir(self) -> Path:
        return Path(self._data["data_dir"]).expanduser()

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def validate(self) -> list[str]:
        """Return list of validation errors, empty if config is valid."""
        errors = []
        if not self.bot_token:
            errors.append("telegram.bot_token is required")
        if not self.api_key:
            errors.append("openai.api_key is required")
        if self.storage_backend not in STORAGE_BACKENDS:
            errors.append(
                f"storage.backend must be one of {', '.join(STORAGE_BACKENDS)}"
                f" (got {self.storage_backend!r})"
            )
        try:
            if self.max_tokens <= 0:
                errors.append("context.max_tokens must be positive")
            if self.analysis_interval.total_seconds() <= 0:
                errors.append("analyzer.interval must be positive")
            elif self.analysis_interval >= self.analysis_cutoff:
                errors.append("analyzer.interval must be shorter than analyzer.cutoff")
            if self.max_concurrent_analyses <= 0:
                errors.append("analyzer.max_concurrent must be positive")
        except (TypeError, ValueError) as exc:
            errors.append(f"invalid numeric setting: {exc}")
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
