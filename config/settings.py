"""
Configuration for the conversational engine.

Settings come from a YAML file (``CHAT_ENGINE_CONFIG`` or the bundled
config/settings.yaml). String values may reference the environment as
``${VAR}`` or ``${VAR:-fallback}``; a reference to an unset variable with
no fallback is left as written so misconfiguration stays visible.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_SERVICES = [
    "haircut", "hair color", "highlights", "blowout", "manicure",
    "pedicure", "facial", "massage", "beard trim", "waxing",
]

DEFAULT_STAFF_NAMES = ["emma", "sarah", "lisa", "maya", "olivia", "james"]

DEFAULT_CONFIG_PATH = Path(__file__).parent / "settings.yaml"

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


@dataclass
class EngineConfig:
    default_tenant_id: str = "default"
    pending_flow_ttl_minutes: int = 10
    lock_ttl_seconds: float = 30.0
    lock_timeout_seconds: float = 5.0
    turn_timeout_seconds: float = 15.0
    directory_retry_attempts: int = 2
    worker_concurrency: int = 5
    worker_max_attempts: int = 5
    worker_retry_backoff_seconds: float = 1.0


@dataclass
class CatalogConfig:
    """Vocabulary the classifier extracts services and stylist names from."""
    services: list[str] = field(default_factory=lambda: list(DEFAULT_SERVICES))
    staff_names: list[str] = field(default_factory=lambda: list(DEFAULT_STAFF_NAMES))


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendConfig:
    type: str = "memory"                # "rest" | "memory"
    base_url: str = ""
    auth_type: str = "bearer"           # "bearer" | "api_key" | "none"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./conversations.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout_seconds: float = 30.0


@dataclass
class LockConfig:
    backend: str = "memory"             # "memory" for a single process, "redis" across workers
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "conv-lock"


@dataclass
class Settings:
    app_name: str = "ChatEngine"
    engine: EngineConfig = field(default_factory=EngineConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_SECTIONS = {
    "engine": EngineConfig,
    "catalog": CatalogConfig,
    "database": DatabaseConfig,
    "locks": LockConfig,
    "backend": BackendConfig,
}

_settings: Optional[Settings] = None


def _expand_env(value: Any) -> Any:
    """Resolve ${VAR} / ${VAR:-fallback} references in every string, recursively."""
    if isinstance(value, str):
        def resolve(match: re.Match) -> str:
            name, fallback = match.group(1), match.group(2)
            if name in os.environ:
                return os.environ[name]
            return fallback if fallback is not None else match.group(0)
        return _ENV_REF.sub(resolve, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a section dataclass from YAML, ignoring keys it does not declare."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in names})


def load_settings(config_path: str = None) -> Settings:
    """Read the YAML file and replace the cached settings with the result."""
    global _settings

    path = Path(config_path or os.environ.get("CHAT_ENGINE_CONFIG", DEFAULT_CONFIG_PATH))
    settings = Settings()

    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})
        settings.app_name = raw.get("app_name", settings.app_name)
        for name, cls in _SECTIONS.items():
            if name in raw:
                setattr(settings, name, _section(cls, raw[name]))
        settings.channels = {
            name: _section(ChannelConfig, data)
            for name, data in (raw.get("channels") or {}).items()
        }

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings, loading the default file on first use."""
    if _settings is None:
        return load_settings()
    return _settings
