"""Server configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: INSPECTSYNC_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory" or "sql"
    database_url: str = "sqlite:///data/inspectsync.db"
    echo: bool = False


@dataclass
class SyncConfig:
    max_batch_size: int = 500
    max_concurrency: int = 8
    default_frequency_months: int = 12
    asset_page_limit: int = 1000
    inspection_page_limit: int = 200
    active_window_seconds: float = 120.0
    # Pull cursors trail the read by this much; must exceed the longest write.
    pull_overlap_seconds: float = 60.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "INSPECTSYNC_SERVER_HOST": lambda v: setattr(config.server, "host", v),
        "INSPECTSYNC_SERVER_PORT": lambda v: setattr(config.server, "port", int(v)),
        "INSPECTSYNC_SERVER_ENV": lambda v: setattr(config.server, "env", v),
        "INSPECTSYNC_STORAGE_BACKEND": lambda v: setattr(config.storage, "backend", v),
        "INSPECTSYNC_STORAGE_DATABASE_URL": lambda v: setattr(config.storage, "database_url", v),
        "INSPECTSYNC_STORAGE_ECHO": lambda v: setattr(config.storage, "echo", _parse_bool(v)),
        "INSPECTSYNC_SYNC_MAX_BATCH_SIZE": lambda v: setattr(config.sync, "max_batch_size", int(v)),
        "INSPECTSYNC_SYNC_MAX_CONCURRENCY": lambda v: setattr(config.sync, "max_concurrency", int(v)),
        "INSPECTSYNC_SYNC_DEFAULT_FREQUENCY_MONTHS":
            lambda v: setattr(config.sync, "default_frequency_months", int(v)),
        "INSPECTSYNC_SYNC_ASSET_PAGE_LIMIT":
            lambda v: setattr(config.sync, "asset_page_limit", int(v)),
        "INSPECTSYNC_SYNC_INSPECTION_PAGE_LIMIT":
            lambda v: setattr(config.sync, "inspection_page_limit", int(v)),
        "INSPECTSYNC_SYNC_ACTIVE_WINDOW_SECONDS":
            lambda v: setattr(config.sync, "active_window_seconds", float(v)),
        "INSPECTSYNC_SYNC_PULL_OVERLAP_SECONDS":
            lambda v: setattr(config.sync, "pull_overlap_seconds", float(v)),
        "INSPECTSYNC_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "INSPECTSYNC_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("INSPECTSYNC_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section in fields(config):
            values = raw.get(section.name) or {}
            target = getattr(config, section.name)
            for k, v in values.items():
                if hasattr(target, k):
                    setattr(target, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
