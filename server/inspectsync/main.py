"""inspectsync server: main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, storage, and API layers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable

import structlog
from fastapi import FastAPI

from inspectsync.api.monitoring import router as monitoring_router
from inspectsync.api.sync import router as sync_router
from inspectsync.config import AppConfig, StorageConfig, load_config
from inspectsync.core.aggregates import AggregateUpdater
from inspectsync.core.conflicts import ConflictResolver
from inspectsync.core.idempotency import IdempotencyResolver
from inspectsync.core.processor import SyncProcessor
from inspectsync.core.snapshot import PullSnapshotBuilder
from inspectsync.core.stats import SyncStats
from inspectsync.storage.base import SyncStore
from inspectsync.storage.memory_store import MemorySyncStore
from inspectsync.storage.sql_store import SqlSyncStore

log = structlog.get_logger()

# Module-level singletons (set during startup)
_processor: SyncProcessor | None = None
_snapshots: PullSnapshotBuilder | None = None
_store: SyncStore | None = None
_stats: SyncStats | None = None
_config: AppConfig | None = None


def get_processor() -> SyncProcessor:
    assert _processor is not None, "Server not initialized"
    return _processor


def get_snapshots() -> PullSnapshotBuilder:
    assert _snapshots is not None, "Server not initialized"
    return _snapshots


def get_store() -> SyncStore:
    assert _store is not None, "Server not initialized"
    return _store


def get_stats() -> SyncStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def create_store(config: StorageConfig) -> SyncStore:
    if config.backend == "memory":
        return MemorySyncStore()
    if config.backend == "sql":
        return SqlSyncStore.from_url(config.database_url, echo=config.echo)
    raise ValueError(f"unknown storage backend {config.backend!r}")


def init_components(
    config: AppConfig,
    store: SyncStore,
    clock: Callable[[], datetime] | None = None,
) -> None:
    """Build the core services on top of ``store`` and install them as singletons."""
    global _processor, _snapshots, _store, _stats, _config

    aggregates = AggregateUpdater(
        store, clock=clock,
        default_frequency_months=config.sync.default_frequency_months,
    )
    _config = config
    _store = store
    _stats = SyncStats(active_window_seconds=config.sync.active_window_seconds)
    _processor = SyncProcessor(
        idempotency=IdempotencyResolver(store, aggregates, clock=clock),
        conflicts=ConflictResolver(store, aggregates, clock=clock),
        stats=_stats,
        max_concurrency=config.sync.max_concurrency,
    )
    _snapshots = PullSnapshotBuilder(
        store, clock=clock,
        overlap=timedelta(seconds=config.sync.pull_overlap_seconds),
    )


def reset_components() -> None:
    global _processor, _snapshots, _store, _stats, _config
    _processor = _snapshots = _store = _stats = _config = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    config = load_config()
    _setup_logging(config)

    log.info("server_starting",
             env=config.server.env,
             storage_backend=config.storage.backend,
             max_batch_size=config.sync.max_batch_size)

    store = create_store(config.storage)
    init_components(config, store)

    log.info("server_started",
             host=config.server.host,
             port=config.server.port)

    yield

    # Shutdown
    if isinstance(store, SqlSyncStore):
        store.dispose()
    reset_components()
    log.info("server_stopped")


app = FastAPI(
    title="inspectsync",
    description="Offline inspection sync server",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sync_router)
app.include_router(monitoring_router)
