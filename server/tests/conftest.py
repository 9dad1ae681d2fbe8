"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

import inspectsync.main as main_module
from inspectsync.config import AppConfig
from inspectsync.core.aggregates import AggregateUpdater
from inspectsync.core.conflicts import ConflictResolver
from inspectsync.core.idempotency import IdempotencyResolver
from inspectsync.core.models import Asset
from inspectsync.storage.memory_store import MemorySyncStore


class FakeClock:
    """Deterministic clock; every reading is 1 ms after the previous one."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.step = timedelta(milliseconds=1)

    def __call__(self) -> datetime:
        value = self.current
        self.current += self.step
        return value

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemorySyncStore()


@pytest.fixture
def config():
    config = AppConfig()
    config.logging.level = "warning"
    config.sync.max_batch_size = 50
    # Exact cursors; the overlap window has its own tests.
    config.sync.pull_overlap_seconds = 0
    return config


@pytest.fixture(autouse=True)
def _init_server(config, store, clock):
    """Initialize server singletons for every test, on a fresh in-memory store."""
    main_module.init_components(config, store, clock=clock)

    yield

    main_module.reset_components()


@pytest.fixture
async def assets(store, clock):
    """Two assets every sync test can point inspections at."""
    now = clock()
    seeded = [
        Asset(id="asset-1", asset_code="TUN-001", title="Tunnel portal", zone="North",
              created_at=now, updated_at=now),
        Asset(id="asset-2", asset_code="TUN-002", title="Vent shaft", zone="South",
              inspection_frequency_months=6, created_at=now, updated_at=now),
    ]
    for asset in seeded:
        await store.put_asset(asset)
    return seeded


@pytest.fixture
def aggregates(store, clock):
    return AggregateUpdater(store, clock=clock)


@pytest.fixture
def idempotency(store, aggregates, clock):
    return IdempotencyResolver(store, aggregates, clock=clock)


@pytest.fixture
def conflicts(store, aggregates, clock):
    return ConflictResolver(store, aggregates, clock=clock)


@pytest.fixture
def headers():
    return {"X-Engineer-Id": "eng-1", "X-Engineer-Name": "Ada Field"}


@pytest.fixture
def other_headers():
    return {"X-Engineer-Id": "eng-2", "X-Engineer-Name": "Bo Survey"}


@pytest.fixture
async def client():
    from inspectsync.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
