"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from fastapi import APIRouter

router = APIRouter(prefix="/api/v1")

log = structlog.get_logger()

# Wire protocol version spoken by /sync endpoints.
PROTOCOL_VERSION = 1

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health() -> dict:
    """Basic health check, including a round trip to the store."""
    from inspectsync.main import get_config, get_stats, get_store

    config = get_config()
    try:
        asset_count = await get_store().count_assets()
        storage_ok = True
    except Exception:
        log.error("health_storage_check_failed", exc_info=True)
        asset_count = -1
        storage_ok = False

    snapshot = get_stats().snapshot()
    result = {
        "status": "ok" if storage_ok else "degraded",
        "version": "0.1.0",
        "uptime_seconds": snapshot["uptime_seconds"],
        "storage_backend": config.storage.backend,
        "storage_ok": storage_ok,
        "asset_count": asset_count,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats() -> dict:
    """Detailed server statistics including active engineer counts.

    The ``active_engineers`` section shows:
    - ``total``: engineers seen in the last N seconds (configurable window)
    - ``pushing``: engineers whose last request was a push
    - ``pulling``: engineers whose last request was a pull
    - ``window_seconds``: the time window used for "active" calculation
    """
    from inspectsync.main import get_stats

    return get_stats().snapshot()


@router.get("/config")
async def get_client_config() -> dict:
    """Configuration endpoint for the mobile app.

    The app calls this on startup to get server-controlled parameters.
    """
    from inspectsync.main import get_config

    config = get_config()
    return {
        "protocol_version": PROTOCOL_VERSION,
        "max_batch_size": config.sync.max_batch_size,
        "entities": ["assets", "inspections"],
        "conflict_resolution": "server_wins",
        "tombstones": True,
    }
