"""Sync API endpoints.

This is the thin FastAPI adapter. It validates the top-level request shape,
converts it to core operations, calls the processor or snapshot builder and
marshals results back in input order.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from inspectsync.api.schemas import (
    MobileBatchRequest,
    MobileInspection,
    PullRequest,
    PushRequest,
)
from inspectsync.api.wire import (
    asset_to_wire,
    inspection_to_wire,
    iso,
    result_to_wire,
    summary_to_wire,
)
from inspectsync.core.errors import NotFoundError
from inspectsync.core.models import Engineer
from inspectsync.core.operations import parse_datetime

router = APIRouter(prefix="/sync")


async def current_engineer(
    x_engineer_id: Annotated[str | None, Header()] = None,
    x_engineer_name: Annotated[str | None, Header()] = None,
) -> Engineer:
    """Identity is established upstream; we only read what it hands us."""
    if not x_engineer_id:
        raise HTTPException(status_code=401, detail="missing engineer identity")
    return Engineer(id=x_engineer_id, name=x_engineer_name)


def _check_batch_size(size: int) -> None:
    from inspectsync.main import get_config

    limit = get_config().sync.max_batch_size
    if size > limit:
        raise HTTPException(
            status_code=413,
            detail=f"batch of {size} operations exceeds max_batch_size {limit}",
        )


@router.post("/push")
async def push(
    body: PushRequest,
    engineer: Annotated[Engineer, Depends(current_engineer)],
) -> dict:
    """Apply a client's queued local changes.

    Always answers with one result per change, in input order, even when
    some of them failed.
    """
    from inspectsync.main import get_processor

    _check_batch_size(len(body.changes))
    synced_at = datetime.now(timezone.utc)
    with structlog.contextvars.bound_contextvars(engineer_id=engineer.id, request_kind="push"):
        results, summary = await get_processor().process_push(
            [change.to_raw() for change in body.changes], engineer)

    return {
        "results": [result_to_wire(r) for r in results],
        "summary": summary_to_wire(summary),
        "syncedAt": iso(synced_at),
    }


@router.post("/pull")
async def pull(
    body: PullRequest,
    engineer: Annotated[Engineer, Depends(current_engineer)],
) -> dict:
    """Everything the client must download since ``lastSyncAt``.

    The returned ``syncedAt`` is the client's next cursor.
    """
    from inspectsync.main import get_snapshots, get_stats

    with structlog.contextvars.bound_contextvars(engineer_id=engineer.id, request_kind="pull"):
        snapshot = await get_snapshots().build(
            engineer.id, list(body.entities), body.last_sync_at)
    get_stats().record_pull(engineer.id, snapshot.record_count)

    now = datetime.now(timezone.utc)
    changes = {}
    for kind, bucket in snapshot.changes.items():
        changes[kind] = {
            "created": [_pulled_to_wire(kind, r, now) for r in bucket.created],
            "updated": [_pulled_to_wire(kind, r, now) for r in bucket.updated],
            "deleted": list(bucket.deleted),
        }
    return {"syncedAt": iso(snapshot.synced_at), "changes": changes}


@router.post("/inspection")
async def create_inspection(
    body: MobileInspection,
    engineer: Annotated[Engineer, Depends(current_engineer)],
):
    """Idempotent single create keyed by ``clientId``."""
    from inspectsync.main import get_processor

    op = body.to_operation()
    with structlog.contextvars.bound_contextvars(engineer_id=engineer.id,
                                                 request_kind="create"):
        try:
            result = await get_processor().create_one(op, engineer)
        except NotFoundError:
            return JSONResponse(
                status_code=404,
                content={"error": "Asset not found", "assetId": op.fields.asset_id},
            )

    return {
        "status": result.status,
        "serverId": result.server_id,
        "clientId": result.client_id,
        "syncVersion": result.sync_version,
    }


@router.post("/inspections/batch")
async def create_inspections_batch(
    body: Annotated[list[MobileInspection] | MobileBatchRequest, Body()],
    engineer: Annotated[Engineer, Depends(current_engineer)],
) -> dict:
    """Idempotent creates for many inspections.

    Accepts either a bare JSON array or ``{"inspections": [...]}``.
    """
    from inspectsync.main import get_processor

    inspections = body.inspections if isinstance(body, MobileBatchRequest) else body
    _check_batch_size(len(inspections))
    with structlog.contextvars.bound_contextvars(engineer_id=engineer.id,
                                                 request_kind="create_batch"):
        results, summary = await get_processor().create_many(
            [i.to_operation() for i in inspections], engineer)

    wire_results = []
    for r in results:
        item = {"clientId": r.client_id, "status": r.status}
        if r.server_id is not None:
            item["serverId"] = r.server_id
        if r.sync_version is not None:
            item["syncVersion"] = r.sync_version
        if r.error is not None:
            item["error"] = r.error
        wire_results.append(item)

    return {
        "summary": {
            "created": summary.created,
            "alreadySynced": summary.already_synced,
            "failed": summary.failed,
            "total": summary.total,
        },
        "results": wire_results,
    }


@router.get("/assets/all")
async def all_assets(
    engineer: Annotated[Engineer, Depends(current_engineer)],
    since: datetime | None = None,
    limit: int | None = Query(default=None, ge=1, le=2000),
) -> dict:
    """Initial asset download for a device, oldest change first."""
    from inspectsync.main import get_config, get_store

    limit = limit or get_config().sync.asset_page_limit
    now = datetime.now(timezone.utc)
    assets = await get_store().list_assets(
        updated_after=_utc(since), inclusive=True, limit=limit)
    return {
        "assets": [asset_to_wire(a, now) for a in assets],
        "count": len(assets),
        "hasMore": len(assets) == limit,
        "syncTimestamp": iso(now),
    }


@router.get("/inspections/all")
async def all_inspections(
    engineer: Annotated[Engineer, Depends(current_engineer)],
    since: datetime | None = None,
    limit: int | None = Query(default=None, ge=1, le=500),
) -> dict:
    """The caller's own inspections, most recently changed first."""
    from inspectsync.main import get_config, get_store

    limit = limit or get_config().sync.inspection_page_limit
    now = datetime.now(timezone.utc)
    inspections = await get_store().list_inspections(
        engineer.id, updated_after=_utc(since), inclusive=True, limit=limit)
    return {
        "inspections": [inspection_to_wire(i) for i in inspections],
        "count": len(inspections),
        "hasMore": len(inspections) == limit,
        "syncTimestamp": iso(now),
    }


@router.get("/status")
async def sync_status(
    engineer: Annotated[Engineer, Depends(current_engineer)],
) -> dict:
    from inspectsync.main import get_store

    store = get_store()
    total_inspections = await store.count_inspections(engineer_id=engineer.id)
    total_assets = await store.count_assets()
    last_updated = await store.latest_asset_update()
    return {
        "serverTime": iso(datetime.now(timezone.utc)),
        "user": {"id": engineer.id, "totalInspections": total_inspections},
        "assets": {"total": total_assets, "lastUpdated": iso(last_updated)},
    }


def _pulled_to_wire(kind: str, record, now: datetime) -> dict:
    if kind == "assets":
        return asset_to_wire(record, now)
    return inspection_to_wire(record)


def _utc(value: datetime | None) -> datetime | None:
    return parse_datetime(value, "since") if value is not None else None
