"""Tests for the HTTP API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

import pytest

import inspectsync.main as main_module
from inspectsync.api.wire import iso

NOW = "2026-03-01T08:55:00Z"


def _create_change(client_id, asset_id="asset-1", **data):
    payload = {
        "assetId": asset_id,
        "dateOfInspection": "2026-02-20T10:00:00Z",
        "conditionGrade": "GRADE_3",
        "status": "COMPLETE",
        "defectSeverity": 2,
    }
    payload.update(data)
    return {
        "type": "CREATE",
        "entity": "inspection",
        "clientId": client_id,
        "data": payload,
        "localTimestamp": NOW,
    }


def _mobile(client_id=None, asset_id="asset-1", **extra):
    body = {
        "clientId": client_id or str(uuid.uuid4()),
        "assetId": asset_id,
        "dateOfInspection": "2026-02-20T10:00:00Z",
        "conditionGrade": "GRADE_2",
    }
    body.update(extra)
    return body


# -- identity and request shape ----------------------------------------------


@pytest.mark.asyncio
async def test_missing_identity_rejected(client):
    resp = await client.post("/sync/push", json={"changes": []})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_malformed_push_rejected(client, headers):
    change = _create_change("c1")
    del change["localTimestamp"]
    resp = await client.post("/sync/push", json={"changes": [change]}, headers=headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_oversized_push_rejected(client, headers, assets):
    changes = [_create_change(f"c{n}") for n in range(51)]
    resp = await client.post("/sync/push", json={"changes": changes}, headers=headers)
    assert resp.status_code == 413


# -- push ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_push_is_idempotent(client, headers, assets):
    body = {"changes": [_create_change("c1")]}

    first = await client.post("/sync/push", json=body, headers=headers)
    second = await client.post("/sync/push", json=body, headers=headers)

    assert first.status_code == 200
    created = first.json()["results"][0]
    assert created["status"] == "created"
    assert created["clientId"] == "c1"
    assert created["syncVersion"] == 1
    assert first.json()["summary"]["created"] == 1
    assert first.json()["syncedAt"].endswith("Z")

    replay = second.json()["results"][0]
    assert replay["status"] == "already_synced"
    assert replay["id"] == created["id"]
    assert second.json()["summary"]["alreadySynced"] == 1


@pytest.mark.asyncio
async def test_push_partial_failure(client, headers, assets):
    body = {"changes": [
        _create_change("c1"),
        _create_change("c2", asset_id="missing"),
        {"type": "CREATE", "entity": "media", "clientId": "m1", "localTimestamp": NOW},
    ]}

    resp = await client.post("/sync/push", json=body, headers=headers)

    assert resp.status_code == 200
    results = resp.json()["results"]
    assert [r["status"] for r in results] == ["created", "error", "error"]
    assert "Asset not found" in results[1]["error"]
    assert results[2]["error"] == "Media should be synced via upload URLs"
    assert resp.json()["summary"]["failed"] == 2


@pytest.mark.asyncio
async def test_push_update_conflict_returns_server_version(client, headers, assets):
    created = (await client.post(
        "/sync/push", json={"changes": [_create_change("c1")]}, headers=headers,
    )).json()["results"][0]

    def update(version, comment):
        return {"changes": [{
            "type": "UPDATE", "entity": "inspection", "id": created["id"],
            "syncVersion": version, "data": {"comments": comment}, "localTimestamp": NOW,
        }]}

    ok = await client.post("/sync/push", json=update(1, "first"), headers=headers)
    assert ok.json()["results"][0] == {"status": "updated", "clientId": "c1",
                                       "id": created["id"], "syncVersion": 2}

    stale = await client.post("/sync/push", json=update(1, "second"), headers=headers)
    result = stale.json()["results"][0]
    assert result["status"] == "conflict"
    assert result["resolution"] == "server_wins"
    assert result["serverVersion"]["syncVersion"] == 2
    assert result["serverVersion"]["comments"] == "first"
    assert result["serverVersion"]["riskScore"] == 6


@pytest.mark.asyncio
async def test_push_delete_by_other_engineer(client, headers, other_headers, assets):
    created = (await client.post(
        "/sync/push", json={"changes": [_create_change("c1")]}, headers=headers,
    )).json()["results"][0]

    body = {"changes": [{"type": "DELETE", "entity": "inspection", "id": created["id"],
                         "syncVersion": 1, "localTimestamp": NOW}]}
    resp = await client.post("/sync/push", json=body, headers=other_headers)

    assert resp.json()["results"][0]["status"] == "error"
    assert "Not authorized" in resp.json()["results"][0]["error"]


# -- pull ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pull_full_then_incremental(client, headers, other_headers, assets):
    await client.post("/sync/push", json={"changes": [_create_change("c1")]}, headers=headers)
    await client.post("/sync/push", json={"changes": [_create_change("x1")]},
                      headers=other_headers)

    full = await client.post("/sync/pull", json={"entities": ["assets", "inspections"]},
                             headers=headers)
    assert full.status_code == 200
    changes = full.json()["changes"]
    assert len(changes["assets"]["created"]) == 2
    assert [i["clientId"] for i in changes["inspections"]["created"]] == ["c1"]
    asset = next(a for a in changes["assets"]["created"] if a["id"] == "asset-1")
    assert asset["lastConditionGrade"] == "GRADE_3"
    assert asset["inspectionCount"] == 2
    assert asset["nextInspectionDue"] == "2027-02-20T10:00:00Z"

    cursor = full.json()["syncedAt"]
    again = await client.post(
        "/sync/pull", json={"lastSyncAt": cursor, "entities": ["assets", "inspections"]},
        headers=headers)
    changes = again.json()["changes"]
    assert changes["assets"] == {"created": [], "updated": [], "deleted": []}
    assert changes["inspections"] == {"created": [], "updated": [], "deleted": []}


@pytest.mark.asyncio
async def test_pull_reports_deletions(client, headers, assets):
    created = (await client.post(
        "/sync/push", json={"changes": [_create_change("c1")]}, headers=headers,
    )).json()["results"][0]
    cursor = (await client.post("/sync/pull", json={"entities": ["inspections"]},
                                headers=headers)).json()["syncedAt"]

    await client.post("/sync/push", json={"changes": [{
        "type": "DELETE", "entity": "inspection", "id": created["id"],
        "syncVersion": 1, "localTimestamp": NOW,
    }]}, headers=headers)

    resp = await client.post(
        "/sync/pull", json={"lastSyncAt": cursor, "entities": ["inspections"]}, headers=headers)

    assert resp.json()["changes"]["inspections"]["deleted"] == [created["id"]]


@pytest.mark.asyncio
async def test_pull_rejects_unknown_entity(client, headers):
    resp = await client.post("/sync/pull", json={"entities": ["photos"]}, headers=headers)
    assert resp.status_code == 422


# -- mobile create shortcut ----------------------------------------------------------


@pytest.mark.asyncio
async def test_single_create_idempotent(client, headers, assets):
    body = _mobile(comments="all clear")

    first = await client.post("/sync/inspection", json=body, headers=headers)
    second = await client.post("/sync/inspection", json=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "created"
    assert first.json()["clientId"] == body["clientId"]
    assert first.json()["syncVersion"] == 1
    assert second.json()["status"] == "already_synced"
    assert second.json()["serverId"] == first.json()["serverId"]


@pytest.mark.asyncio
async def test_single_create_unknown_asset(client, headers, assets):
    resp = await client.post("/sync/inspection", json=_mobile(asset_id="nope"), headers=headers)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Asset not found", "assetId": "nope"}


@pytest.mark.asyncio
async def test_single_create_requires_uuid_client_id(client, headers, assets):
    resp = await client.post("/sync/inspection", json=_mobile(client_id="not-a-uuid"),
                             headers=headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_batch_create(client, headers, assets):
    repeated = _mobile()
    await client.post("/sync/inspection", json=repeated, headers=headers)

    body = {"inspections": [repeated, _mobile(), _mobile(asset_id="nope")]}
    resp = await client.post("/sync/inspections/batch", json=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["summary"] == {"created": 1, "alreadySynced": 1, "failed": 1, "total": 3}
    statuses = [r["status"] for r in resp.json()["results"]]
    assert statuses == ["already_synced", "created", "failed"]


@pytest.mark.asyncio
async def test_batch_create_accepts_bare_list(client, headers, assets):
    resp = await client.post("/sync/inspections/batch", json=[_mobile(), _mobile()],
                             headers=headers)
    assert resp.status_code == 200
    assert resp.json()["summary"]["created"] == 2


# -- listings and status ---------------------------------------------------------


@pytest.mark.asyncio
async def test_all_assets(client, headers, assets):
    resp = await client.get("/sync/assets/all", headers=headers)
    data = resp.json()
    assert data["count"] == 2
    assert data["hasMore"] is False
    assert {a["assetCode"] for a in data["assets"]} == {"TUN-001", "TUN-002"}
    assert all(a["status"] == "not-inspected" for a in data["assets"])

    limited = await client.get("/sync/assets/all", params={"limit": 1}, headers=headers)
    assert limited.json()["count"] == 1
    assert limited.json()["hasMore"] is True


@pytest.mark.asyncio
async def test_all_inspections_scoped_to_engineer(client, headers, other_headers, assets):
    await client.post("/sync/inspection", json=_mobile(), headers=headers)
    await client.post("/sync/inspection", json=_mobile(), headers=other_headers)

    resp = await client.get("/sync/inspections/all", headers=headers)

    data = resp.json()
    assert data["count"] == 1
    assert data["inspections"][0]["engineerId"] == "eng-1"
    assert data["inspections"][0]["inspectorName"] == "Ada Field"
    assert data["inspections"][0]["status"] == "COMPLETE"


@pytest.mark.asyncio
async def test_sync_status(client, headers, assets, store):
    await client.post("/sync/inspection", json=_mobile(), headers=headers)
    refreshed = await store.get_asset("asset-1")

    resp = await client.get("/sync/status", headers=headers)

    data = resp.json()
    assert data["user"] == {"id": "eng-1", "totalInspections": 1}
    assert data["assets"]["total"] == 2
    assert data["assets"]["lastUpdated"] == iso(refreshed.updated_at)


@pytest.mark.asyncio
async def test_sync_status_without_assets(client, headers):
    resp = await client.get("/sync/status", headers=headers)

    assert resp.json()["assets"] == {"total": 0, "lastUpdated": None}


@pytest.mark.asyncio
async def test_pull_cursor_trails_by_configured_overlap(client, headers, config, store, clock):
    config.sync.pull_overlap_seconds = 30
    main_module.init_components(config, store, clock=clock)
    read_at = clock.current

    resp = await client.post("/sync/pull", json={"entities": ["assets"]}, headers=headers)

    synced_at = datetime.fromisoformat(resp.json()["syncedAt"].replace("Z", "+00:00"))
    assert read_at - timedelta(seconds=31) < synced_at <= read_at - timedelta(seconds=30)


# -- monitoring ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client, assets):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["storage_ok"] is True
    assert data["asset_count"] == 2
    assert data["storage_backend"] == "memory"


@pytest.mark.asyncio
async def test_stats_after_traffic(client, headers, other_headers, assets):
    await client.post("/sync/push", json={"changes": [_create_change("c1")]}, headers=headers)
    await client.post("/sync/pull", json={"entities": ["assets"]}, headers=other_headers)

    data = (await client.get("/api/v1/stats")).json()

    assert data["pushes_received"] == 1
    assert data["pulls_served"] == 1
    assert data["records_pulled"] == 2
    assert data["results"]["created"] == 1
    assert data["active_engineers"]["total"] == 2
    assert data["active_engineers"]["pushing"] == 1
    assert data["active_engineers"]["pulling"] == 1


@pytest.mark.asyncio
async def test_client_config(client, config):
    data = (await client.get("/api/v1/config")).json()
    assert data["max_batch_size"] == config.sync.max_batch_size
    assert data["conflict_resolution"] == "server_wins"
    assert data["entities"] == ["assets", "inspections"]
