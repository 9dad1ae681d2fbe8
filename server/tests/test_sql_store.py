"""Tests for the SQLAlchemy store on a temporary SQLite file."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from inspectsync.core.aggregates import AggregateUpdater
from inspectsync.core.conflicts import ConflictResolver
from inspectsync.core.errors import ClientIdConflictError
from inspectsync.core.idempotency import IdempotencyResolver
from inspectsync.core.models import (
    Asset,
    AssetAggregate,
    ConditionGrade,
    InspectionFields,
    InspectionRecord,
    InspectionStatus,
    Tombstone,
)
from inspectsync.core.operations import CreateInspection, DeleteInspection, UpdateInspection
from inspectsync.core.snapshot import PullSnapshotBuilder
from inspectsync.storage.sql_store import SqlSyncStore, create_sql_engine

UTC = timezone.utc
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def sql_store(tmp_path):
    store = SqlSyncStore.from_url(f"sqlite:///{tmp_path}/inspectsync.db")
    yield store
    store.dispose()


@pytest.fixture
async def seeded(sql_store):
    await sql_store.put_asset(Asset(
        id="asset-1", asset_code="TUN-001", title="Tunnel portal", zone="North",
        created_at=T0, updated_at=T0,
    ))
    return sql_store


def _record(record_id, client_id=None, *, day=10, status=InspectionStatus.COMPLETE,
            grade=ConditionGrade.GRADE_2, engineer_id="eng-1"):
    when = datetime(2026, 1, day, 10, tzinfo=UTC)
    return InspectionRecord(
        id=record_id, asset_id="asset-1", engineer_id=engineer_id,
        date_of_inspection=when, condition_grade=grade, status=status,
        sync_version=1, created_at=T0, updated_at=T0 + timedelta(days=day),
        client_id=client_id, zone="North",
    )


@pytest.mark.asyncio
async def test_asset_round_trip_keeps_utc(seeded):
    asset = await seeded.get_asset("asset-1")
    assert asset.asset_code == "TUN-001"
    assert asset.updated_at == T0
    assert asset.updated_at.tzinfo is not None
    assert asset.aggregate == AssetAggregate()
    assert await seeded.count_assets() == 1


@pytest.mark.asyncio
async def test_save_aggregate_if_version(seeded):
    agg = AssetAggregate(last_inspection_id="r1", last_condition_grade=ConditionGrade.GRADE_4,
                         inspection_count=3,
                         next_inspection_due=datetime(2027, 1, 10, tzinfo=UTC))
    later = T0 + timedelta(hours=1)

    asset = await seeded.save_asset_aggregate_if_version("asset-1", agg, 0, later)

    assert asset.aggregate == agg
    assert asset.aggregate_version == 1
    assert asset.updated_at == later
    assert await seeded.save_asset_aggregate_if_version(
        "asset-1", AssetAggregate(), 0, later) is None
    assert (await seeded.get_asset("asset-1")).aggregate == agg
    assert await seeded.save_asset_aggregate_if_version("missing", agg, 0, later) is None


@pytest.mark.asyncio
async def test_latest_asset_update(sql_store):
    assert await sql_store.latest_asset_update() is None

    for n, asset_id in enumerate(["a", "b", "c"]):
        await sql_store.put_asset(Asset(id=asset_id, asset_code=asset_id.upper(),
                                        updated_at=T0 + timedelta(hours=(n * 5) % 3)))

    assert await sql_store.latest_asset_update() == T0 + timedelta(hours=2)


@pytest.mark.asyncio
async def test_unique_client_id(seeded):
    await seeded.insert_inspection(_record("r1", "c1"))

    with pytest.raises(ClientIdConflictError):
        await seeded.insert_inspection(_record("r2", "c1"))
    assert (await seeded.get_inspection_by_client_id("c1")).id == "r1"


@pytest.mark.asyncio
async def test_client_id_stays_taken_after_delete(seeded):
    await seeded.insert_inspection(_record("r1", "c1"))
    tombstone = Tombstone(id="r1", client_id="c1", asset_id="asset-1",
                          engineer_id="eng-1", deleted_at=T0 + timedelta(days=30))
    assert await seeded.delete_inspection_if_version(tombstone, 1) is True

    with pytest.raises(ClientIdConflictError):
        await seeded.insert_inspection(_record("r2", "c1"))
    assert await seeded.count_inspections() == 0
    assert await seeded.get_inspection_by_client_id("c1") is None


class _PausingStore(SqlSyncStore):
    """Parks the next aggregate write until released, as a slow instance would."""

    def __init__(self, engine) -> None:
        super().__init__(engine)
        self.hold_next = False
        self.parked = asyncio.Event()
        self.release = asyncio.Event()

    async def save_asset_aggregate_if_version(self, *args):
        if self.hold_next:
            self.hold_next = False
            self.parked.set()
            await self.release.wait()
        return await super().save_asset_aggregate_if_version(*args)


@pytest.mark.asyncio
async def test_two_updaters_sharing_a_store_leave_fresh_aggregate(tmp_path):
    store = _PausingStore(create_sql_engine(f"sqlite:///{tmp_path}/shared.db"))
    store.create_schema()
    await store.put_asset(Asset(id="asset-1", asset_code="TUN-001", created_at=T0,
                                updated_at=T0))
    instance_a = AggregateUpdater(store, clock=lambda: T0 + timedelta(hours=1))
    instance_b = AggregateUpdater(store, clock=lambda: T0 + timedelta(hours=2))
    try:
        await store.insert_inspection(_record("r1", "c1", day=3))
        store.hold_next = True
        slow = asyncio.create_task(instance_a.refresh("asset-1"))
        await store.parked.wait()

        await store.insert_inspection(_record("r2", "c2", day=20))
        await instance_b.refresh("asset-1")
        store.release.set()
        await slow

        asset = await store.get_asset("asset-1")
        assert asset.aggregate.inspection_count == await store.count_inspections(
            asset_id="asset-1") == 2
        assert asset.aggregate.last_inspection_id == "r2"
    finally:
        store.dispose()


@pytest.mark.asyncio
async def test_compare_and_swap(seeded):
    await seeded.insert_inspection(_record("r1", "c1"))
    current = await seeded.get_inspection("r1")
    bumped = replace(current, sync_version=2, comments="first")

    assert await seeded.replace_inspection_if_version(bumped, 1) is True
    assert await seeded.replace_inspection_if_version(
        replace(current, sync_version=2, comments="late"), 1) is False
    stored = await seeded.get_inspection("r1")
    assert stored.sync_version == 2
    assert stored.comments == "first"


@pytest.mark.asyncio
async def test_conditional_delete_writes_tombstone(seeded):
    await seeded.insert_inspection(_record("r1", "c1"))
    tombstone = Tombstone(id="r1", client_id="c1", asset_id="asset-1",
                          engineer_id="eng-1", deleted_at=T0 + timedelta(days=30))

    assert await seeded.delete_inspection_if_version(tombstone, 7) is False
    assert await seeded.delete_inspection_if_version(tombstone, 1) is True

    assert await seeded.get_inspection("r1") is None
    assert (await seeded.get_tombstone_by_client_id("c1")).id == "r1"
    assert [t.id for t in await seeded.list_tombstones("eng-1", T0)] == ["r1"]
    assert await seeded.list_tombstones("eng-1", T0 + timedelta(days=31)) == []
    assert await seeded.list_tombstones("eng-2", T0) == []


@pytest.mark.asyncio
async def test_latest_qualifying_and_listing(seeded):
    await seeded.insert_inspection(
        _record("newest-draft", day=28, status=InspectionStatus.IN_PROGRESS))
    await seeded.insert_inspection(_record("latest", day=20))
    await seeded.insert_inspection(_record("early", day=3, status=InspectionStatus.SUBMITTED))
    await seeded.insert_inspection(_record("foreign", day=5, engineer_id="eng-2"))

    assert (await seeded.latest_qualifying_inspection("asset-1")).id == "latest"
    assert await seeded.count_inspections(asset_id="asset-1") == 4
    assert await seeded.count_inspections(engineer_id="eng-1") == 3

    mine = await seeded.list_inspections("eng-1")
    assert [r.id for r in mine] == ["newest-draft", "latest", "early"]
    cursor = T0 + timedelta(days=20)
    assert [r.id for r in await seeded.list_inspections("eng-1", cursor)] == ["newest-draft"]
    assert [r.id for r in await seeded.list_inspections(
        "eng-1", cursor, inclusive=True)] == ["newest-draft", "latest"]
    assert len(await seeded.list_inspections("eng-1", limit=1)) == 1


@pytest.mark.asyncio
async def test_resolvers_end_to_end(seeded):
    ticks = iter(T0 + timedelta(minutes=n) for n in range(1, 1000))

    def clock():
        return next(ticks)

    aggregates = AggregateUpdater(seeded, clock=clock)
    idempotency = IdempotencyResolver(seeded, aggregates, clock=clock)
    conflicts = ConflictResolver(seeded, aggregates, clock=clock)
    op = CreateInspection(
        client_id="c1",
        fields=InspectionFields(
            asset_id="asset-1",
            date_of_inspection=datetime(2026, 2, 1, 8, tzinfo=UTC),
            condition_grade=ConditionGrade.GRADE_3,
            status=InspectionStatus.COMPLETE,
            defect_severity=3,
        ),
    )

    results = await asyncio.gather(*(idempotency.create(op, "eng-1") for _ in range(4)))
    assert sorted(r.status for r in results) == ["already_synced"] * 3 + ["created"]
    server_id = results[0].server_id
    assert await seeded.count_inspections() == 1

    asset = await seeded.get_asset("asset-1")
    assert asset.aggregate.last_inspection_id == server_id
    assert asset.aggregate.last_risk_score == 9
    assert asset.aggregate.next_inspection_due == datetime(2027, 2, 1, 8, tzinfo=UTC)

    updated = await conflicts.update(
        UpdateInspection(server_id=server_id, observed_version=1, changes={"comments": "ok"}),
        "eng-1")
    stale = await conflicts.update(
        UpdateInspection(server_id=server_id, observed_version=1, changes={"comments": "no"}),
        "eng-1")
    assert updated.sync_version == 2
    assert stale.status == "conflict"
    assert stale.server_record.comments == "ok"

    cursor = clock()
    deleted = await conflicts.delete(
        DeleteInspection(server_id=server_id, observed_version=2), "eng-1")
    assert deleted.status == "deleted"

    snapshot = await PullSnapshotBuilder(seeded, clock=clock).build(
        "eng-1", ["assets", "inspections"], cursor)
    assert snapshot.changes["inspections"].deleted == [server_id]
    assert snapshot.changes["inspections"].updated == []
    (asset,) = snapshot.changes["assets"].updated
    assert asset.aggregate.inspection_count == 0
    assert asset.aggregate.last_inspection_id is None

    replay = await idempotency.create(op, "eng-1")
    assert replay.status == "already_synced"
    assert replay.server_id == server_id
