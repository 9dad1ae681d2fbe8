"""SQL implementation of SyncStore (SQLAlchemy Core).

Tables: assets, inspections (UNIQUE client_id), inspection_tombstones and
inspection_client_ids.

Idempotent creates rely on the primary key of ``inspection_client_ids``, a
claim row written with every insert and kept when the record is deleted;
version-checked writes are ``UPDATE/DELETE ... WHERE id = :id AND
sync_version = :expected``, so a racing writer sees a row count of zero
instead of silently overwriting. SQLAlchemy's engine is blocking, so every
call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError

from inspectsync.core.errors import ClientIdConflictError
from inspectsync.core.models import (
    QUALIFYING_STATUSES,
    Asset,
    AssetAggregate,
    ConditionGrade,
    InspectionRecord,
    InspectionStatus,
    Tombstone,
)

if TYPE_CHECKING:
    from sqlalchemy.engine import Row

log = structlog.get_logger()

metadata = MetaData()

assets_table = Table(
    "assets",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("asset_code", String(128), nullable=False),
    Column("title", String(255), nullable=False, default=""),
    Column("zone", String(128), nullable=False, default=""),
    Column("inspection_frequency_months", Integer, nullable=True),
    Column("last_inspection_id", String(64), nullable=True),
    Column("last_inspection_date", DateTime(timezone=True), nullable=True),
    Column("last_condition_grade", String(16), nullable=True),
    Column("last_risk_score", Integer, nullable=True),
    Column("last_inspector_name", String(255), nullable=True),
    Column("inspection_count", Integer, nullable=False, default=0),
    Column("next_inspection_due", DateTime(timezone=True), nullable=True),
    Column("aggregate_version", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True, index=True),
)

inspections_table = Table(
    "inspections",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("client_id", String(128), nullable=True, unique=True),
    Column("asset_id", String(64), nullable=False, index=True),
    Column("engineer_id", String(64), nullable=False, index=True),
    Column("date_of_inspection", DateTime(timezone=True), nullable=False),
    Column("condition_grade", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("sync_version", Integer, nullable=False),
    Column("inspector_name", String(255), nullable=True),
    Column("comments", Text, nullable=True),
    Column("defect_severity", Integer, nullable=True),
    Column("risk_score", Integer, nullable=True),
    Column("defect_description", Text, nullable=True),
    Column("observed_issues", Text, nullable=True),
    Column("recommended_action", Text, nullable=True),
    Column("follow_up_required", Boolean, nullable=False, default=False),
    Column("zone", String(128), nullable=False, default=""),
    Column("last_synced_at", DateTime(timezone=True), nullable=True),
    Column("submitted_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False, index=True),
)

tombstones_table = Table(
    "inspection_tombstones",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("client_id", String(128), nullable=True, index=True),
    Column("asset_id", String(64), nullable=False),
    Column("engineer_id", String(64), nullable=False, index=True),
    Column("deleted_at", DateTime(timezone=True), nullable=False, index=True),
)

# One row per client_id ever accepted. Never deleted, so a replayed create
# can't take back a client_id whose record was deleted in the meantime.
client_ids_table = Table(
    "inspection_client_ids",
    metadata,
    Column("client_id", String(128), primary_key=True),
    Column("inspection_id", String(64), nullable=False),
)


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _asset_from_row(row: Row) -> Asset:
    m = row._mapping
    grade = m["last_condition_grade"]
    return Asset(
        id=m["id"],
        asset_code=m["asset_code"],
        title=m["title"],
        zone=m["zone"],
        inspection_frequency_months=m["inspection_frequency_months"],
        aggregate=AssetAggregate(
            last_inspection_id=m["last_inspection_id"],
            last_inspection_date=_utc(m["last_inspection_date"]),
            last_condition_grade=ConditionGrade(grade) if grade else None,
            last_risk_score=m["last_risk_score"],
            last_inspector_name=m["last_inspector_name"],
            inspection_count=m["inspection_count"] or 0,
            next_inspection_due=_utc(m["next_inspection_due"]),
        ),
        aggregate_version=m["aggregate_version"] or 0,
        created_at=_utc(m["created_at"]),
        updated_at=_utc(m["updated_at"]),
    )


def _aggregate_values(aggregate: AssetAggregate) -> dict[str, Any]:
    grade = aggregate.last_condition_grade
    return {
        "last_inspection_id": aggregate.last_inspection_id,
        "last_inspection_date": aggregate.last_inspection_date,
        "last_condition_grade": grade.value if grade else None,
        "last_risk_score": aggregate.last_risk_score,
        "last_inspector_name": aggregate.last_inspector_name,
        "inspection_count": aggregate.inspection_count,
        "next_inspection_due": aggregate.next_inspection_due,
    }


def _inspection_from_row(row: Row) -> InspectionRecord:
    m = row._mapping
    return InspectionRecord(
        id=m["id"],
        client_id=m["client_id"],
        asset_id=m["asset_id"],
        engineer_id=m["engineer_id"],
        date_of_inspection=_utc(m["date_of_inspection"]),
        condition_grade=ConditionGrade(m["condition_grade"]),
        status=InspectionStatus(m["status"]),
        sync_version=m["sync_version"],
        inspector_name=m["inspector_name"],
        comments=m["comments"],
        defect_severity=m["defect_severity"],
        risk_score=m["risk_score"],
        defect_description=m["defect_description"],
        observed_issues=m["observed_issues"],
        recommended_action=m["recommended_action"],
        follow_up_required=bool(m["follow_up_required"]),
        zone=m["zone"],
        last_synced_at=_utc(m["last_synced_at"]),
        submitted_at=_utc(m["submitted_at"]),
        created_at=_utc(m["created_at"]),
        updated_at=_utc(m["updated_at"]),
    )


def _tombstone_from_row(row: Row) -> Tombstone:
    return Tombstone(
        id=row.id,
        client_id=row.client_id,
        asset_id=row.asset_id,
        engineer_id=row.engineer_id,
        deleted_at=_utc(row.deleted_at),
    )


def _inspection_values(record: InspectionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "client_id": record.client_id,
        "asset_id": record.asset_id,
        "engineer_id": record.engineer_id,
        "date_of_inspection": record.date_of_inspection,
        "condition_grade": record.condition_grade.value,
        "status": record.status.value,
        "sync_version": record.sync_version,
        "inspector_name": record.inspector_name,
        "comments": record.comments,
        "defect_severity": record.defect_severity,
        "risk_score": record.risk_score,
        "defect_description": record.defect_description,
        "observed_issues": record.observed_issues,
        "recommended_action": record.recommended_action,
        "follow_up_required": record.follow_up_required,
        "zone": record.zone,
        "last_synced_at": record.last_synced_at,
        "submitted_at": record.submitted_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def create_sql_engine(database_url: str, echo: bool = False) -> Engine:
    url = make_url(database_url)
    kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, **kwargs)


class SqlSyncStore:
    """SyncStore backed by a relational database through SQLAlchemy Core."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> SqlSyncStore:
        store = cls(create_sql_engine(database_url, echo=echo))
        store.create_schema()
        return store

    def create_schema(self) -> None:
        metadata.create_all(self._engine)
        log.info("sql_schema_ready", url=self._engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self._engine.dispose()

    # -- assets ---------------------------------------------------------------

    def _get_asset(self, asset_id: str) -> Asset | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(assets_table).where(assets_table.c.id == asset_id)
            ).first()
        return _asset_from_row(row) if row else None

    async def get_asset(self, asset_id: str) -> Asset | None:
        return await asyncio.to_thread(self._get_asset, asset_id)

    def _put_asset(self, asset: Asset) -> None:
        values = {
            "asset_code": asset.asset_code,
            "title": asset.title,
            "zone": asset.zone,
            "inspection_frequency_months": asset.inspection_frequency_months,
            "aggregate_version": asset.aggregate_version,
            "created_at": asset.created_at,
            "updated_at": asset.updated_at,
            **_aggregate_values(asset.aggregate),
        }
        with self._engine.begin() as conn:
            result = conn.execute(
                update(assets_table).where(assets_table.c.id == asset.id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(assets_table).values(id=asset.id, **values))

    async def put_asset(self, asset: Asset) -> None:
        await asyncio.to_thread(self._put_asset, asset)

    def _list_assets(
        self, updated_after: datetime | None, inclusive: bool, limit: int | None,
    ) -> list[Asset]:
        stmt = select(assets_table).order_by(assets_table.c.updated_at.asc())
        if updated_after is not None:
            col = assets_table.c.updated_at
            stmt = stmt.where(col >= updated_after if inclusive else col > updated_after)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._engine.connect() as conn:
            return [_asset_from_row(row) for row in conn.execute(stmt)]

    async def list_assets(
        self, updated_after: datetime | None = None, *, inclusive: bool = False,
        limit: int | None = None,
    ) -> list[Asset]:
        return await asyncio.to_thread(self._list_assets, updated_after, inclusive, limit)

    def _count_assets(self) -> int:
        with self._engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(assets_table)).scalar_one()

    async def count_assets(self) -> int:
        return await asyncio.to_thread(self._count_assets)

    def _latest_asset_update(self) -> datetime | None:
        with self._engine.connect() as conn:
            return _utc(conn.execute(select(func.max(assets_table.c.updated_at))).scalar())

    async def latest_asset_update(self) -> datetime | None:
        return await asyncio.to_thread(self._latest_asset_update)

    def _save_asset_aggregate_if_version(
        self, asset_id: str, aggregate: AssetAggregate, expected_version: int,
        now: datetime,
    ) -> Asset | None:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(assets_table)
                .where(and_(
                    assets_table.c.id == asset_id,
                    assets_table.c.aggregate_version == expected_version,
                ))
                .values(
                    aggregate_version=expected_version + 1,
                    updated_at=now,
                    **_aggregate_values(aggregate),
                )
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(
                select(assets_table).where(assets_table.c.id == asset_id)
            ).first()
        return _asset_from_row(row)

    async def save_asset_aggregate_if_version(
        self, asset_id: str, aggregate: AssetAggregate, expected_version: int,
        now: datetime,
    ) -> Asset | None:
        return await asyncio.to_thread(
            self._save_asset_aggregate_if_version, asset_id, aggregate, expected_version, now)

    # -- inspections ----------------------------------------------------------

    def _get_inspection_where(self, clause) -> InspectionRecord | None:
        with self._engine.connect() as conn:
            row = conn.execute(select(inspections_table).where(clause)).first()
        return _inspection_from_row(row) if row else None

    async def get_inspection(self, server_id: str) -> InspectionRecord | None:
        return await asyncio.to_thread(
            self._get_inspection_where, inspections_table.c.id == server_id)

    async def get_inspection_by_client_id(self, client_id: str) -> InspectionRecord | None:
        return await asyncio.to_thread(
            self._get_inspection_where, inspections_table.c.client_id == client_id)

    def _insert_inspection(self, record: InspectionRecord) -> None:
        try:
            with self._engine.begin() as conn:
                if record.client_id is not None:
                    conn.execute(insert(client_ids_table).values(
                        client_id=record.client_id, inspection_id=record.id))
                conn.execute(insert(inspections_table).values(**_inspection_values(record)))
        except IntegrityError:
            if record.client_id is None:
                raise
            log.info("client_id_unique_violation", client_id=record.client_id)
            raise ClientIdConflictError(record.client_id) from None

    async def insert_inspection(self, record: InspectionRecord) -> None:
        await asyncio.to_thread(self._insert_inspection, record)

    def _replace_inspection_if_version(
        self, record: InspectionRecord, expected_version: int,
    ) -> bool:
        values = _inspection_values(record)
        del values["id"]
        with self._engine.begin() as conn:
            result = conn.execute(
                update(inspections_table)
                .where(and_(
                    inspections_table.c.id == record.id,
                    inspections_table.c.sync_version == expected_version,
                ))
                .values(**values)
            )
        return result.rowcount == 1

    async def replace_inspection_if_version(
        self, record: InspectionRecord, expected_version: int,
    ) -> bool:
        return await asyncio.to_thread(
            self._replace_inspection_if_version, record, expected_version)

    def _delete_inspection_if_version(
        self, tombstone: Tombstone, expected_version: int,
    ) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                delete(inspections_table).where(and_(
                    inspections_table.c.id == tombstone.id,
                    inspections_table.c.sync_version == expected_version,
                ))
            )
            if result.rowcount != 1:
                return False
            conn.execute(insert(tombstones_table).values(
                id=tombstone.id,
                client_id=tombstone.client_id,
                asset_id=tombstone.asset_id,
                engineer_id=tombstone.engineer_id,
                deleted_at=tombstone.deleted_at,
            ))
        return True

    async def delete_inspection_if_version(
        self, tombstone: Tombstone, expected_version: int,
    ) -> bool:
        return await asyncio.to_thread(
            self._delete_inspection_if_version, tombstone, expected_version)

    def _list_inspections(
        self, engineer_id: str, updated_after: datetime | None, inclusive: bool,
        limit: int | None,
    ) -> list[InspectionRecord]:
        col = inspections_table.c.updated_at
        stmt = (
            select(inspections_table)
            .where(inspections_table.c.engineer_id == engineer_id)
            .order_by(col.desc())
        )
        if updated_after is not None:
            stmt = stmt.where(col >= updated_after if inclusive else col > updated_after)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._engine.connect() as conn:
            return [_inspection_from_row(row) for row in conn.execute(stmt)]

    async def list_inspections(
        self, engineer_id: str, updated_after: datetime | None = None, *,
        inclusive: bool = False, limit: int | None = None,
    ) -> list[InspectionRecord]:
        return await asyncio.to_thread(
            self._list_inspections, engineer_id, updated_after, inclusive, limit)

    def _count_inspections(self, asset_id: str | None, engineer_id: str | None) -> int:
        stmt = select(func.count()).select_from(inspections_table)
        if asset_id is not None:
            stmt = stmt.where(inspections_table.c.asset_id == asset_id)
        if engineer_id is not None:
            stmt = stmt.where(inspections_table.c.engineer_id == engineer_id)
        with self._engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

    async def count_inspections(
        self, *, asset_id: str | None = None, engineer_id: str | None = None,
    ) -> int:
        return await asyncio.to_thread(self._count_inspections, asset_id, engineer_id)

    def _latest_qualifying_inspection(self, asset_id: str) -> InspectionRecord | None:
        stmt = (
            select(inspections_table)
            .where(and_(
                inspections_table.c.asset_id == asset_id,
                inspections_table.c.status.in_([s.value for s in QUALIFYING_STATUSES]),
            ))
            .order_by(
                inspections_table.c.date_of_inspection.desc(),
                inspections_table.c.created_at.desc(),
            )
            .limit(1)
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _inspection_from_row(row) if row else None

    async def latest_qualifying_inspection(self, asset_id: str) -> InspectionRecord | None:
        return await asyncio.to_thread(self._latest_qualifying_inspection, asset_id)

    def _list_tombstones(self, engineer_id: str, deleted_after: datetime) -> list[Tombstone]:
        stmt = (
            select(tombstones_table)
            .where(and_(
                tombstones_table.c.engineer_id == engineer_id,
                tombstones_table.c.deleted_at > deleted_after,
            ))
            .order_by(tombstones_table.c.deleted_at.asc())
        )
        with self._engine.connect() as conn:
            return [_tombstone_from_row(row) for row in conn.execute(stmt)]

    async def list_tombstones(
        self, engineer_id: str, deleted_after: datetime,
    ) -> list[Tombstone]:
        return await asyncio.to_thread(self._list_tombstones, engineer_id, deleted_after)

    def _get_tombstone_by_client_id(self, client_id: str) -> Tombstone | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(tombstones_table).where(tombstones_table.c.client_id == client_id)
            ).first()
        return _tombstone_from_row(row) if row else None

    async def get_tombstone_by_client_id(self, client_id: str) -> Tombstone | None:
        return await asyncio.to_thread(self._get_tombstone_by_client_id, client_id)
