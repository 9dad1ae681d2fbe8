"""In-process implementation of SyncStore.

Every compound operation runs under a single asyncio.Lock, which gives the
same guarantees a database gives the SQL store: unique client_id on insert
and compare-and-swap on version-checked writes. Zero dependencies.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from inspectsync.core.errors import ClientIdConflictError
from inspectsync.core.models import QUALIFYING_STATUSES

if TYPE_CHECKING:
    from inspectsync.core.models import Asset, AssetAggregate, InspectionRecord, Tombstone

log = structlog.get_logger()


def _after(value: datetime | None, cursor: datetime | None, inclusive: bool) -> bool:
    if cursor is None:
        return True
    if value is None:
        return False
    return value >= cursor if inclusive else value > cursor


class MemorySyncStore:
    """SyncStore backed by dictionaries in process memory."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._assets: dict[str, Asset] = {}
        self._inspections: dict[str, InspectionRecord] = {}
        # client_id -> server id; entries outlive deletes so a client_id is never reused.
        self._by_client_id: dict[str, str] = {}
        self._tombstones: list[Tombstone] = []

    # -- assets ---------------------------------------------------------------

    async def get_asset(self, asset_id: str) -> Asset | None:
        return self._assets.get(asset_id)

    async def put_asset(self, asset: Asset) -> None:
        async with self._lock:
            self._assets[asset.id] = asset

    async def list_assets(
        self, updated_after: datetime | None = None, *, inclusive: bool = False,
        limit: int | None = None,
    ) -> list[Asset]:
        assets = [a for a in self._assets.values()
                  if _after(a.updated_at, updated_after, inclusive)]
        assets.sort(key=lambda a: (a.updated_at is not None, a.updated_at or datetime.min))
        return assets[:limit] if limit is not None else assets

    async def count_assets(self) -> int:
        return len(self._assets)

    async def latest_asset_update(self) -> datetime | None:
        stamps = [a.updated_at for a in self._assets.values() if a.updated_at is not None]
        return max(stamps, default=None)

    async def save_asset_aggregate_if_version(
        self, asset_id: str, aggregate: AssetAggregate, expected_version: int,
        now: datetime,
    ) -> Asset | None:
        async with self._lock:
            asset = self._assets.get(asset_id)
            if asset is None or asset.aggregate_version != expected_version:
                return None
            asset = replace(asset, aggregate=aggregate,
                            aggregate_version=expected_version + 1, updated_at=now)
            self._assets[asset_id] = asset
            return asset

    # -- inspections ----------------------------------------------------------

    async def get_inspection(self, server_id: str) -> InspectionRecord | None:
        return self._inspections.get(server_id)

    async def get_inspection_by_client_id(self, client_id: str) -> InspectionRecord | None:
        server_id = self._by_client_id.get(client_id)
        return self._inspections.get(server_id) if server_id else None

    async def insert_inspection(self, record: InspectionRecord) -> None:
        async with self._lock:
            if record.client_id is not None and record.client_id in self._by_client_id:
                raise ClientIdConflictError(record.client_id)
            self._inspections[record.id] = record
            if record.client_id is not None:
                self._by_client_id[record.client_id] = record.id

    async def replace_inspection_if_version(
        self, record: InspectionRecord, expected_version: int,
    ) -> bool:
        async with self._lock:
            current = self._inspections.get(record.id)
            if current is None or current.sync_version != expected_version:
                return False
            self._inspections[record.id] = record
            return True

    async def delete_inspection_if_version(
        self, tombstone: Tombstone, expected_version: int,
    ) -> bool:
        async with self._lock:
            current = self._inspections.get(tombstone.id)
            if current is None or current.sync_version != expected_version:
                return False
            del self._inspections[tombstone.id]
            self._tombstones.append(tombstone)
            return True

    async def list_inspections(
        self, engineer_id: str, updated_after: datetime | None = None, *,
        inclusive: bool = False, limit: int | None = None,
    ) -> list[InspectionRecord]:
        records = [r for r in self._inspections.values()
                   if r.engineer_id == engineer_id
                   and _after(r.updated_at, updated_after, inclusive)]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[:limit] if limit is not None else records

    async def count_inspections(
        self, *, asset_id: str | None = None, engineer_id: str | None = None,
    ) -> int:
        return sum(
            1 for r in self._inspections.values()
            if (asset_id is None or r.asset_id == asset_id)
            and (engineer_id is None or r.engineer_id == engineer_id)
        )

    async def latest_qualifying_inspection(self, asset_id: str) -> InspectionRecord | None:
        candidates = [r for r in self._inspections.values()
                      if r.asset_id == asset_id and r.status in QUALIFYING_STATUSES]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.date_of_inspection, r.created_at))

    async def list_tombstones(
        self, engineer_id: str, deleted_after: datetime,
    ) -> list[Tombstone]:
        return [t for t in self._tombstones
                if t.engineer_id == engineer_id and t.deleted_at > deleted_after]

    async def get_tombstone_by_client_id(self, client_id: str) -> Tombstone | None:
        for tombstone in self._tombstones:
            if tombstone.client_id == client_id:
                return tombstone
        return None
