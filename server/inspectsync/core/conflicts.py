"""Optimistic concurrency for sync updates and deletes.

A client sends the ``syncVersion`` it last observed. If the server has
accepted a write since then, the client loses: the stored record is left
alone and returned so the client can overwrite its local copy (server wins).
Otherwise the write is applied as a compare-and-swap against the version we
loaded, so a writer racing us between load and write also surfaces as a
conflict instead of a lost update.

Only ``syncVersion`` decides. ``localTimestamp`` is logged but never
compared; last-write-wins by device clock is a product decision that has
not been taken.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, TYPE_CHECKING

import structlog

from inspectsync.core.errors import NotAuthorizedError, NotFoundError
from inspectsync.core.models import (
    InspectionRecord,
    InspectionStatus,
    Tombstone,
    compute_risk_score,
)
from inspectsync.core.operations import SyncResult

if TYPE_CHECKING:
    from inspectsync.core.aggregates import AggregateUpdater
    from inspectsync.core.operations import DeleteInspection, UpdateInspection
    from inspectsync.storage.base import SyncStore

log = structlog.get_logger()

SERVER_WINS = "server_wins"


def apply_changes(
    stored: InspectionRecord, changes: dict, now: datetime,
) -> InspectionRecord:
    """Build the next version of a record from validated update changes."""
    updated = replace(stored, **changes)
    submitted_at = updated.submitted_at
    if updated.status is InspectionStatus.SUBMITTED and stored.status is not InspectionStatus.SUBMITTED:
        submitted_at = now
    return replace(
        updated,
        risk_score=compute_risk_score(updated.condition_grade, updated.defect_severity),
        sync_version=stored.sync_version + 1,
        last_synced_at=now,
        submitted_at=submitted_at,
        updated_at=now,
    )


class ConflictResolver:
    """Decides whether an UPDATE or DELETE may apply, and applies it."""

    def __init__(
        self,
        store: SyncStore,
        aggregates: AggregateUpdater,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._aggregates = aggregates
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _load(self, server_id: str) -> InspectionRecord:
        stored = await self._store.get_inspection(server_id)
        if stored is None:
            raise NotFoundError(f"Inspection not found: {server_id}")
        return stored

    def _conflict(
        self,
        stored: InspectionRecord,
        observed: int | None,
        local_timestamp: datetime | None,
        client_id: str | None,
    ) -> SyncResult:
        log.info("sync_conflict", server_id=stored.id, stored_version=stored.sync_version,
                 observed_version=observed,
                 local_timestamp=local_timestamp.isoformat() if local_timestamp else None,
                 resolution=SERVER_WINS)
        return SyncResult(
            status="conflict",
            client_id=client_id,
            server_id=stored.id,
            sync_version=stored.sync_version,
            server_record=stored,
            resolution=SERVER_WINS,
        )

    async def _reload_conflict(self, server_id: str, op) -> SyncResult:
        # The compare-and-swap missed: someone else wrote (or deleted) first.
        current = await self._load(server_id)
        return self._conflict(current, op.observed_version, op.local_timestamp, op.client_id)

    async def update(self, op: UpdateInspection, engineer_id: str) -> SyncResult:
        stored = await self._load(op.server_id)
        if op.observed_version is not None and stored.sync_version > op.observed_version:
            return self._conflict(stored, op.observed_version, op.local_timestamp, op.client_id)

        updated = apply_changes(stored, op.changes, self._clock())
        if not await self._store.replace_inspection_if_version(updated, stored.sync_version):
            return await self._reload_conflict(op.server_id, op)

        await self._aggregates.refresh(updated.asset_id)

        log.info("audit", action="UPDATE", entity_type="inspection", entity_id=updated.id,
                 actor=engineer_id, sync_version=updated.sync_version,
                 fields=sorted(op.changes))
        return SyncResult(
            status="updated",
            client_id=op.client_id or stored.client_id,
            server_id=updated.id,
            sync_version=updated.sync_version,
        )

    async def delete(self, op: DeleteInspection, engineer_id: str) -> SyncResult:
        stored = await self._load(op.server_id)
        if stored.engineer_id != engineer_id:
            raise NotAuthorizedError("Not authorized to delete this inspection")
        if op.observed_version is not None and stored.sync_version > op.observed_version:
            return self._conflict(stored, op.observed_version, op.local_timestamp, op.client_id)

        tombstone = Tombstone(
            id=stored.id,
            client_id=stored.client_id,
            asset_id=stored.asset_id,
            engineer_id=stored.engineer_id,
            deleted_at=self._clock(),
        )
        if not await self._store.delete_inspection_if_version(tombstone, stored.sync_version):
            return await self._reload_conflict(op.server_id, op)

        await self._aggregates.refresh(stored.asset_id)

        log.info("audit", action="DELETE", entity_type="inspection", entity_id=stored.id,
                 actor=engineer_id)
        return SyncResult(
            status="deleted",
            client_id=op.client_id or stored.client_id,
            server_id=stored.id,
        )
