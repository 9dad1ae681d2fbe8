"""Idempotent inspection creation keyed by the client-generated clientId."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, TYPE_CHECKING

import structlog

from inspectsync.core.errors import ClientIdConflictError, NotFoundError
from inspectsync.core.models import (
    InspectionRecord,
    InspectionStatus,
    compute_risk_score,
)
from inspectsync.core.operations import SyncResult

if TYPE_CHECKING:
    from inspectsync.core.aggregates import AggregateUpdater
    from inspectsync.core.operations import CreateInspection
    from inspectsync.storage.base import SyncStore

log = structlog.get_logger()


class IdempotencyResolver:
    """Maps a clientId to at most one server record.

    The pre-check answers retries cheaply. The store refuses any client_id it
    has ever accepted, deleted records included, so a request that loses a
    race between check and insert is answered exactly as if its pre-check had
    matched.
    """

    def __init__(
        self,
        store: SyncStore,
        aggregates: AggregateUpdater,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._aggregates = aggregates
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create(
        self,
        op: CreateInspection,
        engineer_id: str,
        engineer_name: str | None = None,
    ) -> SyncResult:
        existing = await self._find_existing(op.client_id)
        if existing is not None:
            return existing

        fields = op.fields
        asset = await self._store.get_asset(fields.asset_id)
        if asset is None:
            raise NotFoundError(f"Asset not found: {fields.asset_id}")

        now = self._clock()
        record = InspectionRecord(
            id=str(uuid.uuid4()),
            client_id=op.client_id,
            asset_id=asset.id,
            engineer_id=engineer_id,
            date_of_inspection=fields.date_of_inspection,
            condition_grade=fields.condition_grade,
            status=fields.status,
            sync_version=1,
            inspector_name=fields.inspector_name or engineer_name,
            comments=fields.comments,
            defect_severity=fields.defect_severity,
            risk_score=compute_risk_score(fields.condition_grade, fields.defect_severity),
            defect_description=fields.defect_description,
            observed_issues=fields.observed_issues,
            recommended_action=fields.recommended_action,
            follow_up_required=fields.follow_up_required,
            zone=asset.zone,
            last_synced_at=now,
            submitted_at=now if fields.status is InspectionStatus.SUBMITTED else None,
            created_at=now,
            updated_at=now,
        )

        try:
            await self._store.insert_inspection(record)
        except ClientIdConflictError:
            winner = await self._find_existing(op.client_id)
            if winner is None:
                raise
            log.info("create_race_lost", client_id=op.client_id, server_id=winner.server_id)
            return winner

        await self._aggregates.refresh(asset.id)

        log.info("audit", action="CREATE", entity_type="inspection", entity_id=record.id,
                 actor=engineer_id, asset_code=asset.asset_code,
                 condition_grade=record.condition_grade.value)
        return SyncResult(
            status="created",
            client_id=op.client_id,
            server_id=record.id,
            sync_version=record.sync_version,
        )

    async def _find_existing(self, client_id: str) -> SyncResult | None:
        """Answer for a clientId that already has a server record.

        A clientId whose record was deleted through sync stays bound to the
        deleted server id, so a replayed create can't resurrect it.
        """
        existing = await self._store.get_inspection_by_client_id(client_id)
        if existing is not None:
            log.debug("create_already_synced", client_id=client_id, server_id=existing.id)
            return SyncResult(
                status="already_synced",
                client_id=client_id,
                server_id=existing.id,
                sync_version=existing.sync_version,
            )
        tombstone = await self._store.get_tombstone_by_client_id(client_id)
        if tombstone is not None:
            log.info("create_replayed_after_delete", client_id=client_id,
                     server_id=tombstone.id)
            return SyncResult(status="already_synced", client_id=client_id,
                              server_id=tombstone.id)
        return None
