"""Pull snapshots: what a client must download since its last sync.

Without a cursor everything visible goes into ``created``. With a cursor,
records changed strictly after it go into ``updated`` and, for inspections,
the ids of records deleted after it go into ``deleted``. Assets are visible
to every engineer; inspections only to the engineer who owns them.

Records are stamped before their write commits, so a write stamped just
before a pull can land after the pull has read. The returned ``synced_at``
therefore trails the read by ``overlap``: the next pull sends such a write
instead of skipping it, and may resend rows the client already holds, which
it keeps or replaces by id and syncVersion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TYPE_CHECKING

import structlog

from inspectsync.core.errors import ValidationError

if TYPE_CHECKING:
    from inspectsync.storage.base import SyncStore

log = structlog.get_logger()

ENTITY_KINDS = ("assets", "inspections")


@dataclass
class EntityChanges:
    created: list[Any] = field(default_factory=list)
    updated: list[Any] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)


@dataclass
class PullSnapshot:
    synced_at: datetime
    changes: dict[str, EntityChanges]

    @property
    def record_count(self) -> int:
        return sum(len(c) for c in self.changes.values())


class PullSnapshotBuilder:
    def __init__(
        self,
        store: SyncStore,
        clock: Callable[[], datetime] | None = None,
        overlap: timedelta = timedelta(0),
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._overlap = overlap

    async def build(
        self,
        engineer_id: str,
        entities: list[str],
        last_sync_at: datetime | None = None,
    ) -> PullSnapshot:
        unknown = [e for e in entities if e not in ENTITY_KINDS]
        if unknown:
            raise ValidationError(f"unknown entity kind(s): {', '.join(unknown)}")
        if last_sync_at is not None:
            if last_sync_at.tzinfo is None:
                last_sync_at = last_sync_at.replace(tzinfo=timezone.utc)
            last_sync_at = last_sync_at.astimezone(timezone.utc)

        synced_at = self._clock() - self._overlap
        changes: dict[str, EntityChanges] = {}

        if "assets" in entities:
            assets = await self._store.list_assets(updated_after=last_sync_at)
            changes["assets"] = self._bucket(assets, last_sync_at)

        if "inspections" in entities:
            inspections = await self._store.list_inspections(
                engineer_id, updated_after=last_sync_at)
            bucket = self._bucket(inspections, last_sync_at)
            if last_sync_at is not None:
                tombstones = await self._store.list_tombstones(engineer_id, last_sync_at)
                bucket.deleted = [t.id for t in tombstones]
            changes["inspections"] = bucket

        snapshot = PullSnapshot(synced_at=synced_at, changes=changes)
        log.info("pull_snapshot_built", engineer_id=engineer_id,
                 incremental=last_sync_at is not None,
                 records=snapshot.record_count)
        return snapshot

    @staticmethod
    def _bucket(records: list[Any], last_sync_at: datetime | None) -> EntityChanges:
        if last_sync_at is None:
            return EntityChanges(created=list(records))
        return EntityChanges(updated=list(records))
