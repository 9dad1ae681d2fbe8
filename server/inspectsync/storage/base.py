"""Storage interface (port) for assets, inspections and tombstones."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from inspectsync.core.models import Asset, AssetAggregate, InspectionRecord, Tombstone


class SyncStore(Protocol):
    """Port: durable state shared by every server instance.

    Implementations must make ``insert_inspection`` enforce ``client_id``
    uniqueness, including against deleted records, and make the
    ``*_if_version`` methods single atomic compare-and-swap writes.
    """

    async def get_asset(self, asset_id: str) -> Asset | None: ...

    async def put_asset(self, asset: Asset) -> None: ...

    async def list_assets(
        self, updated_after: datetime | None = None, *, inclusive: bool = False,
        limit: int | None = None,
    ) -> list[Asset]: ...

    async def count_assets(self) -> int: ...

    async def latest_asset_update(self) -> datetime | None:
        """Greatest asset updated_at, or None when there are no assets."""
        ...

    async def save_asset_aggregate_if_version(
        self, asset_id: str, aggregate: AssetAggregate, expected_version: int,
        now: datetime,
    ) -> Asset | None:
        """Write the aggregate and bump aggregate_version, only if it still equals
        expected_version. Returns the updated asset, or None on a miss."""
        ...

    async def get_inspection(self, server_id: str) -> InspectionRecord | None: ...

    async def get_inspection_by_client_id(self, client_id: str) -> InspectionRecord | None: ...

    async def insert_inspection(self, record: InspectionRecord) -> None:
        """Persist a new record.

        Raises ClientIdConflictError if the client_id was ever used, even by a
        record that has since been deleted.
        """
        ...

    async def replace_inspection_if_version(
        self, record: InspectionRecord, expected_version: int,
    ) -> bool:
        """Overwrite the stored record only if its sync_version still equals expected_version."""
        ...

    async def delete_inspection_if_version(
        self, tombstone: Tombstone, expected_version: int,
    ) -> bool:
        """Delete the record and keep the tombstone only if the version still matches."""
        ...

    async def list_inspections(
        self, engineer_id: str, updated_after: datetime | None = None, *,
        inclusive: bool = False, limit: int | None = None,
    ) -> list[InspectionRecord]: ...

    async def count_inspections(
        self, *, asset_id: str | None = None, engineer_id: str | None = None,
    ) -> int: ...

    async def latest_qualifying_inspection(self, asset_id: str) -> InspectionRecord | None:
        """Most recent COMPLETE/SUBMITTED inspection of the asset by inspection date."""
        ...

    async def list_tombstones(
        self, engineer_id: str, deleted_after: datetime,
    ) -> list[Tombstone]: ...

    async def get_tombstone_by_client_id(self, client_id: str) -> Tombstone | None: ...
