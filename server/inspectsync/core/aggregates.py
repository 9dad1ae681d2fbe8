"""Asset "last inspection" aggregate maintenance.

The aggregate always reflects the most recent COMPLETE/SUBMITTED inspection
by inspection date, not the most recently written one. It is recomputed from
the store after every accepted inspection mutation, so a refresh is correct
no matter which write triggered it.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Callable, TYPE_CHECKING

import structlog

from inspectsync.core.models import (
    DEFAULT_FREQUENCY_MONTHS,
    Asset,
    AssetAggregate,
    ConditionGrade,
    InspectionRecord,
)

if TYPE_CHECKING:
    from inspectsync.storage.base import SyncStore

log = structlog.get_logger()

DUE_SOON_WINDOW = timedelta(days=30)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_aggregate(
    latest: InspectionRecord | None,
    inspection_count: int,
    frequency_months: int | None,
    default_months: int = DEFAULT_FREQUENCY_MONTHS,
) -> AssetAggregate:
    if latest is None:
        return AssetAggregate(inspection_count=inspection_count)
    months = frequency_months or default_months
    return AssetAggregate(
        last_inspection_id=latest.id,
        last_inspection_date=latest.date_of_inspection,
        last_condition_grade=latest.condition_grade,
        last_risk_score=latest.risk_score,
        last_inspector_name=latest.inspector_name,
        inspection_count=inspection_count,
        next_inspection_due=add_months(latest.date_of_inspection, months),
    )


def derive_asset_status(aggregate: AssetAggregate, now: datetime) -> str:
    """Status bucket used by asset list filtering."""
    grade = aggregate.last_condition_grade
    due = aggregate.next_inspection_due
    if grade is None:
        return "not-inspected"
    if grade is ConditionGrade.GRADE_5:
        return "critical"
    if grade is ConditionGrade.GRADE_4 or (due is not None and due < now):
        return "attention"
    if grade is ConditionGrade.GRADE_3:
        return "monitor"
    if due is not None and due <= now + DUE_SOON_WINDOW:
        return "due-soon"
    return "good"


class AggregateUpdater:
    """Recomputes an asset's aggregate after an inspection mutation.

    The write is a compare-and-swap on the asset's aggregate_version, which
    is read before the inspections are. A refresh overtaken by another
    refresh's write misses and starts over, so the value left behind always
    comes from reads that began after the last inspection write, whichever
    server instance ran them.
    """

    def __init__(
        self,
        store: SyncStore,
        clock: Callable[[], datetime] | None = None,
        default_frequency_months: int = DEFAULT_FREQUENCY_MONTHS,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._default_months = default_frequency_months

    async def refresh(self, asset_id: str) -> Asset | None:
        attempt = 0
        while True:
            attempt += 1
            asset = await self._store.get_asset(asset_id)
            if asset is None:
                log.warning("aggregate_asset_missing", asset_id=asset_id)
                return None

            latest = await self._store.latest_qualifying_inspection(asset_id)
            count = await self._store.count_inspections(asset_id=asset_id)
            aggregate = compute_aggregate(
                latest, count, asset.inspection_frequency_months, self._default_months)

            updated = await self._store.save_asset_aggregate_if_version(
                asset_id, aggregate, asset.aggregate_version, self._clock())
            if updated is not None:
                log.debug("aggregate_refreshed", asset_id=asset_id,
                          last_inspection_id=aggregate.last_inspection_id,
                          inspection_count=count, attempts=attempt)
                return updated
            # Another refresh wrote first and its reads may predate ours.
            log.debug("aggregate_refresh_retry", asset_id=asset_id, attempt=attempt)
