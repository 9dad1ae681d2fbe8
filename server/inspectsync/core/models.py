"""inspectsync core internal data models.

These are plain dataclasses with no framework dependencies.
JSON payloads are converted to/from these at the API boundary.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class ConditionGrade(str, enum.Enum):
    GRADE_1 = "GRADE_1"
    GRADE_2 = "GRADE_2"
    GRADE_3 = "GRADE_3"
    GRADE_4 = "GRADE_4"
    GRADE_5 = "GRADE_5"

    @property
    def ordinal(self) -> int:
        return int(self.value.rsplit("_", 1)[1])

    @classmethod
    def from_ordinal(cls, ordinal: int) -> ConditionGrade:
        return cls(f"GRADE_{ordinal}")


class InspectionStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    SUBMITTED = "SUBMITTED"


# Statuses that count towards an asset's "last inspection" summary.
QUALIFYING_STATUSES = frozenset({InspectionStatus.COMPLETE, InspectionStatus.SUBMITTED})

DEFAULT_FREQUENCY_MONTHS = 12


def compute_risk_score(grade: ConditionGrade, defect_severity: int | None) -> int | None:
    """Risk score is grade ordinal times defect severity, or None without a severity."""
    if defect_severity is None:
        return None
    return grade.ordinal * defect_severity


@dataclass(frozen=True)
class Engineer:
    """Authenticated caller, as supplied by the identity provider."""
    id: str
    name: str | None = None


@dataclass(frozen=True)
class AssetAggregate:
    """Denormalized "last inspection" summary stored on an asset."""
    last_inspection_id: str | None = None
    last_inspection_date: datetime | None = None
    last_condition_grade: ConditionGrade | None = None
    last_risk_score: int | None = None
    last_inspector_name: str | None = None
    inspection_count: int = 0
    next_inspection_due: datetime | None = None


@dataclass(frozen=True)
class Asset:
    id: str
    asset_code: str
    title: str = ""
    zone: str = ""
    inspection_frequency_months: int | None = DEFAULT_FREQUENCY_MONTHS
    aggregate: AssetAggregate = field(default_factory=AssetAggregate)
    # Bumped on every aggregate write; refreshes compare-and-swap on it.
    aggregate_version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class InspectionFields:
    """Mutable content of an inspection, as supplied by a client."""
    asset_id: str
    date_of_inspection: datetime
    condition_grade: ConditionGrade
    status: InspectionStatus = InspectionStatus.IN_PROGRESS
    inspector_name: str | None = None
    comments: str | None = None
    defect_severity: int | None = None
    defect_description: str | None = None
    observed_issues: str | None = None
    recommended_action: str | None = None
    follow_up_required: bool = False


@dataclass(frozen=True)
class InspectionRecord:
    """The unit of synchronization."""
    id: str
    asset_id: str
    engineer_id: str
    date_of_inspection: datetime
    condition_grade: ConditionGrade
    status: InspectionStatus
    sync_version: int
    created_at: datetime
    updated_at: datetime
    client_id: str | None = None
    inspector_name: str | None = None
    comments: str | None = None
    defect_severity: int | None = None
    risk_score: int | None = None
    defect_description: str | None = None
    observed_issues: str | None = None
    recommended_action: str | None = None
    follow_up_required: bool = False
    zone: str = ""
    last_synced_at: datetime | None = None
    submitted_at: datetime | None = None


@dataclass(frozen=True)
class Tombstone:
    """Marker left behind by an accepted sync delete."""
    id: str
    asset_id: str
    engineer_id: str
    deleted_at: datetime
    client_id: str | None = None
