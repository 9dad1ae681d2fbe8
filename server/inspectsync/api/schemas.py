"""Pydantic request schemas for the sync endpoints.

Only the top-level shape is checked here; a body that fails these schemas is
rejected as a whole (HTTP 422). Per-operation rules (an UPDATE needs an
``id``, a CREATE payload needs an asset, ...) are checked per item by the
core so one bad operation can't fail its siblings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from inspectsync.core.models import ConditionGrade, InspectionFields, InspectionStatus
from inspectsync.core.operations import CreateInspection, RawChange, parse_datetime


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PushChange(CamelModel):
    type: Literal["CREATE", "UPDATE", "DELETE"]
    entity: Literal["inspection", "media"]
    client_id: str | None = None
    id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    local_timestamp: datetime
    sync_version: int | None = Field(default=None, ge=1)

    def to_raw(self) -> RawChange:
        return RawChange(
            type=self.type,
            entity=self.entity,
            data=self.data,
            client_id=self.client_id,
            id=self.id,
            local_timestamp=parse_datetime(self.local_timestamp, "localTimestamp"),
            sync_version=self.sync_version,
        )


class PushRequest(CamelModel):
    changes: list[PushChange]


class PullRequest(CamelModel):
    last_sync_at: datetime | None = None
    entities: list[Literal["assets", "inspections"]]


class MobileInspection(CamelModel):
    """Full inspection payload sent by the mobile app's create shortcut."""
    client_id: UUID
    asset_id: str = Field(min_length=1)
    date_of_inspection: datetime
    condition_grade: ConditionGrade
    inspector_name: str | None = None
    comments: str | None = None
    defect_severity: int | None = Field(default=None, ge=1, le=5)
    defect_description: str | None = None
    observed_issues: str | None = None
    recommended_action: str | None = None
    follow_up_required: bool | None = None

    def to_operation(self) -> CreateInspection:
        # Shortcut creates are always finished inspections.
        return CreateInspection(
            client_id=str(self.client_id),
            fields=InspectionFields(
                asset_id=self.asset_id,
                date_of_inspection=parse_datetime(self.date_of_inspection, "dateOfInspection"),
                condition_grade=self.condition_grade,
                status=InspectionStatus.COMPLETE,
                inspector_name=self.inspector_name,
                comments=self.comments,
                defect_severity=self.defect_severity,
                defect_description=self.defect_description,
                observed_issues=self.observed_issues,
                recommended_action=self.recommended_action,
                follow_up_required=bool(self.follow_up_required),
            ),
        )


class MobileBatchRequest(CamelModel):
    inspections: list[MobileInspection]
