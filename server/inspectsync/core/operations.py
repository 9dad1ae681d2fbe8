"""Push operations and their results.

A raw push change carries an open ``data`` map tagged by ``(type, entity)``.
``parse_change`` turns it into exactly one of the operation classes below so
the processor can dispatch on type instead of probing fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

import structlog

from inspectsync.core.errors import ValidationError
from inspectsync.core.models import (
    ConditionGrade,
    InspectionFields,
    InspectionRecord,
    InspectionStatus,
)

log = structlog.get_logger()

# Keys of an update payload, mapped to InspectionRecord attribute names.
_UPDATABLE_FIELDS = {
    "dateOfInspection": "date_of_inspection",
    "conditionGrade": "condition_grade",
    "status": "status",
    "inspectorName": "inspector_name",
    "comments": "comments",
    "defectSeverity": "defect_severity",
    "defectDescription": "defect_description",
    "observedIssues": "observed_issues",
    "recommendedAction": "recommended_action",
    "followUpRequired": "follow_up_required",
}

# Fields that may be explicitly cleared with null.
_NULLABLE_FIELDS = {
    "inspectorName",
    "comments",
    "defectSeverity",
    "defectDescription",
    "observedIssues",
    "recommendedAction",
}


@dataclass(frozen=True)
class CreateInspection:
    client_id: str
    fields: InspectionFields
    local_timestamp: datetime | None = None


@dataclass(frozen=True)
class UpdateInspection:
    server_id: str
    observed_version: int | None
    changes: dict[str, Any]
    client_id: str | None = None
    local_timestamp: datetime | None = None


@dataclass(frozen=True)
class DeleteInspection:
    server_id: str
    observed_version: int | None
    client_id: str | None = None
    local_timestamp: datetime | None = None


@dataclass(frozen=True)
class MediaChange:
    """Media goes through upload URLs, never through push."""
    change_type: str
    client_id: str | None = None
    server_id: str | None = None


SyncOperation = Union[CreateInspection, UpdateInspection, DeleteInspection, MediaChange]


@dataclass
class SyncResult:
    """Outcome of a single push operation."""
    status: str  # created | already_synced | updated | deleted | conflict | error | failed
    client_id: str | None = None
    server_id: str | None = None
    sync_version: int | None = None
    server_record: InspectionRecord | None = None
    resolution: str | None = None
    error: str | None = None


@dataclass
class BatchSummary:
    created: int = 0
    already_synced: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    failed: int = 0
    total: int = 0

    @classmethod
    def from_results(cls, results: list[SyncResult]) -> BatchSummary:
        summary = cls(total=len(results))
        for result in results:
            if result.status == "created":
                summary.created += 1
            elif result.status == "already_synced":
                summary.already_synced += 1
            elif result.status == "updated":
                summary.updated += 1
            elif result.status == "deleted":
                summary.deleted += 1
            elif result.status == "conflict":
                summary.conflicts += 1
            else:
                summary.failed += 1
        return summary


@dataclass(frozen=True)
class RawChange:
    """A push change after top-level schema validation, before dispatch."""
    type: str
    entity: str
    data: dict[str, Any] = field(default_factory=dict)
    client_id: str | None = None
    id: str | None = None
    local_timestamp: datetime | None = None
    sync_version: int | None = None


def parse_datetime(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"{name} is not an ISO-8601 datetime: {value!r}") from None
    else:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_grade(value: Any) -> ConditionGrade:
    if isinstance(value, ConditionGrade):
        return value
    if isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 5:
        return ConditionGrade.from_ordinal(value)
    if isinstance(value, str):
        try:
            return ConditionGrade(value.upper())
        except ValueError:
            pass
    raise ValidationError(f"conditionGrade must be GRADE_1..GRADE_5, got {value!r}")


def parse_status(value: Any) -> InspectionStatus:
    if isinstance(value, InspectionStatus):
        return value
    if isinstance(value, str):
        try:
            return InspectionStatus(value.upper().replace("-", "_"))
        except ValueError:
            pass
    raise ValidationError(f"unknown inspection status {value!r}")


def parse_severity(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(f"defectSeverity must be an integer 1-5, got {value!r}")
    return value


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _parse_value(key: str, value: Any) -> Any:
    if value is None:
        if key not in _NULLABLE_FIELDS:
            raise ValidationError(f"{key} cannot be null")
        return None
    if key == "dateOfInspection":
        return parse_datetime(value, key)
    if key == "conditionGrade":
        return parse_grade(value)
    if key == "status":
        return parse_status(value)
    if key == "defectSeverity":
        return parse_severity(value)
    if key == "followUpRequired":
        if not isinstance(value, bool):
            raise ValidationError("followUpRequired must be a boolean")
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def parse_inspection_fields(
    data: dict[str, Any],
    default_status: InspectionStatus = InspectionStatus.IN_PROGRESS,
) -> InspectionFields:
    """Validate a full inspection payload (create)."""
    missing = [k for k in ("assetId", "dateOfInspection", "conditionGrade") if data.get(k) is None]
    if missing:
        raise ValidationError(f"missing required field(s): {', '.join(missing)}")
    asset_id = data["assetId"]
    if not isinstance(asset_id, str) or not asset_id:
        raise ValidationError("assetId must be a non-empty string")

    follow_up = data.get("followUpRequired")
    if follow_up is not None and not isinstance(follow_up, bool):
        raise ValidationError("followUpRequired must be a boolean")

    status = data.get("status")
    return InspectionFields(
        asset_id=asset_id,
        date_of_inspection=parse_datetime(data["dateOfInspection"], "dateOfInspection"),
        condition_grade=parse_grade(data["conditionGrade"]),
        status=parse_status(status) if status is not None else default_status,
        inspector_name=_optional_str(data, "inspectorName"),
        comments=_optional_str(data, "comments"),
        defect_severity=parse_severity(data.get("defectSeverity")),
        defect_description=_optional_str(data, "defectDescription"),
        observed_issues=_optional_str(data, "observedIssues"),
        recommended_action=_optional_str(data, "recommendedAction"),
        follow_up_required=bool(follow_up),
    )


def parse_update_changes(data: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial inspection payload (update).

    Returns a mapping of InspectionRecord attribute names to new values.
    """
    changes: dict[str, Any] = {}
    ignored = []
    for key, value in data.items():
        attr = _UPDATABLE_FIELDS.get(key)
        if attr is None:
            ignored.append(key)
            continue
        changes[attr] = _parse_value(key, value)
    if ignored:
        log.debug("update_fields_ignored", fields=ignored)
    return changes


def parse_change(change: RawChange) -> SyncOperation:
    """Turn a validated push change into a concrete operation.

    Raises ValidationError when the change is well-formed JSON but cannot be
    applied (e.g. an UPDATE without an ``id``).
    """
    if change.entity == "media":
        return MediaChange(change_type=change.type, client_id=change.client_id,
                           server_id=change.id)
    if change.entity != "inspection":
        raise ValidationError(f"unsupported entity {change.entity!r}")

    if change.type == "CREATE":
        if not change.client_id:
            raise ValidationError("clientId required for create")
        return CreateInspection(
            client_id=change.client_id,
            fields=parse_inspection_fields(change.data),
            local_timestamp=change.local_timestamp,
        )
    if change.type == "UPDATE":
        if not change.id:
            raise ValidationError("ID required for update")
        return UpdateInspection(
            server_id=change.id,
            observed_version=change.sync_version,
            changes=parse_update_changes(change.data),
            client_id=change.client_id,
            local_timestamp=change.local_timestamp,
        )
    if change.type == "DELETE":
        if not change.id:
            raise ValidationError("ID required for delete")
        return DeleteInspection(
            server_id=change.id,
            observed_version=change.sync_version,
            client_id=change.client_id,
            local_timestamp=change.local_timestamp,
        )
    raise ValidationError(f"unknown operation type {change.type!r}")
