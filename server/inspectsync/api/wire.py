"""Conversion of core models to the JSON shapes clients expect (camelCase)."""

from __future__ import annotations

from datetime import datetime, timezone

from inspectsync.core.aggregates import derive_asset_status
from inspectsync.core.models import Asset, InspectionRecord
from inspectsync.core.operations import BatchSummary, SyncResult


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def inspection_to_wire(record: InspectionRecord) -> dict:
    return {
        "id": record.id,
        "clientId": record.client_id,
        "assetId": record.asset_id,
        "engineerId": record.engineer_id,
        "inspectorName": record.inspector_name,
        "dateOfInspection": iso(record.date_of_inspection),
        "conditionGrade": record.condition_grade.value,
        "comments": record.comments,
        "defectSeverity": record.defect_severity,
        "riskScore": record.risk_score,
        "defectDescription": record.defect_description,
        "observedIssues": record.observed_issues,
        "recommendedAction": record.recommended_action,
        "followUpRequired": record.follow_up_required,
        "status": record.status.value,
        "zone": record.zone,
        "syncVersion": record.sync_version,
        "lastSyncedAt": iso(record.last_synced_at),
        "submittedAt": iso(record.submitted_at),
        "createdAt": iso(record.created_at),
        "updatedAt": iso(record.updated_at),
    }


def asset_to_wire(asset: Asset, now: datetime) -> dict:
    agg = asset.aggregate
    return {
        "id": asset.id,
        "assetCode": asset.asset_code,
        "title": asset.title,
        "zone": asset.zone,
        "inspectionFrequencyMonths": asset.inspection_frequency_months,
        "lastInspectionId": agg.last_inspection_id,
        "lastInspectionDate": iso(agg.last_inspection_date),
        "lastConditionGrade": agg.last_condition_grade.value if agg.last_condition_grade else None,
        "lastRiskScore": agg.last_risk_score,
        "lastInspectorName": agg.last_inspector_name,
        "inspectionCount": agg.inspection_count,
        "nextInspectionDue": iso(agg.next_inspection_due),
        "status": derive_asset_status(agg, now),
        "createdAt": iso(asset.created_at),
        "updatedAt": iso(asset.updated_at),
    }


def result_to_wire(result: SyncResult) -> dict:
    """One push result. Absent fields are omitted rather than sent as null."""
    out: dict = {"status": result.status}
    if result.client_id is not None:
        out["clientId"] = result.client_id
    if result.server_id is not None:
        out["id"] = result.server_id
    if result.sync_version is not None:
        out["syncVersion"] = result.sync_version
    if result.server_record is not None:
        out["serverVersion"] = inspection_to_wire(result.server_record)
    if result.resolution is not None:
        out["resolution"] = result.resolution
    if result.error is not None:
        out["error"] = result.error
    return out


def summary_to_wire(summary: BatchSummary) -> dict:
    return {
        "created": summary.created,
        "alreadySynced": summary.already_synced,
        "updated": summary.updated,
        "deleted": summary.deleted,
        "conflicts": summary.conflicts,
        "failed": summary.failed,
        "total": summary.total,
    }
