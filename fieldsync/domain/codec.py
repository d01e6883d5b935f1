from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fieldsync.core.errors import ValidationError
from fieldsync.domain.images import FailedImageUpload, ImageRefs, PendingImageUpload
from fieldsync.domain.mutations import (
    PAYLOAD_TYPES,
    DeadLetterEntry,
    GenericUpdate,
    InspectionCreate,
    InspectionDelete,
    InspectionUpdate,
    IssueCreate,
    MutationPayload,
    QueuedMutation,
)
from fieldsync.domain.verification import (
    SCHEDULE_GROUPS,
    AreaItemProgress,
    LocalPhoto,
    LocalVerificationProgress,
    OfflineVerification,
    ScheduleGroupProgress,
)


def payload_to_dict(payload: MutationPayload) -> dict[str, Any]:
    return {"kind": payload.kind, **asdict(payload)}


def payload_from_dict(raw: dict[str, Any]) -> MutationPayload:
    kind = str(raw.get("kind", ""))
    if kind not in PAYLOAD_TYPES:
        raise ValidationError(f"Tipo de mutación desconocido: {kind!r}")
    if kind == InspectionCreate.kind:
        return InspectionCreate(inspection_id=str(raw["inspection_id"]), data=dict(raw.get("data") or {}))
    if kind == InspectionUpdate.kind:
        return InspectionUpdate(inspection_id=str(raw["inspection_id"]), updates=dict(raw.get("updates") or {}))
    if kind == InspectionDelete.kind:
        return InspectionDelete(inspection_id=str(raw["inspection_id"]))
    if kind == IssueCreate.kind:
        return IssueCreate(inspection_id=str(raw["inspection_id"]), issue=dict(raw.get("issue") or {}))
    return GenericUpdate(
        collection=str(raw["collection"]),
        document_id=str(raw["document_id"]),
        updates=dict(raw.get("updates") or {}),
    )


def mutation_to_dict(mutation: QueuedMutation) -> dict[str, Any]:
    return {
        "id": mutation.id,
        "entity_type": mutation.entity_type,
        "action": mutation.action,
        "payload": payload_to_dict(mutation.payload),
        "scope_id": mutation.scope_id,
        "enqueued_at": mutation.enqueued_at,
        "retry_count": mutation.retry_count,
        "last_error": mutation.last_error,
        "error_kind": mutation.error_kind,
        "priority": mutation.priority,
    }


def mutation_from_dict(raw: dict[str, Any]) -> QueuedMutation:
    return QueuedMutation(
        id=str(raw["id"]),
        payload=payload_from_dict(raw["payload"]),
        scope_id=str(raw.get("scope_id", "")),
        enqueued_at=float(raw.get("enqueued_at", 0.0)),
        retry_count=int(raw.get("retry_count", 0)),
        last_error=raw.get("last_error"),
        error_kind=raw.get("error_kind"),
        priority=raw.get("priority") or "normal",
    )


def dead_letter_to_dict(entry: DeadLetterEntry) -> dict[str, Any]:
    return {**mutation_to_dict(entry.mutation), "moved_at": entry.moved_at}


def dead_letter_from_dict(raw: dict[str, Any]) -> DeadLetterEntry:
    return DeadLetterEntry(mutation=mutation_from_dict(raw), moved_at=float(raw.get("moved_at", 0.0)))


def upload_to_dict(upload: PendingImageUpload) -> dict[str, Any]:
    payload = asdict(upload)
    payload["annotations"] = [dict(item) for item in upload.annotations]
    return payload


def upload_from_dict(raw: dict[str, Any]) -> PendingImageUpload:
    refs = raw.get("refs") or {}
    return PendingImageUpload(
        id=str(raw["id"]),
        local_uri=str(raw["local_uri"]),
        remote_path=str(raw["remote_path"]),
        refs=ImageRefs(
            inspection_id=str(refs.get("inspection_id", "")),
            issue_id=str(refs.get("issue_id", "")),
            image_id=str(refs.get("image_id", "")),
            image_index=int(refs.get("image_index", 0)),
        ),
        scope_id=str(raw.get("scope_id", "")),
        upload_name=str(raw.get("upload_name", "")),
        enqueued_at=float(raw.get("enqueued_at", 0.0)),
        retry_count=int(raw.get("retry_count", 0)),
        upload_status=raw.get("upload_status") or "pending",
        last_error=raw.get("last_error"),
        annotations=tuple(dict(item) for item in raw.get("annotations") or ()),
    )


def failed_upload_to_dict(entry: FailedImageUpload) -> dict[str, Any]:
    return {**upload_to_dict(entry.upload), "failed_at": entry.failed_at}


def failed_upload_from_dict(raw: dict[str, Any]) -> FailedImageUpload:
    return FailedImageUpload(upload=upload_from_dict(raw), failed_at=float(raw.get("failed_at", 0.0)))


def offline_verification_to_dict(entry: OfflineVerification) -> dict[str, Any]:
    return asdict(entry)


def offline_verification_from_dict(raw: dict[str, Any]) -> OfflineVerification:
    return OfflineVerification(
        id=str(raw["id"]),
        inspection=dict(raw.get("inspection") or {}),
        created_at=float(raw.get("created_at", 0.0)),
        retry_count=int(raw.get("retry_count", 0)),
        last_error=raw.get("last_error"),
        photos=[LocalPhoto(**photo) for photo in raw.get("photos") or ()],
    )


def _item_from_dict(raw: dict[str, Any]) -> AreaItemProgress:
    return AreaItemProgress(
        area_item_id=str(raw["area_item_id"]),
        item_name=str(raw.get("item_name", "")),
        frequency=raw.get("frequency") or "daily",
        due_date=str(raw.get("due_date", "")),
        is_due=bool(raw.get("is_due", False)),
        is_overdue=bool(raw.get("is_overdue", False)),
        status=raw.get("status") or "pending",
        sci_reference=raw.get("sci_reference"),
        verified_at=raw.get("verified_at"),
        is_auto_completed=bool(raw.get("is_auto_completed", False)),
        failure_reason=raw.get("failure_reason"),
        photo_count=int(raw.get("photo_count", 0)),
    )


def _group_from_dict(raw: dict[str, Any]) -> ScheduleGroupProgress:
    group = ScheduleGroupProgress(
        items=[_item_from_dict(item) for item in raw.get("items") or ()],
        last_verified_at=raw.get("last_verified_at"),
    )
    group.recalculate()
    return group


def progress_to_dict(progress: LocalVerificationProgress) -> dict[str, Any]:
    return {
        "area_id": progress.area_id,
        "date": progress.date,
        "site_id": progress.site_id,
        "schedule_groups": {key: asdict(progress.schedule_groups[key]) for key in SCHEDULE_GROUPS},
        "last_modified": progress.last_modified,
        "sync_status": progress.sync_status,
        "offline_queue": [offline_verification_to_dict(entry) for entry in progress.offline_queue],
    }


def progress_from_dict(raw: dict[str, Any]) -> LocalVerificationProgress:
    groups_raw = raw.get("schedule_groups") or {}
    return LocalVerificationProgress(
        area_id=str(raw["area_id"]),
        date=str(raw["date"]),
        site_id=str(raw.get("site_id") or raw["area_id"]),
        schedule_groups={key: _group_from_dict(groups_raw.get(key) or {}) for key in SCHEDULE_GROUPS},
        last_modified=float(raw.get("last_modified", 0.0)),
        sync_status=raw.get("sync_status") or "pending",
        offline_queue=[offline_verification_from_dict(entry) for entry in raw.get("offline_queue") or ()],
    )
