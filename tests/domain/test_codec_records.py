from __future__ import annotations

import json

import pytest

from fieldsync.core.errors import ValidationError
from fieldsync.domain import codec
from fieldsync.domain.images import ImageRefs, PendingImageUpload
from fieldsync.domain.mutations import DeadLetterEntry, GenericUpdate, IssueCreate, QueuedMutation
from fieldsync.domain.verification import (
    AreaItemProgress,
    LocalPhoto,
    LocalVerificationProgress,
    OfflineVerification,
    build_schedule_groups,
)


def test_mutation_record_is_json_and_keeps_derived_fields() -> None:
    mutation = QueuedMutation(
        id="m-1",
        payload=IssueCreate(inspection_id="insp-1", issue={"id": "i-1", "title": "Fuga"}),
        scope_id="acme",
        enqueued_at=10.0,
        retry_count=2,
        last_error="TransientExternalError: red",
        error_kind="transient",
        priority="high",
    )

    raw = json.loads(json.dumps(codec.mutation_to_dict(mutation)))

    assert raw["entity_type"] == "issue"
    assert raw["action"] == "create"
    assert codec.mutation_from_dict(raw) == mutation


def test_dead_letter_record_keeps_moved_at() -> None:
    entry = DeadLetterEntry(
        mutation=QueuedMutation(
            id="m-2",
            payload=GenericUpdate(collection="areas", document_id="a-1", updates={"name": "Cámara"}),
            scope_id="acme",
            enqueued_at=1.0,
        ),
        moved_at=99.0,
    )

    assert codec.dead_letter_from_dict(codec.dead_letter_to_dict(entry)) == entry


def test_unknown_payload_kind_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        codec.payload_from_dict({"kind": "inspection/archive", "inspection_id": "x"})


def test_upload_record_restores_refs() -> None:
    upload = PendingImageUpload(
        id="u-1",
        local_uri="file:///tmp/a.jpg",
        remote_path="companies/acme/inspections/i/issues/j/images_0_1_a.jpg",
        refs=ImageRefs(inspection_id="i", issue_id="j", image_id="img-1", image_index=0),
        scope_id="acme",
        upload_name="a.jpg",
        enqueued_at=5.0,
        annotations=({"shape": "circle"},),
    )

    assert codec.upload_from_dict(json.loads(json.dumps(codec.upload_to_dict(upload)))) == upload


def test_progress_record_restores_groups_photos_and_index() -> None:
    item = AreaItemProgress(
        area_item_id="item-1",
        item_name="Suelo",
        frequency="weekly",
        due_date="2025-03-10",
        is_due=True,
        is_overdue=False,
    )
    progress = LocalVerificationProgress(
        area_id="area-1",
        date="2025-03-10",
        site_id="site-1",
        schedule_groups=build_schedule_groups([item]),
        offline_queue=[
            OfflineVerification(
                id="v-1",
                inspection={"areaItemId": "item-1"},
                created_at=3.0,
                photos=[LocalPhoto(local_uri="file:///p.jpg")],
            )
        ],
    )

    restored = codec.progress_from_dict(json.loads(json.dumps(codec.progress_to_dict(progress))))

    assert restored.item_index == {"item-1": "weekly"}
    assert restored.group("weekly").total_count == 1
    assert restored.offline_queue[0].photos[0].local_uri == "file:///p.jpg"
