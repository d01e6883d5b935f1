from __future__ import annotations

import time

import pytest

from fakes import InMemoryRemoteStore, SERVER_TIME
from fieldsync.application.mutation_applier import MutationApplier
from fieldsync.core.errors import RemoteTimeoutError, ValidationError
from fieldsync.domain.mutations import GenericUpdate, InspectionCreate, IssueCreate, QueuedMutation, inspections_path


def _mutation(payload) -> QueuedMutation:
    return QueuedMutation(id="m-1", payload=payload, scope_id="acme", enqueued_at=0.0)


def test_create_sets_identity_and_server_timestamps(remote: InMemoryRemoteStore) -> None:
    MutationApplier(remote, timeout_seconds=None).apply(_mutation(InspectionCreate("insp-1", {"title": "Cocina"})))

    document = remote.document(inspections_path("acme"), "insp-1")
    assert document == {"title": "Cocina", "id": "insp-1", "createdAt": SERVER_TIME, "updatedAt": SERVER_TIME}


def test_generic_update_targets_scope_collection(remote: InMemoryRemoteStore) -> None:
    remote.seed("companies/acme/areas", "area-1", {"id": "area-1"})

    MutationApplier(remote, timeout_seconds=None).apply(_mutation(GenericUpdate("areas", "area-1", {"name": "Cámara"})))

    assert remote.document("companies/acme/areas", "area-1")["name"] == "Cámara"


def test_issue_without_id_is_rejected(remote: InMemoryRemoteStore) -> None:
    with pytest.raises(ValidationError):
        MutationApplier(remote, timeout_seconds=None).apply(_mutation(IssueCreate("insp-1", {"title": "sin id"})))


def test_slow_remote_call_becomes_timeout(remote: InMemoryRemoteStore) -> None:
    class SlowRemote(InMemoryRemoteStore):
        def get(self, collection_path, doc_id):
            time.sleep(0.5)
            return None

    with pytest.raises(RemoteTimeoutError):
        MutationApplier(SlowRemote(), timeout_seconds=0.05).apply(_mutation(InspectionCreate("insp-1", {})))
