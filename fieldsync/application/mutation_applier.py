from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from fieldsync.core.errors import ValidationError
from fieldsync.core.locks import KeyedLocks
from fieldsync.core.timeouts import call_with_timeout
from fieldsync.domain.mutations import (
    GenericUpdate,
    InspectionCreate,
    InspectionDelete,
    InspectionUpdate,
    IssueCreate,
    QueuedMutation,
    inspections_path,
)
from fieldsync.domain.ports import SERVER_TIMESTAMP, ArrayUnion, Document, RemoteStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationApplier:
    """Traduce cada mutación encolada a escrituras idempotentes del almacén remoto.

    Todas las escrituras de una misma entidad se serializan con ``entity_locks``,
    compartido con el parcheo de imágenes.
    """

    def __init__(
        self,
        remote: RemoteStore,
        *,
        entity_locks: KeyedLocks | None = None,
        timeout_seconds: float | None = 30.0,
    ) -> None:
        self._remote = remote
        self.entity_locks = entity_locks or KeyedLocks()
        self._timeout_seconds = timeout_seconds

    def apply(self, mutation: QueuedMutation) -> None:
        payload = mutation.payload
        with self.entity_locks.hold(mutation.entity_key):
            if isinstance(payload, InspectionCreate):
                self._create_inspection(mutation.scope_id, payload)
            elif isinstance(payload, InspectionUpdate):
                self._update_inspection(mutation.scope_id, payload)
            elif isinstance(payload, InspectionDelete):
                self._delete_inspection(mutation.scope_id, payload)
            elif isinstance(payload, IssueCreate):
                self._append_issue(mutation.scope_id, payload)
            elif isinstance(payload, GenericUpdate):
                self._generic_update(mutation.scope_id, payload)
            else:
                raise ValidationError(f"Mutación no soportada: {type(payload).__name__}")

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        return call_with_timeout(operation, func, self._timeout_seconds)

    def _create_inspection(self, scope_id: str, payload: InspectionCreate) -> None:
        path = inspections_path(scope_id)
        existing = self._call("get", lambda: self._remote.get(path, payload.inspection_id))
        if existing is not None:
            logger.info("Inspección %s ya existe en remoto; alta omitida.", payload.inspection_id)
            return
        data: Document = {
            **payload.data,
            "id": payload.inspection_id,
            "createdAt": payload.data.get("createdAt", SERVER_TIMESTAMP),
            "updatedAt": SERVER_TIMESTAMP,
        }
        self._call("set", lambda: self._remote.set(path, payload.inspection_id, data))

    def _update_inspection(self, scope_id: str, payload: InspectionUpdate) -> None:
        path = inspections_path(scope_id)
        patch: Document = {**payload.updates, "updatedAt": SERVER_TIMESTAMP}
        self._call("update", lambda: self._remote.update(path, payload.inspection_id, patch))

    def _delete_inspection(self, scope_id: str, payload: InspectionDelete) -> None:
        path = inspections_path(scope_id)
        self._call("delete", lambda: self._remote.delete(path, payload.inspection_id))

    def _append_issue(self, scope_id: str, payload: IssueCreate) -> None:
        if not payload.issue_id:
            raise ValidationError(f"Incidencia sin id para la inspección {payload.inspection_id}.")
        path = inspections_path(scope_id)
        patch: Document = {"issues": ArrayUnion((payload.issue,)), "updatedAt": SERVER_TIMESTAMP}
        self._call("update", lambda: self._remote.update(path, payload.inspection_id, patch))
        refreshed = self._call("get", lambda: self._remote.get(path, payload.inspection_id)) or {}
        issues: Any = refreshed.get("issues") or []
        issue_count = len(issues) if isinstance(issues, list) else 0
        if refreshed.get("issueCount") != issue_count:
            self._call(
                "update",
                lambda: self._remote.update(path, payload.inspection_id, {"issueCount": issue_count}),
            )

    def _generic_update(self, scope_id: str, payload: GenericUpdate) -> None:
        path = f"companies/{scope_id}/{payload.collection}"
        patch: Document = {**payload.updates, "updatedAt": SERVER_TIMESTAMP}
        self._call("update", lambda: self._remote.update(path, payload.document_id, patch))
