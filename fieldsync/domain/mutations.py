from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Union

EntityType = Literal["inspection", "issue", "genericUpdate"]
MutationAction = Literal["create", "update", "delete"]
MutationPriority = Literal["high", "normal"]
ErrorKind = Literal["transient", "permanent"]

INSPECTIONS_COLLECTION = "selfInspections"
MAX_MUTATION_RETRIES = 3


def inspections_path(scope_id: str) -> str:
    return f"companies/{scope_id}/{INSPECTIONS_COLLECTION}"


@dataclass(frozen=True)
class InspectionCreate:
    inspection_id: str
    data: dict[str, Any]

    kind: ClassVar[str] = "inspection/create"
    entity_type: ClassVar[EntityType] = "inspection"
    action: ClassVar[MutationAction] = "create"

    def entity_key(self, scope_id: str) -> str:
        return f"{inspections_path(scope_id)}/{self.inspection_id}"


@dataclass(frozen=True)
class InspectionUpdate:
    inspection_id: str
    updates: dict[str, Any]

    kind: ClassVar[str] = "inspection/update"
    entity_type: ClassVar[EntityType] = "inspection"
    action: ClassVar[MutationAction] = "update"

    def entity_key(self, scope_id: str) -> str:
        return f"{inspections_path(scope_id)}/{self.inspection_id}"


@dataclass(frozen=True)
class InspectionDelete:
    inspection_id: str

    kind: ClassVar[str] = "inspection/delete"
    entity_type: ClassVar[EntityType] = "inspection"
    action: ClassVar[MutationAction] = "delete"

    def entity_key(self, scope_id: str) -> str:
        return f"{inspections_path(scope_id)}/{self.inspection_id}"


@dataclass(frozen=True)
class IssueCreate:
    """Alta de una incidencia embebida en la lista ``issues`` de su inspección."""

    inspection_id: str
    issue: dict[str, Any]

    kind: ClassVar[str] = "issue/create"
    entity_type: ClassVar[EntityType] = "issue"
    action: ClassVar[MutationAction] = "create"

    @property
    def issue_id(self) -> str:
        return str(self.issue.get("id", ""))

    def entity_key(self, scope_id: str) -> str:
        # La incidencia vive dentro del documento de la inspección.
        return f"{inspections_path(scope_id)}/{self.inspection_id}"


@dataclass(frozen=True)
class GenericUpdate:
    collection: str
    document_id: str
    updates: dict[str, Any]

    kind: ClassVar[str] = "genericUpdate/update"
    entity_type: ClassVar[EntityType] = "genericUpdate"
    action: ClassVar[MutationAction] = "update"

    def entity_key(self, scope_id: str) -> str:
        return f"companies/{scope_id}/{self.collection}/{self.document_id}"


MutationPayload = Union[InspectionCreate, InspectionUpdate, InspectionDelete, IssueCreate, GenericUpdate]

PAYLOAD_TYPES: dict[str, type] = {
    payload_type.kind: payload_type
    for payload_type in (InspectionCreate, InspectionUpdate, InspectionDelete, IssueCreate, GenericUpdate)
}


@dataclass(frozen=True)
class QueuedMutation:
    """Escritura de dominio pendiente de confirmar en el almacén remoto.

    ``entity_type`` y ``action`` se derivan del tipo de payload, de modo que no
    pueden contradecirlo.
    """

    id: str
    payload: MutationPayload
    scope_id: str
    enqueued_at: float
    retry_count: int = 0
    last_error: str | None = None
    error_kind: ErrorKind | None = None
    priority: MutationPriority = "normal"

    @property
    def entity_type(self) -> EntityType:
        return self.payload.entity_type

    @property
    def action(self) -> MutationAction:
        return self.payload.action

    @property
    def kind(self) -> str:
        return self.payload.kind

    @property
    def entity_key(self) -> str:
        return self.payload.entity_key(self.scope_id)

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= MAX_MUTATION_RETRIES


@dataclass(frozen=True)
class DeadLetterEntry:
    mutation: QueuedMutation
    moved_at: float

    @property
    def id(self) -> str:
        return self.mutation.id


@dataclass(frozen=True)
class MutationFailure:
    mutation_id: str
    kind: str
    error: str
    error_kind: ErrorKind
    dead_lettered: bool = False


@dataclass(frozen=True)
class PendingRecords:
    """Espejo local de inspecciones e incidencias aún no confirmadas."""

    inspections: dict[str, dict[str, Any]] = field(default_factory=dict)
    issues_by_inspection: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
