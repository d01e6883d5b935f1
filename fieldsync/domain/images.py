from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

UploadStatus = Literal["pending", "uploading", "uploaded", "failed"]

MAX_UPLOAD_RETRIES = 3

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_path_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT_CHARS.sub("_", str(value).strip())
    return cleaned or "_"


@dataclass(frozen=True)
class ImageRefs:
    """Ubicación estable de la imagen dentro del documento que la referencia."""

    inspection_id: str
    issue_id: str
    image_id: str
    image_index: int


@dataclass(frozen=True)
class ImageUploadDescriptor:
    local_uri: str
    scope_id: str
    inspection_id: str
    issue_id: str
    image_id: str
    image_index: int
    upload_name: str
    field_name: str = "images"
    annotations: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class PendingImageUpload:
    id: str
    local_uri: str
    remote_path: str
    refs: ImageRefs
    scope_id: str
    upload_name: str
    enqueued_at: float
    retry_count: int = 0
    upload_status: UploadStatus = "pending"
    last_error: str | None = None
    annotations: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= MAX_UPLOAD_RETRIES


@dataclass(frozen=True)
class FailedImageUpload:
    upload: PendingImageUpload
    failed_at: float

    @property
    def id(self) -> str:
        return self.upload.id


def build_remote_path(descriptor: ImageUploadDescriptor, timestamp_ms: int) -> str:
    """Ruta determinista: scope/entidad/campo/índice/timestamp.

    Con los mismos datos de entrada y el mismo timestamp la ruta es idéntica, por
    lo que un reintento sobrescribe el mismo blob en lugar de crear otro.
    """
    scope = sanitize_path_segment(descriptor.scope_id)
    inspection = sanitize_path_segment(descriptor.inspection_id)
    issue = sanitize_path_segment(descriptor.issue_id)
    field_name = sanitize_path_segment(descriptor.field_name)
    name = sanitize_path_segment(descriptor.upload_name)
    filename = f"{field_name}_{descriptor.image_index}_{timestamp_ms}_{name}"
    return f"companies/{scope}/inspections/{inspection}/issues/{issue}/{filename}"
