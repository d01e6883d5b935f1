from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote, urlparse

from fieldsync.core.errors import PermanentExternalError


def local_path_from_uri(local_uri: str) -> Path:
    parsed = urlparse(local_uri)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise PermanentExternalError(f"Esquema de imagen no soportado: {local_uri!r}")
    return Path(local_uri)


class LocalFileImageSource:
    def read_bytes(self, local_uri: str) -> bytes:
        path = local_path_from_uri(local_uri)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise PermanentExternalError(f"La imagen local ya no existe: {path}") from exc
