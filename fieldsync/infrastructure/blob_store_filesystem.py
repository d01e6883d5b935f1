from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath

from fieldsync.core.errors import PermanentExternalError, StorageCapacityError, TransientExternalError

logger = logging.getLogger(__name__)


class FileSystemBlobStore:
    """Almacén de blobs en un directorio; la URL devuelta es ``file://``."""

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()

    def _target(self, path: str) -> Path:
        relative = PurePosixPath(path.lstrip("/"))
        if any(part in ("", ".", "..") for part in relative.parts):
            raise PermanentExternalError(f"Ruta de blob no válida: {path!r}")
        return self._root.joinpath(*relative.parts)

    def upload(self, path: str, data: bytes) -> str:
        target = self._target(path)
        temporary = target.with_name(f".{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            temporary.write_bytes(data)
            os.replace(temporary, target)
        except OSError as exc:
            if exc.errno == 28:
                raise StorageCapacityError(f"Sin espacio para el blob {path}") from exc
            raise TransientExternalError(f"No se pudo escribir el blob {path}: {exc}") from exc
        logger.debug("Blob escrito en %s (%s bytes)", target, len(data))
        return target.as_uri()
