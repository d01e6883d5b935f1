from __future__ import annotations

from typing import Iterable

from fieldsync.core.errors import TransientExternalError
from fieldsync.domain.ports import Document, DocumentPredicate, WriteOp


class UnconfiguredRemoteStore:
    """Almacén remoto ausente: toda operación falla como error transitorio.

    Permite consultar y operar las colas locales sin credenciales remotas.
    """

    max_batch_size = 500

    def _fail(self) -> TransientExternalError:
        return TransientExternalError("Almacén remoto no configurado.")

    def get(self, collection_path: str, doc_id: str) -> Document | None:
        raise self._fail()

    def query(self, collection_path: str, predicate: DocumentPredicate | None = None) -> list[Document]:
        raise self._fail()

    def set(self, collection_path: str, doc_id: str, data: Document) -> None:
        raise self._fail()

    def update(self, collection_path: str, doc_id: str, patch: Document) -> None:
        raise self._fail()

    def delete(self, collection_path: str, doc_id: str) -> None:
        raise self._fail()

    def batch_commit(self, ops: Iterable[WriteOp]) -> None:
        raise self._fail()

    def enable_network(self) -> None:
        return None

    def disable_network(self) -> None:
        return None
