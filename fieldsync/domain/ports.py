from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Literal, Protocol

WriteKind = Literal["set", "update", "delete"]
Document = dict[str, Any]
DocumentPredicate = Callable[[Document], bool]
ConnectivityCallback = Callable[[bool], None]
Unsubscribe = Callable[[], None]


class _ServerTimestamp:
    """Centinela: el almacén remoto asigna la marca de tiempo al escribir."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class ArrayUnion:
    """Añade elementos a un campo lista sin duplicarlos.

    Los elementos con clave ``id`` se identifican por ese id; el resto por
    igualdad. Reaplicar la misma unión no cambia el documento.
    """

    values: tuple[Any, ...]


@dataclass(frozen=True)
class ArrayElementPatch:
    """Modifica campos de un único elemento de un campo lista, sin reescribir la lista.

    El elemento se localiza por ``match_id`` (clave ``id``) y, si ningún elemento
    la tiene, por ``fallback_index``. Un valor de ``fields`` puede ser a su vez un
    ``ArrayElementPatch`` sobre una lista anidada del elemento.
    """

    match_id: str
    fields: Document
    fallback_index: int | None = None


@dataclass(frozen=True)
class WriteOp:
    kind: WriteKind
    collection_path: str
    doc_id: str
    data: Document = field(default_factory=dict)


class RemoteStore(Protocol):
    max_batch_size: int

    def get(self, collection_path: str, doc_id: str) -> Document | None:
        ...

    def query(self, collection_path: str, predicate: DocumentPredicate | None = None) -> list[Document]:
        ...

    def set(self, collection_path: str, doc_id: str, data: Document) -> None:
        ...

    def update(self, collection_path: str, doc_id: str, patch: Document) -> None:
        ...

    def delete(self, collection_path: str, doc_id: str) -> None:
        ...

    def batch_commit(self, ops: Iterable[WriteOp]) -> None:
        ...

    def enable_network(self) -> None:
        ...

    def disable_network(self) -> None:
        ...


class DurableLocalStore(Protocol):
    def get_item(self, key: str) -> str | None:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def get_all_keys(self) -> list[str]:
        ...

    def multi_remove(self, keys: Iterable[str]) -> None:
        ...


class BlobStore(Protocol):
    def upload(self, path: str, data: bytes) -> str:
        ...


class ImageSource(Protocol):
    def read_bytes(self, local_uri: str) -> bytes:
        ...


class ConnectivitySignal(Protocol):
    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe:
        ...
