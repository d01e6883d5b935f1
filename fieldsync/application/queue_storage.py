from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from collections.abc import Iterator
from typing import Any, Callable, Generic, TypeVar

from fieldsync.core.errors import ValidationError
from fieldsync.core.locks import KeyedLocks
from fieldsync.domain.ports import DurableLocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonRecordStore:
    """Lectura/escritura JSON de claves del almacén local bajo un lock por clave."""

    def __init__(self, store: DurableLocalStore, locks: KeyedLocks | None = None) -> None:
        self._store = store
        self._locks = locks or KeyedLocks()

    @property
    def store(self) -> DurableLocalStore:
        return self._store

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        with self._locks.hold(key):
            yield

    def read(self, key: str, default: Any = None) -> Any:
        raw = self._store.get_item(key)
        if raw is None or raw == "":
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.exception("Contenido corrupto en la clave local %s; se ignora.", key)
            return default

    def write(self, key: str, value: Any) -> None:
        self._store.set_item(key, json.dumps(value, ensure_ascii=False))

    def remove(self, key: str) -> None:
        self._store.remove_item(key)

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [key for key in self._store.get_all_keys() if key.startswith(prefix)]


class JsonListQueue(Generic[T]):
    """Cola persistente: una lista JSON bajo una clave, tipada con un codec."""

    def __init__(
        self,
        records: JsonRecordStore,
        key: str,
        *,
        encode: Callable[[T], dict[str, Any]],
        decode: Callable[[dict[str, Any]], T],
    ) -> None:
        self._records = records
        self.key = key
        self._encode = encode
        self._decode = decode

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._records.locked(self.key):
            yield

    def load(self) -> list[T]:
        with self.locked():
            raw = self._records.read(self.key, default=[])
            if not isinstance(raw, list):
                logger.error("La clave local %s no contiene una lista; se ignora.", self.key)
                return []
            entries: list[T] = []
            for item in raw:
                try:
                    entries.append(self._decode(item))
                except (KeyError, TypeError, ValueError, ValidationError):
                    logger.exception("Registro no decodificable en %s; se descarta.", self.key)
            return entries

    def save(self, entries: list[T]) -> None:
        with self.locked():
            if entries:
                self._records.write(self.key, [self._encode(entry) for entry in entries])
            else:
                self._records.remove(self.key)

    def append(self, entry: T) -> None:
        with self.locked():
            entries = self.load()
            entries.append(entry)
            self.save(entries)

    def update(self, mutate: Callable[[list[T]], list[T]]) -> list[T]:
        """Lectura-modificación-escritura atómica respecto a otros usuarios de la clave."""
        with self.locked():
            entries = mutate(self.load())
            self.save(entries)
            return entries

    def clear(self) -> None:
        with self.locked():
            self._records.remove(self.key)
