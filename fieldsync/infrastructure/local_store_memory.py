from __future__ import annotations

import threading
from typing import Iterable

from fieldsync.core.errors import StorageCapacityError


class InMemoryLocalStore:
    """Almacén local volátil; ``max_bytes`` simula un dispositivo sin espacio."""

    def __init__(self, max_bytes: int | None = None) -> None:
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()
        self._max_bytes = max_bytes

    def get_item(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            if self._max_bytes is not None:
                used = sum(len(item) for name, item in self._items.items() if name != key)
                if used + len(value) > self._max_bytes:
                    raise StorageCapacityError(f"Sin espacio local para la clave {key}.")
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def get_all_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)

    def multi_remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._items.pop(key, None)
