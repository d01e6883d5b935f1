from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from fieldsync.core.errors import PersistenceError, StorageCapacityError
from fieldsync.infrastructure.db import get_connection
from fieldsync.infrastructure.migrations import run_migrations
from fieldsync.infrastructure.sqlite_uow import transaction

logger = logging.getLogger(__name__)

_CAPACITY_MARKERS = ("database or disk is full", "no space left")


def map_sqlite_error(exc: sqlite3.Error) -> PersistenceError:
    message = str(exc).lower()
    if any(marker in message for marker in _CAPACITY_MARKERS):
        return StorageCapacityError(f"Almacenamiento local agotado: {exc}")
    return PersistenceError(f"Error del almacén local: {exc}")


class SQLiteDurableLocalStore:
    """Almacén clave/valor duradero sobre una tabla SQLite en modo WAL."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.RLock()

    @classmethod
    def open(cls, db_path: Path, migrations_dir: Path | None = None) -> "SQLiteDurableLocalStore":
        connection = get_connection(db_path)
        run_migrations(connection, migrations_dir)
        return cls(connection)

    def get_item(self, key: str) -> str | None:
        with self._lock:
            try:
                row = self._connection.execute("SELECT value FROM local_store WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as exc:
                raise map_sqlite_error(exc) from exc
        return None if row is None else str(row["value"])

    def set_item(self, key: str, value: str) -> None:
        updated_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                with transaction(self._connection):
                    self._connection.execute(
                        """
                        INSERT INTO local_store (key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                        """,
                        (key, value, updated_at),
                    )
            except sqlite3.Error as exc:
                error = map_sqlite_error(exc)
                logger.error("No se pudo guardar la clave local %s: %s", key, exc)
                raise error from exc

    def remove_item(self, key: str) -> None:
        self.multi_remove((key,))

    def get_all_keys(self) -> list[str]:
        with self._lock:
            try:
                rows = self._connection.execute("SELECT key FROM local_store ORDER BY key").fetchall()
            except sqlite3.Error as exc:
                raise map_sqlite_error(exc) from exc
        return [str(row["key"]) for row in rows]

    def multi_remove(self, keys: Iterable[str]) -> None:
        selected = [(key,) for key in keys]
        if not selected:
            return
        with self._lock:
            try:
                with transaction(self._connection):
                    self._connection.executemany("DELETE FROM local_store WHERE key = ?", selected)
            except sqlite3.Error as exc:
                raise map_sqlite_error(exc) from exc

    def close(self) -> None:
        with self._lock:
            self._connection.close()
