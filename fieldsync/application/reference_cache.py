from __future__ import annotations

import logging
import threading
from typing import Any, Callable, TypeVar

from fieldsync.application.queue_storage import JsonRecordStore
from fieldsync.core.timeouts import call_with_timeout
from fieldsync.domain.ports import Document, RemoteStore
from fieldsync.domain.verification import DAYS_UNTIL_DUE

logger = logging.getLogger(__name__)

SCHEDULES_KEY = "@verification:schedules"
AREA_KEY_PREFIX = "@verification:area:"
HISTORY_KEY_PREFIX = "@verification:history:"

T = TypeVar("T")

_SCHEDULE_NAMES = {
    "daily": ("Daily", 1),
    "weekly": ("Weekly", 2),
    "monthly": ("Monthly", 3),
    "quarterly": ("Quarterly", 4),
    "annually": ("Annually", 5),
}


def default_schedules() -> dict[str, Document]:
    return {
        key: {
            "id": key,
            "name": name,
            "days": DAYS_UNTIL_DUE[key],
            "hours": DAYS_UNTIL_DUE[key] * 24,
            "cycleId": cycle_id,
        }
        for key, (name, cycle_id) in _SCHEDULE_NAMES.items()
    }


class ReferenceCache:
    """Caché de definiciones de programación, áreas e historial de primera inspección.

    Cada valor se consulta en remoto como mucho una vez por proceso; después se
    sirve desde memoria o desde el almacén local.
    """

    def __init__(
        self,
        records: JsonRecordStore,
        remote: RemoteStore,
        scope_id: str,
        *,
        timeout_seconds: float | None = 30.0,
    ) -> None:
        self._records = records
        self._remote = remote
        self._scope_id = scope_id
        self._timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._schedules: dict[str, Document] | None = None
        self._areas: dict[str, Document] = {}
        self._history: dict[str, bool] = {}

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        return call_with_timeout(operation, func, self._timeout_seconds)

    def schedule(self, schedule_id: str) -> Document:
        key = (schedule_id or "daily").lower()
        schedules = self._load_schedules()
        cached = schedules.get(key)
        if cached is not None:
            return dict(cached)
        return {"id": schedule_id, "name": schedule_id.capitalize(), "days": 1, "hours": 24, "cycleId": 0}

    def _load_schedules(self) -> dict[str, Document]:
        with self._lock:
            if self._schedules is not None:
                return self._schedules
            stored = self._records.read(SCHEDULES_KEY)
            if isinstance(stored, dict) and stored:
                self._schedules = stored
            else:
                self._schedules = default_schedules()
                self._records.write(SCHEDULES_KEY, self._schedules)
            return self._schedules

    def area(self, area_id: str) -> Document:
        """Devuelve el área completa; si no se puede obtener, un objeto mínimo con el id."""
        with self._lock:
            cached = self._areas.get(area_id)
        if cached is not None:
            return dict(cached)
        stored = self._records.read(f"{AREA_KEY_PREFIX}{area_id}")
        if isinstance(stored, dict):
            with self._lock:
                self._areas[area_id] = stored
            return dict(stored)
        path = f"companies/{self._scope_id}/areas"
        document = self._call("get", lambda: self._remote.get(path, area_id))
        if document is None:
            matches = self._call("query", lambda: self._remote.query(path, lambda doc: doc.get("id") == area_id))
            document = matches[0] if matches else None
        if document is None:
            logger.warning("Área %s no encontrada en remoto; se usa un objeto mínimo.", area_id)
            return {"id": area_id}
        self._records.write(f"{AREA_KEY_PREFIX}{area_id}", document)
        with self._lock:
            self._areas[area_id] = document
        return dict(document)

    def is_first_inspection(self, area_item_id: str) -> bool:
        with self._lock:
            if area_item_id in self._history:
                return not self._history[area_item_id]
        history_key = f"{HISTORY_KEY_PREFIX}{area_item_id}"
        if self._records.read(history_key) is True:
            self._remember(area_item_id)
            return False
        path = f"companies/{self._scope_id}/inspections"
        previous = self._call(
            "query", lambda: self._remote.query(path, lambda doc: doc.get("areaItemId") == area_item_id)
        )
        has_history = bool(previous)
        with self._lock:
            self._history[area_item_id] = has_history
        if has_history:
            self._records.write(history_key, True)
        return not has_history

    def mark_inspected(self, area_item_id: str) -> None:
        self._remember(area_item_id)
        self._records.write(f"{HISTORY_KEY_PREFIX}{area_item_id}", True)

    def _remember(self, area_item_id: str) -> None:
        with self._lock:
            self._history[area_item_id] = True

    def fetch_area_items(self, area_id: str) -> list[Document]:
        path = f"companies/{self._scope_id}/areaItems"
        return self._call("query", lambda: self._remote.query(path, lambda doc: doc.get("areaId") == area_id))

    def clear(self) -> None:
        with self._lock:
            self._schedules = None
            self._areas.clear()
            self._history.clear()


def item_frequency_field(item: dict[str, Any]) -> Any:
    raw = item.get("frequency") or item.get("schedule") or item.get("scheduleFrequency")
    if isinstance(raw, dict):
        return raw.get("id") or raw.get("name")
    return raw
