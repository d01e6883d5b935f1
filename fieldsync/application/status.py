from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable

from fieldsync.domain.sync_models import SyncStatus

logger = logging.getLogger(__name__)

MAX_STATUS_ERRORS = 20

StatusListener = Callable[[SyncStatus], None]


class SyncStatusTracker:
    """Estado agregado de sincronización publicado a los suscriptores de la UI."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status = SyncStatus(is_online=False, last_sync=None, pending_items=0, syncing=False)
        self._listeners: list[StatusListener] = []

    @property
    def current(self) -> SyncStatus:
        return self._status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
            status = self._status
        listener(status)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update(
        self,
        *,
        is_online: bool | None = None,
        last_sync: str | None = None,
        pending_items: int | None = None,
        syncing: bool | None = None,
        errors: list[str] | tuple[str, ...] | None = None,
    ) -> SyncStatus:
        with self._lock:
            status = self._status
            changes: dict[str, object] = {}
            if is_online is not None:
                changes["is_online"] = is_online
            if last_sync is not None:
                changes["last_sync"] = last_sync
            if pending_items is not None:
                changes["pending_items"] = pending_items
            if syncing is not None:
                changes["syncing"] = syncing
            if errors is not None:
                changes["errors"] = tuple(errors)[-MAX_STATUS_ERRORS:]
            self._status = replace(status, **changes)
            status = self._status
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(status)
            except Exception:  # noqa: BLE001
                logger.exception("Error notificando el estado de sincronización.")
        return status
