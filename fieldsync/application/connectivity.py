from __future__ import annotations

import logging
import threading
from typing import Callable

from fieldsync.domain.ports import ConnectivityCallback, ConnectivitySignal, Unsubscribe

logger = logging.getLogger(__name__)


class ManualConnectivitySignal:
    """Señal de conectividad controlada por código (CLI, pruebas)."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._callbacks: list[ConnectivityCallback] = []

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(callback)
        callback(self._online)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        with self._lock:
            self._online = online
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(online)


class ConnectivityMonitor:
    """Mantiene el último estado conocido y avisa solo en las transiciones."""

    def __init__(self, signal: ConnectivitySignal) -> None:
        self._signal = signal
        self._lock = threading.Lock()
        self._online = False
        self._known = False
        self._listeners: list[Callable[[bool], None]] = []
        self._unsubscribe: Unsubscribe | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def check(self) -> bool:
        return self._online

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._signal.subscribe(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, online: bool) -> None:
        with self._lock:
            changed = not self._known or online != self._online
            self._online = online
            self._known = True
            listeners = list(self._listeners)
        if not changed:
            return
        logger.info("Conectividad %s", "restablecida" if online else "perdida")
        for listener in listeners:
            listener(online)
