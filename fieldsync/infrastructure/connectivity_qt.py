from __future__ import annotations

import logging
from typing import Any

from PySide6.QtNetwork import QNetworkInformation

from fieldsync.core.errors import InfraError
from fieldsync.domain.ports import ConnectivityCallback, Unsubscribe

logger = logging.getLogger(__name__)


def is_reachable(reachability: Any) -> bool:
    return reachability == QNetworkInformation.Reachability.Online


class QtConnectivitySignal:
    """Conectividad del sistema a partir de ``QNetworkInformation``."""

    def __init__(self, information: Any | None = None) -> None:
        if information is None:
            if not QNetworkInformation.loadDefaultBackend():
                raise InfraError("No hay backend de QNetworkInformation disponible en esta plataforma.")
            information = QNetworkInformation.instance()
        self._information = information

    def subscribe(self, callback: ConnectivityCallback) -> Unsubscribe:
        def on_reachability_changed(reachability: Any) -> None:
            callback(is_reachable(reachability))

        self._information.reachabilityChanged.connect(on_reachability_changed)
        callback(is_reachable(self._information.reachability()))

        def unsubscribe() -> None:
            try:
                self._information.reachabilityChanged.disconnect(on_reachability_changed)
            except (RuntimeError, TypeError):
                logger.debug("La señal de conectividad ya estaba desconectada.")

        return unsubscribe
