from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from fieldsync.application.connectivity import ConnectivityMonitor
from fieldsync.application.image_upload_queue import ImageUploadQueue
from fieldsync.application.mutation_queue import MutationQueueManager
from fieldsync.application.status import SyncStatusTracker
from fieldsync.application.sync_orchestrator import SyncOrchestrator
from fieldsync.application.verification_progress import VerificationProgressEngine
from fieldsync.core.operational_logging import log_operational_error
from fieldsync.domain.ports import RemoteStore
from fieldsync.domain.sync_models import SyncRunReport, SyncStatus

logger = logging.getLogger(__name__)


class SyncEngine:
    """Contexto explícito del motor: agrupa colas, caché y orquestador.

    ``init`` se suscribe a la conectividad; al volver la red se lanza una
    sincronización en segundo plano. ``shutdown`` deshace la suscripción y
    libera los ejecutores.
    """

    def __init__(
        self,
        *,
        remote: RemoteStore,
        connectivity: ConnectivityMonitor,
        mutations: MutationQueueManager,
        images: ImageUploadQueue,
        verifications: VerificationProgressEngine,
        orchestrator: SyncOrchestrator,
        status: SyncStatusTracker,
        background_sync: bool = True,
        on_shutdown: tuple[Callable[[], None], ...] = (),
    ) -> None:
        self.remote = remote
        self.connectivity = connectivity
        self.mutations = mutations
        self.images = images
        self.verifications = verifications
        self.orchestrator = orchestrator
        self.status = status
        self._background_sync = background_sync
        self._on_shutdown = on_shutdown
        self._started = False
        self._threads: list[threading.Thread] = []
        self._threads_lock = threading.Lock()
        connectivity.add_listener(self._on_connectivity_change)

    def __enter__(self) -> "SyncEngine":
        self.init()
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        self.shutdown()

    @property
    def started(self) -> bool:
        return self._started

    def init(self) -> None:
        if self._started:
            return
        self._started = True
        self.status.update(pending_items=self.orchestrator.pending_count())
        self.connectivity.start()
        logger.info("Motor de sincronización iniciado.")

    def shutdown(self) -> None:
        if not self._started:
            return
        self.connectivity.stop()
        with self._threads_lock:
            threads = list(self._threads)
            self._threads.clear()
        for thread in threads:
            thread.join()
        self.images.close()
        for release in self._on_shutdown:
            release()
        self._started = False
        logger.info("Motor de sincronización detenido.")

    def sync_now(self, trigger: str = "manual") -> SyncRunReport:
        return self.orchestrator.run(trigger)

    def current_status(self) -> SyncStatus:
        return self.status.update(
            is_online=self.connectivity.is_online,
            pending_items=self.orchestrator.pending_count(),
        )

    def diagnostics(self) -> dict[str, Any]:
        return {
            "status": self.current_status().to_dict(),
            "mutations": {
                "active": self.mutations.pending_count(),
                "dead_letters": len(self.mutations.list_dead_letters()),
            },
            "images": {
                "pending": self.images.pending_count(),
                "failed": len(self.images.list_failed()),
            },
            "verifications": {
                "queued": len(self.verifications.get_queued_verifications()),
                "failed": len(self.verifications.list_failed_verifications()),
            },
        }

    def _on_connectivity_change(self, online: bool) -> None:
        self.status.update(is_online=online)
        try:
            if online:
                self.remote.enable_network()
            else:
                self.remote.disable_network()
        except Exception as exc:  # noqa: BLE001
            log_operational_error("No se pudo cambiar el modo de red del almacén remoto", exc=exc)
        if online and self._started and self._background_sync:
            self._spawn_sync("connectivity_restored")

    def _spawn_sync(self, trigger: str) -> None:
        def target() -> None:
            try:
                self.orchestrator.run(trigger)
            except Exception as exc:  # noqa: BLE001
                log_operational_error("Fallo inesperado en la sincronización de fondo", exc=exc)

        thread = threading.Thread(target=target, name="fieldsync-sync", daemon=True)
        with self._threads_lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
        thread.start()

    def wait_for_background_sync(self, timeout: float | None = None) -> None:
        with self._threads_lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)
