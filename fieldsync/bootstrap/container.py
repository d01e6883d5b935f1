from __future__ import annotations

import logging
from typing import Callable

from fieldsync.application.connectivity import ConnectivityMonitor, ManualConnectivitySignal
from fieldsync.application.engine import SyncEngine
from fieldsync.application.image_upload_queue import ImageUploadQueue
from fieldsync.application.mutation_applier import MutationApplier
from fieldsync.application.mutation_queue import MutationQueueManager
from fieldsync.application.queue_storage import JsonRecordStore
from fieldsync.application.reference_cache import ReferenceCache
from fieldsync.application.status import SyncStatusTracker
from fieldsync.application.sync_orchestrator import StructuredFileLogger, SyncOrchestrator
from fieldsync.application.verification_progress import VerificationProgressEngine
from fieldsync.bootstrap.settings import EngineConfig
from fieldsync.core.errors import InfraError
from fieldsync.core.locks import KeyedLocks
from fieldsync.domain.ports import BlobStore, ConnectivitySignal, DurableLocalStore, ImageSource, RemoteStore

logger = logging.getLogger(__name__)


def build_engine(
    config: EngineConfig,
    *,
    local_store: DurableLocalStore | None = None,
    remote: RemoteStore | None = None,
    blob_store: BlobStore | None = None,
    image_source: ImageSource | None = None,
    connectivity_signal: ConnectivitySignal | None = None,
    background_sync: bool = True,
) -> SyncEngine:
    """Cablea el motor; cada puerto no indicado usa el adaptador de producción."""
    if remote is None:
        remote = _build_remote(config)
    on_shutdown: list[Callable[[], None]] = []
    if local_store is None:
        from fieldsync.infrastructure.local_store_sqlite import SQLiteDurableLocalStore

        sqlite_store = SQLiteDurableLocalStore.open(config.db_path)
        on_shutdown.append(sqlite_store.close)
        local_store = sqlite_store
    if blob_store is None:
        from fieldsync.infrastructure.blob_store_filesystem import FileSystemBlobStore

        blob_store = FileSystemBlobStore(config.blob_dir)
    if image_source is None:
        from fieldsync.infrastructure.image_source_local import LocalFileImageSource

        image_source = LocalFileImageSource()
    if connectivity_signal is None:
        connectivity_signal = _build_connectivity_signal()

    records = JsonRecordStore(local_store, KeyedLocks())
    entity_locks = KeyedLocks()
    connectivity = ConnectivityMonitor(connectivity_signal)
    status = SyncStatusTracker()

    applier = MutationApplier(remote, entity_locks=entity_locks, timeout_seconds=config.remote_timeout_seconds)
    mutations = MutationQueueManager(records, applier, max_retries=config.max_retries)
    images = ImageUploadQueue(
        records,
        blob_store,
        image_source,
        remote,
        entity_locks=entity_locks,
        max_workers=config.image_concurrency,
        max_retries=config.max_retries,
        timeout_seconds=config.remote_timeout_seconds,
    )
    references = ReferenceCache(records, remote, config.scope_id, timeout_seconds=config.remote_timeout_seconds)
    verifications = VerificationProgressEngine(
        records,
        remote,
        references,
        scope_id=config.scope_id,
        user_id=config.user_id,
        device_id=config.device_id,
        batch_size=config.verification_batch_size,
        max_retries=config.max_retries,
        timeout_seconds=config.remote_timeout_seconds,
        is_online=connectivity.check,
    )
    structured_logger = StructuredFileLogger(config.audit_log_path) if config.audit_log_path else None
    orchestrator = SyncOrchestrator(
        mutations,
        verifications,
        images,
        status,
        is_online=connectivity.check,
        structured_logger=structured_logger,
    )
    return SyncEngine(
        remote=remote,
        connectivity=connectivity,
        mutations=mutations,
        images=images,
        verifications=verifications,
        orchestrator=orchestrator,
        status=status,
        background_sync=background_sync,
        on_shutdown=tuple(on_shutdown),
    )


def _build_remote(config: EngineConfig) -> RemoteStore:
    if not config.spreadsheet_id or config.credentials_path is None:
        raise InfraError("Falta FIELDSYNC_SPREADSHEET_ID o FIELDSYNC_CREDENTIALS_PATH para el almacén remoto.")
    from fieldsync.infrastructure.sheets_remote_store import SheetsRemoteStore

    return SheetsRemoteStore.open(config.credentials_path, config.spreadsheet_id)


def _build_connectivity_signal() -> ConnectivitySignal:
    try:
        from fieldsync.infrastructure.connectivity_qt import QtConnectivitySignal

        return QtConnectivitySignal()
    except InfraError as exc:
        logger.warning("Conectividad del sistema no disponible (%s); se asume conexión.", exc)
        return ManualConnectivitySignal(online=True)
