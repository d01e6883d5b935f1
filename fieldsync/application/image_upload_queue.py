from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, TypeVar

from fieldsync.application.error_policy import classify_error, describe_error
from fieldsync.application.queue_storage import JsonListQueue, JsonRecordStore
from fieldsync.core.errors import EntityNotFoundError, ItemNotFoundError
from fieldsync.core.locks import KeyedLocks
from fieldsync.core.metrics import MetricsRegistry, metrics_registry
from fieldsync.core.observability import log_event
from fieldsync.core.timeouts import call_with_timeout
from fieldsync.domain import codec
from fieldsync.domain.images import (
    MAX_UPLOAD_RETRIES,
    FailedImageUpload,
    ImageRefs,
    ImageUploadDescriptor,
    PendingImageUpload,
    build_remote_path,
)
from fieldsync.domain.mutations import inspections_path
from fieldsync.domain.merge_policy import locate_element
from fieldsync.domain.ports import SERVER_TIMESTAMP, ArrayElementPatch, BlobStore, ImageSource, RemoteStore
from fieldsync.domain.sync_models import UploadReport

logger = logging.getLogger(__name__)

IMAGE_QUEUE_KEY = "@image_upload_queue"
FAILED_UPLOADS_KEY = "@failed_image_uploads"

T = TypeVar("T")


@dataclass(frozen=True)
class _UploadOutcome:
    upload_id: str
    uploaded: bool
    archived: bool = False
    error: str | None = None


class ImageUploadQueue:
    """Cola de subidas de imágenes, independiente de la cola de mutaciones."""

    def __init__(
        self,
        records: JsonRecordStore,
        blob_store: BlobStore,
        image_source: ImageSource,
        remote: RemoteStore,
        *,
        entity_locks: KeyedLocks | None = None,
        max_workers: int = 2,
        max_retries: int = MAX_UPLOAD_RETRIES,
        timeout_seconds: float | None = 30.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        metrics: MetricsRegistry = metrics_registry,
    ) -> None:
        self._blob_store = blob_store
        self._image_source = image_source
        self._remote = remote
        self._entity_locks = entity_locks or KeyedLocks()
        self._max_workers = max(1, max_workers)
        self._max_retries = max_retries
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._id_factory = id_factory
        self._metrics = metrics
        self._pending = JsonListQueue(records, IMAGE_QUEUE_KEY, encode=codec.upload_to_dict, decode=codec.upload_from_dict)
        self._failed = JsonListQueue(
            records, FAILED_UPLOADS_KEY, encode=codec.failed_upload_to_dict, decode=codec.failed_upload_from_dict
        )
        self._run_guard = threading.Lock()
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    def queue_image_upload(self, descriptor: ImageUploadDescriptor) -> PendingImageUpload:
        timestamp_ms = int(self._clock() * 1000)
        upload = PendingImageUpload(
            id=self._id_factory(),
            local_uri=descriptor.local_uri,
            remote_path=build_remote_path(descriptor, timestamp_ms),
            refs=ImageRefs(
                inspection_id=descriptor.inspection_id,
                issue_id=descriptor.issue_id,
                image_id=descriptor.image_id,
                image_index=descriptor.image_index,
            ),
            scope_id=descriptor.scope_id,
            upload_name=descriptor.upload_name,
            enqueued_at=self._clock(),
            annotations=tuple(descriptor.annotations),
        )
        self._pending.append(upload)
        self._metrics.increment("images_enqueued")
        logger.info("Imagen encolada id=%s path=%s", upload.id, upload.remote_path)
        return upload

    def process_pending_uploads(self, *, should_continue: Callable[[], bool] | None = None) -> UploadReport:
        if not self._run_guard.acquire(blocking=False):
            logger.info("Subida de imágenes omitida: ya hay un procesamiento en curso.")
            return UploadReport(skipped_reason="upload_in_progress")
        try:
            with self._metrics.timer("image_upload_run"):
                return self._process(should_continue)
        finally:
            self._run_guard.release()

    def _process(self, should_continue: Callable[[], bool] | None) -> UploadReport:
        snapshot = [upload for upload in self._pending.load() if upload.upload_status != "uploaded"]
        futures: list[Future[_UploadOutcome]] = []
        aborted = False
        executor = self._get_executor()
        for upload in snapshot:
            if should_continue is not None and not should_continue():
                aborted = True
                logger.warning("Subida de imágenes interrumpida: se perdió la conectividad.")
                break
            if not self._claim(upload.id):
                continue
            futures.append(executor.submit(self._upload_claimed, upload, should_continue))

        outcomes = [future.result() for future in futures]
        errors = tuple(outcome.error for outcome in outcomes if outcome.error)
        report = UploadReport(
            attempted=len(outcomes),
            uploaded=sum(1 for outcome in outcomes if outcome.uploaded),
            failed=sum(1 for outcome in outcomes if not outcome.uploaded),
            archived=sum(1 for outcome in outcomes if outcome.archived),
            aborted=aborted,
            errors=errors,
        )
        log_event(
            logger,
            "image_uploads_processed",
            {
                "attempted": report.attempted,
                "uploaded": report.uploaded,
                "failed": report.failed,
                "archived": report.archived,
                "aborted": aborted,
            },
        )
        return report

    def _claim(self, upload_id: str) -> bool:
        with self._in_flight_lock:
            if upload_id in self._in_flight:
                return False
            self._in_flight.add(upload_id)
            return True

    def _release(self, upload_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(upload_id)

    def _upload_claimed(self, upload: PendingImageUpload, should_continue: Callable[[], bool] | None) -> _UploadOutcome:
        try:
            if should_continue is not None and not should_continue():
                return _UploadOutcome(upload_id=upload.id, uploaded=False, error="aborted: offline")
            self._set_status(upload.id, "uploading")
            try:
                data = self._image_source.read_bytes(upload.local_uri)
                url = self._call("upload", lambda: self._blob_store.upload(upload.remote_path, data))
                self.patch_image_url(upload.scope_id, upload.refs, url)
            except Exception as exc:  # noqa: BLE001
                return self._record_failure(upload, exc)
            self._pending.update(lambda entries: [entry for entry in entries if entry.id != upload.id])
            self._metrics.increment("images_uploaded")
            logger.info("Imagen subida id=%s url=%s", upload.id, url)
            return _UploadOutcome(upload_id=upload.id, uploaded=True)
        finally:
            self._release(upload.id)

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        return call_with_timeout(operation, func, self._timeout_seconds)

    def patch_image_url(self, scope_id: str, refs: ImageRefs, url: str) -> bool:
        """Escribe la URL definitiva en la imagen de la incidencia.

        Devuelve ``False`` si la imagen ya tenía esa URL (reaplicación sin efecto).
        """
        path = inspections_path(scope_id)
        entity_key = f"{path}/{refs.inspection_id}"
        with self._entity_locks.hold(entity_key):
            document = self._call("get", lambda: self._remote.get(path, refs.inspection_id))
            if document is None:
                raise EntityNotFoundError(f"Inspección {refs.inspection_id} no encontrada.")
            issues = document.get("issues") or []
            issue = next(
                (item for item in issues if isinstance(item, dict) and str(item.get("id")) == refs.issue_id),
                None,
            )
            if issue is None:
                raise EntityNotFoundError(
                    f"Incidencia {refs.issue_id} no encontrada en la inspección {refs.inspection_id}."
                )
            images: list[Any] = list(issue.get("images") or [])
            position = locate_element(images, refs.image_id, refs.image_index)
            if position is None:
                raise EntityNotFoundError(f"Imagen {refs.image_id} no encontrada en la incidencia {refs.issue_id}.")
            current = images[position]
            if isinstance(current, dict) and current.get("url") == url and not current.get("pendingUpload"):
                return False
            # Parche dirigido: el remoto lo aplica sobre su lista de incidencias actual.
            patch = {
                "issues": ArrayElementPatch(
                    match_id=refs.issue_id,
                    fields={
                        "images": ArrayElementPatch(
                            match_id=refs.image_id,
                            fallback_index=refs.image_index,
                            fields={"url": url, "pendingUpload": False},
                        )
                    },
                ),
                "updatedAt": SERVER_TIMESTAMP,
            }
            self._call("update", lambda: self._remote.update(path, refs.inspection_id, patch))
            return True

    def _set_status(self, upload_id: str, status: str) -> None:
        self._pending.update(
            lambda entries: [replace(entry, upload_status=status) if entry.id == upload_id else entry for entry in entries]
        )

    def _record_failure(self, upload: PendingImageUpload, exc: Exception) -> _UploadOutcome:
        error_kind = classify_error(exc)
        message = describe_error(exc)
        level = logging.WARNING if error_kind == "transient" else logging.ERROR
        logger.log(
            level,
            "Fallo subiendo imagen id=%s (%s): %s",
            upload.id,
            error_kind,
            message,
            extra={"extra": {"error_kind": error_kind, "upload_id": upload.id}},
        )
        self._metrics.increment("images_failed")
        archived = False
        with self._pending.locked(), self._failed.locked():
            remaining: list[PendingImageUpload] = []
            for entry in self._pending.load():
                if entry.id != upload.id:
                    remaining.append(entry)
                    continue
                updated = replace(entry, retry_count=entry.retry_count + 1, upload_status="failed", last_error=message)
                if updated.retry_count >= self._max_retries:
                    self._failed.append(FailedImageUpload(upload=updated, failed_at=self._clock()))
                    archived = True
                else:
                    remaining.append(updated)
            self._pending.save(remaining)
        if archived:
            self._metrics.increment("images_archived")
            log_event(logger, "image_upload_archived", {"upload_id": upload.id, "error": message})
        return _UploadOutcome(upload_id=upload.id, uploaded=False, archived=archived, error=message)

    def pending_count(self) -> int:
        return len(self._pending.load())

    def list_pending(self) -> list[PendingImageUpload]:
        return self._pending.load()

    def list_failed(self) -> list[FailedImageUpload]:
        return self._failed.load()

    def retry_failed_upload(self, upload_id: str) -> PendingImageUpload:
        with self._pending.locked(), self._failed.locked():
            entries = self._failed.load()
            match = next((entry for entry in entries if entry.id == upload_id), None)
            if match is None:
                raise ItemNotFoundError(f"No existe la subida fallida {upload_id}.")
            self._failed.save([entry for entry in entries if entry.id != upload_id])
            revived = replace(match.upload, retry_count=0, upload_status="pending", last_error=None)
            self._pending.append(revived)
        logger.info("Subida %s reactivada.", upload_id)
        return revived

    def discard_failed_upload(self, upload_id: str) -> FailedImageUpload:
        with self._failed.locked():
            entries = self._failed.load()
            match = next((entry for entry in entries if entry.id == upload_id), None)
            if match is None:
                raise ItemNotFoundError(f"No existe la subida fallida {upload_id}.")
            self._failed.save([entry for entry in entries if entry.id != upload_id])
        logger.warning("Subida %s descartada definitivamente.", upload_id)
        return match

    def clear(self) -> None:
        with self._pending.locked(), self._failed.locked():
            self._pending.clear()
            self._failed.clear()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="fieldsync-images")
            return self._executor

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True, cancel_futures=True)
                self._executor = None
