from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Callable, Iterable

from fieldsync.application.error_policy import describe_error
from fieldsync.application.queue_storage import JsonRecordStore
from fieldsync.application.reference_cache import ReferenceCache, item_frequency_field
from fieldsync.core.errors import ItemNotFoundError
from fieldsync.core.metrics import MetricsRegistry, metrics_registry
from fieldsync.core.observability import log_event
from fieldsync.core.timeouts import call_with_timeout
from fieldsync.domain import codec
from fieldsync.domain.ports import SERVER_TIMESTAMP, Document, RemoteStore, WriteOp
from fieldsync.domain.sync_models import CompletionSummary, VerificationSyncReport
from fieldsync.domain.verification import (
    MAX_VERIFICATION_RETRIES,
    AreaItemProgress,
    LocalPhoto,
    LocalVerificationProgress,
    OfflineVerification,
    VerificationStatus,
    build_schedule_groups,
    calculate_due_status,
    normalize_frequency,
)

logger = logging.getLogger(__name__)

PROGRESS_KEY_PREFIX = "@verification:progress:"
FAILED_VERIFICATIONS_KEY = "@verification:failed"
DEFAULT_BATCH_SIZE = 10


def _parse_day(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # Epoch en milisegundos, como lo guardan los clientes móviles.
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds).date()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Fecha de última verificación no reconocida: %r", value)
        return None
    # Día de calendario local, igual que en la rama de epoch.
    return parsed.astimezone().date() if parsed.tzinfo is not None else parsed.date()


def _item_name(raw: Document) -> str:
    for field_name in ("itemDescription", "description", "itemName", "name", "title"):
        if raw.get(field_name):
            return str(raw[field_name])
    return "Unnamed Item"


def _chunks(entries: list[OfflineVerification], size: int) -> Iterable[list[OfflineVerification]]:
    for start in range(0, len(entries), size):
        yield entries[start:start + size]


class VerificationProgressEngine:
    """Caché local del progreso de verificación por área y día.

    La lectura de la interfaz siempre sale del almacén local; el almacén remoto
    solo se consulta al inicializar el día o en un refresco forzado.
    """

    def __init__(
        self,
        records: JsonRecordStore,
        remote: RemoteStore,
        references: ReferenceCache,
        *,
        scope_id: str,
        user_id: str,
        device_id: str = "fieldsync",
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = MAX_VERIFICATION_RETRIES,
        timeout_seconds: float | None = 30.0,
        is_online: Callable[[], bool] | None = None,
        now: Callable[[], datetime] = datetime.now,
        id_factory: Callable[[], str] = lambda: f"local_{uuid.uuid4().hex}",
        metrics: MetricsRegistry = metrics_registry,
    ) -> None:
        self._records = records
        self._remote = remote
        self._references = references
        self._scope_id = scope_id
        self._user_id = user_id
        self._device_id = device_id
        self._batch_size = max(1, batch_size)
        self._max_retries = max_retries
        self._timeout_seconds = timeout_seconds
        self._is_online = is_online
        self._now = now
        self._id_factory = id_factory
        self._metrics = metrics
        self._sync_guard = threading.Lock()

    @property
    def inspections_path(self) -> str:
        return f"companies/{self._scope_id}/inspections"

    @property
    def effective_batch_size(self) -> int:
        return max(1, min(self._batch_size, self._remote.max_batch_size))

    def _progress_key(self, area_id: str) -> str:
        return f"{PROGRESS_KEY_PREFIX}{area_id}"

    def _load(self, area_id: str) -> LocalVerificationProgress | None:
        raw = self._records.read(self._progress_key(area_id))
        if not isinstance(raw, dict):
            return None
        try:
            return codec.progress_from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.exception("Progreso local corrupto para el área %s; se reinicializa.", area_id)
            return None

    def _save(self, progress: LocalVerificationProgress) -> None:
        progress.last_modified = self._now().timestamp()
        self._records.write(self._progress_key(progress.area_id), codec.progress_to_dict(progress))

    def get_local_progress(self, area_id: str, force_refresh: bool = False) -> LocalVerificationProgress:
        today = self._now().date().isoformat()
        with self._records.locked(self._progress_key(area_id)):
            stored = self._load(area_id)
            if stored is not None and stored.date == today and not force_refresh:
                return stored
            return self._initialize(area_id, stored, today)

    def _initialize(
        self,
        area_id: str,
        previous: LocalVerificationProgress | None,
        today: str,
    ) -> LocalVerificationProgress:
        carried_queue = list(previous.offline_queue) if previous else []
        try:
            raw_items = self._references.fetch_area_items(area_id)
        except Exception as exc:  # noqa: BLE001
            if previous is None:
                raise
            logger.warning("Sin acceso remoto para el área %s (%s); se reutilizan sus elementos.", area_id, exc)
            items = self._roll_items_forward(previous)
        else:
            items = self._build_items(raw_items)
        if previous is not None and previous.date == today:
            self._carry_today_results(previous, items)
        site_id = area_id
        try:
            area = self._references.area(area_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("No se pudo obtener el área %s: %s", area_id, exc)
        else:
            site = area.get("site")
            site_id = str(area.get("siteId") or (site.get("id") if isinstance(site, dict) else "") or area_id)
        progress = LocalVerificationProgress(
            area_id=area_id,
            date=today,
            site_id=site_id,
            schedule_groups=build_schedule_groups(items),
            offline_queue=carried_queue,
        )
        self._save(progress)
        logger.info(
            "Progreso inicializado area=%s fecha=%s elementos=%s cola=%s",
            area_id,
            today,
            len(items),
            len(carried_queue),
        )
        return progress

    def _build_items(self, raw_items: list[Document]) -> list[AreaItemProgress]:
        today = self._now().date()
        items: list[AreaItemProgress] = []
        for raw in raw_items:
            frequency = normalize_frequency(item_frequency_field(raw))
            last_verified = _parse_day(raw.get("lastInspectionDate") or raw.get("lastVerified"))
            due = calculate_due_status(frequency, last_verified, today)
            sci_reference = raw.get("sciDocumentId") or raw.get("sciDocument") or raw.get("sciId")
            items.append(
                AreaItemProgress(
                    area_item_id=str(raw.get("id")),
                    item_name=_item_name(raw),
                    frequency=frequency,
                    due_date=due.due_date.isoformat(),
                    is_due=due.is_due,
                    is_overdue=due.is_overdue,
                    sci_reference=str(sci_reference) if sci_reference else None,
                )
            )
        return items

    def _roll_items_forward(self, previous: LocalVerificationProgress) -> list[AreaItemProgress]:
        today = self._now().date()
        rolled: list[AreaItemProgress] = []
        for item in previous.all_items():
            last_verified = datetime.fromtimestamp(item.verified_at).date() if item.verified_at else None
            if last_verified is None:
                # Nunca verificado en local: se conserva la fecha de vencimiento calculada.
                due_day = _parse_day(item.due_date) or today
                is_due, is_overdue, due_date = due_day <= today, due_day < today, due_day
            else:
                due = calculate_due_status(item.frequency, last_verified, today)
                is_due, is_overdue, due_date = due.is_due, due.is_overdue, due.due_date
            rolled.append(
                AreaItemProgress(
                    area_item_id=item.area_item_id,
                    item_name=item.item_name,
                    frequency=item.frequency,
                    due_date=due_date.isoformat(),
                    is_due=is_due,
                    is_overdue=is_overdue,
                    sci_reference=item.sci_reference,
                )
            )
        return rolled

    def _carry_today_results(self, previous: LocalVerificationProgress, items: list[AreaItemProgress]) -> None:
        verified = {item.area_item_id: item for item in previous.all_items() if item.is_terminal}
        for item in items:
            earlier = verified.get(item.area_item_id)
            if earlier is None:
                continue
            item.status = earlier.status
            item.verified_at = earlier.verified_at
            item.is_auto_completed = earlier.is_auto_completed
            item.failure_reason = earlier.failure_reason
            item.photo_count = earlier.photo_count

    def verify_item(
        self,
        area_id: str,
        item_id: str,
        status: VerificationStatus,
        details: dict[str, Any] | None = None,
    ) -> OfflineVerification:
        details = dict(details or {})
        progress = self.get_local_progress(area_id)
        with self._records.locked(self._progress_key(area_id)):
            progress = self._load(area_id) or progress
            group_key, item = progress.locate(item_id)
            now = self._now()
            photos = [
                LocalPhoto(local_uri=str(photo.get("uri") or photo.get("local_uri")), annotations=photo.get("annotations"))
                for photo in details.get("photos") or ()
                if isinstance(photo, dict) and (photo.get("uri") or photo.get("local_uri"))
            ]
            item.mark_verified(status, now.timestamp(), failure_reason=details.get("notes") or details.get("reasonForFailure"))
            item.photo_count = len(photos)
            group = progress.group(group_key)
            group.recalculate()
            group.last_verified_at = now.timestamp()

            first_inspection = details.get("firstInspection")
            if first_inspection is None:
                first_inspection = self._first_inspection(item_id)
            record = self._inspection_record(
                progress,
                item,
                schedule_id=str(details.get("scheduleId") or item.frequency),
                first_inspection=bool(first_inspection),
                when=now,
                extra={
                    "itemDescription": details.get("itemDescription") or item.item_name,
                    "reasonForFailure": (details.get("notes") or details.get("reasonForFailure")) if status == "fail" else None,
                    "actionTaken": details.get("actionTaken"),
                    "notes": details.get("notes"),
                    "user": details.get("user"),
                    "scoreWeight": details.get("scoreWeight", 1),
                    "signatures": details.get("signature"),
                    "supervisorApproval": details.get("supervisorApproval"),
                    "issues": details.get("issues"),
                    "correctiveActions": details.get("correctiveActions"),
                },
            )
            self._references.mark_inspected(item_id)
            verification = OfflineVerification(
                id=self._id_factory(),
                inspection=record,
                created_at=now.timestamp(),
                photos=photos,
            )
            progress.offline_queue.append(verification)
            progress.sync_status = "pending"
            self._save(progress)
        self._metrics.increment("verifications_recorded")
        logger.info("Elemento verificado area=%s item=%s estado=%s", area_id, item_id, status)
        return verification

    def _first_inspection(self, item_id: str) -> bool:
        try:
            return self._references.is_first_inspection(item_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("No se pudo consultar el historial del elemento %s: %s", item_id, exc)
            return False

    def _inspection_record(
        self,
        progress: LocalVerificationProgress,
        item: AreaItemProgress,
        *,
        schedule_id: str,
        first_inspection: bool,
        when: datetime,
        extra: dict[str, Any] | None = None,
    ) -> Document:
        status_label = "Pass" if item.status == "pass" else "Fail"
        try:
            area = self._references.area(progress.area_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Área %s no disponible para el registro: %s", progress.area_id, exc)
            area = {"id": progress.area_id}
        record: Document = {
            "id": item.area_item_id,
            "areaItemId": item.area_item_id,
            "areaId": progress.area_id,
            "siteId": progress.site_id,
            "area": area,
            "itemDescription": item.item_name,
            "status": item.status,
            "lastStatus": status_label,
            "scheduleStatus": status_label,
            "verifiedBy": self._user_id,
            "date": when.isoformat(),
            "verifiedAt": when.isoformat(),
            "scheduleId": schedule_id,
            "schedule": self._references.schedule(schedule_id),
            "companyId": self._scope_id,
            "createdBy": self._user_id,
            "createdAt": when.isoformat(),
            "firstInspection": first_inspection,
            "deleted": False,
            "serverInspection": True,
            "scoreWeight": 1,
            "iCleanerSyncId": self._id_factory(),
            "deviceId": self._device_id,
        }
        for key, value in (extra or {}).items():
            if value is not None:
                record[key] = value
        return record

    def complete_inspection(self, area_id: str, auto_pass_daily_items: bool = True) -> CompletionSummary:
        progress = self.get_local_progress(area_id)
        with self._records.locked(self._progress_key(area_id)):
            progress = self._load(area_id) or progress
            now = self._now()
            auto_passed: list[str] = []
            pending_records: list[OfflineVerification] = []
            if auto_pass_daily_items:
                for item in progress.group("daily").items:
                    if item.status not in ("pending", "overdue") or not item.is_due:
                        continue
                    first_inspection = self._first_inspection(item.area_item_id)
                    item.mark_auto_passed(now.timestamp())
                    auto_passed.append(item.area_item_id)
                    self._references.mark_inspected(item.area_item_id)
                    record = self._inspection_record(
                        progress,
                        item,
                        schedule_id="daily",
                        first_inspection=first_inspection,
                        when=now,
                        extra={
                            "autoCompletionDetails": {
                                "dailyItemsAutoPassed": [item.area_item_id],
                                "manuallyVerified": [],
                                "completedAt": now.isoformat(),
                            }
                        },
                    )
                    pending_records.append(
                        OfflineVerification(id=self._id_factory(), inspection=record, created_at=now.timestamp())
                    )
                progress.group("daily").recalculate()
                if auto_passed:
                    progress.group("daily").last_verified_at = now.timestamp()

            manually_verified = [
                item.area_item_id for _, item in progress.iter_items() if item.is_terminal and not item.is_auto_completed
            ]
            untouched = [
                item.area_item_id
                for key, item in progress.iter_items()
                if key != "daily" and not item.is_terminal
            ]
            self._save(progress)

        committed, leftovers = self._commit_now(pending_records)
        with self._records.locked(self._progress_key(area_id)):
            progress = self._load(area_id) or progress
            progress.offline_queue.extend(leftovers)
            if leftovers:
                progress.sync_status = "error"
            elif not progress.offline_queue:
                progress.sync_status = "synced"
            self._save(progress)

        summary = CompletionSummary(
            area_id=area_id,
            auto_passed=tuple(auto_passed),
            manually_verified=tuple(manually_verified),
            untouched_long_cycle=tuple(untouched),
            committed_remotely=committed,
            queued_offline=len(leftovers),
        )
        self._metrics.increment("verifications_auto_passed", len(auto_passed))
        log_event(logger, "inspection_completed", asdict(summary))
        return summary

    def _commit_now(self, entries: list[OfflineVerification]) -> tuple[bool, list[OfflineVerification]]:
        """Confirma en lotes; lo que no se pueda confirmar vuelve como cola offline."""
        if not entries:
            return True, []
        if self._is_online is not None and not self._is_online():
            logger.info("Sin conexión: %s registros quedan en la cola offline.", len(entries))
            return False, list(entries)
        batches = list(_chunks(entries, self.effective_batch_size))
        for position, batch in enumerate(batches):
            try:
                self._commit_batch(batch)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Fallo confirmando la inspección completada: %s", describe_error(exc))
                leftovers = [entry for pending in batches[position:] for entry in pending]
                for entry in batch:
                    entry.retry_count += 1
                    entry.last_error = describe_error(exc)
                return False, leftovers
        return True, []

    def _commit_batch(self, batch: list[OfflineVerification]) -> None:
        ops = [
            WriteOp(
                kind="set",
                collection_path=self.inspections_path,
                doc_id=entry.id,
                data={**entry.inspection, "updatedAt": SERVER_TIMESTAMP, "syncedAt": SERVER_TIMESTAMP},
            )
            for entry in batch
        ]
        call_with_timeout("batch_commit", lambda: self._remote.batch_commit(ops), self._timeout_seconds)

    def sync_offline_verifications(self, *, should_continue: Callable[[], bool] | None = None) -> VerificationSyncReport:
        if not self._sync_guard.acquire(blocking=False):
            logger.info("Sincronización de verificaciones omitida: ya hay una en curso.")
            return VerificationSyncReport()
        try:
            with self._metrics.timer("verification_sync"):
                return self._sync_all(should_continue)
        finally:
            self._sync_guard.release()

    def _sync_all(self, should_continue: Callable[[], bool] | None) -> VerificationSyncReport:
        committed = failed = archived = 0
        aborted = False
        errors: list[str] = []
        for key in sorted(self._records.keys_with_prefix(PROGRESS_KEY_PREFIX)):
            area_id = key[len(PROGRESS_KEY_PREFIX):]
            with self._records.locked(key):
                progress = self._load(area_id)
                if progress is None or not progress.offline_queue:
                    continue
                snapshot = list(progress.offline_queue)
                progress.sync_status = "syncing"
                self._save(progress)

            done: set[str] = set()
            failed_errors: dict[str, str] = {}
            for batch in _chunks(snapshot, self.effective_batch_size):
                if should_continue is not None and not should_continue():
                    aborted = True
                    logger.warning("Sincronización de verificaciones interrumpida: sin conectividad.")
                    break
                try:
                    self._commit_batch(batch)
                except Exception as exc:  # noqa: BLE001
                    message = describe_error(exc)
                    logger.warning("Lote de verificaciones fallido area=%s: %s", area_id, message)
                    errors.append(f"{area_id}: {message}")
                    failed_errors.update({entry.id: message for entry in batch})
                    continue
                done.update(entry.id for entry in batch)

            committed += len(done)
            failed += len(failed_errors)
            archived += self._apply_sync_results(area_id, done, failed_errors)
            if aborted:
                break

        self._metrics.increment("verifications_committed", committed)
        report = VerificationSyncReport(
            committed=committed,
            failed=failed,
            archived=archived,
            aborted=aborted,
            errors=tuple(errors),
        )
        log_event(
            logger,
            "verifications_synced",
            {"committed": committed, "failed": failed, "archived": archived, "aborted": aborted},
        )
        return report

    def _apply_sync_results(self, area_id: str, done: set[str], failed_errors: dict[str, str]) -> int:
        key = self._progress_key(area_id)
        moved: list[dict[str, Any]] = []
        with self._records.locked(key):
            progress = self._load(area_id)
            if progress is None:
                return 0
            remaining: list[OfflineVerification] = []
            for entry in progress.offline_queue:
                if entry.id in done:
                    continue
                if entry.id in failed_errors:
                    entry.retry_count += 1
                    entry.last_error = failed_errors[entry.id]
                    if entry.retry_count >= self._max_retries:
                        moved.append(
                            {
                                **codec.offline_verification_to_dict(entry),
                                "area_id": area_id,
                                "failed_at": self._now().timestamp(),
                            }
                        )
                        continue
                remaining.append(entry)
            progress.offline_queue = remaining
            if not remaining:
                progress.sync_status = "synced"
            else:
                progress.sync_status = "error" if failed_errors else "pending"
            self._save(progress)
        if moved:
            with self._records.locked(FAILED_VERIFICATIONS_KEY):
                archive = self._records.read(FAILED_VERIFICATIONS_KEY, default=[])
                self._records.write(FAILED_VERIFICATIONS_KEY, [*archive, *moved])
            logger.error("%s verificaciones archivadas tras agotar reintentos (area=%s).", len(moved), area_id)
        return len(moved)

    def get_queued_verifications(self) -> list[OfflineVerification]:
        queued: list[OfflineVerification] = []
        for key in sorted(self._records.keys_with_prefix(PROGRESS_KEY_PREFIX)):
            progress = self._load(key[len(PROGRESS_KEY_PREFIX):])
            if progress is not None:
                queued.extend(progress.offline_queue)
        return queued

    def list_failed_verifications(self) -> list[OfflineVerification]:
        raw = self._records.read(FAILED_VERIFICATIONS_KEY, default=[])
        return [codec.offline_verification_from_dict(entry) for entry in raw]

    def retry_failed_sync(self, verification_id: str) -> OfflineVerification:
        """Devuelve una verificación a la cola de su área con el contador a cero."""
        with self._records.locked(FAILED_VERIFICATIONS_KEY):
            archive = self._records.read(FAILED_VERIFICATIONS_KEY, default=[])
            match = next((entry for entry in archive if entry.get("id") == verification_id), None)
            if match is not None:
                area_id = str(match["area_id"])
                with self._records.locked(self._progress_key(area_id)):
                    progress = self.get_local_progress(area_id)
                    revived = codec.offline_verification_from_dict(match)
                    revived.retry_count = 0
                    revived.last_error = None
                    progress.offline_queue.append(revived)
                    progress.sync_status = "pending"
                    self._save(progress)
                remaining = [entry for entry in archive if entry.get("id") != verification_id]
                if remaining:
                    self._records.write(FAILED_VERIFICATIONS_KEY, remaining)
                else:
                    self._records.remove(FAILED_VERIFICATIONS_KEY)
                logger.info("Verificación %s reactivada desde el archivo de fallos.", verification_id)
                return revived

        for key in sorted(self._records.keys_with_prefix(PROGRESS_KEY_PREFIX)):
            with self._records.locked(key):
                progress = self._load(key[len(PROGRESS_KEY_PREFIX):])
                if progress is None:
                    continue
                for entry in progress.offline_queue:
                    if entry.id == verification_id:
                        entry.retry_count = 0
                        entry.last_error = None
                        progress.sync_status = "pending"
                        self._save(progress)
                        return entry
        raise ItemNotFoundError(f"No existe la verificación {verification_id}.")

    def clear_local_progress(self, area_id: str) -> None:
        key = self._progress_key(area_id)
        with self._records.locked(key):
            progress = self._load(area_id)
            if progress is not None and progress.offline_queue:
                logger.warning(
                    "Se descarta el progreso del área %s con %s verificaciones sin sincronizar.",
                    area_id,
                    len(progress.offline_queue),
                )
            self._records.remove(key)

    def load_area_items(self, area_id: str) -> list[AreaItemProgress]:
        return self.get_local_progress(area_id).all_items()

    def sync_with_remote(self, area_id: str) -> LocalVerificationProgress:
        progress = self.get_local_progress(area_id, force_refresh=True)
        with self._records.locked(self._progress_key(area_id)):
            if not progress.offline_queue:
                progress.sync_status = "synced"
            self._save(progress)
        return progress

    def pending_count(self) -> int:
        return len(self.get_queued_verifications())
