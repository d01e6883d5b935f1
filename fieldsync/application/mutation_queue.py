from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable

from fieldsync.application.error_policy import classify_error, describe_error
from fieldsync.application.mutation_applier import MutationApplier
from fieldsync.application.queue_storage import JsonListQueue, JsonRecordStore
from fieldsync.core.errors import ItemNotFoundError, ValidationError
from fieldsync.core.metrics import MetricsRegistry, metrics_registry
from fieldsync.core.observability import log_event
from fieldsync.domain import codec
from fieldsync.domain.mutations import (
    MAX_MUTATION_RETRIES,
    DeadLetterEntry,
    InspectionCreate,
    InspectionDelete,
    InspectionUpdate,
    IssueCreate,
    MutationFailure,
    MutationPayload,
    MutationPriority,
    PendingRecords,
    QueuedMutation,
)
from fieldsync.domain.sync_models import DrainReport

logger = logging.getLogger(__name__)

OFFLINE_QUEUE_KEY = "@offline_queue"
DEAD_LETTER_KEY = "@dead_letter_queue"
PENDING_INSPECTIONS_KEY = "@pending_inspections"
PENDING_ISSUES_KEY = "@pending_issues"

ShouldContinue = Callable[[], bool]


class MutationQueueManager:
    """Cola persistente de mutaciones con reintentos acotados y dead-letter.

    Orden de locks: cola activa, después dead-letter, después espejos. Ninguna
    ruta toma los locks en otro orden.
    """

    def __init__(
        self,
        records: JsonRecordStore,
        applier: MutationApplier,
        *,
        max_retries: int = MAX_MUTATION_RETRIES,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        metrics: MetricsRegistry = metrics_registry,
    ) -> None:
        self._records = records
        self._applier = applier
        self._max_retries = max_retries
        self._clock = clock
        self._id_factory = id_factory
        self._metrics = metrics
        self._active = JsonListQueue(
            records, OFFLINE_QUEUE_KEY, encode=codec.mutation_to_dict, decode=codec.mutation_from_dict
        )
        self._dead_letters = JsonListQueue(
            records, DEAD_LETTER_KEY, encode=codec.dead_letter_to_dict, decode=codec.dead_letter_from_dict
        )
        self._drain_guard = threading.Lock()

    @property
    def sync_in_progress(self) -> bool:
        return self._drain_guard.locked()

    def enqueue(
        self,
        payload: MutationPayload,
        scope_id: str,
        priority: MutationPriority = "normal",
    ) -> QueuedMutation:
        if isinstance(payload, IssueCreate) and payload.issue_id and self._has_pending_issue(payload):
            raise ValidationError(
                f"La incidencia {payload.issue_id} ya está pendiente para la inspección {payload.inspection_id}."
            )
        mutation = QueuedMutation(
            id=self._id_factory(),
            payload=payload,
            scope_id=scope_id,
            enqueued_at=self._clock(),
            priority=priority,
        )
        self._active.append(mutation)
        self._record_mirror(mutation)
        self._metrics.increment("mutations_enqueued")
        logger.info("Mutación encolada id=%s kind=%s priority=%s", mutation.id, mutation.kind, priority)
        return mutation

    def drain_queue(
        self,
        *,
        priority: MutationPriority | None = None,
        should_continue: ShouldContinue | None = None,
        exclude: frozenset[str] = frozenset(),
    ) -> DrainReport:
        """Aplica la instantánea de la cola tomada al empezar.

        Las mutaciones que no entran en el filtro de prioridad, o cuyo id está en
        ``exclude``, bloquean su entidad para el resto del drenado (FIFO por entidad).
        """
        if not self._drain_guard.acquire(blocking=False):
            logger.info("Drenado omitido: ya hay una sincronización en curso.")
            return DrainReport(skipped_reason="sync_in_progress")
        try:
            with self._metrics.timer("mutation_drain"):
                return self._drain(self._active.load(), priority, should_continue, exclude)
        finally:
            self._drain_guard.release()

    def _drain(
        self,
        snapshot: list[QueuedMutation],
        priority: MutationPriority | None,
        should_continue: ShouldContinue | None,
        exclude: frozenset[str],
    ) -> DrainReport:
        blocked_entities: set[str] = set()
        failures: list[MutationFailure] = []
        attempted = applied = deferred = 0
        aborted = False
        for mutation in snapshot:
            selected = (priority is None or mutation.priority == priority) and mutation.id not in exclude
            if not selected:
                blocked_entities.add(mutation.entity_key)
                continue
            if mutation.entity_key in blocked_entities:
                deferred += 1
                continue
            if should_continue is not None and not should_continue():
                aborted = True
                logger.warning("Drenado interrumpido: se perdió la conectividad.")
                break
            attempted += 1
            try:
                self._applier.apply(mutation)
            except Exception as exc:  # noqa: BLE001
                failures.append(self._record_failure(mutation, exc))
                blocked_entities.add(mutation.entity_key)
                continue
            self._mark_applied(mutation)
            applied += 1
        dead_lettered = sum(1 for failure in failures if failure.dead_lettered)
        report = DrainReport(
            attempted=attempted,
            applied=applied,
            failed=len(failures),
            dead_lettered=dead_lettered,
            deferred=deferred,
            aborted=aborted,
            failures=tuple(failures),
        )
        log_event(
            logger,
            "mutation_queue_drained",
            {
                "priority": priority,
                "attempted": attempted,
                "applied": applied,
                "failed": len(failures),
                "dead_lettered": dead_lettered,
                "deferred": deferred,
                "aborted": aborted,
            },
        )
        return report

    def _mark_applied(self, mutation: QueuedMutation) -> None:
        remaining = self._active.update(lambda entries: [entry for entry in entries if entry.id != mutation.id])
        self._release_mirror(mutation, remaining)
        self._metrics.increment("mutations_applied")
        logger.info("Mutación aplicada id=%s kind=%s", mutation.id, mutation.kind)

    def _record_failure(self, mutation: QueuedMutation, exc: Exception) -> MutationFailure:
        error_kind = classify_error(exc)
        message = describe_error(exc)
        if error_kind == "transient":
            logger.warning(
                "Fallo transitorio aplicando mutación id=%s kind=%s: %s",
                mutation.id,
                mutation.kind,
                message,
                extra={"extra": {"error_kind": error_kind, "mutation_id": mutation.id}},
            )
        else:
            logger.error(
                "Fallo permanente aplicando mutación id=%s kind=%s: %s",
                mutation.id,
                mutation.kind,
                message,
                extra={"extra": {"error_kind": error_kind, "mutation_id": mutation.id}},
            )
        self._metrics.increment("mutations_failed")

        dead_lettered = False
        with self._active.locked(), self._dead_letters.locked():
            entries = self._active.load()
            remaining: list[QueuedMutation] = []
            for entry in entries:
                if entry.id != mutation.id:
                    remaining.append(entry)
                    continue
                updated = replace(
                    entry,
                    retry_count=entry.retry_count + 1,
                    last_error=message,
                    error_kind=error_kind,
                )
                if updated.retry_count >= self._max_retries:
                    self._dead_letters.append(DeadLetterEntry(mutation=updated, moved_at=self._clock()))
                    dead_lettered = True
                else:
                    remaining.append(updated)
            self._active.save(remaining)
            if dead_lettered:
                self._release_mirror(mutation, remaining)

        if dead_lettered:
            self._metrics.increment("mutations_dead_lettered")
            log_event(
                logger,
                "mutation_dead_lettered",
                {"mutation_id": mutation.id, "kind": mutation.kind, "error": message, "error_kind": error_kind},
            )
        return MutationFailure(
            mutation_id=mutation.id,
            kind=mutation.kind,
            error=message,
            error_kind=error_kind,
            dead_lettered=dead_lettered,
        )

    def list_active(self) -> list[QueuedMutation]:
        return self._active.load()

    def list_dead_letters(self) -> list[DeadLetterEntry]:
        return self._dead_letters.load()

    def pending_count(self) -> int:
        return len(self._active.load())

    def retry_dead_letter(self, mutation_id: str) -> QueuedMutation:
        with self._active.locked(), self._dead_letters.locked():
            entries = self._dead_letters.load()
            match = next((entry for entry in entries if entry.id == mutation_id), None)
            if match is None:
                raise ItemNotFoundError(f"No existe la mutación {mutation_id} en dead-letter.")
            self._dead_letters.save([entry for entry in entries if entry.id != mutation_id])
            revived = replace(match.mutation, retry_count=0, last_error=None, error_kind=None)
            self._active.append(revived)
            self._record_mirror(revived)
        logger.info("Mutación %s reactivada desde dead-letter.", mutation_id)
        return revived

    def discard_dead_letter(self, mutation_id: str) -> DeadLetterEntry:
        with self._dead_letters.locked():
            entries = self._dead_letters.load()
            match = next((entry for entry in entries if entry.id == mutation_id), None)
            if match is None:
                raise ItemNotFoundError(f"No existe la mutación {mutation_id} en dead-letter.")
            self._dead_letters.save([entry for entry in entries if entry.id != mutation_id])
        logger.warning("Mutación %s descartada definitivamente.", mutation_id)
        return match

    def clear(self) -> None:
        with self._active.locked(), self._dead_letters.locked():
            self._active.clear()
            self._dead_letters.clear()
            with self._records.locked(PENDING_INSPECTIONS_KEY), self._records.locked(PENDING_ISSUES_KEY):
                self._records.remove(PENDING_INSPECTIONS_KEY)
                self._records.remove(PENDING_ISSUES_KEY)
        logger.info("Datos offline de mutaciones eliminados.")

    def pending_records(self) -> PendingRecords:
        inspections = self._records.read(PENDING_INSPECTIONS_KEY, default={})
        issues = self._records.read(PENDING_ISSUES_KEY, default={})
        return PendingRecords(
            inspections=dict(inspections) if isinstance(inspections, dict) else {},
            issues_by_inspection=dict(issues) if isinstance(issues, dict) else {},
        )

    def _has_pending_issue(self, payload: IssueCreate) -> bool:
        return any(
            isinstance(entry.payload, IssueCreate)
            and entry.payload.inspection_id == payload.inspection_id
            and entry.payload.issue_id == payload.issue_id
            for entry in self._active.load()
        )

    def _record_mirror(self, mutation: QueuedMutation) -> None:
        payload = mutation.payload
        if isinstance(payload, InspectionCreate):
            self._update_mirror(
                PENDING_INSPECTIONS_KEY,
                lambda mirror: {**mirror, payload.inspection_id: {**payload.data, "id": payload.inspection_id}},
            )
        elif isinstance(payload, InspectionUpdate):
            self._update_mirror(
                PENDING_INSPECTIONS_KEY,
                lambda mirror: {
                    **mirror,
                    payload.inspection_id: {
                        **mirror.get(payload.inspection_id, {"id": payload.inspection_id}),
                        **payload.updates,
                    },
                },
            )
        elif isinstance(payload, InspectionDelete):
            self._update_mirror(
                PENDING_INSPECTIONS_KEY,
                lambda mirror: {key: value for key, value in mirror.items() if key != payload.inspection_id},
            )
        elif isinstance(payload, IssueCreate):
            self._update_mirror(
                PENDING_ISSUES_KEY,
                lambda mirror: {
                    **mirror,
                    payload.inspection_id: [
                        *[
                            issue
                            for issue in mirror.get(payload.inspection_id, [])
                            if issue.get("id") != payload.issue_id
                        ],
                        payload.issue,
                    ],
                },
            )

    def _release_mirror(self, mutation: QueuedMutation, remaining: list[QueuedMutation]) -> None:
        payload = mutation.payload
        if isinstance(payload, (InspectionCreate, InspectionUpdate)):
            still_pending = any(
                isinstance(entry.payload, (InspectionCreate, InspectionUpdate))
                and entry.payload.inspection_id == payload.inspection_id
                for entry in remaining
            )
            if not still_pending:
                self._update_mirror(
                    PENDING_INSPECTIONS_KEY,
                    lambda mirror: {key: value for key, value in mirror.items() if key != payload.inspection_id},
                )
        elif isinstance(payload, IssueCreate):

            def drop_issue(mirror: dict[str, Any]) -> dict[str, Any]:
                issues = [issue for issue in mirror.get(payload.inspection_id, []) if issue.get("id") != payload.issue_id]
                updated = {key: value for key, value in mirror.items() if key != payload.inspection_id}
                if issues:
                    updated[payload.inspection_id] = issues
                return updated

            self._update_mirror(PENDING_ISSUES_KEY, drop_issue)

    def _update_mirror(self, key: str, mutate: Callable[[dict[str, Any]], dict[str, Any]]) -> None:
        with self._records.locked(key):
            current = self._records.read(key, default={})
            if not isinstance(current, dict):
                current = {}
            updated = mutate(current)
            if updated:
                self._records.write(key, updated)
            else:
                self._records.remove(key)
