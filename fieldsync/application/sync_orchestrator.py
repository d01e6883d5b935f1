from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Any, Callable

from fieldsync.application.image_upload_queue import ImageUploadQueue
from fieldsync.application.mutation_queue import MutationQueueManager
from fieldsync.application.status import SyncStatusTracker
from fieldsync.application.verification_progress import VerificationProgressEngine
from fieldsync.core.metrics import MetricsRegistry, metrics_registry
from fieldsync.core.observability import OperationContext, log_event
from fieldsync.core.operational_logging import log_operational_error
from fieldsync.domain.mutations import MutationPriority
from fieldsync.domain.sync_models import StageName, StageReport, SyncRunReport

logger = logging.getLogger(__name__)


class StructuredFileLogger:
    """Logger estructurado JSON Lines para auditoría de sync."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, event: str, **payload: object) -> None:
        record = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str)
        with self._lock, self._path.open("a", encoding="utf-8") as file:
            file.write(line + "\n")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncOrchestrator:
    """Reconciliación por etapas: mutaciones prioritarias, resto, verificaciones, imágenes.

    Cada etapa es independiente: un fallo se registra y la siguiente se ejecuta.
    Una pérdida de conectividad corta la etapa en curso y omite las restantes.
    """

    def __init__(
        self,
        mutations: MutationQueueManager,
        verifications: VerificationProgressEngine,
        images: ImageUploadQueue,
        status: SyncStatusTracker,
        *,
        is_online: Callable[[], bool],
        structured_logger: StructuredFileLogger | None = None,
        clock: Callable[[], str] = _utc_now,
        metrics: MetricsRegistry = metrics_registry,
    ) -> None:
        self._mutations = mutations
        self._verifications = verifications
        self._images = images
        self._status = status
        self._is_online = is_online
        self._structured_logger = structured_logger
        self._clock = clock
        self._metrics = metrics
        self._run_guard = threading.Lock()

    def pending_count(self) -> int:
        return (
            self._mutations.pending_count()
            + self._images.pending_count()
            + self._verifications.pending_count()
        )

    def run(self, trigger: str = "manual") -> SyncRunReport:
        started_at = self._clock()
        if not self._run_guard.acquire(blocking=False):
            logger.info("Sincronización '%s' omitida: ya hay una en curso.", trigger)
            return SyncRunReport(
                run_id="",
                trigger=trigger,
                started_at=started_at,
                finished_at=started_at,
                skipped_reason="sync_in_progress",
            )
        try:
            with OperationContext("sync_run") as operation, self._metrics.timer("sync_run"):
                return self._run(trigger, operation.correlation_id, started_at)
        finally:
            self._run_guard.release()

    def _run(self, trigger: str, run_id: str, started_at: str) -> SyncRunReport:
        if not self._is_online():
            logger.info("Sincronización '%s' omitida: sin conectividad.", trigger)
            return SyncRunReport(
                run_id=run_id,
                trigger=trigger,
                started_at=started_at,
                finished_at=self._clock(),
                skipped_reason="offline",
            )

        self._status.update(syncing=True)
        self._log("sync_started", run_id=run_id, trigger=trigger)
        stages: list[StageReport] = []
        aborted = False
        high_priority_failures: frozenset[str] = frozenset()
        try:
            plan: list[tuple[StageName, Callable[[], dict[str, Any]]]] = [
                ("high_priority_mutations", lambda: self._drain("high", frozenset())),
                ("mutations", lambda: self._drain(None, high_priority_failures)),
                ("verifications", self._sync_verifications),
                ("images", self._upload_images),
            ]
            for name, stage in plan:
                if aborted or not self._is_online():
                    aborted = True
                    stages.append(StageReport(name=name, status="skipped", detail={"reason": "offline"}))
                    continue
                report = self._run_stage(name, stage)
                stages.append(report)
                if name == "high_priority_mutations":
                    high_priority_failures = frozenset(report.detail.get("failed_ids", ()))
                if report.status == "aborted":
                    aborted = True
        finally:
            run_report = SyncRunReport(
                run_id=run_id,
                trigger=trigger,
                started_at=started_at,
                finished_at=self._clock(),
                stages=tuple(stages),
                aborted=aborted,
            )
            self._publish(run_report)
        self._metrics.increment("sync_runs")
        log_event(
            logger,
            "sync_run_finished",
            {"run_id": run_id, "trigger": trigger, "aborted": aborted, "errors": len(run_report.errors)},
        )
        self._log("sync_finished", report=run_report.to_dict())
        return run_report

    def _run_stage(self, name: StageName, stage: Callable[[], dict[str, Any]]) -> StageReport:
        logger.info("Etapa de sincronización '%s' iniciada.", name)
        try:
            detail = stage()
        except Exception as exc:  # noqa: BLE001
            self._metrics.increment("sync_stage_failures")
            log_operational_error(
                "Fallo en etapa de sincronización",
                exc=exc,
                extra={"stage": name},
            )
            self._log("sync_stage_failed", stage=name, error=str(exc))
            return StageReport(name=name, status="failed", error=str(exc) or type(exc).__name__)
        status = "aborted" if detail.get("aborted") else "completed"
        self._log("sync_stage_finished", stage=name, status=status, detail=detail)
        return StageReport(name=name, status=status, detail=detail)

    def _drain(self, priority: MutationPriority | None, exclude: frozenset[str]) -> dict[str, Any]:
        report = self._mutations.drain_queue(
            priority=priority,
            should_continue=self._is_online,
            exclude=exclude,
        )
        return {
            "attempted": report.attempted,
            "applied": report.applied,
            "failed": report.failed,
            "dead_lettered": report.dead_lettered,
            "deferred": report.deferred,
            "aborted": report.aborted,
            "skipped_reason": report.skipped_reason,
            "failed_ids": [failure.mutation_id for failure in report.failures if not failure.dead_lettered],
            "errors": report.errors,
        }

    def _sync_verifications(self) -> dict[str, Any]:
        report = self._verifications.sync_offline_verifications(should_continue=self._is_online)
        detail = asdict(report)
        detail["errors"] = list(report.errors)
        return detail

    def _upload_images(self) -> dict[str, Any]:
        report = self._images.process_pending_uploads(should_continue=self._is_online)
        detail = asdict(report)
        detail["errors"] = list(report.errors)
        return detail

    def _publish(self, report: SyncRunReport) -> None:
        try:
            pending = self.pending_count()
        except Exception as exc:  # noqa: BLE001
            log_operational_error("No se pudo contar los elementos pendientes", exc=exc)
            pending = self._status.current.pending_items
        self._status.update(
            syncing=False,
            last_sync=report.finished_at if not report.aborted else None,
            pending_items=pending,
            errors=report.errors,
        )

    def _log(self, event: str, **payload: object) -> None:
        if self._structured_logger is not None:
            self._structured_logger.log(event, **payload)
