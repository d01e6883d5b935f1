from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from fieldsync.domain.mutations import MutationFailure

StageName = Literal["high_priority_mutations", "mutations", "verifications", "images"]
StageStatus = Literal["completed", "failed", "aborted", "skipped"]


@dataclass(frozen=True)
class SyncStatus:
    """Único canal por el que los fallos internos de las colas se hacen visibles."""

    is_online: bool
    last_sync: str | None
    pending_items: int
    syncing: bool
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["errors"] = list(self.errors)
        return payload


@dataclass(frozen=True)
class DrainReport:
    attempted: int = 0
    applied: int = 0
    failed: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    aborted: bool = False
    skipped_reason: str | None = None
    failures: tuple[MutationFailure, ...] = ()

    @property
    def errors(self) -> list[str]:
        return [f"{failure.kind}: {failure.error}" for failure in self.failures]


@dataclass(frozen=True)
class UploadReport:
    attempted: int = 0
    uploaded: int = 0
    failed: int = 0
    archived: int = 0
    aborted: bool = False
    skipped_reason: str | None = None
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerificationSyncReport:
    committed: int = 0
    failed: int = 0
    archived: int = 0
    aborted: bool = False
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class StageReport:
    name: StageName
    status: StageStatus
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class SyncRunReport:
    run_id: str
    trigger: str
    started_at: str
    finished_at: str
    stages: tuple[StageReport, ...] = ()
    aborted: bool = False
    skipped_reason: str | None = None

    @property
    def errors(self) -> list[str]:
        collected: list[str] = []
        for stage in self.stages:
            if stage.error:
                collected.append(f"{stage.name}: {stage.error}")
            collected.extend(str(error) for error in stage.detail.get("errors", ()))
        return collected

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "errors": self.errors}


@dataclass(frozen=True)
class CompletionSummary:
    area_id: str
    auto_passed: tuple[str, ...] = ()
    manually_verified: tuple[str, ...] = ()
    untouched_long_cycle: tuple[str, ...] = ()
    committed_remotely: bool = False
    queued_offline: int = 0
