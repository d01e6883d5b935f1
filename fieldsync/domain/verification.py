from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable, Iterator, Literal

from fieldsync.core.errors import ItemNotFoundError, ValidationError

VerificationStatus = Literal["pending", "in_progress", "pass", "fail", "overdue"]
ScheduleFrequency = Literal["daily", "weekly", "monthly", "quarterly", "annually"]
ScheduleGroupKey = Literal["daily", "weekly", "monthly"]
ProgressSyncStatus = Literal["pending", "syncing", "synced", "error"]
PhotoUploadStatus = Literal["pending", "uploading", "uploaded", "failed"]

SCHEDULE_GROUPS: tuple[ScheduleGroupKey, ...] = ("daily", "weekly", "monthly")
TERMINAL_STATUSES: frozenset[str] = frozenset({"pass", "fail"})
MAX_VERIFICATION_RETRIES = 3

DAYS_UNTIL_DUE: dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "quarterly": 90,
    "annually": 365,
}

_FREQUENCY_ALIASES: dict[str, ScheduleFrequency] = {
    "daily": "daily",
    "day": "daily",
    "d": "daily",
    "weekly": "weekly",
    "week": "weekly",
    "w": "weekly",
    "monthly": "monthly",
    "month": "monthly",
    "m": "monthly",
    "quarterly": "quarterly",
    "quarter": "quarterly",
    "q": "quarterly",
    "annually": "annually",
    "annual": "annually",
    "yearly": "annually",
    "y": "annually",
}


def normalize_frequency(raw: object, default: ScheduleFrequency = "daily") -> ScheduleFrequency:
    value = str(raw or "").strip().lower()
    return _FREQUENCY_ALIASES.get(value, default)


def days_until_due(frequency: str) -> int:
    try:
        return DAYS_UNTIL_DUE[frequency]
    except KeyError as exc:
        raise ValidationError(f"Frecuencia desconocida: {frequency!r}") from exc


def schedule_group_for(frequency: ScheduleFrequency) -> ScheduleGroupKey:
    """Los ciclos trimestral y anual comparten el grupo mensual (ciclos largos)."""
    if frequency in ("daily", "weekly"):
        return frequency
    return "monthly"


@dataclass(frozen=True)
class DueStatus:
    is_due: bool
    is_overdue: bool
    due_date: date


def calculate_due_status(frequency: str, last_verified: date | None, today: date) -> DueStatus:
    if last_verified is None:
        return DueStatus(is_due=True, is_overdue=True, due_date=today)
    interval = days_until_due(frequency)
    days_since = (today - last_verified).days
    return DueStatus(
        is_due=days_since >= interval,
        is_overdue=days_since > interval,
        due_date=last_verified + timedelta(days=interval),
    )


@dataclass
class AreaItemProgress:
    area_item_id: str
    item_name: str
    frequency: ScheduleFrequency
    due_date: str
    is_due: bool
    is_overdue: bool
    status: VerificationStatus = "pending"
    sci_reference: str | None = None
    verified_at: float | None = None
    is_auto_completed: bool = False
    failure_reason: str | None = None
    photo_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_verified(self, status: VerificationStatus, verified_at: float, failure_reason: str | None = None) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"Estado de verificación no válido: {status!r}")
        if self.is_terminal:
            raise ValidationError(f"El elemento {self.area_item_id} ya está verificado hoy ({self.status}).")
        self.status = status
        self.verified_at = verified_at
        self.is_auto_completed = False
        if status == "fail" and failure_reason:
            self.failure_reason = failure_reason

    def mark_auto_passed(self, verified_at: float) -> None:
        if self.frequency != "daily":
            raise ValidationError(f"Solo los elementos diarios admiten autocompletado ({self.area_item_id}).")
        self.status = "pass"
        self.verified_at = verified_at
        self.is_auto_completed = True


def calculate_item_status(item: AreaItemProgress) -> VerificationStatus:
    if item.status in TERMINAL_STATUSES:
        return item.status
    if item.is_overdue:
        return "overdue"
    return "pending"


@dataclass
class ScheduleGroupProgress:
    items: list[AreaItemProgress] = field(default_factory=list)
    total_count: int = 0
    completed_count: int = 0
    auto_completed_count: int = 0
    failed_count: int = 0
    completion_percentage: float = 0.0
    last_verified_at: float | None = None

    def recalculate(self) -> None:
        self.total_count = len(self.items)
        self.completed_count = sum(1 for item in self.items if item.is_terminal)
        self.auto_completed_count = sum(1 for item in self.items if item.is_auto_completed)
        self.failed_count = sum(1 for item in self.items if item.status == "fail")
        self.completion_percentage = (
            (self.completed_count / self.total_count) * 100 if self.total_count else 0.0
        )


@dataclass
class LocalPhoto:
    local_uri: str
    upload_status: PhotoUploadStatus = "pending"
    annotations: dict[str, Any] | None = None
    uploaded_url: str | None = None


@dataclass
class OfflineVerification:
    id: str
    inspection: dict[str, Any]
    created_at: float
    retry_count: int = 0
    last_error: str | None = None
    photos: list[LocalPhoto] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= MAX_VERIFICATION_RETRIES


@dataclass
class LocalVerificationProgress:
    """Caché progresiva del estado de verificación de un área para un día.

    ``item_index`` mantiene la pertenencia de cada elemento a un único grupo de
    programación; se reconstruye siempre desde los grupos.
    """

    area_id: str
    date: str
    site_id: str
    schedule_groups: dict[ScheduleGroupKey, ScheduleGroupProgress]
    last_modified: float = 0.0
    sync_status: ProgressSyncStatus = "pending"
    offline_queue: list[OfflineVerification] = field(default_factory=list)
    item_index: dict[str, ScheduleGroupKey] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for key in SCHEDULE_GROUPS:
            self.schedule_groups.setdefault(key, ScheduleGroupProgress())
        self.rebuild_index()

    def rebuild_index(self) -> None:
        index: dict[str, ScheduleGroupKey] = {}
        for key in SCHEDULE_GROUPS:
            group = self.schedule_groups[key]
            unique_items: list[AreaItemProgress] = []
            for item in group.items:
                # Búsqueda diaria -> semanal -> mensual: gana el primer grupo.
                if item.area_item_id in index:
                    continue
                index[item.area_item_id] = key
                unique_items.append(item)
            group.items = unique_items
            group.recalculate()
        self.item_index = index

    def group(self, key: ScheduleGroupKey) -> ScheduleGroupProgress:
        return self.schedule_groups[key]

    def locate(self, item_id: str) -> tuple[ScheduleGroupKey, AreaItemProgress]:
        key = self.item_index.get(item_id)
        if key is None:
            raise ItemNotFoundError(f"Elemento {item_id} no encontrado en el área {self.area_id}.")
        for item in self.schedule_groups[key].items:
            if item.area_item_id == item_id:
                return key, item
        raise ItemNotFoundError(f"Índice inconsistente para el elemento {item_id}.")

    def iter_items(self) -> Iterator[tuple[ScheduleGroupKey, AreaItemProgress]]:
        for key in SCHEDULE_GROUPS:
            for item in self.schedule_groups[key].items:
                yield key, item

    def all_items(self) -> list[AreaItemProgress]:
        return [item for _, item in self.iter_items()]


def build_schedule_groups(
    items: Iterable[AreaItemProgress],
) -> dict[ScheduleGroupKey, ScheduleGroupProgress]:
    groups: dict[ScheduleGroupKey, ScheduleGroupProgress] = {key: ScheduleGroupProgress() for key in SCHEDULE_GROUPS}
    for item in items:
        groups[schedule_group_for(item.frequency)].items.append(item)
    for group in groups.values():
        group.recalculate()
    return groups
