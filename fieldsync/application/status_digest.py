from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

from fieldsync.domain.verification import (
    AreaItemProgress,
    LocalVerificationProgress,
    ScheduleGroupKey,
    VerificationStatus,
    calculate_item_status,
)

DigestPriority = Literal["high", "medium"]


@dataclass(frozen=True)
class DigestItem:
    area_item_id: str
    item_name: str
    schedule_group: ScheduleGroupKey
    status: VerificationStatus
    priority: DigestPriority
    due_in: str


@dataclass(frozen=True)
class DigestSummary:
    total_items: int
    pending_count: int
    overdue_count: int
    completed_today: int
    failures_requiring_attention: int


@dataclass(frozen=True)
class StatusDigest:
    id: str
    area_id: str
    site_id: str
    scheduled_for: str
    items: tuple[DigestItem, ...] = ()
    summary: DigestSummary = field(default_factory=lambda: DigestSummary(0, 0, 0, 0, 0))


def _plural(days: int) -> str:
    return "day" if days == 1 else "days"


def due_in(due_date: date, today: date) -> str:
    difference = (due_date - today).days
    if difference < 0:
        return f"overdue by {abs(difference)} {_plural(abs(difference))}"
    if difference == 0:
        return "due today"
    return f"due in {difference} {_plural(difference)}"


def _due_date(item: AreaItemProgress, today: date) -> date:
    try:
        return date.fromisoformat(item.due_date)
    except ValueError:
        return today


def build_status_digest(progress: LocalVerificationProgress, now: datetime) -> StatusDigest:
    """Resumen de elementos vencidos o pendientes de un área, para avisos."""
    today = now.date()
    start_of_day = datetime.combine(today, datetime.min.time()).timestamp()
    items: list[DigestItem] = []
    for group_key, item in progress.iter_items():
        if not (item.is_due or item.is_overdue):
            continue
        items.append(
            DigestItem(
                area_item_id=item.area_item_id,
                item_name=item.item_name,
                schedule_group=group_key,
                status=calculate_item_status(item),
                priority="high" if item.is_overdue else "medium",
                due_in=due_in(_due_date(item, today), today),
            )
        )
    completed_today = sum(
        1 for item in progress.all_items() if item.verified_at is not None and item.verified_at >= start_of_day
    )
    failures = sum(group.failed_count for group in progress.schedule_groups.values())
    summary = DigestSummary(
        total_items=len(items),
        pending_count=sum(1 for item in items if item.status == "pending"),
        overdue_count=sum(1 for item in items if item.status == "overdue"),
        completed_today=completed_today,
        failures_requiring_attention=failures,
    )
    return StatusDigest(
        id=str(uuid.uuid4()),
        area_id=progress.area_id,
        site_id=progress.site_id,
        scheduled_for=now.isoformat(),
        items=tuple(items),
        summary=summary,
    )
