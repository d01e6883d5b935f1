from __future__ import annotations

from datetime import date, datetime

from fieldsync.application.status_digest import build_status_digest, due_in
from fieldsync.domain.verification import AreaItemProgress, LocalVerificationProgress, build_schedule_groups


def test_due_in_wording() -> None:
    today = date(2025, 3, 10)

    assert due_in(date(2025, 3, 8), today) == "overdue by 2 days"
    assert due_in(date(2025, 3, 9), today) == "overdue by 1 day"
    assert due_in(today, today) == "due today"
    assert due_in(date(2025, 3, 11), today) == "due in 1 day"


def test_digest_lists_due_items_with_priority() -> None:
    now = datetime(2025, 3, 10, 18, 0)
    overdue = AreaItemProgress("a", "Campana", "weekly", "2025-03-08", is_due=True, is_overdue=True)
    due_today = AreaItemProgress("b", "Suelo", "daily", "2025-03-10", is_due=True, is_overdue=False)
    not_due = AreaItemProgress("c", "Techo", "monthly", "2025-04-01", is_due=False, is_overdue=False)
    failed = AreaItemProgress("d", "Mesa", "daily", "2025-03-10", is_due=True, is_overdue=False)
    failed.mark_verified("fail", datetime(2025, 3, 10, 9, 0).timestamp())
    progress = LocalVerificationProgress(
        area_id="area-1",
        date="2025-03-10",
        site_id="site-1",
        schedule_groups=build_schedule_groups([overdue, due_today, not_due, failed]),
    )

    digest = build_status_digest(progress, now)

    by_id = {item.area_item_id: item for item in digest.items}
    assert set(by_id) == {"a", "b", "d"}
    assert (by_id["a"].priority, by_id["a"].status, by_id["a"].due_in) == ("high", "overdue", "overdue by 2 days")
    assert (by_id["b"].priority, by_id["b"].due_in) == ("medium", "due today")
    assert digest.summary.overdue_count == 1
    assert digest.summary.pending_count == 1
    assert digest.summary.completed_today == 1
    assert digest.summary.failures_requiring_attention == 1
    assert digest.site_id == "site-1"
