from __future__ import annotations

from fakes import InMemoryRemoteStore
from fieldsync.application.reference_cache import (
    AREA_KEY_PREFIX,
    HISTORY_KEY_PREFIX,
    ReferenceCache,
    default_schedules,
    item_frequency_field,
)
from fieldsync.core.errors import TransientExternalError


def _queries(remote: InMemoryRemoteStore, path: str) -> int:
    return len([call for call in remote.calls if call[0] == "query" and call[1] == path])


def test_first_inspection_is_looked_up_once(records, remote) -> None:
    cache = ReferenceCache(records, remote, "acme", timeout_seconds=None)

    assert cache.is_first_inspection("item-1") is True
    assert cache.is_first_inspection("item-1") is True
    assert _queries(remote, "companies/acme/inspections") == 1


def test_mark_inspected_survives_a_new_process(records, remote) -> None:
    ReferenceCache(records, remote, "acme", timeout_seconds=None).mark_inspected("item-1")

    fresh = ReferenceCache(records, remote, "acme", timeout_seconds=None)

    assert fresh.is_first_inspection("item-1") is False
    assert records.read(f"{HISTORY_KEY_PREFIX}item-1") is True
    assert _queries(remote, "companies/acme/inspections") == 0


def test_existing_remote_history_is_cached(records, remote) -> None:
    remote.seed("companies/acme/inspections", "old", {"areaItemId": "item-1"})
    cache = ReferenceCache(records, remote, "acme", timeout_seconds=None)

    assert cache.is_first_inspection("item-1") is False
    remote.fail_always(TransientExternalError("sin red"))
    assert ReferenceCache(records, remote, "acme", timeout_seconds=None).is_first_inspection("item-1") is False


def test_area_falls_back_to_query_then_minimal_object(records, remote) -> None:
    remote.seed("companies/acme/areas", "doc-9", {"id": "area-1", "name": "Cocina"})
    cache = ReferenceCache(records, remote, "acme", timeout_seconds=None)

    assert cache.area("area-1")["name"] == "Cocina"
    assert records.read(f"{AREA_KEY_PREFIX}area-1")["name"] == "Cocina"
    assert cache.area("missing") == {"id": "missing"}


def test_schedules_default_and_unknown(records, remote) -> None:
    cache = ReferenceCache(records, remote, "acme", timeout_seconds=None)

    assert cache.schedule("weekly") == default_schedules()["weekly"]
    assert cache.schedule("weekly")["hours"] == 168
    assert cache.schedule("custom")["id"] == "custom"


def test_item_frequency_field_accepts_nested_schedule() -> None:
    assert item_frequency_field({"schedule": {"id": "monthly"}}) == "monthly"
    assert item_frequency_field({"frequency": "weekly"}) == "weekly"
    assert item_frequency_field({}) is None
