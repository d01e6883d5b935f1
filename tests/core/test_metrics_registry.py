from __future__ import annotations

from fieldsync.core import metrics as metrics_module
from fieldsync.core.metrics import MetricsRegistry, measure_time


def test_counters_accumulate_and_reset() -> None:
    registry = MetricsRegistry()

    registry.increment("mutations_applied")
    registry.increment("mutations_applied", 2)

    assert registry.counter("mutations_applied") == 3
    assert registry.counter("unknown") == 0
    registry.reset()
    assert registry.snapshot() == {"counters": {}, "timings_ms": {}}


def test_snapshot_summarises_timings() -> None:
    registry = MetricsRegistry()
    registry.record_timing("drain", 10.0)
    registry.record_timing("drain", 30.0)

    timing = registry.snapshot()["timings_ms"]["drain"]

    assert timing == {"count": 2, "last": 30.0, "avg": 20.0, "max": 30.0}


def test_measure_time_records_even_on_failure(monkeypatch) -> None:
    registry = MetricsRegistry()
    monkeypatch.setattr(metrics_module, "metrics_registry", registry)

    @measure_time("explota")
    def boom() -> None:
        raise ValueError("x")

    try:
        boom()
    except ValueError:
        pass

    assert registry.snapshot()["timings_ms"]["explota"]["count"] == 1


def test_timer_records_into_its_own_registry() -> None:
    registry = MetricsRegistry()

    with registry.timer("sync_run"):
        pass

    assert registry.snapshot()["timings_ms"]["sync_run"]["count"] == 1
    assert registry.snapshot()["timings_ms"]["sync_run"]["last"] >= 0.0
