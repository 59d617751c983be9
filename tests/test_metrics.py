import json

import pytest

from placemark.observability.metrics import MetricsRegistry, record_duration


def test_record_duration_replaces_previous_timing(monkeypatch):
    registry = MetricsRegistry()
    clock = iter([10.0, 10.25, 20.0, 20.5])
    monkeypatch.setattr("placemark.observability.metrics.time.perf_counter", lambda: next(clock))

    with record_duration(registry, "run_duration_ms"):
        pass
    with record_duration(registry, "run_duration_ms"):
        pass

    assert registry.get("run_duration_ms") == 500


def test_counters_only_grow():
    registry = MetricsRegistry()
    registry.incr("retries")
    registry.incr("retries", 2)
    assert registry.get("retries") == 3
    with pytest.raises(ValueError):
        registry.incr("retries", -1)


def test_export_separates_counters_and_timings(tmp_path):
    registry = MetricsRegistry()
    registry.incr("cache_hits", 3)
    registry.incr("cache_misses")
    registry.set_timing("run_duration_ms", 42)

    path = registry.export(path=tmp_path / "metrics" / "run_1.json", run_id="1")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["run_id"] == "1"
    assert payload["counters"]["cache_hits"] == 3
    assert "run_duration_ms" not in payload["counters"]
    assert payload["timings_ms"] == {"run_duration_ms": 42}
    assert payload["cache_hit_ratio"] == 0.75
