from __future__ import annotations

from metrics import Collector, LoggingCollector, NullCollector


def test_collector_counts_and_gauges() -> None:
    m = Collector()
    m.record_sync("t1", 0.2, "success")
    m.record_sync("t1", 0.1, "success")
    m.set_ingress_rules("t1", 4)
    m.record_helm_operation("install", "success", 3.0)
    assert m.counter("syncs_total", "t1", "success") == 2
    assert m.gauge("ingress_rules", "t1") == 4
    assert m.counter("helm_operations_total", "install", "success") == 1
    snap = m.snapshot()
    assert snap["gauges"]["ingress_rules"] == {("t1",): 4}


def test_logging_collector_logs_at_debug(caplog) -> None:
    caplog.set_level("DEBUG", logger="metrics")
    LoggingCollector().record_sync_error("timeout")
    assert "[metrics] sync_error type=timeout" in caplog.text


def test_null_collector_discards() -> None:
    m = NullCollector()
    m.record_failed_backend_ref("HTTPRoute", "BackendNotFound")
    assert m.counter("failed_backend_refs_total", "HTTPRoute", "BackendNotFound") == 0


def test_durations_keep_constant_size() -> None:
    m = Collector()
    for _ in range(10000):
        m.record_sync("t", 0.01, "unchanged")
    m.record_sync("t", 2.5, "unchanged")
    assert len(m.durations["sync_duration_seconds"]) == 1
    s = m.summary("sync_duration_seconds", "t", "unchanged")
    assert s.count == 10001
    assert s.max == 2.5
    assert abs(s.total - 102.5) < 1e-6
    assert m.snapshot()["durations"]["sync_duration_seconds"][("t", "unchanged")]["count"] == 10001
