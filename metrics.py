# metrics.py
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

LabelKey = Tuple[str, ...]


@dataclass
class Summary:
    """Running count/sum/max of observed durations; constant size."""

    count: int = 0
    total: float = 0.0
    max: float = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total += seconds
        if seconds > self.max:
            self.max = seconds


class Collector:
    """Observability events emitted by the core.

    Keeps counters/gauges in memory so the process (or a test) can read them
    back; `snapshot()` returns a plain dict. Transport is somebody else's job.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self.gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
        self.durations: Dict[str, Dict[LabelKey, Summary]] = defaultdict(lambda: defaultdict(Summary))

    def _inc(self, name: str, labels: LabelKey, value: float = 1.0) -> None:
        with self._lock:
            self.counters[name][labels] += value

    def _set(self, name: str, labels: LabelKey, value: float) -> None:
        with self._lock:
            self.gauges[name][labels] = value

    def _observe(self, name: str, labels: LabelKey, seconds: float) -> None:
        with self._lock:
            self.durations[name][labels].observe(seconds)

    # sync
    def record_sync(self, tunnel_id: str, duration: float, outcome: str) -> None:
        self._observe("sync_duration_seconds", (tunnel_id, outcome), duration)
        self._inc("syncs_total", (tunnel_id, outcome))

    def set_ingress_rules(self, tunnel_id: str, count: int) -> None:
        self._set("ingress_rules", (tunnel_id,), count)

    def record_sync_error(self, error_type: str) -> None:
        self._inc("sync_errors_total", (error_type,))

    # routes
    def set_synced_routes(self, route_kind: str, count: int) -> None:
        self._set("synced_routes", (route_kind,), count)

    def record_failed_backend_ref(self, route_kind: str, reason: str) -> None:
        self._inc("failed_backend_refs_total", (route_kind, reason))

    # collaborators
    def record_api_call(self, operation: str, status: str) -> None:
        self._inc("cloudflare_api_calls_total", (operation, status))

    def record_helm_operation(self, operation: str, status: str, duration: float) -> None:
        self._inc("helm_operations_total", (operation, status))
        self._observe("helm_operation_duration_seconds", (operation,), duration)

    def counter(self, name: str, *labels: str) -> float:
        with self._lock:
            return self.counters.get(name, {}).get(tuple(labels), 0.0)

    def gauge(self, name: str, *labels: str):
        with self._lock:
            return self.gauges.get(name, {}).get(tuple(labels))

    def summary(self, name: str, *labels: str) -> Optional[Summary]:
        with self._lock:
            s = self.durations.get(name, {}).get(tuple(labels))
            return Summary(s.count, s.total, s.max) if s is not None else None

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "counters": {k: dict(v) for k, v in self.counters.items()},
                "gauges": {k: dict(v) for k, v in self.gauges.items()},
                "durations": {
                    k: {labels: {"count": s.count, "sum": s.total, "max": s.max} for labels, s in v.items()}
                    for k, v in self.durations.items()
                },
            }


class LoggingCollector(Collector):
    """Collector that also writes each event to the log at DEBUG."""

    def record_sync(self, tunnel_id: str, duration: float, outcome: str) -> None:
        super().record_sync(tunnel_id, duration, outcome)
        logger.debug("[metrics] sync tunnel=%s outcome=%s duration=%.3fs", tunnel_id, outcome, duration)

    def set_ingress_rules(self, tunnel_id: str, count: int) -> None:
        super().set_ingress_rules(tunnel_id, count)
        logger.debug("[metrics] ingress_rules tunnel=%s count=%d", tunnel_id, count)

    def record_sync_error(self, error_type: str) -> None:
        super().record_sync_error(error_type)
        logger.debug("[metrics] sync_error type=%s", error_type)

    def record_failed_backend_ref(self, route_kind: str, reason: str) -> None:
        super().record_failed_backend_ref(route_kind, reason)
        logger.debug("[metrics] failed_backend_ref kind=%s reason=%s", route_kind, reason)


class NullCollector(Collector):
    def _inc(self, name, labels, value=1.0):
        pass

    def _set(self, name, labels, value):
        pass

    def _observe(self, name, labels, seconds):
        pass


METRICS: Collector = LoggingCollector()
