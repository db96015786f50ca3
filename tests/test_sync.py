from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeCloudflare, flaky
from errors import AuthError, TransientError, ValidationError
from ingress.builder import CATCH_ALL_SERVICE, MAX_INGRESS_RULES
from metrics import Collector
from sync import SyncEngine

TUNNEL = "6ff42ae2-765d-4adf-8112-31c55c1551ef"


def _doc(*hosts: str) -> list:
    return [{"hostname": h, "service": f"http://{h}:80"} for h in hosts] + [{"service": CATCH_ALL_SERVICE}]


def _engine(**kw) -> SyncEngine:
    kw.setdefault("base_delay", 0.0)
    kw.setdefault("metrics", Collector())
    return SyncEngine(**kw)


class BlockingCloudflare(FakeCloudflare):
    """First read blocks until released, so a run stays in flight."""

    def __init__(self) -> None:
        super().__init__(ingress=[])
        self.started = threading.Event()
        self.release = threading.Event()
        self._first = True

    def get_configuration(self, account_id, tunnel_id):
        if self._first:
            self._first = False
            self.started.set()
            assert self.release.wait(5)
        return super().get_configuration(account_id, tunnel_id)


def _wait_until(pred, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not pred():
        assert time.monotonic() < deadline, "condition not reached"
        time.sleep(0.005)


def test_noop_when_remote_matches() -> None:
    cf = FakeCloudflare(ingress=[])
    engine = _engine()
    first = engine.apply(TUNNEL, "acc", _doc("a"), cf)
    second = engine.apply(TUNNEL, "acc", _doc("a"), cf)
    assert first.changed is True
    assert second.changed is False
    assert len(cf.puts) == 1


def test_other_remote_keys_survive_the_replace() -> None:
    cf = FakeCloudflare(ingress=[], extra={"warp-routing": {"enabled": True}})
    _engine().apply(TUNNEL, "acc", _doc("a"), cf)
    assert cf.puts[0]["warp-routing"] == {"enabled": True}
    assert cf.puts[0]["ingress"] == _doc("a")


def test_catch_all_is_appended_when_missing() -> None:
    cf = FakeCloudflare(ingress=[])
    res = _engine().apply(TUNNEL, "acc", [{"hostname": "a", "service": "http://a:80"}], cf)
    assert cf.puts[0]["ingress"][-1] == {"service": CATCH_ALL_SERVICE}
    assert res.rules == 2


def test_coalesces_burst_into_one_follow_up() -> None:
    cf = BlockingCloudflare()
    engine = _engine()
    results = {}

    def run(name, doc):
        results[name] = engine.apply(TUNNEL, "acc", doc, cf)

    first = threading.Thread(target=run, args=("first", _doc("v1")))
    first.start()
    assert cf.started.wait(5)

    burst = []
    for i, host in enumerate(("v2", "v3", "v4"), start=1):
        t = threading.Thread(target=run, args=(host, _doc(host)))
        t.start()
        burst.append(t)
        _wait_until(lambda i=i: sum(engine._tunnels[TUNNEL].waiters.values()) == i)

    cf.release.set()
    first.join(5)
    for t in burst:
        t.join(5)

    assert len(cf.puts) == 2
    assert cf.puts[0]["ingress"] == _doc("v1")
    assert cf.puts[1]["ingress"] == _doc("v4")
    assert results["first"].changed is True
    assert results["v2"] == results["v3"] == results["v4"]


def test_transient_errors_are_retried() -> None:
    cf = FakeCloudflare(ingress=[])
    cf.get_errors = flaky(2)
    res = _engine(max_attempts=5).apply(TUNNEL, "acc", _doc("a"), cf)
    assert res.changed is True
    assert res.attempts == 3


def test_gives_up_after_max_attempts() -> None:
    cf = FakeCloudflare(ingress=[])
    cf.get_errors = flaky(5)
    metrics = Collector()
    with pytest.raises(TransientError, match="after 3 attempts"):
        _engine(max_attempts=3, metrics=metrics).apply(TUNNEL, "acc", _doc("a"), cf)
    assert cf.gets == 3
    assert metrics.counter("syncs_total", TUNNEL, "error") == 1
    assert metrics.counter("sync_errors_total", "server_error") == 1


def test_auth_error_is_not_retried_internally() -> None:
    cf = FakeCloudflare(ingress=[])
    cf.get_errors = [AuthError("bad token", status_code=403)]
    with pytest.raises(AuthError):
        _engine().apply(TUNNEL, "acc", _doc("a"), cf)
    assert cf.gets == 1


def test_rule_limit() -> None:
    cf = FakeCloudflare(ingress=[])
    hosts = [f"h{i}.example.com" for i in range(MAX_INGRESS_RULES)]
    with pytest.raises(ValidationError, match="limit exceeded"):
        _engine().apply(TUNNEL, "acc", _doc(*hosts), cf)
    assert cf.gets == 0


def test_stop_event_cancels() -> None:
    stop = threading.Event()
    stop.set()
    cf = FakeCloudflare(ingress=[])
    with pytest.raises(TransientError, match="cancelled"):
        _engine(stop_event=stop).apply(TUNNEL, "acc", _doc("a"), cf)
    assert cf.puts == []


def test_metrics_recorded_on_success() -> None:
    metrics = Collector()
    cf = FakeCloudflare(ingress=[])
    _engine(metrics=metrics).apply(TUNNEL, "acc", _doc("a", "b"), cf)
    assert metrics.counter("syncs_total", TUNNEL, "success") == 1
    assert metrics.gauge("ingress_rules", TUNNEL) == 3


class Interrupted(BaseException):
    pass


def test_interrupted_run_frees_the_tunnel() -> None:
    cf = FakeCloudflare(ingress=[])
    cf.get_errors = [Interrupted()]
    engine = _engine()
    with pytest.raises(Interrupted):
        engine.apply(TUNNEL, "acc", _doc("a"), cf)
    assert engine._tunnels[TUNNEL].running is False

    res = engine.apply(TUNNEL, "acc", _doc("a"), cf)
    assert res.changed is True


def test_interrupted_run_releases_parked_callers() -> None:
    cf = BlockingCloudflare()
    engine = _engine()
    errors = {}

    def first():
        try:
            engine.apply(TUNNEL, "acc", _doc("v1"), cf)
        except Interrupted as e:
            errors["first"] = e

    def parked():
        try:
            engine.apply(TUNNEL, "acc", _doc("v2"), cf)
        except TransientError as e:
            errors["parked"] = e

    runner = threading.Thread(target=first)
    runner.start()
    assert cf.started.wait(5)
    waiter = threading.Thread(target=parked)
    waiter.start()
    _wait_until(lambda: sum(engine._tunnels[TUNNEL].waiters.values()) == 1)

    cf.get_errors = [Interrupted()]
    cf.release.set()
    runner.join(5)
    waiter.join(5)

    assert not waiter.is_alive()
    assert isinstance(errors["first"], Interrupted)
    assert "interrupted" in str(errors["parked"])
    assert cf.puts == []
