from __future__ import annotations

import json
import os
import subprocess

import pytest
import yaml

from deploy import helm as helm_mod
from deploy.helm import HelmError, HelmManager
from errors import TransientError
from metrics import Collector

RELEASE = "cfd-infra-gw"
NS = "cloudflare-tunnel-system"
VALUES = {"cloudflare": {"mode": "remote", "tunnelToken": "tok"}, "replicaCount": 1}


class FakeHelmCLI:
    def __init__(self, releases=None, values=None, latest="1.2.3"):
        self.releases = releases or []
        self.values = values or {}
        self.latest = latest
        self.cmds = []
        self.applied_values = []
        self.values_paths = []
        self.fail = None

    def __call__(self, cmd, **kwargs):
        self.cmds.append(cmd)
        if self.fail and cmd[1] == self.fail[0]:
            raise self.fail[1]
        sub = cmd[1]
        out = ""
        if sub == "show":
            out = f"apiVersion: v2\nname: cloudflare-tunnel\nversion: {self.latest}\n"
        elif sub == "list":
            out = json.dumps(self.releases)
        elif sub == "get":
            out = json.dumps(self.values)
        elif sub == "upgrade":
            path = cmd[cmd.index("-f") + 1]
            self.values_paths.append(path)
            with open(path) as fh:
                self.applied_values.append(yaml.safe_load(fh))
        return subprocess.CompletedProcess(cmd, 0, stdout=out, stderr="")

    def subcommands(self):
        return [c[1] for c in self.cmds]


@pytest.fixture
def cli(monkeypatch):
    fake = FakeHelmCLI()
    monkeypatch.setattr(helm_mod.subprocess, "run", fake)
    return fake


def _deployed(version="1.2.3", token="tok"):
    return [{"name": RELEASE, "namespace": NS, "chart": f"cloudflare-tunnel-{version}", "status": "deployed"}], {
        "cloudflare": {"mode": "remote", "tunnelToken": token}
    }


def test_installs_when_absent(cli) -> None:
    metrics = Collector()
    version = HelmManager(metrics=metrics).install_or_upgrade(RELEASE, NS, VALUES)

    assert version == "1.2.3"
    assert cli.subcommands() == ["show", "list", "upgrade"]
    upgrade = cli.cmds[-1]
    assert upgrade[:4] == ["helm", "upgrade", "--install", RELEASE]
    assert upgrade[upgrade.index("--version") + 1] == "1.2.3"
    assert "--create-namespace" in upgrade
    assert upgrade[upgrade.index("-n") + 1] == NS
    assert cli.applied_values == [VALUES]
    assert not os.path.exists(cli.values_paths[0])
    assert metrics.counter("helm_operations_total", "install", "success") == 1


def test_up_to_date_release_is_left_alone(cli) -> None:
    cli.releases, cli.values = _deployed()
    HelmManager().install_or_upgrade(RELEASE, NS, VALUES)
    assert "upgrade" not in cli.subcommands()


def test_version_drift_upgrades(cli) -> None:
    cli.releases, cli.values = _deployed(version="1.0.0")
    HelmManager().install_or_upgrade(RELEASE, NS, VALUES)
    assert cli.subcommands()[-1] == "upgrade"


def test_token_change_upgrades(cli) -> None:
    cli.releases, cli.values = _deployed(token="old")
    metrics = Collector()
    HelmManager(metrics=metrics).install_or_upgrade(RELEASE, NS, VALUES)
    assert cli.subcommands()[-1] == "upgrade"
    assert metrics.counter("helm_operations_total", "upgrade", "success") == 1


def test_pinned_version_skips_chart_lookup(cli) -> None:
    HelmManager(chart_version="0.9.0").install_or_upgrade(RELEASE, NS, VALUES)
    assert "show" not in cli.subcommands()
    upgrade = cli.cmds[-1]
    assert upgrade[upgrade.index("--version") + 1] == "0.9.0"


def test_latest_version_is_cached(cli) -> None:
    mgr = HelmManager()
    assert mgr.desired_version() == "1.2.3"
    assert mgr.desired_version() == "1.2.3"
    assert cli.subcommands().count("show") == 1


def test_command_failure_raises_helm_error(cli) -> None:
    cli.fail = ("upgrade", subprocess.CalledProcessError(1, ["helm"], output="", stderr="Error: INSTALLATION FAILED"))
    metrics = Collector()
    with pytest.raises(HelmError, match="INSTALLATION FAILED") as ei:
        HelmManager(metrics=metrics).install_or_upgrade(RELEASE, NS, VALUES)
    assert ei.value.retryable
    assert metrics.counter("helm_operations_total", "install", "error") == 1


def test_timeout_is_transient(cli) -> None:
    cli.fail = ("list", subprocess.TimeoutExpired(["helm"], 330))
    with pytest.raises(TransientError, match="timed out"):
        HelmManager().install_or_upgrade(RELEASE, NS, VALUES)


def test_uninstall_only_when_present(cli) -> None:
    mgr = HelmManager()
    mgr.uninstall(RELEASE, NS)
    assert "uninstall" not in cli.subcommands()

    cli.releases, _ = _deployed()
    mgr.uninstall(RELEASE, NS)
    assert cli.cmds[-1][:3] == ["helm", "uninstall", RELEASE]


def test_chart_version_of() -> None:
    assert HelmManager.chart_version_of({"chart": "cloudflare-tunnel-0.5.1"}) == "0.5.1"
    assert HelmManager.chart_version_of({"chart": ""}) == ""
