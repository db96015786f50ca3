# deploy/helm.py
from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
import threading
import time
from typing import Any, Dict, List, Optional

import yaml

from errors import DeploymentError, TransientError
from metrics import METRICS

logger = logging.getLogger(__name__)

DEFAULT_CHART = "oci://ghcr.io/lexfrei/charts/cloudflare-tunnel"
LATEST_VERSION_TTL = 600.0


class HelmError(DeploymentError):
    """A helm command exited non-zero."""


class HelmManager:
    """install / upgrade / uninstall of the cloudflared release via the helm CLI.

    An empty chart_version means "latest", looked up with `helm show chart`
    and cached for a few minutes.
    """

    def __init__(
        self,
        chart: str = DEFAULT_CHART,
        chart_version: str = "",
        binary: str = "helm",
        timeout: float = 300.0,
        metrics=None,
    ):
        self.chart = chart
        self.chart_version = chart_version
        self.binary = binary
        self.timeout = timeout
        self.metrics = metrics or METRICS
        self._latest: Optional[str] = None
        self._latest_at = 0.0
        self._lock = threading.Lock()

    def _run(self, args: List[str], what: str) -> str:
        cmd = [self.binary] + args
        logger.debug("[helm] %s", " ".join(cmd))
        try:
            res = subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=self.timeout + 30)
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"helm {what} timed out after {self.timeout:.0f}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise HelmError(f"helm {what} failed: {stderr or e}") from e
        except FileNotFoundError as e:
            raise HelmError(f"helm binary {self.binary!r} not found") from e
        return res.stdout or ""

    def desired_version(self) -> str:
        if self.chart_version:
            return self.chart_version
        with self._lock:
            if self._latest and time.monotonic() - self._latest_at < LATEST_VERSION_TTL:
                return self._latest
        out = self._run(["show", "chart", self.chart], "show chart")
        try:
            meta = yaml.safe_load(out) or {}
        except yaml.YAMLError as e:
            raise HelmError(f"cannot parse chart metadata for {self.chart}: {e}") from e
        version = str(meta.get("version") or "")
        if not version:
            raise HelmError(f"chart {self.chart} has no version")
        with self._lock:
            self._latest = version
            self._latest_at = time.monotonic()
        return version

    def get_release(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        out = self._run(["list", "-n", namespace, "--filter", f"^{release}$", "-a", "-o", "json"], "list")
        for item in json.loads(out or "[]") or []:
            if item.get("name") == release:
                return item
        return None

    def get_values(self, release: str, namespace: str) -> Dict[str, Any]:
        out = self._run(["get", "values", release, "-n", namespace, "-o", "json"], "get values")
        return json.loads(out or "{}") or {}

    @staticmethod
    def chart_version_of(release: Dict[str, Any]) -> str:
        # "chart": "cloudflare-tunnel-0.5.1"
        chart = str(release.get("chart") or "")
        name, _, version = chart.rpartition("-")
        return version if name else ""

    def _upgrade_install(self, release: str, namespace: str, version: str, values: Dict[str, Any]) -> None:
        fd, path = tempfile.mkstemp(prefix=f"{release}-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as fh:
                yaml.safe_dump(values, fh, sort_keys=False)
            self._run(
                [
                    "upgrade", "--install", release, self.chart,
                    "--version", version,
                    "-n", namespace, "--create-namespace",
                    "-f", path,
                    "--wait", "--timeout", f"{int(self.timeout)}s",
                ],
                "upgrade --install",
            )
        finally:
            os.unlink(path)

    def install_or_upgrade(self, release: str, namespace: str, values: Dict[str, Any]) -> str:
        """Make the release match; returns the deployed chart version.

        No-op unless the release is missing, the chart version drifted, or
        the tunnel token changed.
        """
        start = time.monotonic()
        version = self.desired_version()
        current = self.get_release(release, namespace)

        if current is None:
            op, reason = "install", "absent"
        else:
            reasons = []
            if self.chart_version_of(current) != version:
                reasons.append("version")
            deployed = self.get_values(release, namespace)
            want_token = (values.get("cloudflare") or {}).get("tunnelToken")
            if (deployed.get("cloudflare") or {}).get("tunnelToken") != want_token:
                reasons.append("values")
            if not reasons:
                logger.debug("[helm] release %s/%s up to date at %s", namespace, release, version)
                return version
            op, reason = "upgrade", " and ".join(reasons)

        logger.info("[helm] %s %s/%s chart=%s reason=%s", op, namespace, release, version, reason)
        try:
            self._upgrade_install(release, namespace, version, values)
        except TransientError:
            self.metrics.record_helm_operation(op, "error", time.monotonic() - start)
            raise
        self.metrics.record_helm_operation(op, "success", time.monotonic() - start)
        return version

    def uninstall(self, release: str, namespace: str) -> None:
        start = time.monotonic()
        if self.get_release(release, namespace) is None:
            logger.debug("[helm] release %s/%s already gone", namespace, release)
            return
        logger.info("[helm] uninstall %s/%s", namespace, release)
        try:
            self._run(["uninstall", release, "-n", namespace, "--wait", "--timeout", f"{int(self.timeout)}s"], "uninstall")
        except TransientError:
            self.metrics.record_helm_operation("uninstall", "error", time.monotonic() - start)
            raise
        self.metrics.record_helm_operation("uninstall", "success", time.monotonic() - start)
