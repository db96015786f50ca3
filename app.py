# app.py
from __future__ import annotations

import logging
import signal
import threading
from typing import List, Optional

import structlog
from kubernetes import config

from cloudflare import CloudflareClient
from config import Settings, load_settings, setup_logging
from controllers.gateway import GatewayReconciler
from controllers.gatewayclass import GatewayClassReconciler, TunnelConfigReconciler
from controllers.routes import RouteReconciler
from deploy.helm import HelmManager
from errors import ControllerError
from k8s import CONFIG_KIND, KubeClient, meta
from leader import LeaderElector
from observe.watch import ROUTES_KEY, keys_for_event, start_watches
from sync import SyncEngine
from tunnelconfig import ConfigResolver
from workqueue import Key, WorkQueue, Workers

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Controller wiring
# ─────────────────────────────────────────────
class Controller:
    """Owns the work queue, its workers and the watch threads."""

    def __init__(self, settings: Settings, kube, stop_event: threading.Event, cloudflare_factory=None, helm=None):
        self.settings = settings
        self.kube = kube
        self.stop_event = stop_event
        self.queue = WorkQueue()

        self.cloudflare_factory = cloudflare_factory or (
            lambda token: CloudflareClient(token, base_url=settings.api_base_url, timeout=settings.api_timeout)
        )
        self.resolver = ConfigResolver(kube, settings.namespace, self.cloudflare_factory)
        self.engine = SyncEngine(
            max_attempts=settings.sync_max_attempts,
            base_delay=settings.sync_base_delay,
            max_delay=settings.sync_max_delay,
            stop_event=stop_event,
        )
        self.helm = helm or HelmManager(
            chart=settings.helm_chart,
            chart_version=settings.helm_chart_version,
            binary=settings.helm_binary,
            timeout=settings.helm_timeout,
        )
        self.routes = RouteReconciler(
            kube,
            self.resolver,
            self.engine,
            self.cloudflare_factory,
            settings.gateway_class_name,
            settings.controller_name,
            settings.cluster_domain,
        )
        self.gateways = GatewayReconciler(
            kube, self.resolver, self.helm, settings.gateway_class_name, settings.controller_name
        )
        self.classes = GatewayClassReconciler(kube, settings.controller_name)
        self.configs = TunnelConfigReconciler(kube, self.resolver)

        self.workers = Workers(self.queue, self.handle, settings.workers, stop_event)
        self._watch_threads: List[threading.Thread] = []

    def handle(self, key: Key) -> Optional[float]:
        kind, namespace, name = key
        if key == ROUTES_KEY:
            try:
                delay = self.routes.sync_all()
            except ControllerError as e:
                if e.retryable:
                    raise
                logger.error("[controller] routes sync failed: %s", e)
                delay = None
            # an unset requeue falls back to the periodic resync
            return delay or self.settings.resync_period
        if kind == "Gateway":
            return self.gateways.reconcile(namespace, name)
        if kind == "GatewayClass":
            return self.classes.reconcile(name)
        if kind == CONFIG_KIND:
            return self.configs.reconcile(name)
        logger.warning("[controller] unknown key %s", key)
        return None

    def on_event(self, kind: str, event_type: str, obj: dict) -> None:
        try:
            keys = keys_for_event(kind, obj, lambda: self.kube.list_objects("Gateway"))
        except ControllerError as e:
            logger.warning("[controller] %s %s event: listing gateways failed: %s", kind, event_type, e)
            keys = [ROUTES_KEY]
        for key in keys:
            self.queue.add(key)

    def full_resync(self) -> None:
        """Queue everything: all classes, configs, gateways and the routes key."""
        for gc in self.kube.list_objects("GatewayClass"):
            self.queue.add(("GatewayClass", "", meta(gc).get("name", "")))
        for cfg in self.kube.list_objects(CONFIG_KIND):
            self.queue.add((CONFIG_KIND, "", meta(cfg).get("name", "")))
        for gw in self.kube.list_objects("Gateway"):
            m = meta(gw)
            self.queue.add(("Gateway", m.get("namespace", ""), m.get("name", "")))
        self.queue.add(ROUTES_KEY)

    def start(self) -> None:
        logger.info("[controller] starting %d workers", self.settings.workers)
        self.workers.start()
        self._watch_threads = start_watches(self.on_event, self.stop_event)
        try:
            self.full_resync()
        except ControllerError as e:
            # watches deliver ADDED events for everything anyway
            logger.warning("[controller] initial resync listing failed: %s", e)
            self.queue.add(ROUTES_KEY)

    def shutdown(self) -> None:
        self.stop_event.set()
        self.queue.shutdown()
        self.workers.join(timeout=5)
        for t in self._watch_threads:
            t.join(timeout=1)


# ─────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────
def load_kube_config() -> None:
    try:
        config.load_incluster_config()
        logger.info("[controller] using in-cluster config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("[controller] using kubeconfig (local)")


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)
    load_kube_config()

    stop_event = threading.Event()
    kube = KubeClient(timeout=settings.kube_timeout)
    controller = Controller(settings, kube, stop_event)

    def _stop(signum, _frame):
        logger.info("[controller] received signal %s", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)

    structlog.get_logger(__name__).info(
        "[controller] starting",
        gateway_class=settings.gateway_class_name,
        controller_name=settings.controller_name,
        namespace=settings.namespace,
        workers=settings.workers,
        leader_elect=settings.leader_elect,
    )
    try:
        if settings.leader_elect:
            elector = LeaderElector(
                settings.leader_election_name,
                settings.namespace,
                lease_duration=settings.lease_duration,
                renew_deadline=settings.renew_deadline,
                retry_period=settings.retry_period,
                on_started=controller.start,
                on_stopped=stop_event.set,
            )
            elector.run(stop_event)
        else:
            controller.start()
            stop_event.wait()
    except KeyboardInterrupt:
        logger.info("[controller] interrupted")
    finally:
        logger.info("[controller] shutting down")
        controller.shutdown()


if __name__ == "__main__":
    main()
