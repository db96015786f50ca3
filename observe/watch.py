# observe/watch.py
"""Watch threads: stream cluster events and turn them into work-queue keys."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, List, Optional

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from ingress.matches import ROUTE_KINDS
from k8s import CONFIG_KIND, GATEWAY_GROUP, RESOURCES, meta, spec

logger = logging.getLogger(__name__)

ROUTES_KEY = ("routes", "", "all")
WATCH_TIMEOUT = 300
RESTART_PAUSE = 2.0

# kinds whose events only ever mean "resync all routes"
ROUTE_INPUTS = ("ReferenceGrant", "Service")
WATCHED_KINDS = ("Gateway", "GatewayClass") + ROUTE_KINDS + ROUTE_INPUTS + (CONFIG_KIND,)


def parent_gateway_keys(route: dict) -> List[tuple]:
    out = []
    route_ns = meta(route).get("namespace", "")
    for ref in spec(route).get("parentRefs") or []:
        if (ref.get("group") or GATEWAY_GROUP) != GATEWAY_GROUP or (ref.get("kind") or "Gateway") != "Gateway":
            continue
        out.append(("Gateway", ref.get("namespace") or route_ns, ref.get("name", "")))
    return out


def keys_for_event(kind: str, obj: dict, list_gateways: Callable[[], Iterable[dict]]) -> List[tuple]:
    """Map one watch event onto the keys it invalidates.

    Gateways carry attachedRoutes counts, so route changes also touch the
    parent Gateways. Class and config changes touch every Gateway.
    """
    m = meta(obj)
    ns, name = m.get("namespace", "") or "", m.get("name", "") or ""

    if kind in ROUTE_KINDS:
        return [ROUTES_KEY] + parent_gateway_keys(obj)
    if kind in ROUTE_INPUTS:
        return [ROUTES_KEY]
    if kind == "Gateway":
        return [("Gateway", ns, name), ROUTES_KEY]
    if kind in ("GatewayClass", CONFIG_KIND):
        keys = [(kind, "", name), ROUTES_KEY]
        for gw in list_gateways():
            gm = meta(gw)
            keys.append(("Gateway", gm.get("namespace", ""), gm.get("name", "")))
        return keys
    return []


def list_function(kind: str, custom=None, core=None):
    """(list function, positional args) for a watched kind."""
    if kind == "Service":
        core = core or client.CoreV1Api()
        return core.list_service_for_all_namespaces, ()
    group, version, plural, _ = RESOURCES[kind]
    custom = custom or client.CustomObjectsApi()
    return custom.list_cluster_custom_object, (group, version, plural)


def run_watch_loop(
    kind: str,
    on_event: Callable[[str, str, dict], None],
    stop_event: threading.Event,
    custom=None,
    core=None,
    timeout_seconds: int = WATCH_TIMEOUT,
) -> None:
    """
    Background loop streaming one kind's events into `on_event(kind, type, obj)`.
    """
    logger.info("[watch] starting %s watch", kind)
    fn, args = list_function(kind, custom, core)
    serializer = client.ApiClient()
    resource_version: Optional[str] = None

    while not stop_event.is_set():
        w = watch.Watch()
        kwargs = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            for event in w.stream(fn, *args, **kwargs):
                if stop_event.is_set():
                    w.stop()
                    break
                obj = event.get("object")
                if not isinstance(obj, dict):
                    obj = serializer.sanitize_for_serialization(obj)
                if event.get("type") == "ERROR":
                    if (obj or {}).get("code") == 410:
                        logger.info("[watch] %s resourceVersion expired, relisting", kind)
                        resource_version = None
                        w.stop()
                        break
                    logger.warning("[watch] %s error event: %s", kind, (obj or {}).get("message"))
                    continue
                resource_version = meta(obj).get("resourceVersion") or resource_version
                on_event(kind, event.get("type", ""), obj)
        except ApiException as e:
            if e.status == 410:
                logger.info("[watch] %s resourceVersion expired, relisting", kind)
                resource_version = None
                continue
            logger.warning("[watch] %s watch failed: %s %s", kind, e.status, e.reason)
            stop_event.wait(RESTART_PAUSE)
        except Exception as e:
            logger.warning("[watch] %s watch error: %s", kind, e)
            stop_event.wait(RESTART_PAUSE)

    logger.info("[watch] %s watch stopped", kind)


def start_watches(
    on_event: Callable[[str, str, dict], None],
    stop_event: threading.Event,
    kinds: Iterable[str] = WATCHED_KINDS,
    custom=None,
    core=None,
) -> List[threading.Thread]:
    threads = []
    for kind in kinds:
        t = threading.Thread(
            target=run_watch_loop,
            args=(kind, on_event, stop_event, custom, core),
            name=f"watch-{kind}",
            daemon=True,
        )
        t.start()
        threads.append(t)
    return threads
