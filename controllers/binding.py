# controllers/binding.py
"""Which Gateway listeners will take a given route.

Pure functions over dicts. `namespace_labels` is a callable so the caller
decides how (and whether) to look namespaces up.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ingress.matches import GRPC_ROUTE, HTTP_ROUTE
from k8s import GATEWAY_GROUP, meta, spec

# Gateway API route reasons
REASON_ACCEPTED = "Accepted"
REASON_NOT_ALLOWED = "NotAllowedByListeners"
REASON_NO_HOSTNAME = "NoMatchingListenerHostname"
REASON_NO_PARENT = "NoMatchingParent"

DEFAULT_KINDS_BY_PROTOCOL: Dict[str, List[str]] = {
    "HTTP": [HTTP_ROUTE, GRPC_ROUTE],
    "HTTPS": [HTTP_ROUTE, GRPC_ROUTE],
    "TLS": ["TLSRoute"],
    "TCP": ["TCPRoute"],
    "UDP": ["UDPRoute"],
}


@dataclass
class Binding:
    index: int
    parent_ref: dict
    accepted: bool
    reason: str
    message: str
    hostnames: List[str] = field(default_factory=list)


def is_gateway_ref(ref: dict) -> bool:
    return (ref.get("kind") or "Gateway") == "Gateway" and (ref.get("group") or GATEWAY_GROUP) == GATEWAY_GROUP


def parent_namespace(route: dict, ref: dict) -> str:
    return ref.get("namespace") or meta(route).get("namespace", "")


def selector_matches(selector: dict, labels: dict) -> bool:
    """Small subset of K8s label selector evaluation (matchLabels + expressions)."""
    selector = selector or {}
    for k, v in (selector.get("matchLabels", {}) or {}).items():
        if labels.get(k) != v:
            return False

    for expr in selector.get("matchExpressions", []) or []:
        key = expr.get("key")
        op = expr.get("operator")
        vals = expr.get("values", []) or []
        if op == "In":
            if labels.get(key) not in vals:
                return False
        elif op == "NotIn":
            if labels.get(key) in vals:
                return False
        elif op == "Exists":
            if key not in labels:
                return False
        elif op == "DoesNotExist":
            if key in labels:
                return False
        else:
            # unknown operator: non-match
            return False
    return True


def allowed_kinds(listener: dict) -> List[str]:
    allowed = (listener.get("allowedRoutes") or {}).get("kinds") or []
    if allowed:
        return [k.get("kind", "") for k in allowed if (k.get("group") or GATEWAY_GROUP) == GATEWAY_GROUP]
    proto = str(listener.get("protocol") or "").upper()
    return DEFAULT_KINDS_BY_PROTOCOL.get(proto, [HTTP_ROUTE, GRPC_ROUTE])


def namespace_allowed(
    listener: dict,
    gateway_namespace: str,
    route_namespace: str,
    namespace_labels: Callable[[str], dict],
) -> bool:
    namespaces = (listener.get("allowedRoutes") or {}).get("namespaces") or {}
    frm = namespaces.get("from") or "Same"
    if frm == "All":
        return True
    if frm == "Selector":
        labels = dict(namespace_labels(route_namespace) or {})
        labels.setdefault("kubernetes.io/metadata.name", route_namespace)
        return selector_matches(namespaces.get("selector") or {}, labels)
    return route_namespace == gateway_namespace


def _wild_covers(wildcard: str, host: str) -> bool:
    # "*.example.com" covers "a.example.com" and "a.b.example.com", not "example.com"
    suffix = wildcard[1:]
    return host.endswith(suffix) and len(host) > len(suffix)


def intersect_hostname(listener_host: str, route_host: str) -> Optional[str]:
    if not listener_host:
        return route_host
    if route_host == listener_host:
        return route_host
    if listener_host.startswith("*.") and _wild_covers(listener_host, route_host):
        return route_host
    if route_host.startswith("*.") and _wild_covers(route_host, listener_host):
        return listener_host
    return None


def effective_hostnames(route_hostnames: List[str], listener_host: str) -> List[str]:
    if not route_hostnames:
        return [listener_host or "*"]
    out: List[str] = []
    for h in route_hostnames:
        got = intersect_hostname(listener_host, h)
        if got and got not in out:
            out.append(got)
    return out


def bind(
    route: dict,
    route_kind: str,
    index: int,
    ref: dict,
    gateway: dict,
    namespace_labels: Callable[[str], dict],
) -> Binding:
    """Bind one parentRef of `route` against `gateway`'s listeners."""
    route_ns = meta(route).get("namespace", "")
    gateway_ns = meta(gateway).get("namespace", "")
    route_hosts = list(spec(route).get("hostnames") or [])

    listeners = list(spec(gateway).get("listeners") or [])
    if ref.get("sectionName"):
        listeners = [lst for lst in listeners if lst.get("name") == ref["sectionName"]]
    if ref.get("port"):
        listeners = [lst for lst in listeners if lst.get("port") == ref["port"]]
    if not listeners:
        return Binding(index, ref, False, REASON_NO_PARENT, "No listener matches the parentRef section/port")

    allowed = [
        lst
        for lst in listeners
        if route_kind in allowed_kinds(lst) and namespace_allowed(lst, gateway_ns, route_ns, namespace_labels)
    ]
    if not allowed:
        return Binding(index, ref, False, REASON_NOT_ALLOWED, f"No listener allows {route_kind} from namespace {route_ns}")

    hostnames: List[str] = []
    for lst in allowed:
        for h in effective_hostnames(route_hosts, lst.get("hostname") or ""):
            if h not in hostnames:
                hostnames.append(h)
    if not hostnames:
        return Binding(index, ref, False, REASON_NO_HOSTNAME, "No route hostname matches any listener hostname")

    return Binding(index, ref, True, REASON_ACCEPTED, "Route accepted", hostnames=hostnames)
