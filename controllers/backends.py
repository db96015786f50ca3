# controllers/backends.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from errors import ControllerError, NotFoundError, PermissionDenied, ValidationError
from ingress.builder import DEFAULT_PORT, service_url
from k8s import GATEWAY_GROUP, spec

logger = logging.getLogger(__name__)

REASON_REF_NOT_PERMITTED = "RefNotPermitted"
REASON_BACKEND_NOT_FOUND = "BackendNotFound"
REASON_INVALID_KIND = "InvalidKind"

DEFAULT_WEIGHT = 1

FAILURE_REASONS = {
    PermissionDenied: REASON_REF_NOT_PERMITTED,
    NotFoundError: REASON_BACKEND_NOT_FOUND,
    ValidationError: REASON_INVALID_KIND,
}


@dataclass(frozen=True)
class BackendFailure:
    route_kind: str
    route_namespace: str
    route_name: str
    rule_index: int
    backend: str
    reason: str
    message: str


def failure_reason(err: ControllerError) -> str:
    for cls, reason in FAILURE_REASONS.items():
        if isinstance(err, cls):
            return reason
    return err.reason


def backend_weight(ref: dict) -> int:
    weight = ref.get("weight")
    return DEFAULT_WEIGHT if weight is None else int(weight)


def select_highest_weight(weights: Sequence[int]) -> int:
    """Index of the largest weight, the earliest one on ties; -1 for none."""
    chosen = -1
    for i, w in enumerate(weights):
        if chosen < 0 or w > weights[chosen]:
            chosen = i
    return chosen


def grant_permits(grant: dict, from_kind: str, from_namespace: str, to_kind: str, to_name: str) -> bool:
    """True if one ReferenceGrant lets from_kind objects in from_namespace refer to to_kind/to_name."""
    s = spec(grant)
    from_ok = any(
        f.get("group") == GATEWAY_GROUP and f.get("kind") == from_kind and f.get("namespace") == from_namespace
        for f in s.get("from") or []
    )
    if not from_ok:
        return False
    for to in s.get("to") or []:
        if (to.get("group") or "") != "" or to.get("kind") != to_kind:
            continue
        if to.get("name") and to.get("name") != to_name:
            continue
        return True
    return False


class BackendResolver:
    """Resolves backendRefs to tunnel service URLs for one sync pass.

    ReferenceGrants are read once per target namespace and kept for the
    lifetime of the resolver, so build a new one per sync.
    """

    def __init__(self, kube, cluster_domain: str = "cluster.local"):
        self.kube = kube
        self.cluster_domain = cluster_domain
        self._grants: Dict[str, List[dict]] = {}

    def _grants_in(self, namespace: str) -> List[dict]:
        if namespace not in self._grants:
            self._grants[namespace] = self.kube.list_objects("ReferenceGrant", namespace)
        return self._grants[namespace]

    def permitted(self, route_kind: str, route_namespace: str, target_namespace: str, service_name: str) -> bool:
        """True if a ReferenceGrant in target_namespace lets route_kind in route_namespace see the service."""
        if route_namespace == target_namespace:
            return True
        return any(
            grant_permits(grant, route_kind, route_namespace, "Service", service_name)
            for grant in self._grants_in(target_namespace)
        )

    def resolve(self, route_kind: str, route_namespace: str, ref: dict) -> str:
        """Return the target URL for one backendRef or raise a classified error."""
        group = ref.get("group") or ""
        kind = ref.get("kind") or "Service"
        name = ref.get("name") or ""
        namespace = ref.get("namespace") or route_namespace
        port = int(ref.get("port") or DEFAULT_PORT)

        if group not in ("", "core") or kind != "Service":
            raise ValidationError(f"unsupported backend {group or 'core'}/{kind} {name}")
        if not name:
            raise ValidationError("backendRef has no name")

        if not self.permitted(route_kind, route_namespace, namespace, name):
            raise PermissionDenied(
                f"cross-namespace backend reference to {namespace}/{name} not permitted by ReferenceGrant"
            )

        svc: Optional[dict] = self.kube.get_service(namespace, name)
        if svc is None:
            raise NotFoundError(f"Service {namespace}/{name} not found")

        svc_spec = spec(svc)
        external = svc_spec.get("externalName") if svc_spec.get("type") == "ExternalName" else ""
        if not external:
            declared = [p.get("port") for p in svc_spec.get("ports") or []]
            if port not in declared:
                raise NotFoundError(f"Service {namespace}/{name} has no port {port}")
        return service_url(route_kind, name, namespace, port, self.cluster_domain, external_name=external or "")
