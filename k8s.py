# k8s.py
from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as TransportError

from errors import ControllerError, TransientError, from_api_exception

logger = logging.getLogger(__name__)

GATEWAY_GROUP = "gateway.networking.k8s.io"
CONFIG_GROUP = "cf.k8s.lex.la"
CONFIG_KIND = "GatewayClassConfig"

# kind -> (group, version, plural, namespaced)
RESOURCES: Dict[str, Tuple[str, str, str, bool]] = {
    "Gateway": (GATEWAY_GROUP, "v1", "gateways", True),
    "GatewayClass": (GATEWAY_GROUP, "v1", "gatewayclasses", False),
    "HTTPRoute": (GATEWAY_GROUP, "v1", "httproutes", True),
    "GRPCRoute": (GATEWAY_GROUP, "v1", "grpcroutes", True),
    "ReferenceGrant": (GATEWAY_GROUP, "v1beta1", "referencegrants", True),
    CONFIG_KIND: (CONFIG_GROUP, "v1alpha1", "gatewayclassconfigs", False),
}

STATUS_CONFLICT_RETRIES = 5
MAX_CONDITION_MESSAGE = 256


def meta(obj: dict) -> dict:
    return (obj or {}).get("metadata", {}) or {}


def spec(obj: dict) -> dict:
    return (obj or {}).get("spec", {}) or {}


def key_of(obj: dict) -> Tuple[str, str]:
    m = meta(obj)
    return (m.get("namespace", "") or "", m.get("name", "") or "")


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def truncate_message(msg: str) -> str:
    if len(msg) > MAX_CONDITION_MESSAGE:
        return msg[: MAX_CONDITION_MESSAGE - 3] + "..."
    return msg


def condition(ctype: str, ok: bool, reason: str, message: str, generation: Optional[int] = None) -> dict:
    c = {
        "type": ctype,
        "status": "True" if ok else "False",
        "reason": reason,
        "message": truncate_message(message),
        "lastTransitionTime": now_rfc3339(),
    }
    if generation is not None:
        c["observedGeneration"] = generation
    return c


def merge_conditions(existing: List[dict], desired: List[dict]) -> List[dict]:
    """Replace conditions by type, keeping lastTransitionTime when status is unchanged."""
    by_type = {c.get("type"): c for c in existing or []}
    out: List[dict] = []
    seen = set()
    for d in desired:
        d = dict(d)
        old = by_type.get(d["type"])
        if old and old.get("status") == d.get("status") and old.get("lastTransitionTime"):
            d["lastTransitionTime"] = old["lastTransitionTime"]
        out.append(d)
        seen.add(d["type"])
    for c in existing or []:
        if c.get("type") not in seen:
            out.append(c)
    return out


def _strip_times(value):
    if isinstance(value, dict):
        return {k: _strip_times(v) for k, v in value.items() if k != "lastTransitionTime"}
    if isinstance(value, list):
        return [_strip_times(v) for v in value]
    return value


def status_equal(a: dict, b: dict) -> bool:
    return _strip_times(a or {}) == _strip_times(b or {})


class KubeClient:
    """Thin dict-in/dict-out wrapper over the kubernetes client.

    Reads return None on 404; every other API failure is raised as a
    classified ControllerError. Every call carries a request timeout.
    """

    def __init__(self, custom=None, core=None, timeout: float = 30.0):
        self.custom = custom or client.CustomObjectsApi()
        self.core = core or client.CoreV1Api()
        self.timeout = timeout
        self._serializer = client.ApiClient()

    def _call(self, what: str, fn: Callable, *args, **kwargs):
        kwargs.setdefault("_request_timeout", self.timeout)
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise from_api_exception(e, what) from e
        except TransportError as e:
            raise TransientError(f"{what}: {e}") from e

    def _get(self, what: str, fn: Callable, *args, **kwargs) -> Optional[dict]:
        try:
            return self._call(what, fn, *args, **kwargs)
        except ControllerError as e:
            if e.status_code == 404:
                return None
            raise

    def _to_dict(self, model) -> dict:
        return self._serializer.sanitize_for_serialization(model)

    # custom objects
    def get_object(self, kind: str, namespace: str, name: str) -> Optional[dict]:
        group, version, plural, namespaced = RESOURCES[kind]
        what = f"get {kind} {namespace}/{name}" if namespaced else f"get {kind} {name}"
        if namespaced:
            return self._get(what, self.custom.get_namespaced_custom_object, group, version, namespace, plural, name)
        return self._get(what, self.custom.get_cluster_custom_object, group, version, plural, name)

    def list_objects(self, kind: str, namespace: str = "") -> List[dict]:
        group, version, plural, namespaced = RESOURCES[kind]
        if namespaced and namespace:
            res = self._call(f"list {kind}", self.custom.list_namespaced_custom_object, group, version, namespace, plural)
        else:
            res = self._call(f"list {kind}", self.custom.list_cluster_custom_object, group, version, plural)
        return (res or {}).get("items", []) or []

    def patch_finalizers(self, kind: str, namespace: str, name: str, finalizers: List[str], resource_version: str = "") -> dict:
        group, version, plural, namespaced = RESOURCES[kind]
        body: dict = {"metadata": {"finalizers": finalizers}}
        if resource_version:
            body["metadata"]["resourceVersion"] = resource_version
        what = f"patch finalizers {kind} {namespace}/{name}"
        if namespaced:
            return self._call(what, self.custom.patch_namespaced_custom_object, group, version, namespace, plural, name, body)
        return self._call(what, self.custom.patch_cluster_custom_object, group, version, plural, name, body)

    def replace_status(self, kind: str, obj: dict) -> dict:
        group, version, plural, namespaced = RESOURCES[kind]
        namespace, name = key_of(obj)
        what = f"update status {kind} {namespace}/{name}"
        if namespaced:
            return self._call(
                what, self.custom.replace_namespaced_custom_object_status, group, version, namespace, plural, name, obj
            )
        return self._call(what, self.custom.replace_cluster_custom_object_status, group, version, plural, name, obj)

    # core
    def get_service(self, namespace: str, name: str) -> Optional[dict]:
        svc = self._get(f"get service {namespace}/{name}", self.core.read_namespaced_service, name, namespace)
        return self._to_dict(svc) if svc is not None else None

    def get_namespace(self, name: str) -> Optional[dict]:
        ns = self._get(f"get namespace {name}", self.core.read_namespace, name)
        return self._to_dict(ns) if ns is not None else None

    def get_secret_data(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        secret = self._get(f"get secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace)
        if secret is None:
            return None
        out: Dict[str, str] = {}
        for k, v in (secret.data or {}).items():
            out[k] = base64.b64decode(v).decode("utf-8").strip()
        return out

    def get_secret(self, namespace: str, name: str) -> Optional[dict]:
        """Whole Secret as a dict; `data` values stay base64-encoded."""
        secret = self._get(f"get secret {namespace}/{name}", self.core.read_namespaced_secret, name, namespace)
        return self._to_dict(secret) if secret is not None else None


def ensure_finalizer(kube, kind: str, obj: dict, finalizer: str) -> bool:
    """Add finalizer if missing. Returns True when a write happened."""
    m = meta(obj)
    fins = list(m.get("finalizers") or [])
    if finalizer in fins:
        return False
    fins.append(finalizer)
    kube.patch_finalizers(kind, m.get("namespace", ""), m.get("name", ""), fins, m.get("resourceVersion", ""))
    m["finalizers"] = fins
    return True


def remove_finalizer(kube, kind: str, obj: dict, finalizer: str) -> bool:
    m = meta(obj)
    fins = list(m.get("finalizers") or [])
    if finalizer not in fins:
        return False
    fins = [f for f in fins if f != finalizer]
    kube.patch_finalizers(kind, m.get("namespace", ""), m.get("name", ""), fins, m.get("resourceVersion", ""))
    m["finalizers"] = fins
    return True


def update_status(kube, kind: str, namespace: str, name: str, mutate: Callable[[dict], dict]) -> bool:
    """Read-modify-write the status subresource, retrying write conflicts on a fresh read.

    `mutate` gets the current status and returns the desired one.
    Returns False if the object is gone or nothing changed.
    """
    last: Optional[ControllerError] = None
    for _ in range(STATUS_CONFLICT_RETRIES):
        obj = kube.get_object(kind, namespace, name)
        if obj is None:
            return False
        current = obj.get("status") or {}
        desired = mutate(dict(current))
        if status_equal(current, desired):
            return False
        obj["status"] = desired
        try:
            kube.replace_status(kind, obj)
            return True
        except ControllerError as e:
            if e.status_code != 409:
                raise
            last = e
            logger.debug("[k8s] status conflict on %s %s/%s, retrying", kind, namespace, name)
    raise TransientError(f"status update for {kind} {namespace}/{name} kept conflicting: {last}", status_code=409)
