# controllers/gateway.py
"""Gateway lifecycle: finalizer, cloudflared release, address and status.

State machine per Gateway:

  gone                           -> nothing to do
  deleting + finalizer           -> uninstall, then drop finalizer
  deleting, no finalizer         -> nothing to do
  class not ours / no config     -> skip, no status write
  cloudflared enabled            -> finalizer, install/upgrade, status
  cloudflared disabled           -> uninstall leftovers, status
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Dict, List, Optional, Tuple

from controllers.backends import REASON_REF_NOT_PERMITTED, grant_permits
from controllers.binding import allowed_kinds, bind, is_gateway_ref, parent_namespace
from deploy.cloudflared import release_name, values_for
from errors import ControllerError, ValidationError
from ingress.matches import ROUTE_KINDS
from k8s import GATEWAY_GROUP, condition, ensure_finalizer, merge_conditions, meta, remove_finalizer, spec, update_status
from tunnelconfig import DEFAULT_CLOUDFLARED_NAMESPACE, ResolvedConfig

logger = logging.getLogger(__name__)

FINALIZER = "cloudflare-tunnel.gateway.networking.k8s.io/cloudflared"
ADDRESS_SUFFIX = ".cfargotunnel.com"
CONFIG_ERROR_REQUEUE = 30.0
SUPPORTED_PROTOCOLS = ("HTTP", "HTTPS")
SECRET_TYPE_TLS = "kubernetes.io/tls"
REASON_INVALID_CERT_REF = "InvalidCertificateRef"
PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----\s.*?-----END \1-----", re.DOTALL)

RefCheck = Tuple[bool, str, str]  # (ok, reason, message)

MSG_ACCEPTED = "Gateway accepted by cloudflare-tunnel controller"
MSG_PROGRAMMED = "Gateway programmed in Cloudflare Tunnel"


def tunnel_address(tunnel_id: str) -> str:
    return f"{tunnel_id}{ADDRESS_SUFFIX}"


def _secret_bytes(data: dict, key: str) -> bytes:
    try:
        return base64.b64decode(data.get(key) or "", validate=True)
    except (binascii.Error, ValueError):
        return b""


class GatewayReconciler:
    def __init__(
        self,
        kube,
        resolver,
        helm,
        gateway_class_name: str,
        controller_name: str,
    ):
        self.kube = kube
        self.resolver = resolver
        self.helm = helm
        self.gateway_class_name = gateway_class_name
        self.controller_name = controller_name

    def _our_class(self, gw: dict) -> Optional[dict]:
        class_name = spec(gw).get("gatewayClassName")
        if class_name != self.gateway_class_name:
            return None
        gc = self.kube.get_object("GatewayClass", "", class_name)
        if gc is None or spec(gc).get("controllerName") != self.controller_name:
            return None
        return gc

    def _release_namespace(self, gw: dict) -> str:
        gc = self._our_class(gw)
        if gc is None:
            return DEFAULT_CLOUDFLARED_NAMESPACE
        try:
            return self.resolver.config_for_class(gc).cloudflared.namespace
        except ValidationError as e:
            logger.warning("[gateway] config unavailable during cleanup, using default namespace: %s", e)
            return DEFAULT_CLOUDFLARED_NAMESPACE

    def reconcile(self, namespace: str, name: str) -> Optional[float]:
        gw = self.kube.get_object("Gateway", namespace, name)
        if gw is None:
            return None

        m = meta(gw)
        release = release_name(namespace, name)

        if m.get("deletionTimestamp"):
            return self._finalize(gw, release)

        gc = self._our_class(gw)
        if gc is None:
            logger.debug("[gateway] %s/%s is not ours, skipping", namespace, name)
            return None

        try:
            resolved = self.resolver.resolve_class(gc)
        except ValidationError as e:
            logger.warning("[gateway] %s/%s: tunnel config not resolvable, skipping: %s", namespace, name, e)
            return CONFIG_ERROR_REQUEUE

        cfd = resolved.config.cloudflared
        deploy_error: Optional[ControllerError] = None
        if cfd.enabled:
            if ensure_finalizer(self.kube, "Gateway", gw, FINALIZER):
                logger.info("[gateway] %s/%s: added finalizer", namespace, name)
            try:
                self.helm.install_or_upgrade(release, cfd.namespace, values_for(resolved))
            except ControllerError as e:
                logger.error("[gateway] %s/%s: cloudflared deployment failed: %s", namespace, name, e)
                deploy_error = e
        elif FINALIZER in (m.get("finalizers") or []):
            # managed deployment switched off
            self.helm.uninstall(release, cfd.namespace)
            remove_finalizer(self.kube, "Gateway", gw, FINALIZER)
            logger.info("[gateway] %s/%s: cloudflared disabled, release %s removed", namespace, name, release)

        self.publish(gw, resolved, deploy_error)
        if deploy_error is not None:
            raise deploy_error
        return None

    def _finalize(self, gw: dict, release: str) -> Optional[float]:
        namespace, name = meta(gw).get("namespace", ""), meta(gw).get("name", "")
        if FINALIZER not in (meta(gw).get("finalizers") or []):
            return None
        # uninstall first; the finalizer stays if this raises
        self.helm.uninstall(release, self._release_namespace(gw))
        remove_finalizer(self.kube, "Gateway", gw, FINALIZER)
        logger.info("[gateway] %s/%s: cleaned up release %s, finalizer removed", namespace, name, release)
        return None

    # ─────────────────────────────────────────────
    # status
    # ─────────────────────────────────────────────
    def attached_routes(self, gw: dict) -> Dict[str, int]:
        gw_ns, gw_name = meta(gw).get("namespace", ""), meta(gw).get("name", "")
        listeners = spec(gw).get("listeners") or []
        counts = {lst.get("name", ""): 0 for lst in listeners}
        ns_labels: Dict[str, dict] = {}

        def labels(ns: str) -> dict:
            if ns not in ns_labels:
                obj = self.kube.get_namespace(ns)
                ns_labels[ns] = (meta(obj).get("labels") or {}) if obj else {}
            return ns_labels[ns]

        for kind in ROUTE_KINDS:
            for route in self.kube.list_objects(kind):
                for i, ref in enumerate(spec(route).get("parentRefs") or []):
                    if not is_gateway_ref(ref) or ref.get("name") != gw_name:
                        continue
                    if parent_namespace(route, ref) != gw_ns:
                        continue
                    for lst in listeners:
                        lname = lst.get("name", "")
                        if ref.get("sectionName") and ref["sectionName"] != lname:
                            continue
                        if bind(route, kind, i, dict(ref, sectionName=lname), gw, labels).accepted:
                            counts[lname] += 1
        return counts

    def certificate_refs_status(self, gw: dict, lst: dict) -> RefCheck:
        """Every tls.certificateRefs entry must name a readable, permitted kubernetes.io/tls Secret."""
        gw_ns = meta(gw).get("namespace", "")
        for ref in (lst.get("tls") or {}).get("certificateRefs") or []:
            ok, reason, message = self._check_certificate_ref(gw_ns, ref)
            if not ok:
                return ok, reason, message
        return True, "ResolvedRefs", "References resolved"

    def _check_certificate_ref(self, gw_ns: str, ref: dict) -> RefCheck:
        group = ref.get("group") or ""
        kind = ref.get("kind") or "Secret"
        name = ref.get("name") or ""
        if group != "" or kind != "Secret":
            return False, REASON_INVALID_CERT_REF, f"Unsupported certificate ref kind: {group}/{kind}"

        namespace = ref.get("namespace") or gw_ns
        if namespace != gw_ns and not any(
            grant_permits(grant, "Gateway", gw_ns, "Secret", name)
            for grant in self.kube.list_objects("ReferenceGrant", namespace)
        ):
            return False, REASON_REF_NOT_PERMITTED, f"Cross-namespace reference to {namespace}/{name} not permitted"

        secret = self.kube.get_secret(namespace, name)
        if secret is None:
            return False, REASON_INVALID_CERT_REF, f"Secret {namespace}/{name} not found"
        if secret.get("type") != SECRET_TYPE_TLS:
            return False, REASON_INVALID_CERT_REF, f"Secret {namespace}/{name} is not of type {SECRET_TYPE_TLS}"
        data = secret.get("data") or {}
        cert = _secret_bytes(data, "tls.crt")
        if not cert:
            return False, REASON_INVALID_CERT_REF, f"Secret {namespace}/{name} missing tls.crt data"
        if not _secret_bytes(data, "tls.key"):
            return False, REASON_INVALID_CERT_REF, f"Secret {namespace}/{name} missing tls.key data"
        if not PEM_BLOCK.search(cert):
            return False, REASON_INVALID_CERT_REF, f"Secret {namespace}/{name} contains invalid certificate PEM data"
        return True, "", ""

    def _listener_status(self, lst: dict, attached: int, generation, tls: RefCheck = (True, "", "")) -> dict:
        proto = str(lst.get("protocol") or "").upper()
        kinds = [k for k in allowed_kinds(lst) if k in ROUTE_KINDS]
        requested = (lst.get("allowedRoutes") or {}).get("kinds") or []
        invalid_kinds = [k.get("kind") for k in requested if k.get("kind") not in ROUTE_KINDS]

        if proto not in SUPPORTED_PROTOCOLS:
            accepted = condition("Accepted", False, "UnsupportedProtocol", f"Protocol {proto} is not supported", generation)
            programmed = condition("Programmed", False, "Invalid", f"Protocol {proto} is not supported", generation)
        else:
            accepted = condition("Accepted", True, "Accepted", "Listener accepted", generation)
            programmed = condition("Programmed", True, "Programmed", "Listener programmed", generation)

        tls_ok, tls_reason, tls_message = tls
        if invalid_kinds:
            resolved = condition(
                "ResolvedRefs", False, "InvalidRouteKinds",
                f"Unsupported route kinds: {', '.join(sorted(invalid_kinds))}", generation,
            )
        elif not tls_ok:
            resolved = condition("ResolvedRefs", False, tls_reason, tls_message, generation)
        else:
            resolved = condition("ResolvedRefs", True, "ResolvedRefs", "References resolved", generation)

        return {
            "name": lst.get("name", ""),
            "supportedKinds": [{"group": GATEWAY_GROUP, "kind": k} for k in kinds],
            "attachedRoutes": attached,
            "conditions": [accepted, programmed, resolved],
        }

    def publish(self, gw: dict, resolved: ResolvedConfig, deploy_error: Optional[ControllerError]) -> None:
        namespace, name = meta(gw).get("namespace", ""), meta(gw).get("name", "")
        gen = meta(gw).get("generation")
        attached = self.attached_routes(gw)

        conditions: List[dict] = [condition("Accepted", True, "Accepted", MSG_ACCEPTED, gen)]
        if deploy_error is None:
            conditions.append(condition("Programmed", True, "Programmed", MSG_PROGRAMMED, gen))
        else:
            conditions.append(
                condition("Programmed", False, "DeploymentFailed", f"Failed to deploy cloudflared: {deploy_error}", gen)
            )
        listeners = [
            self._listener_status(
                lst, attached.get(lst.get("name", ""), 0), gen, self.certificate_refs_status(gw, lst)
            )
            for lst in spec(gw).get("listeners") or []
        ]

        def mutate(status: dict) -> dict:
            out = dict(status)
            out["addresses"] = [{"type": "Hostname", "value": tunnel_address(resolved.tunnel_id)}]
            out["conditions"] = merge_conditions(status.get("conditions") or [], conditions)
            old_listeners = {lst.get("name"): lst for lst in status.get("listeners") or []}
            merged = []
            for lst in listeners:
                lst = dict(lst)
                old = old_listeners.get(lst["name"]) or {}
                lst["conditions"] = merge_conditions(old.get("conditions") or [], lst["conditions"])
                merged.append(lst)
            out["listeners"] = merged
            return out

        if update_status(self.kube, "Gateway", namespace, name, mutate):
            logger.info("[gateway] %s/%s: status updated (programmed=%s)", namespace, name, deploy_error is None)
