# controllers/routes.py
"""Full resync of every HTTPRoute/GRPCRoute into the tunnel document.

Never incremental: each pass lists everything, rebuilds the whole document
and hands it to the sync engine, which only writes when it changed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from controllers.backends import (
    BackendFailure,
    BackendResolver,
    backend_weight,
    failure_reason,
    select_highest_weight,
)
from controllers.binding import REASON_NO_PARENT, Binding, bind, is_gateway_ref, parent_namespace
from errors import ControllerError, ValidationError
from ingress.builder import Candidate, IngressRule, build_document
from ingress.matches import ROUTE_KINDS, rule_matches, rule_warnings
from k8s import condition, merge_conditions, meta, spec, update_status
from metrics import METRICS
from tunnelconfig import ResolvedConfig

logger = logging.getLogger(__name__)

CONFIG_ERROR_REQUEUE = 30.0
MSG_ACCEPTED = "Route accepted and programmed in Cloudflare Tunnel"

RouteKey = Tuple[str, str, str]  # (kind, namespace, name)


@dataclass
class RouteState:
    kind: str
    route: dict
    bindings: List[Binding] = field(default_factory=list)
    failures: List[BackendFailure] = field(default_factory=list)
    rules: int = 0

    @property
    def key(self) -> RouteKey:
        m = meta(self.route)
        return (self.kind, m.get("namespace", ""), m.get("name", ""))

    @property
    def owned(self) -> bool:
        return any(b.accepted for b in self.bindings)


class RouteReconciler:
    def __init__(
        self,
        kube,
        resolver,
        engine,
        cloudflare_factory: Callable,
        gateway_class_name: str,
        controller_name: str,
        cluster_domain: str = "cluster.local",
        metrics=None,
    ):
        self.kube = kube
        self.resolver = resolver
        self.engine = engine
        self.cloudflare_factory = cloudflare_factory
        self.gateway_class_name = gateway_class_name
        self.controller_name = controller_name
        self.cluster_domain = cluster_domain
        self.metrics = metrics or METRICS
        self._ns_labels: Dict[str, dict] = {}

    # ─────────────────────────────────────────────
    # collection
    # ─────────────────────────────────────────────
    def _namespace_labels(self, name: str) -> dict:
        if name not in self._ns_labels:
            ns = self.kube.get_namespace(name)
            self._ns_labels[name] = (meta(ns).get("labels") or {}) if ns else {}
        return self._ns_labels[name]

    def _our_gateways(self) -> Dict[Tuple[str, str], dict]:
        out: Dict[Tuple[str, str], dict] = {}
        for gw in self.kube.list_objects("Gateway"):
            if spec(gw).get("gatewayClassName") != self.gateway_class_name:
                continue
            if meta(gw).get("deletionTimestamp"):
                continue
            m = meta(gw)
            out[(m.get("namespace", ""), m.get("name", ""))] = gw
        return out

    def collect(self, gateways: Dict[Tuple[str, str], dict]) -> List[RouteState]:
        """Every route with at least one parentRef that points at one of our Gateways."""
        states: List[RouteState] = []
        for kind in ROUTE_KINDS:
            for route in self.kube.list_objects(kind):
                st = RouteState(kind=kind, route=route)
                for i, ref in enumerate(spec(route).get("parentRefs") or []):
                    if not is_gateway_ref(ref):
                        continue
                    gw = gateways.get((parent_namespace(route, ref), ref.get("name", "")))
                    if gw is None:
                        continue
                    st.bindings.append(bind(route, kind, i, ref, gw, self._namespace_labels))
                if st.bindings:
                    states.append(st)
        return states

    def candidates_for(self, st: RouteState, backends: BackendResolver) -> List[Candidate]:
        m = meta(st.route)
        ns, name = m.get("namespace", ""), m.get("name", "")
        hostnames: List[str] = []
        for b in st.bindings:
            if b.accepted:
                for h in b.hostnames:
                    if h not in hostnames:
                        hostnames.append(h)

        out: List[Candidate] = []
        warnings: List[str] = []
        for rule_index, rule in enumerate(spec(st.route).get("rules") or []):
            matches, match_warnings = rule_matches(st.kind, rule)
            warnings.extend(match_warnings)
            warnings.extend(rule_warnings(rule))

            weights: List[int] = []
            targets: List[str] = []
            for ref in rule.get("backendRefs") or []:
                try:
                    target = backends.resolve(st.kind, ns, ref)
                except ControllerError as e:
                    if e.retryable:
                        raise
                    reason = failure_reason(e)
                    backend = f"{ref.get('namespace') or ns}/{ref.get('name', '')}"
                    st.failures.append(BackendFailure(st.kind, ns, name, rule_index, backend, reason, e.message))
                    self.metrics.record_failed_backend_ref(st.kind, reason)
                    logger.warning("[routes] %s %s/%s: dropped backend %s: %s", st.kind, ns, name, backend, e.message)
                    continue
                weight = backend_weight(ref)
                if weight > 0:
                    weights.append(weight)
                    targets.append(target)

            chosen = select_highest_weight(weights)
            if chosen < 0:
                continue
            for match_index, match in enumerate(matches):
                for host in hostnames:
                    out.append(Candidate(st.kind, ns, name, rule_index, match_index, host, match, targets[chosen]))

        if warnings:
            logger.warning(
                "[routes] route configuration partially applied: %s %s/%s: %s",
                st.kind, ns, name, "; ".join(sorted(set(warnings))),
            )
        st.rules = len(out)
        return out

    # ─────────────────────────────────────────────
    # sync
    # ─────────────────────────────────────────────
    def desired_document(self) -> Tuple[ResolvedConfig, List[IngressRule], List[RouteState]]:
        """Resolve the class config and build the document. Writes nothing.

        Raises ValidationError when the tunnel config cannot be resolved.
        """
        self._ns_labels = {}
        gc = self.kube.get_object("GatewayClass", "", self.gateway_class_name)
        resolved = self.resolver.resolve_class(gc)

        gateways = self._our_gateways()
        states = self.collect(gateways)
        owned = [st for st in states if st.owned]

        backends = BackendResolver(self.kube, self.cluster_domain)
        candidates: List[Candidate] = []
        for st in owned:
            candidates.extend(self.candidates_for(st, backends))

        document = build_document(candidates)
        for kind in ROUTE_KINDS:
            self.metrics.set_synced_routes(kind, sum(1 for st in owned if st.kind == kind))
        logger.info("[routes] %d routes (%d rules) for tunnel %s", len(owned), len(document), resolved.tunnel_id)
        return resolved, document, states

    def ours(self) -> bool:
        gc = self.kube.get_object("GatewayClass", "", self.gateway_class_name)
        return gc is not None and spec(gc).get("controllerName") == self.controller_name

    def sync_all(self) -> Optional[float]:
        """One full resync. Returns a requeue delay or None."""
        if not self.ours():
            logger.debug("[routes] GatewayClass %s is not ours, nothing to sync", self.gateway_class_name)
            return None

        try:
            resolved, document, states = self.desired_document()
        except ValidationError as e:
            logger.error("[routes] cannot resolve tunnel config for class %s: %s", self.gateway_class_name, e)
            return CONFIG_ERROR_REQUEUE

        cf = self.cloudflare_factory(resolved.api_token)
        try:
            account_id = self.resolver.account_id(resolved, cf)
            result = self.engine.apply(resolved.tunnel_id, account_id, document, cf)
        except ControllerError as e:
            logger.error("[routes] sync to tunnel %s failed: %s", resolved.tunnel_id, e)
            self.publish(states, sync_error=e)
            raise
        finally:
            close = getattr(cf, "close", None)
            if close is not None:
                close()

        logger.info("[routes] tunnel %s %s", resolved.tunnel_id, "updated" if result.changed else "unchanged")
        self.publish(states)
        return None

    # ─────────────────────────────────────────────
    # status
    # ─────────────────────────────────────────────
    def _parent_status(self, st: RouteState, b: Binding, sync_error: Optional[ControllerError]) -> dict:
        gen = meta(st.route).get("generation")
        if not b.accepted:
            accepted = condition("Accepted", False, b.reason, b.message, gen)
        elif sync_error is not None:
            accepted = condition("Accepted", False, REASON_NO_PARENT, f"Failed to sync to Cloudflare Tunnel: {sync_error}", gen)
        else:
            accepted = condition("Accepted", True, "Accepted", MSG_ACCEPTED, gen)

        if st.failures:
            first = st.failures[0]
            msg = "; ".join(f"{f.backend}: {f.message}" for f in st.failures)
            resolved = condition("ResolvedRefs", False, first.reason, msg, gen)
        else:
            resolved = condition("ResolvedRefs", True, "ResolvedRefs", "All references resolved", gen)

        return {
            "parentRef": b.parent_ref,
            "controllerName": self.controller_name,
            "conditions": [accepted, resolved],
        }

    def publish(self, states: List[RouteState], sync_error: Optional[ControllerError] = None) -> None:
        failed: Optional[ControllerError] = None
        for st in states:
            desired = [self._parent_status(st, b, sync_error) for b in st.bindings]
            kind, ns, name = st.key

            def mutate(status: dict, desired=desired) -> dict:
                current = list(status.get("parents") or [])
                ours = {
                    _ref_key(p.get("parentRef") or {}): p
                    for p in current
                    if p.get("controllerName") == self.controller_name
                }
                others = [p for p in current if p.get("controllerName") != self.controller_name]
                merged = []
                for d in desired:
                    old = ours.get(_ref_key(d["parentRef"]))
                    d = dict(d)
                    d["conditions"] = merge_conditions((old or {}).get("conditions") or [], d["conditions"])
                    merged.append(d)
                out = dict(status)
                out["parents"] = others + merged
                return out

            try:
                update_status(self.kube, kind, ns, name, mutate)
            except ControllerError as e:
                # keep going, one bad route status must not block the others
                logger.warning("[routes] status update for %s %s/%s failed: %s", kind, ns, name, e)
                failed = failed or e
        if failed is not None and sync_error is None:
            raise failed


def _ref_key(ref: dict) -> Tuple[str, str, str, str, str]:
    return (
        ref.get("group") or "",
        ref.get("kind") or "Gateway",
        ref.get("namespace") or "",
        ref.get("name") or "",
        ref.get("sectionName") or "",
    )
