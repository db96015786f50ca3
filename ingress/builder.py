# ingress/builder.py
"""Route candidates → ordered tunnel ingress document.

Pure: no I/O, no state. The same set of candidates yields the same document
whatever order they arrive in. The edge evaluates rules first-match-wins, so
more specific rules have to come first.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Set, Tuple

from ingress.matches import GRPC_ROUTE, PathMatch

CATCH_ALL_SERVICE = "http_status:404"
WILDCARD_HOSTNAME = "*"
MAX_INGRESS_RULES = 1000
DEFAULT_PORT = 80


@dataclass(frozen=True)
class Candidate:
    route_kind: str
    route_namespace: str
    route_name: str
    rule_index: int
    match_index: int
    hostname: str
    match: PathMatch
    target: str


@dataclass(frozen=True)
class IngressRule:
    service: str
    hostname: str = ""
    path: str = ""
    exact: bool = False
    path_length: int = 0
    source_route: str = ""
    source_rule_index: int = -1

    @property
    def is_catch_all(self) -> bool:
        return self.service == CATCH_ALL_SERVICE and not self.hostname and not self.path

    def to_dict(self) -> dict:
        d = {}
        if self.hostname:
            d["hostname"] = self.hostname
        if self.path:
            d["path"] = self.path
        d["service"] = self.service
        return d


CATCH_ALL = IngressRule(service=CATCH_ALL_SERVICE)


def scheme_for(route_kind: str, port: int) -> str:
    if port == 443:
        return "https"
    if route_kind == GRPC_ROUTE:
        return "h2c"
    return "http"


def service_url(
    route_kind: str,
    name: str,
    namespace: str,
    port: int = DEFAULT_PORT,
    cluster_domain: str = "cluster.local",
    external_name: str = "",
) -> str:
    scheme = scheme_for(route_kind, port)
    if external_name:
        return f"{scheme}://{external_name}:{port}"
    return f"{scheme}://{name}.{namespace}.svc.{cluster_domain}:{port}"


def path_pattern(match: PathMatch) -> str:
    # "" and "/" match everything, the edge wants no path at all for that
    if match.path in ("", "/"):
        return ""
    if match.exact:
        return match.path
    return match.path + "*"


def _host_key(hostname: str) -> Tuple[int, int, str]:
    """Concrete hosts, then `*.suffix` wildcards (deepest suffix first), bare `*` last.

    First match wins at the edge, so a wildcard must never precede a host it covers.
    """
    if not hostname or hostname == WILDCARD_HOSTNAME:
        return (2, 0, "")
    if hostname.startswith("*."):
        return (1, -hostname.count("."), hostname)
    return (0, 0, hostname)


def sort_key(c: Candidate):
    return (
        _host_key(c.hostname),
        0 if c.match.exact else 1,
        -len(c.match.path),
        c.route_name,
        c.rule_index,
        c.route_namespace,
        c.match.path,
        c.match_index,
        c.target,
    )


def to_rule(c: Candidate) -> IngressRule:
    hostname = "" if c.hostname == WILDCARD_HOSTNAME else c.hostname
    return IngressRule(
        service=c.target,
        hostname=hostname,
        path=path_pattern(c.match),
        exact=c.match.exact,
        path_length=len(c.match.path),
        source_route=f"{c.route_namespace}/{c.route_name}",
        source_rule_index=c.rule_index,
    )


def build_document(candidates: Iterable[Candidate]) -> List[IngressRule]:
    """Sort candidates and append the single catch-all.

    Identical (hostname, path, service) rules are emitted once; the first in
    sort order wins.
    """
    rules: List[IngressRule] = []
    seen: Set[Tuple[str, str, str]] = set()
    for c in sorted(candidates, key=sort_key):
        r = to_rule(c)
        k = (r.hostname, r.path, r.service)
        if k in seen:
            continue
        seen.add(k)
        rules.append(r)
    rules.append(CATCH_ALL)
    return rules


def ensure_catch_all(rules: List[dict]) -> List[dict]:
    """Drop stray catch-alls and put exactly one at the end."""
    catch_all = CATCH_ALL.to_dict()
    out = [r for r in rules if r != catch_all]
    out.append(catch_all)
    return out


def document_dicts(rules: Iterable[IngressRule]) -> List[dict]:
    return [r.to_dict() for r in rules]
