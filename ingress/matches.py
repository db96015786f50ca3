# ingress/matches.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

HTTP_ROUTE = "HTTPRoute"
GRPC_ROUTE = "GRPCRoute"
ROUTE_KINDS = (HTTP_ROUTE, GRPC_ROUTE)


@dataclass(frozen=True)
class PathMatch:
    path: str
    exact: bool = False


def http_rule_matches(rule: dict) -> Tuple[List[PathMatch], List[str]]:
    """Translate HTTPRoute rule matches into path matches.

    Only the path is honoured; header/query/method matching has no
    equivalent in tunnel ingress rules and is reported back as a warning.
    """
    warnings: List[str] = []
    matches = (rule or {}).get("matches") or []
    if not matches:
        return [PathMatch("/", False)], warnings

    out: List[PathMatch] = []
    for m in matches:
        p = (m or {}).get("path") or {}
        ptype = p.get("type") or "PathPrefix"
        value = p.get("value") or "/"
        if ptype == "Exact":
            out.append(PathMatch(value, True))
        elif ptype == "RegularExpression":
            warnings.append(f"RegularExpression path {value!r} treated as prefix")
            out.append(PathMatch(value, False))
        else:
            out.append(PathMatch(value, False))

        if m.get("headers"):
            warnings.append("header matches are not supported")
        if m.get("queryParams"):
            warnings.append("query parameter matches are not supported")
        if m.get("method"):
            warnings.append("method matches are not supported")
    return out, warnings


def grpc_rule_matches(rule: dict) -> Tuple[List[PathMatch], List[str]]:
    """gRPC service/method → HTTP/2 path.

    service+method: exact /svc/method
    service only:   prefix /svc/
    anything else:  every path
    """
    warnings: List[str] = []
    matches = (rule or {}).get("matches") or []
    if not matches:
        return [PathMatch("", False)], warnings

    out: List[PathMatch] = []
    for m in matches:
        method = (m or {}).get("method") or {}
        service = method.get("service") or ""
        name = method.get("method") or ""
        if method.get("type") == "RegularExpression":
            warnings.append("RegularExpression gRPC method matches are not supported")
            out.append(PathMatch("", False))
        elif service and name:
            out.append(PathMatch(f"/{service}/{name}", True))
        elif service:
            out.append(PathMatch(f"/{service}/", False))
        else:
            if name:
                warnings.append(f"method-only match {name!r} cannot be expressed, matching all paths")
            out.append(PathMatch("", False))

        if m.get("headers"):
            warnings.append("header matches are not supported")
    return out, warnings


def rule_matches(kind: str, rule: dict) -> Tuple[List[PathMatch], List[str]]:
    if kind == GRPC_ROUTE:
        return grpc_rule_matches(rule)
    return http_rule_matches(rule)


def rule_warnings(rule: dict) -> List[str]:
    """Features on the rule itself (not its matches) that get dropped."""
    warnings: List[str] = []
    if (rule or {}).get("filters"):
        warnings.append("filters are not supported")
    refs = (rule or {}).get("backendRefs") or []
    if len(refs) > 1:
        warnings.append("traffic splitting is not supported, only the highest-weight backend is used")
    if refs and all(r.get("weight") == 0 for r in refs):
        warnings.append("every backend has weight 0, the rule gets no traffic")
    if any(r.get("filters") for r in refs):
        warnings.append("backend filters are not supported")
    return warnings
