from __future__ import annotations

import itertools
import random

from ingress.builder import (
    CATCH_ALL_SERVICE,
    Candidate,
    build_document,
    document_dicts,
    ensure_catch_all,
    path_pattern,
    service_url,
)
from ingress.matches import GRPC_ROUTE, HTTP_ROUTE, PathMatch, grpc_rule_matches, http_rule_matches, rule_warnings


def _cand(host: str, path: str, exact: bool = False, route: str = "r", rule: int = 0, target: str = "http://svc:80") -> Candidate:
    return Candidate(HTTP_ROUTE, "default", route, rule, 0, host, PathMatch(path, exact), target)


def test_ordering_exact_before_prefix_then_next_host() -> None:
    doc = build_document([
        _cand("b", "/", exact=True),
        _cand("a", "/", exact=False),
        _cand("a", "/x", exact=True),
    ])
    assert [(r.hostname, r.exact) for r in doc[:3]] == [("a", True), ("a", False), ("b", True)]
    assert doc[0].path == "/x"
    assert doc[-1].service == CATCH_ALL_SERVICE


def test_document_is_identical_for_any_input_order() -> None:
    cands = [
        _cand("a.example.com", "/api", route="api"),
        _cand("a.example.com", "/api/v1", route="api-v1"),
        _cand("a.example.com", "/", route="web"),
        _cand("b.example.com", "/login", exact=True, route="auth"),
        _cand("*", "/", route="fallback"),
        _cand("a.example.com", "/api", route="api", rule=1, target="http://other:80"),
    ]
    expected = document_dicts(build_document(cands))
    rng = random.Random(7)
    for _ in range(20):
        shuffled = list(cands)
        rng.shuffle(shuffled)
        assert document_dicts(build_document(shuffled)) == expected


def test_catch_all_exactly_once_and_last() -> None:
    for cands in ([], [_cand("a", "/")], [_cand("a", "/x"), _cand("b", "/y", exact=True)]):
        doc = document_dicts(build_document(cands))
        assert doc[-1] == {"service": CATCH_ALL_SERVICE}
        assert doc.count({"service": CATCH_ALL_SERVICE}) == 1


def test_longer_prefix_first_and_wildcard_host_last() -> None:
    doc = build_document([
        _cand("", "/", route="any"),
        _cand("h", "/a", route="short"),
        _cand("h", "/a/b/c", route="long"),
    ])
    assert [r.source_route for r in doc[:3]] == ["default/long", "default/short", "default/any"]
    assert doc[2].hostname == ""


def test_tie_break_by_route_name_then_rule_index() -> None:
    doc = build_document([
        _cand("h", "/p", route="zeta", rule=0, target="http://z:80"),
        _cand("h", "/p", route="alpha", rule=1, target="http://a1:80"),
        _cand("h", "/p", route="alpha", rule=0, target="http://a0:80"),
    ])
    assert [r.service for r in doc[:3]] == ["http://a0:80", "http://a1:80", "http://z:80"]


def test_identical_rules_are_emitted_once() -> None:
    doc = build_document([_cand("h", "/p", route="one"), _cand("h", "/p", route="two")])
    assert len(doc) == 2
    assert doc[0].source_route == "default/one"


def test_path_pattern() -> None:
    assert path_pattern(PathMatch("/", False)) == ""
    assert path_pattern(PathMatch("", False)) == ""
    assert path_pattern(PathMatch("/api", False)) == "/api*"
    assert path_pattern(PathMatch("/login", True)) == "/login"


def test_service_url_schemes() -> None:
    assert service_url(HTTP_ROUTE, "web", "apps") == "http://web.apps.svc.cluster.local:80"
    assert service_url(GRPC_ROUTE, "api", "apps", 9000) == "h2c://api.apps.svc.cluster.local:9000"
    assert service_url(HTTP_ROUTE, "web", "apps", 443) == "https://web.apps.svc.cluster.local:443"
    assert service_url(HTTP_ROUTE, "ext", "apps", 8080, external_name="db.example.net") == "http://db.example.net:8080"


def test_http_matches_default_to_root_prefix() -> None:
    matches, warnings = http_rule_matches({"backendRefs": [{"name": "web"}]})
    assert matches == [PathMatch("/", False)]
    assert warnings == []


def test_http_matches_warn_on_unsupported_fields() -> None:
    matches, warnings = http_rule_matches({
        "matches": [
            {"path": {"type": "Exact", "value": "/login"}, "headers": [{"name": "x", "value": "y"}]},
            {"path": {"type": "PathPrefix", "value": "/static"}},
        ]
    })
    assert matches == [PathMatch("/login", True), PathMatch("/static", False)]
    assert warnings == ["header matches are not supported"]


def test_grpc_service_and_method_mapping() -> None:
    matches, _ = grpc_rule_matches({
        "matches": [
            {"method": {"service": "pkg.Greeter", "method": "SayHello"}},
            {"method": {"service": "pkg.Health"}},
            {"method": {}},
        ]
    })
    assert matches == [
        PathMatch("/pkg.Greeter/SayHello", True),
        PathMatch("/pkg.Health/", False),
        PathMatch("", False),
    ]


def test_grpc_rule_without_matches_covers_all_paths() -> None:
    matches, _ = grpc_rule_matches({})
    assert [path_pattern(m) for m in matches] == [""]


def test_rule_warnings_for_filters_and_weights() -> None:
    warnings = rule_warnings({
        "filters": [{"type": "RequestHeaderModifier"}],
        "backendRefs": [{"name": "a", "weight": 90}, {"name": "b", "weight": 10}],
    })
    assert "filters are not supported" in warnings
    assert any("highest-weight" in w for w in warnings)


def test_ensure_catch_all_moves_stray_catch_all_to_end() -> None:
    rules = [{"service": CATCH_ALL_SERVICE}, {"hostname": "a", "service": "http://a:80"}]
    assert ensure_catch_all(rules) == [{"hostname": "a", "service": "http://a:80"}, {"service": CATCH_ALL_SERVICE}]


def test_all_permutations_of_small_set_agree() -> None:
    cands = [_cand("a", "/x", True), _cand("a", "/", False), _cand("b", "/", True)]
    docs = {tuple(map(repr, build_document(p))) for p in itertools.permutations(cands)}
    assert len(docs) == 1


def test_wildcard_hosts_follow_the_hosts_they_cover() -> None:
    doc = build_document([
        _cand("*.example.com", "/", route="wild"),
        _cand("api.example.com", "/", route="api"),
        _cand("*", "/", route="fallback"),
        _cand("*.eu.example.com", "/", route="eu"),
        _cand("zeta.org", "/", route="zeta"),
    ])
    assert [r.hostname for r in doc[:-1]] == [
        "api.example.com",
        "zeta.org",
        "*.eu.example.com",
        "*.example.com",
        "",
    ]
