# ingress/diff.py
from __future__ import annotations

from typing import Dict, List, Tuple

RuleKey = Tuple[str, str, str]  # (hostname, path, service)


class SyncPlan(dict):
    """A small, json-serializable planning object."""


def rule_key(rule: dict) -> RuleKey:
    rule = rule or {}
    return (rule.get("hostname") or "", rule.get("path") or "", rule.get("service") or "")


def normalize(rules: List[dict]) -> List[RuleKey]:
    # originRequest and friends don't change which rule matches, ignore them
    return [rule_key(r) for r in rules or []]


def documents_equal(current: List[dict], desired: List[dict]) -> bool:
    """Ordered comparison: position matters because the edge is first-match-wins."""
    return normalize(current) == normalize(desired)


def _fmt(k: RuleKey) -> str:
    host, path, service = k
    return f"{host or '*'}{path or ''} -> {service}"


def plan_sync(tunnel_id: str, current: List[dict], desired: List[dict]) -> SyncPlan:
    """Compute what an apply *would* do, without touching anything."""
    current_keys = normalize(current)
    desired_keys = normalize(desired)
    current_set = set(current_keys)
    desired_set = set(desired_keys)

    to_add = sorted(_fmt(k) for k in desired_set - current_set)
    to_remove = sorted(_fmt(k) for k in current_set - desired_set)
    reordered = not to_add and not to_remove and current_keys != desired_keys

    return SyncPlan(
        tunnel=tunnel_id,
        changed=current_keys != desired_keys,
        counts={"add": len(to_add), "remove": len(to_remove), "total": len(desired_keys)},
        add=to_add,
        remove=to_remove,
        reordered=reordered,
    )


def print_plan(plan: SyncPlan) -> None:
    counts = plan.get("counts", {})
    print(
        f"[plan] tunnel={plan.get('tunnel')} changed={plan.get('changed')} "
        f"add={counts.get('add', 0)} remove={counts.get('remove', 0)} total={counts.get('total', 0)}"
    )
    if plan.get("reordered"):
        print("[plan] same rules, different order")
    for k in ("add", "remove"):
        items = plan.get(k, []) or []
        if not items:
            continue
        print(f"[plan] {k}:")
        for name in items:
            print(f"  - {name}")


def merge_config(current_config: Dict, ingress: List[dict]) -> Dict:
    """Replace only the ingress list, keep every other key the remote config carries."""
    cfg = dict(current_config or {})
    cfg["ingress"] = list(ingress)
    return cfg
