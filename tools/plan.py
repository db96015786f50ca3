#!/usr/bin/env python3
"""Plan-only runner: prints what a route sync would change in the tunnel, without applying.

Usage:
  CF_GATEWAY_CLASS_NAME=cloudflare-tunnel python3 tools/plan.py

Notes:
- Uses your local kubeconfig (same behavior as app.py).
- Reads the remote tunnel configuration but never writes it.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

# Ensure project root is on sys.path when running as a script
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import Controller, load_kube_config  # noqa: E402
from config import load_settings, setup_logging  # noqa: E402
from errors import ControllerError  # noqa: E402
from ingress.builder import document_dicts  # noqa: E402
from ingress.diff import plan_sync, print_plan  # noqa: E402
from k8s import KubeClient  # noqa: E402


def main() -> int:
    settings = load_settings()
    setup_logging("warning", settings.log_format)
    load_kube_config()

    controller = Controller(settings, KubeClient(timeout=settings.kube_timeout), threading.Event())
    routes = controller.routes
    if not routes.ours():
        print(f"[plan] GatewayClass {settings.gateway_class_name} is not managed by {settings.controller_name}")
        return 1

    try:
        resolved, document, _ = routes.desired_document()
        with controller.cloudflare_factory(resolved.api_token) as cf:
            account_id = controller.resolver.account_id(resolved, cf)
            current = cf.get_ingress(account_id, resolved.tunnel_id)
    except ControllerError as e:
        print(f"[plan] error: {e}")
        return 1

    print_plan(plan_sync(resolved.tunnel_id, current, document_dicts(document)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
