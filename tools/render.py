#!/usr/bin/env python3
"""tools/render.py

Render the ingress document the controller would push to the tunnel, as YAML.

Usage examples:
  python3 tools/render.py > /tmp/ingress.yaml

  # Or just print to stdout:
  python3 tools/render.py | head

Notes:
- This does NOT apply anything and does not talk to Cloudflare.
- Output has the same shape as the `ingress` key of a cloudflared config file.
"""

from __future__ import annotations

import os
import sys
import threading

import yaml

# Allow executing from tools/ without installing as a package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app import Controller, load_kube_config  # noqa: E402
from config import load_settings, setup_logging  # noqa: E402
from errors import ControllerError  # noqa: E402
from ingress.builder import document_dicts  # noqa: E402
from k8s import KubeClient  # noqa: E402


def render(document: list, out=sys.stdout) -> None:
    yaml.safe_dump({"ingress": document}, out, sort_keys=False)


def main() -> int:
    settings = load_settings()
    setup_logging("warning", settings.log_format)
    load_kube_config()

    controller = Controller(settings, KubeClient(timeout=settings.kube_timeout), threading.Event())
    try:
        resolved, document, _ = controller.routes.desired_document()
    except ControllerError as e:
        print(f"[render] error: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(f"# tunnel: {resolved.tunnel_id}\n")
    try:
        render(document_dicts(document))
    except BrokenPipeError:
        # Common when piping to `head`; exit cleanly
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
