# deploy/cloudflared.py
from __future__ import annotations

from typing import Any, Dict, Optional

from tunnelconfig import DEFAULT_AWG_INTERFACE_PREFIX, AWGConfig, ResolvedConfig

RELEASE_PREFIX = "cfd"
MAX_RELEASE_NAME = 53

AWG_IMAGE = "ghcr.io/zeozeozeo/amneziawg-client:latest"
WAIT_IMAGE = "busybox:1.36"

# Reserves the first free <prefix>N interface with a lock file, then brings it up.
AWG_WRAPPER_SCRIPT = """#!/bin/sh
set -e
PREFIX="{prefix}"
IFACE_FILE="/run/awg/interface-name"
CONFIG_DIR="/run/awg"
LOCK_DIR="/tmp/awg-locks"

mkdir -p "$LOCK_DIR"

find_and_reserve_interface() {{
  N=0
  while true; do
    LOCK_FILE="$LOCK_DIR/${{PREFIX}}${{N}}.lock"
    if (set -C; echo $$ > "$LOCK_FILE") 2>/dev/null; then
      if ! ip link show "${{PREFIX}}${{N}}" >/dev/null 2>&1; then
        echo "${{PREFIX}}${{N}}"
        return 0
      fi
      rm -f "$LOCK_FILE"
    fi
    N=$((N + 1))
    if [ "$N" -gt 100 ]; then
      echo "ERROR: Could not find available interface number" >&2
      return 1
    fi
  done
}}

IFACE=$(find_and_reserve_interface)
if [ -z "$IFACE" ]; then
  exit 1
fi

echo "$IFACE" > "$IFACE_FILE"
echo "Using AWG interface: $IFACE"

for conf in /config/*.conf; do
  if [ -f "$conf" ]; then
    cp "$conf" "${{CONFIG_DIR}}/${{IFACE}}.conf"
    break
  fi
done

/usr/bin/awg-quick up "${{CONFIG_DIR}}/${{IFACE}}.conf"

exec sleep infinity
"""

AWG_PRESTOP_SCRIPT = """IFACE=$(cat /run/awg/interface-name 2>/dev/null || echo "")
if [ -n "$IFACE" ]; then
  /usr/bin/awg-quick down "/run/awg/${IFACE}.conf" 2>/dev/null || true
  ip link delete "$IFACE" 2>/dev/null || true
fi"""


def release_name(gateway_namespace: str, gateway_name: str) -> str:
    """cfd-<ns>-<name>, cut to helm's 53 character limit."""
    name = f"{RELEASE_PREFIX}-{gateway_namespace}-{gateway_name}"
    if len(name) > MAX_RELEASE_NAME:
        name = name[:MAX_RELEASE_NAME]
    return name.rstrip("-")


def sidecar_values(awg: AWGConfig) -> Dict[str, Any]:
    prefix = awg.interface_prefix or DEFAULT_AWG_INTERFACE_PREFIX
    return {
        "initContainers": [
            {
                "name": "wait-for-awg",
                "image": WAIT_IMAGE,
                "command": ["sh", "-c", "echo 'Waiting for AWG...' && sleep 5 && echo 'Done'"],
                "securityContext": {"runAsUser": 0, "runAsNonRoot": False},
            }
        ],
        "containers": [
            {
                "name": "amneziawg",
                "image": AWG_IMAGE,
                "imagePullPolicy": "IfNotPresent",
                "stdin": True,
                "tty": True,
                "command": ["sh", "-c", AWG_WRAPPER_SCRIPT.format(prefix=prefix)],
                "securityContext": {"privileged": True, "runAsUser": 0, "runAsNonRoot": False},
                "lifecycle": {"preStop": {"exec": {"command": ["sh", "-c", AWG_PRESTOP_SCRIPT]}}},
                "volumeMounts": [
                    {"name": "awg-config", "mountPath": "/config", "readOnly": True},
                    {"name": "awg-runtime", "mountPath": "/run/awg"},
                    {"name": "tun-device", "mountPath": "/dev/net/tun"},
                ],
                "resources": {
                    "requests": {"cpu": "10m", "memory": "32Mi"},
                    "limits": {"memory": "64Mi"},
                },
            }
        ],
        "extraVolumes": [
            {"name": "awg-config", "secret": {"secretName": awg.secret_name}},
            {"name": "awg-runtime", "emptyDir": {"medium": "Memory"}},
            {"name": "tun-device", "hostPath": {"path": "/dev/net/tun", "type": "CharDevice"}},
        ],
    }


def build_values(
    tunnel_token: str,
    replicas: int = 1,
    protocol: str = "",
    awg: Optional[AWGConfig] = None,
) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "cloudflare": {"mode": "remote", "tunnelToken": tunnel_token},
        "replicaCount": replicas,
    }
    if protocol:
        values["protocol"] = protocol
    if awg is not None:
        values["sidecar"] = sidecar_values(awg)
    return values


def values_for(resolved: ResolvedConfig) -> Dict[str, Any]:
    cfd = resolved.config.cloudflared
    return build_values(resolved.tunnel_token, cfd.replicas, cfd.protocol, cfd.awg)
