# controllers/gatewayclass.py
from __future__ import annotations

import logging
from typing import List, Optional

from errors import ValidationError
from k8s import CONFIG_KIND, condition, merge_conditions, meta, spec, update_status
from tunnelconfig import TunnelConfig

logger = logging.getLogger(__name__)

CONFIG_REVALIDATE = 300.0


class GatewayClassReconciler:
    """Marks GatewayClasses that name our controller as Accepted."""

    def __init__(self, kube, controller_name: str):
        self.kube = kube
        self.controller_name = controller_name

    def reconcile(self, name: str) -> Optional[float]:
        gc = self.kube.get_object("GatewayClass", "", name)
        if gc is None or spec(gc).get("controllerName") != self.controller_name:
            return None
        gen = meta(gc).get("generation")
        desired = [
            condition("Accepted", True, "Accepted", "GatewayClass is accepted by cloudflare-tunnel controller", gen),
            condition("SupportedVersion", True, "SupportedVersion", "Gateway API CRD version is supported", gen),
        ]

        def mutate(status: dict) -> dict:
            out = dict(status)
            out["conditions"] = merge_conditions(status.get("conditions") or [], desired)
            return out

        if update_status(self.kube, "GatewayClass", "", name, mutate):
            logger.info("[gatewayclass] %s accepted", name)
        return None


class TunnelConfigReconciler:
    """Surfaces config errors as Valid / SecretsResolved conditions on the config object."""

    def __init__(self, kube, resolver):
        self.kube = kube
        self.resolver = resolver

    def reconcile(self, name: str) -> Optional[float]:
        obj = self.kube.get_object(CONFIG_KIND, "", name)
        if obj is None:
            self.resolver.forget(name)
            return None
        gen = meta(obj).get("generation")

        conditions: List[dict] = []
        try:
            cfg = TunnelConfig.from_dict(obj)
        except ValidationError as e:
            conditions.append(condition("Valid", False, "Invalid", str(e), gen))
            cfg = None
        else:
            conditions.append(condition("Valid", True, "Valid", "Configuration is valid", gen))

        if cfg is not None:
            try:
                self.resolver.resolve(cfg)
            except ValidationError as e:
                logger.warning("[tunnelconfig] %s: %s", name, e)
                conditions.append(
                    condition("SecretsResolved", False, "SecretsMissing", f"One or more referenced secrets are missing or invalid: {e}", gen)
                )
            else:
                conditions.append(
                    condition("SecretsResolved", True, "SecretsFound", "All referenced secrets exist and contain required keys", gen)
                )
            # account may differ after an edit
            self.resolver.forget(name)

        def mutate(status: dict) -> dict:
            out = dict(status)
            out["conditions"] = merge_conditions(status.get("conditions") or [], conditions)
            return out

        update_status(self.kube, CONFIG_KIND, "", name, mutate)
        return CONFIG_REVALIDATE
