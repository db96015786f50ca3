# tunnelconfig.py
"""GatewayClassConfig: the cluster-scoped object that names one Cloudflare tunnel.

A GatewayClass points at it through spec.parametersRef. Parsing fills in the
defaults; resolution reads the referenced secrets and, if needed, asks the
Cloudflare API which account the token belongs to.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from errors import ValidationError
from k8s import CONFIG_GROUP, CONFIG_KIND, meta, spec

logger = logging.getLogger(__name__)

TUNNEL_ID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$")

DEFAULT_API_TOKEN_KEY = "api-token"
DEFAULT_TUNNEL_TOKEN_KEY = "tunnel-token"
ACCOUNT_ID_KEY = "account-id"
DEFAULT_CLOUDFLARED_NAMESPACE = "cloudflare-tunnel-system"
DEFAULT_AWG_INTERFACE_PREFIX = "awg-cfd"
PROTOCOLS = ("", "auto", "quic", "http2")


@dataclass(frozen=True)
class SecretRef:
    name: str
    namespace: str = ""
    key: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict], default_key: str) -> Optional["SecretRef"]:
        if not data:
            return None
        name = data.get("name") or ""
        if not name:
            raise ValidationError("secret reference is missing name")
        return cls(name=name, namespace=data.get("namespace") or "", key=data.get("key") or default_key)


@dataclass(frozen=True)
class AWGConfig:
    secret_name: str
    interface_prefix: str = DEFAULT_AWG_INTERFACE_PREFIX


@dataclass(frozen=True)
class CloudflaredConfig:
    enabled: bool = True
    replicas: int = 1
    namespace: str = DEFAULT_CLOUDFLARED_NAMESPACE
    protocol: str = ""
    awg: Optional[AWGConfig] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CloudflaredConfig":
        data = data or {}
        enabled = data.get("enabled")
        replicas = data.get("replicas")
        if replicas is None:
            replicas = 1
        try:
            replicas = int(replicas)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"cloudflared.replicas must be an integer, got {replicas!r}") from e
        if replicas < 1:
            raise ValidationError(f"cloudflared.replicas must be >= 1, got {replicas}")

        protocol = data.get("protocol") or ""
        if protocol not in PROTOCOLS:
            raise ValidationError(f"cloudflared.protocol must be one of auto, quic, http2; got {protocol!r}")

        awg = None
        awg_raw = data.get("awg") or {}
        if awg_raw.get("secretName"):
            awg = AWGConfig(
                secret_name=awg_raw["secretName"],
                interface_prefix=awg_raw.get("interfacePrefix") or DEFAULT_AWG_INTERFACE_PREFIX,
            )

        return cls(
            enabled=True if enabled is None else bool(enabled),
            replicas=replicas,
            namespace=data.get("namespace") or DEFAULT_CLOUDFLARED_NAMESPACE,
            protocol=protocol,
            awg=awg,
        )


@dataclass(frozen=True)
class TunnelConfig:
    name: str
    tunnel_id: str
    credentials_ref: SecretRef
    account_id: str = ""
    tunnel_token_ref: Optional[SecretRef] = None
    cloudflared: CloudflaredConfig = field(default_factory=CloudflaredConfig)
    generation: int = 0

    @classmethod
    def from_dict(cls, obj: dict) -> "TunnelConfig":
        m = meta(obj)
        s = spec(obj)
        name = m.get("name") or ""

        tunnel_id = s.get("tunnelID") or ""
        if not TUNNEL_ID_RE.match(tunnel_id):
            raise ValidationError(f"tunnelID {tunnel_id!r} is not a valid tunnel UUID")

        creds = SecretRef.from_dict(s.get("cloudflareCredentialsSecretRef"), DEFAULT_API_TOKEN_KEY)
        if creds is None:
            raise ValidationError("cloudflareCredentialsSecretRef is required")

        cloudflared = CloudflaredConfig.from_dict(s.get("cloudflared"))
        token_ref = SecretRef.from_dict(s.get("tunnelTokenSecretRef"), DEFAULT_TUNNEL_TOKEN_KEY)
        if cloudflared.enabled and token_ref is None:
            raise ValidationError("tunnelTokenSecretRef is required when cloudflared is enabled")

        return cls(
            name=name,
            tunnel_id=tunnel_id,
            account_id=s.get("accountID") or "",
            credentials_ref=creds,
            tunnel_token_ref=token_ref,
            cloudflared=cloudflared,
            generation=int(m.get("generation") or 0),
        )


@dataclass(frozen=True)
class ResolvedConfig:
    config: TunnelConfig
    api_token: str
    account_id: str = ""
    tunnel_token: str = ""

    @property
    def tunnel_id(self) -> str:
        return self.config.tunnel_id


def parameters_ref_name(gateway_class: dict) -> str:
    """Return the GatewayClassConfig name a GatewayClass points at, or raise."""
    ref = spec(gateway_class).get("parametersRef") or {}
    if not ref:
        raise ValidationError(f"GatewayClass {meta(gateway_class).get('name')} has no parametersRef")
    if ref.get("group") != CONFIG_GROUP or ref.get("kind") != CONFIG_KIND:
        raise ValidationError(
            f"parametersRef must point at {CONFIG_GROUP}/{CONFIG_KIND}, got {ref.get('group')}/{ref.get('kind')}"
        )
    return ref.get("name") or ""


class ConfigResolver:
    def __init__(self, kube, default_namespace: str, cloudflare_factory=None):
        self.kube = kube
        self.default_namespace = default_namespace
        # callable(api_token) -> CloudflareClient, only used for account auto-detect
        self.cloudflare_factory = cloudflare_factory
        self._account_cache: Dict[str, str] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> TunnelConfig:
        obj = self.kube.get_object(CONFIG_KIND, "", name)
        if obj is None:
            raise ValidationError(f"{CONFIG_KIND} {name} not found")
        return TunnelConfig.from_dict(obj)

    def config_for_class(self, gateway_class: dict) -> TunnelConfig:
        return self.load(parameters_ref_name(gateway_class))

    def _secret_value(self, ref: SecretRef, what: str) -> Dict[str, str]:
        ns = ref.namespace or self.default_namespace
        data = self.kube.get_secret_data(ns, ref.name)
        if data is None:
            raise ValidationError(f"{what} secret {ns}/{ref.name} not found")
        if not data.get(ref.key):
            raise ValidationError(f"{what} secret {ns}/{ref.name} has no key {ref.key!r}")
        return data

    def resolve(self, cfg: TunnelConfig) -> ResolvedConfig:
        creds = self._secret_value(cfg.credentials_ref, "credentials")
        account_id = cfg.account_id or creds.get(ACCOUNT_ID_KEY, "")

        tunnel_token = ""
        if cfg.tunnel_token_ref is not None:
            tunnel_token = self._secret_value(cfg.tunnel_token_ref, "tunnel token")[cfg.tunnel_token_ref.key]
        elif cfg.cloudflared.enabled:
            raise ValidationError("tunnelTokenSecretRef is required when cloudflared is enabled")

        return ResolvedConfig(
            config=cfg,
            api_token=creds[cfg.credentials_ref.key],
            account_id=account_id,
            tunnel_token=tunnel_token,
        )

    def resolve_class(self, gateway_class: dict) -> ResolvedConfig:
        return self.resolve(self.config_for_class(gateway_class))

    def account_id(self, resolved: ResolvedConfig, cf=None) -> str:
        """Return the account id, asking Cloudflare once per config when it isn't configured."""
        if resolved.account_id:
            return resolved.account_id

        name = resolved.config.name
        with self._lock:
            cached = self._account_cache.get(name)
        if cached:
            return cached

        if cf is None:
            if self.cloudflare_factory is None:
                raise ValidationError("account id is not configured and cannot be auto-detected")
            cf = self.cloudflare_factory(resolved.api_token)

        accounts = cf.list_accounts()
        if not accounts:
            raise ValidationError("no Cloudflare accounts visible to the API token")
        if len(accounts) > 1:
            raise ValidationError(
                f"multiple accounts found ({len(accounts)}), please specify {ACCOUNT_ID_KEY} in credentials secret"
            )
        account_id = accounts[0].get("id") or ""
        logger.info("[config] auto-detected account id for %s", name)
        with self._lock:
            self._account_cache[name] = account_id
        return account_id

    def forget(self, name: str) -> None:
        with self._lock:
            self._account_cache.pop(name, None)
