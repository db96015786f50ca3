# config.py
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import structlog
import yaml

from errors import ValidationError

ENV_PREFIX = "CF_"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}
LOG_FORMATS = ("text", "json")

# shared by stdlib records and structlog loggers
LOG_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


@dataclass
class Settings:
    gateway_class_name: str = "cloudflare-tunnel"
    controller_name: str = "cf.k8s.lex.la/tunnel-controller"
    namespace: str = field(default_factory=lambda: os.environ.get("POD_NAMESPACE", "cloudflare-tunnel-system"))
    cluster_domain: str = "cluster.local"

    workers: int = 4
    resync_period: float = 600.0

    leader_elect: bool = True
    leader_election_name: str = "cloudflare-tunnel-gateway-controller-leader"
    lease_duration: float = 15.0
    renew_deadline: float = 10.0
    retry_period: float = 2.0

    api_base_url: str = "https://api.cloudflare.com/client/v4"
    api_timeout: float = 30.0
    kube_timeout: float = 30.0
    sync_max_attempts: int = 5
    sync_base_delay: float = 1.0
    sync_max_delay: float = 30.0

    helm_binary: str = "helm"
    helm_chart: str = "oci://ghcr.io/lexfrei/charts/cloudflare-tunnel"
    helm_chart_version: str = ""
    helm_timeout: float = 300.0

    log_level: str = "info"
    log_format: str = "text"

    def validate(self) -> None:
        if self.log_level.lower() not in LOG_LEVELS:
            raise ValidationError(f"invalid log level {self.log_level!r}")
        if self.log_format.lower() not in LOG_FORMATS:
            raise ValidationError(f"invalid log format {self.log_format!r} (want text or json)")
        if self.workers < 1:
            raise ValidationError("workers must be >= 1")
        if self.sync_max_attempts < 1:
            raise ValidationError("sync_max_attempts must be >= 1")
        if not self.gateway_class_name:
            raise ValidationError("gateway_class_name must not be empty")
        if not self.controller_name:
            raise ValidationError("controller_name must not be empty")
        if self.leader_elect and self.renew_deadline >= self.lease_duration:
            raise ValidationError("renew_deadline must be shorter than lease_duration")


def _coerce(raw: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return str(raw)


def _apply(settings: Settings, values: Mapping[str, Any], source: str) -> None:
    known = {f.name for f in fields(settings)}
    for key, raw in values.items():
        name = str(key).replace("-", "_").lower()
        if name not in known:
            raise ValidationError(f"unknown setting {key!r} in {source}")
        try:
            setattr(settings, name, _coerce(raw, getattr(settings, name)))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"bad value for {key!r} in {source}: {e}") from e


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    out: Dict[str, str] = {}
    for k, v in environ.items():
        if not k.startswith(ENV_PREFIX):
            continue
        name = k[len(ENV_PREFIX):].lower()
        if name in known:
            out[name] = v
    return out


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Defaults <- YAML file <- CF_* env vars <- explicit overrides."""
    environ = os.environ if environ is None else environ
    settings = Settings()

    path = path or environ.get("CF_CONFIG_FILE")
    if path:
        try:
            with open(path) as fh:
                data = yaml.safe_load(fh) or {}
        except OSError as e:
            raise ValidationError(f"cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ValidationError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"config file {path} must contain a mapping")
        _apply(settings, data, path)

    _apply(settings, env_overrides(environ), "environment")
    if overrides:
        _apply(settings, overrides, "overrides")

    settings.validate()
    return settings


def log_formatter(fmt: str = "text") -> structlog.stdlib.ProcessorFormatter:
    """One line per record: JSON objects for "json", aligned key=value text otherwise."""
    if fmt == "json":
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=False)]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=LOG_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def setup_logging(level: str = "info", fmt: str = "text") -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *LOG_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(log_formatter(fmt))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
    # kubernetes client and httpx are noisy at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
