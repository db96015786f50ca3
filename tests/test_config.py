from __future__ import annotations

import json
import logging
import sys

import pytest

from config import Settings, env_overrides, load_settings, log_formatter
from errors import ValidationError


def test_defaults() -> None:
    s = load_settings(environ={})
    assert s.gateway_class_name == "cloudflare-tunnel"
    assert s.workers == 4
    assert s.leader_elect is True
    assert s.resync_period == 600.0


def test_env_overrides_are_coerced() -> None:
    s = load_settings(environ={"CF_WORKERS": "8", "CF_LEADER_ELECT": "false", "CF_LOG_FORMAT": "json", "OTHER": "x"})
    assert s.workers == 8
    assert s.leader_elect is False
    assert s.log_format == "json"


def test_env_overrides_ignore_unknown_keys() -> None:
    assert env_overrides({"CF_NOPE": "1", "CF_WORKERS": "2"}) == {"workers": "2"}


def test_file_then_env_then_overrides(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("gateway_class_name: from-file\nworkers: 2\nhelm-timeout: 120\n")
    s = load_settings(environ={"CF_CONFIG_FILE": str(path), "CF_WORKERS": "3"}, overrides={"log_level": "debug"})
    assert s.gateway_class_name == "from-file"
    assert s.workers == 3
    assert s.helm_timeout == 120.0
    assert s.log_level == "debug"


def test_unknown_key_in_file(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("bogus: 1\n")
    with pytest.raises(ValidationError, match="unknown setting"):
        load_settings(path=str(path), environ={})


def test_invalid_values() -> None:
    with pytest.raises(ValidationError):
        load_settings(environ={"CF_WORKERS": "many"})
    with pytest.raises(ValidationError):
        load_settings(environ={"CF_LOG_LEVEL": "loud"})
    with pytest.raises(ValidationError):
        load_settings(environ={}, overrides={"renew_deadline": 20})


def test_settings_validate_zero_workers() -> None:
    with pytest.raises(ValidationError):
        Settings(workers=0).validate()


def _record(msg: str = "[sync] updated %s", args=("t1",), exc_info=None) -> logging.LogRecord:
    return logging.LogRecord("sync", logging.INFO, __file__, 1, msg, args, exc_info)


def test_json_log_lines() -> None:
    out = json.loads(log_formatter("json").format(_record()))
    assert out["event"] == "[sync] updated t1"
    assert out["level"] == "info"
    assert out["logger"] == "sync"
    assert out["timestamp"].endswith("Z")


def test_json_log_lines_carry_tracebacks() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record("[sync] failed", (), sys.exc_info())
    out = json.loads(log_formatter("json").format(record))
    assert "RuntimeError: boom" in out["exception"]


def test_text_log_lines() -> None:
    line = log_formatter("text").format(_record())
    assert "[sync] updated t1" in line
    assert "info" in line
    assert "\n" not in line
