"""Brief: Unit tests for dnsswitch.config.config_parser.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import pytest

from dnsswitch.config import config_parser as cp

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "example_configs" / "dnsswitch.yaml"


def test_defaults_without_any_config(monkeypatch, tmp_path) -> None:
    """Brief: A missing default config file yields all defaults.

    Inputs:
      - DEFAULT_CONFIG_PATH pointed at a non-existent file.

    Outputs:
      - None; asserts default values and config_path None.
    """

    monkeypatch.setattr(cp, "DEFAULT_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    settings = cp.load_settings(environ={})
    assert settings.config_path is None
    assert settings.engine.socket_path == "/var/run/dnsswitch.sock"
    assert settings.engine.mixed_kinds == "reject"
    assert settings.proxy.listen_port == 53
    assert settings.encrypted_dns.profile_protocols == ["HTTPS", "TLS"]
    assert settings.network.flush_commands[0] == ["/usr/bin/dscacheutil", "-flushcache"]


def test_explicit_missing_path_raises(tmp_path) -> None:
    with pytest.raises(OSError):
        cp.load_settings(str(tmp_path / "absent.yaml"), environ={})


def test_example_config_loads() -> None:
    settings = cp.load_settings(str(EXAMPLE_CONFIG), environ={})
    assert settings.config_path == str(EXAMPLE_CONFIG)
    assert settings.proxy.probe_name == "example.com"
    assert settings.engine.socket_path == "/var/run/dnsswitch.sock"


def test_variable_precedence_cli_over_env_over_file(tmp_path) -> None:
    """Brief: CLI variables beat DNSSWITCH_* env vars, which beat the file.

    Inputs:
      - YAML with variables, env and CLI overrides.

    Outputs:
      - None; asserts the expanded values.
    """

    path = tmp_path / "c.yaml"
    path.write_text(
        "variables:\n  SOCK: /file.sock\n  PORT: 53\n  MODE: reject\n"
        "engine:\n  socket_path: $SOCK\n  mixed_kinds: ${MODE}\n"
        "proxy:\n  listen_port: $PORT\n  runtime_dir: /run/${MODE}/x\n",
        encoding="utf-8",
    )
    settings = cp.load_settings(
        str(path),
        cli_vars=["PORT=5353"],
        environ={"DNSSWITCH_PORT": "5300", "DNSSWITCH_SOCK": "/env.sock", "OTHER_MODE": "priority"},
    )
    assert settings.proxy.listen_port == 5353
    assert settings.engine.socket_path == "/env.sock"
    assert settings.engine.mixed_kinds == "reject"
    assert settings.proxy.runtime_dir == "/run/reject/x"


def test_parse_config_variables_validation() -> None:
    with pytest.raises(ValueError, match="config.variables must be a mapping"):
        cp.parse_config_variables({"variables": [1, 2]}, environ={})
    with pytest.raises(ValueError, match="expected KEY=YAML"):
        cp.parse_config_variables({}, cli_vars=["NOEQUALS"], environ={})

    cfg: Dict[str, Any] = {}
    merged = cp.parse_config_variables(cfg, cli_vars=["LIST=[a, b]", "TEXT=[unclosed"], environ={})
    assert merged == {"LIST": ["a", "b"], "TEXT": "[unclosed"}
    assert cfg["variables"] is merged


def test_schema_errors_are_reported_with_paths() -> None:
    with pytest.raises(ValueError) as excinfo:
        cp.settings_from_mapping({"engine": {"mixed_kinds": "merge"}, "bogus": 1})
    message = str(excinfo.value)
    assert message.startswith("Invalid configuration in <config dict>:")
    assert "engine/mixed_kinds" in message
    assert "bogus" in message


def test_call_timeout_must_outlast_proxy_start() -> None:
    with pytest.raises(ValueError, match="call_timeout must be greater than proxy.start_timeout"):
        cp.settings_from_mapping({"engine": {"call_timeout": 10}, "proxy": {"start_timeout": 30}})
    settings = cp.settings_from_mapping({"engine": {"call_timeout": 45}, "proxy": {"start_timeout": 30}})
    assert settings.engine.call_timeout == 45


def test_non_mapping_root_and_bad_yaml(tmp_path) -> None:
    listing = tmp_path / "list.yaml"
    listing.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="root must be a mapping"):
        cp.load_settings(str(listing), environ={})

    broken = tmp_path / "broken.yaml"
    broken.write_text("engine: [unclosed\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Cannot parse"):
        cp.load_settings(str(broken), environ={})
