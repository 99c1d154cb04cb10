"""
Brief: Tests for JSON Schema-based configuration validation and variable expansion.

Inputs:
  - None directly; uses example YAML files from example_configs/.

Outputs:
  - None; assertions ensure valid configs pass and invalid configs fail.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from dnsswitch.config.config_schema import expand_variables, get_default_schema_path, validate_config

EXAMPLE_DIR = Path(__file__).resolve().parent.parent / "example_configs"


def test_default_schema_is_bundled() -> None:
    assert get_default_schema_path().is_file()


@pytest.mark.parametrize("path", sorted(EXAMPLE_DIR.glob("*.yaml")), ids=lambda p: p.name)
def test_example_configs_validate(path: Path) -> None:
    """Brief: Every shipped example config passes schema validation.

    Inputs:
      - path: example YAML path.

    Outputs:
      - None; validate_config must not raise.
    """

    cfg = yaml.safe_load(path.read_text(encoding="utf-8"))
    validate_config(cfg, config_path=str(path))
    assert "variables" not in cfg


@pytest.mark.parametrize(
    "cfg,fragment",
    [
        ({"proxy": {"listen_port": 70000}}, "proxy/listen_port"),
        ({"encrypted_dns": {"profile_protocols": ["QUIC"]}}, "encrypted_dns/profile_protocols/0"),
        ({"network": {"flush_commands": [[]]}}, "network/flush_commands/0"),
        ({"service": {"label": "bad label"}}, "service/label"),
        ({"engine": {"extra": True}}, "engine"),
    ],
)
def test_invalid_values_rejected(cfg, fragment) -> None:
    with pytest.raises(ValueError) as excinfo:
        validate_config(cfg)
    assert fragment in str(excinfo.value)


def test_expand_variables_whole_node_and_inline() -> None:
    """Brief: Whole-node references keep YAML types; inline ones become text.

    Inputs:
      - variables referencing each other.

    Outputs:
      - None; asserts expanded config.
    """

    cfg = {
        "variables": {"BASE": "/opt/dns", "BIN": "${BASE}/bin/proxy", "CMDS": [["/bin/true"]], "ON": True},
        "proxy": {"binary": "$BIN", "runtime_dir": "${BASE}/run-${ON}"},
        "network": {"flush_commands": "${CMDS}", "scutil": "$UNKNOWN"},
    }
    expand_variables(cfg)
    assert cfg == {
        "proxy": {"binary": "/opt/dns/bin/proxy", "runtime_dir": "/opt/dns/run-true"},
        "network": {"flush_commands": [["/bin/true"]], "scutil": "$UNKNOWN"},
    }


def test_expand_variables_rejects_cycles_and_bad_names() -> None:
    with pytest.raises(ValueError, match="cycle"):
        expand_variables({"variables": {"A": "$B", "B": "${A}"}})
    with pytest.raises(ValueError, match="must match"):
        expand_variables({"variables": {"lower": 1}})
