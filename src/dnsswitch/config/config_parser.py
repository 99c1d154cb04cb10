"""Configuration loading for the dnsswitch CLI, client and engine.

Brief:
  Reads the YAML config, merges variables from the file, the environment and
  the CLI, validates the structure against the bundled JSON Schema, and turns
  the result into typed pydantic settings with defaults for every section.

Inputs:
  - YAML config paths and CLI `KEY=YAML` assignments

Outputs:
  - Settings instances
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .config_schema import validate_config

DEFAULT_CONFIG_PATH = "/etc/dnsswitch/config.yaml"
ENV_PREFIX = "DNSSWITCH_"


class EngineSettings(BaseModel):
    """Brief: Privileged engine endpoint and request policy."""

    model_config = ConfigDict(extra="forbid")

    socket_path: str = "/var/run/dnsswitch.sock"
    call_timeout: float = Field(default=60.0, gt=0)
    mixed_kinds: Literal["reject", "priority"] = "reject"


class ServiceSettings(BaseModel):
    """Brief: launchd service registration of the privileged engine."""

    model_config = ConfigDict(extra="forbid")

    label: str = "com.dnsswitch.engine"
    plist_dir: str = "/Library/LaunchDaemons"
    python: Optional[str] = None
    post_install_delay: float = Field(default=1.0, ge=0)
    log_path: Optional[str] = "/var/log/dnsswitch-engine.log"
    osascript: str = "/usr/bin/osascript"
    launchctl: str = "/bin/launchctl"


class NetworkSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    networksetup: str = "/usr/sbin/networksetup"
    scutil: str = "/usr/sbin/scutil"
    flush_commands: List[List[str]] = Field(
        default_factory=lambda: [
            ["/usr/bin/dscacheutil", "-flushcache"],
            ["/usr/bin/killall", "-HUP", "mDNSResponder"],
        ]
    )
    command_timeout: float = Field(default=30.0, gt=0)
    rollback_on_failure: bool = True


class EncryptedDNSSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: Literal["auto", "profile", "proxy"] = "auto"
    profile_protocols: List[Literal["HTTPS", "TLS"]] = Field(
        default_factory=lambda: ["HTTPS", "TLS"]
    )
    identifier_prefix: str = "com.dnsswitch.dns"
    profiles_binary: str = "/usr/bin/profiles"
    bootstrap_limit: int = Field(default=4, ge=0, le=16)


class ProxySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    binary: Optional[str] = None
    template: Optional[str] = None
    runtime_dir: Optional[str] = None
    listen_host: str = "127.0.0.1"
    listen_port: int = Field(default=53, ge=1, le=65535)
    start_timeout: float = Field(default=30.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    grace_period: float = Field(default=0.5, ge=0)
    output_lines: int = Field(default=200, ge=1)
    supports_dot: bool = True
    probe_name: Optional[str] = None


class Settings(BaseModel):
    """Brief: Typed view of the whole configuration file.

    Inputs:
      - Section mappings as parsed from YAML (all optional).

    Outputs:
      - Settings with defaults applied.

    Example:
      >>> Settings().engine.mixed_kinds
      'reject'
    """

    model_config = ConfigDict(extra="forbid")

    logging: Dict[str, Any] = Field(default_factory=dict)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    encrypted_dns: EncryptedDNSSettings = Field(default_factory=EncryptedDNSSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    config_path: Optional[str] = None

    @model_validator(mode="after")
    def _call_outlasts_proxy_start(self) -> "Settings":
        if self.engine.call_timeout <= self.proxy.start_timeout:
            raise ValueError(
                "engine.call_timeout must be greater than proxy.start_timeout "
                f"({self.engine.call_timeout} <= {self.proxy.start_timeout})"
            )
        return self


def _parse_yaml_value(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge file, environment and CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed configuration mapping (mutated in-place).
      - cli_vars: `KEY=YAML` assignments from -v/--var.
      - environ: Environment mapping (defaults to os.environ). Only variables
        named DNSSWITCH_<KEY> are considered, with the prefix stripped.

    Outputs:
      - dict: The merged variables mapping.

    Precedence:
      - CLI overrides environment overrides the config file.

    Example:
      >>> cfg = {"variables": {"PORT": 53535}}
      >>> parse_config_variables(cfg, cli_vars=["PORT=5300"], environ={})["PORT"]
      5300
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.variables must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if k.startswith(ENV_PREFIX) and k[len(ENV_PREFIX) :]:
            merged[k[len(ENV_PREFIX) :]] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        merged[k.strip()] = _parse_yaml_value(raw)

    if merged:
        cfg["variables"] = merged
    return merged


def settings_from_mapping(
    cfg: Dict[str, Any], *, config_path: Optional[str] = None
) -> Settings:
    """Brief: Validate a raw mapping and build Settings.

    Raises:
      - ValueError: on schema or model validation failure.
    """

    validate_config(cfg, config_path=config_path)
    try:
        return Settings(**cfg, config_path=config_path)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path or '<config dict>'}: {exc}") from exc


def load_settings(
    config_path: Optional[str] = None,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Brief: Read, merge variables into, and validate a YAML config file.

    Inputs:
      - config_path: YAML path; None means DEFAULT_CONFIG_PATH, which may be
        absent (all defaults apply). An explicit path must exist.
        Settings.config_path is set only when a file was read.
      - cli_vars: Optional `KEY=YAML` assignments.
      - environ: Optional environment mapping.

    Outputs:
      - Settings.

    Raises:
      - ValueError: invalid YAML root, variables, schema or values.
      - OSError: an explicit config path cannot be read.
    """

    path = config_path or DEFAULT_CONFIG_PATH
    source: Optional[str] = None
    if config_path is None and not os.path.exists(path):
        cfg: Dict[str, Any] = {}
    else:
        source = os.path.abspath(path)
        with open(path, "r", encoding="utf-8") as f:
            try:
                cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Cannot parse {path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=cli_vars, environ=environ)
    return settings_from_mapping(cfg, config_path=source)
