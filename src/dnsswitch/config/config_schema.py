"""JSON Schema-based validation for dnsswitch YAML configuration.

This module expands configuration variables and validates the parsed
``config.yaml`` against the JSON Schema shipped as
``dnsswitch/assets/config-schema.json``.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
_VAR_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value)


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `variables` into the config and drop the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string that is exactly `$KEY` or `${KEY}` is replaced by the
        variable's YAML value (list, dict, int, ...).
      - `${KEY}` occurrences inside longer strings are replaced textually.
      - Variables may reference each other; cycles raise ValueError.

    Example:
      >>> cfg = {"variables": {"SOCK": "/tmp/x.sock"}, "engine": {"socket_path": "$SOCK"}}
      >>> expand_variables(cfg)
      >>> cfg
      {'engine': {'socket_path': '/tmp/x.sock'}}
    """

    variables = cfg.get("variables")
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ValueError("config.variables must be a mapping when present")

    for k in variables:
        if not isinstance(k, str) or not _VAR_NAME.fullmatch(k):
            raise ValueError(f"config.variables key {k!r} must match [A-Z_][A-Z0-9_]*")

    resolved: Dict[str, Any] = {}

    def _resolve(key: str, stack: Set[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError(
                "config.variables contains a cycle: " + " -> ".join(sorted(stack) + [key])
            )
        stack.add(key)
        value = _expand(variables[key], stack)
        stack.discard(key)
        resolved[key] = value
        return value

    def _whole_node(text: str) -> Optional[str]:
        if text.startswith("${") and text.endswith("}") and text[2:-1] in variables:
            return text[2:-1]
        if text.startswith("$") and text[1:] in variables:
            return text[1:]
        return None

    def _expand(obj: Any, stack: Set[str]) -> Any:
        if isinstance(obj, str):
            name = _whole_node(obj)
            if name is not None:
                return copy.deepcopy(_resolve(name, stack))
            return _VAR_PATTERN.sub(
                lambda m: _scalar_text(_resolve(m.group(1), stack))
                if m.group(1) in variables
                else m.group(0),
                obj,
            )
        if isinstance(obj, list):
            return [_expand(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v, stack) for k, v in obj.items()}
        return obj

    for key in list(variables):
        _resolve(key, set())

    for top_key in list(cfg):
        if top_key != "variables":
            cfg[top_key] = _expand(cfg[top_key], set())
    cfg.pop("variables", None)


def get_default_schema_path() -> Path:
    """Brief: Path of the JSON Schema bundled with the package."""
    return Path(__file__).resolve().parent.parent / "assets" / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Render jsonschema errors as one line per offending path."""
    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Expand variables and validate a parsed configuration mapping.

    Inputs:
      - cfg: Top-level configuration mapping (mutated by variable expansion).
      - schema_path: Optional explicit JSON Schema path.
      - config_path: Optional YAML path used only in error messages.

    Outputs:
      - None on success.

    Raises:
      - ValueError: when variables are invalid or validation fails; the
        message lists every error with its instance path.

    Example:
      >>> validate_config({"engine": {"mixed_kinds": "reject"}})
    """

    expand_variables(cfg)

    effective = schema_path or get_default_schema_path()
    try:
        schema = _load_schema(effective)
        validator = Draft202012Validator(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        raise ValueError(f"Cannot load configuration schema {effective}: {exc}") from exc

    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(map(str, e.path)))
    if errors:
        raise ValueError(_format_errors(errors, config_path=config_path))
