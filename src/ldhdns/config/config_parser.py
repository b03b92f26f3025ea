"""Configuration loading for the ldhdns CLI.

Brief:
  Builds the immutable Settings object from three sources, in increasing
  precedence:
    - an optional YAML file (--config)
    - LDHDNS_<KEY> environment variables, parsed as YAML scalars
    - explicit CLI flag values

Inputs:
  - YAML config paths, environment mappings, CLI override dicts

Outputs:
  - ldhdns.config.config_schema.Settings
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from .config_schema import Settings

ENV_PREFIX = "LDHDNS_"


def _is_var_key(key: str) -> bool:
    """Brief: Validate whether a string is a supported environment key suffix.

    Inputs:
      - key: Candidate variable name (without the LDHDNS_ prefix).

    Outputs:
      - bool: True when the name is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*.
    """

    if not key:
        return False
    if key != key.upper():
        return False
    return bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse an environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def read_config_file(config_path: str) -> Dict[str, Any]:
    """Brief: Read a YAML config file into a mapping.

    Inputs:
      - config_path: Path to the YAML configuration file.

    Outputs:
      - dict: Parsed mapping (empty for an empty file).

    Raises:
      - ValueError: When the file cannot be parsed or its root is not a mapping.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")
    return cfg


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Brief: Collect LDHDNS_<KEY> environment variables as settings overrides.

    Inputs:
      - environ: Environment mapping (defaults to os.environ).

    Outputs:
      - dict: Lowercased setting names mapped to YAML-parsed values. Keys that
        are not Settings fields are ignored so unrelated LDHDNS_* variables do
        not break startup.

    Example:
      >>> env_overrides({"LDHDNS_DOMAIN_SUFFIX": "corp.dns", "LDHDNS_x": "1"})
      {'domain_suffix': 'corp.dns'}
    """

    env = os.environ if environ is None else environ
    known = set(Settings.__fields__)
    out: Dict[str, Any] = {}
    for k, v in env.items():
        if not isinstance(k, str) or not k.startswith(ENV_PREFIX):
            continue
        suffix = k[len(ENV_PREFIX) :]
        if not _is_var_key(suffix):
            continue
        name = suffix.lower()
        if name not in known:
            continue
        out[name] = _parse_yaml_value(str(v))
    return out


def load_settings(
    config_path: Optional[str] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Brief: Merge file, environment and CLI values into a validated Settings.

    Inputs:
      - config_path: Optional YAML file path.
      - overrides: CLI values; entries whose value is None are ignored so
        unset flags never mask lower-precedence sources.
      - environ: Environment mapping (defaults to os.environ).

    Outputs:
      - Settings: Frozen configuration instance.

    Raises:
      - ValueError: When the file is invalid or validation fails.
    """

    merged: Dict[str, Any] = {}
    if config_path:
        merged.update(read_config_file(config_path))
    merged.update(env_overrides(environ))
    for k, v in (overrides or {}).items():
        if v is None:
            continue
        if k == "logging" and isinstance(v, dict):
            base = dict(merged.get("logging") or {})
            base.update(v)
            merged["logging"] = base
            continue
        merged[k] = v

    try:
        return Settings(**merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
