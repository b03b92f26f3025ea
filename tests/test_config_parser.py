"""Brief: Unit tests for ldhdns.config Settings and loaders.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import pytest

from ldhdns.config import config_parser as cp
from ldhdns.config.config_schema import Settings


def test_settings_defaults() -> None:
    """Brief: Settings exposes the documented defaults.

    Inputs:
      - None.

    Outputs:
      - None; asserts default values.
    """

    s = Settings()
    assert s.network_id == "ldhdns"
    assert s.domain_suffix == "ldh.dns"
    assert s.subdomain_label == "dns.ldh/subdomain"
    assert s.hosts_dir == "/etc/ldhdns/dnsmasq/hosts.d"
    assert s.dnsmasq_pidfile == "/var/run/dnsmasq.pid"
    assert s.container_name == "ldhdns"
    assert s.docker_url is None
    assert s.stop_timeout == 30


def test_settings_normalizes_domain_suffix() -> None:
    """Brief: domain_suffix loses surrounding/duplicate dots and is lowercased.

    Inputs:
      - None.

    Outputs:
      - None; asserts normalization.
    """

    assert Settings(domain_suffix=".LDH..dns.").domain_suffix == "ldh.dns"


@pytest.mark.parametrize("field", ["network_id", "subdomain_label", "hosts_dir", "domain_suffix"])
def test_settings_rejects_empty_strings(field: str) -> None:
    """Brief: Blank string settings fail validation.

    Inputs:
      - field: Settings field under test.

    Outputs:
      - None; asserts ValueError.
    """

    with pytest.raises(ValueError):
        Settings(**{field: "  "})


def test_settings_is_immutable_and_strict() -> None:
    """Brief: Settings cannot be mutated and rejects unknown keys.

    Inputs:
      - None.

    Outputs:
      - None; asserts errors for assignment and extra keys.
    """

    s = Settings()
    with pytest.raises((TypeError, ValueError)):
        s.domain_suffix = "other.dns"  # type: ignore[misc]
    with pytest.raises(ValueError):
        Settings(unknown_key=1)  # type: ignore[call-arg]


def test_env_overrides_filters_prefix_and_unknown_keys() -> None:
    """Brief: Only LDHDNS_<FIELD> variables are collected, parsed as YAML.

    Inputs:
      - None.

    Outputs:
      - None; asserts collected overrides.
    """

    env = {
        "LDHDNS_DOMAIN_SUFFIX": "corp.dns",
        "LDHDNS_STOP_TIMEOUT": "5",
        "LDHDNS_lower": "x",
        "LDHDNS_NOT_A_FIELD": "y",
        "DOMAIN_SUFFIX": "ignored",
    }
    assert cp.env_overrides(env) == {"domain_suffix": "corp.dns", "stop_timeout": 5}


def test_load_settings_precedence(tmp_path) -> None:
    """Brief: CLI overrides beat environment, which beats the config file.

    Inputs:
      - tmp_path: pytest temporary directory.

    Outputs:
      - None; asserts merged Settings.
    """

    cfg = tmp_path / "ldhdns.yaml"
    cfg.write_text(
        "domain_suffix: file.dns\n"
        "network_id: file-net\n"
        "subdomain_label: file/label\n"
        "logging:\n  level: debug\n  stderr: false\n"
    )
    env = {"LDHDNS_NETWORK_ID": "env-net", "LDHDNS_SUBDOMAIN_LABEL": "env/label"}
    s = cp.load_settings(
        str(cfg),
        overrides={"subdomain_label": "cli/label", "hosts_dir": None, "logging": {"level": "warn"}},
        environ=env,
    )
    assert s.domain_suffix == "file.dns"
    assert s.network_id == "env-net"
    assert s.subdomain_label == "cli/label"
    assert s.hosts_dir == "/etc/ldhdns/dnsmasq/hosts.d"
    assert s.logging == {"level": "warn", "stderr": False}


def test_read_config_file_non_mapping_root_raises(tmp_path) -> None:
    """Brief: A YAML list root is rejected.

    Inputs:
      - tmp_path: pytest temporary directory.

    Outputs:
      - None; asserts ValueError.
    """

    cfg = tmp_path / "bad.yaml"
    cfg.write_text("- a\n- b\n")
    with pytest.raises(ValueError, match="must be a mapping"):
        cp.read_config_file(str(cfg))


def test_load_settings_wraps_validation_errors() -> None:
    """Brief: Invalid values surface as ValueError with context.

    Inputs:
      - None.

    Outputs:
      - None; asserts ValueError message.
    """

    with pytest.raises(ValueError, match="Invalid configuration"):
        cp.load_settings(None, overrides={"stop_timeout": -1}, environ={})


def test_is_var_key_and_yaml_values() -> None:
    """Brief: Helper predicates behave like the CLI expects.

    Inputs:
      - None.

    Outputs:
      - None; asserts helper results.
    """

    assert cp._is_var_key("") is False
    assert cp._is_var_key("DOMAIN_SUFFIX") is True
    assert cp._is_var_key("domain") is False
    assert cp._parse_yaml_value("30") == 30
    assert cp._parse_yaml_value("[unclosed") == "[unclosed"
