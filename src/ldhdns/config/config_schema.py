"""Typed process configuration for ldhdns.

Brief:
  Settings is built once at startup (see config_parser.load_settings) and is
  immutable afterwards. The controller and the registrar receive the same
  instance through their constructors; nothing reads configuration from
  module-level state.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, validator

DEFAULT_NETWORK_ID = "ldhdns"
DEFAULT_DOMAIN_SUFFIX = "ldh.dns"
DEFAULT_SUBDOMAIN_LABEL = "dns.ldh/subdomain"
DEFAULT_HOSTS_DIR = "/etc/ldhdns/dnsmasq/hosts.d"
DEFAULT_DNSMASQ_PIDFILE = "/var/run/dnsmasq.pid"
DEFAULT_CONTAINER_NAME = "ldhdns"
DEFAULT_STOP_TIMEOUT = 30


class Settings(BaseModel):
    """Brief: Immutable configuration shared by the controller and dns modes.

    Inputs:
      - network_id: Name of the managed Docker bridge network.
      - domain_suffix: Domain bound as a routing domain on the host link.
      - subdomain_label: Container label whose value becomes the hostname.
      - hosts_dir: Directory dnsmasq reads host files from (--hostsdir).
      - dnsmasq_pidfile: PID file of the dnsmasq process to SIGHUP.
      - container_name: Name used to find the controller's own container
        when the cgroup marker is unavailable.
      - docker_url: Optional Docker endpoint; DOCKER_HOST/defaults otherwise.
      - stop_timeout: Grace period in seconds before the sidecar is killed.
      - logging: Mapping passed to init_logging().

    Outputs:
      - Settings instance with normalized, non-empty string fields.
    """

    network_id: str = Field(default=DEFAULT_NETWORK_ID)
    domain_suffix: str = Field(default=DEFAULT_DOMAIN_SUFFIX)
    subdomain_label: str = Field(default=DEFAULT_SUBDOMAIN_LABEL)
    hosts_dir: str = Field(default=DEFAULT_HOSTS_DIR)
    dnsmasq_pidfile: str = Field(default=DEFAULT_DNSMASQ_PIDFILE)
    container_name: str = Field(default=DEFAULT_CONTAINER_NAME)
    docker_url: Optional[str] = None
    stop_timeout: int = Field(default=DEFAULT_STOP_TIMEOUT, ge=0)
    logging: Dict[str, Any] = Field(
        default_factory=lambda: {"level": "info", "stderr": True}
    )

    class Config:
        frozen = True
        extra = "forbid"

    @validator(
        "network_id",
        "subdomain_label",
        "hosts_dir",
        "dnsmasq_pidfile",
        "container_name",
        pre=True,
    )
    def _non_empty(cls, v):  # type: ignore[no-untyped-def]
        s = str(v if v is not None else "").strip()
        if not s:
            raise ValueError("must be a non-empty string")
        return s

    @validator("domain_suffix", pre=True)
    def _normalize_domain_suffix(cls, v):  # type: ignore[no-untyped-def]
        """Brief: Normalize the domain suffix.

        Inputs:
          - v: Raw suffix such as ".LDH.dns." or "ldh.dns".

        Outputs:
          - str: Lowercase suffix without leading/trailing dots.

        Example:
          - `.LDH.dns.` -> `ldh.dns`
        """

        parts = [p for p in str(v or "").strip().split(".") if p]
        if not parts:
            raise ValueError("domain_suffix must be a non-empty string")
        return ".".join(parts).lower()

    @validator("docker_url", pre=True)
    def _blank_docker_url(cls, v):  # type: ignore[no-untyped-def]
        if v is None:
            return None
        s = str(v).strip()
        return s or None
