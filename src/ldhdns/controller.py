"""Controller mode: run the DNS sidecar and bind it into systemd-resolved.

Brief:
  The controller runs in a container attached to the host network. It
  creates (or reuses) a sidecar container running `ldhdns dns` + dnsmasq on a
  private bridge network, then tells systemd-resolved to send queries for
  the configured domain suffix to the sidecar via the bridge's host link.
  The binding is reapplied whenever the system bus monitor reports that it
  may have been dropped (resume from suspend, foreign link changes), and
  reverted on shutdown.

Inputs:
  - Settings (network_id, domain_suffix, subdomain_label, container_name,
    stop_timeout, docker_url)

Outputs:
  - Side effects on Docker (network, sidecar) and systemd-resolved (link DNS).
"""

from __future__ import annotations

import logging
import os
import queue
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import docker
from docker.errors import DockerException, NotFound

from .config.config_schema import Settings
from .errors import (
    ContainerError,
    IdentityError,
    ResolverProtocolError,
    TopologyError,
)
from .links import IPAddress, find_link_index, parse_ip
from .monitor import SystemEventMonitor
from .resolve1 import LinkHandle, ResolverClient
from .runtime import docker_client

logger = logging.getLogger(__name__)

LABEL_PREFIX = "dns.ldh"
SIDECAR_COMMAND = ["dns"]
SIDECAR_CAPABILITIES = ["NET_ADMIN"]
CPUSET_PATH = "/proc/1/cpuset"
MOUNTINFO_PATH = "/proc/self/mountinfo"
POLL_INTERVAL = 0.5

_CONTAINER_ID_RE = re.compile(r"/containers/([0-9a-f]{64})/")


def read_own_container_id(
    cpuset_path: str = CPUSET_PATH, mountinfo_path: str = MOUNTINFO_PATH
) -> Optional[str]:
    """Brief: Read this process's container ID from host-provided markers.

    Inputs:
      - cpuset_path: cgroup v1 cpuset file; its first line ends with the
        container ID (e.g. "/docker/<id>").
      - mountinfo_path: Fallback for cgroup v2 hosts, where Docker's
        /etc/hostname (and friends) bind mounts name the container directory.

    Outputs:
      - str container ID, or None when neither marker yields one.
    """

    try:
        with open(cpuset_path, "r", encoding="utf-8") as f:
            first_line = f.readline().strip()
    except OSError as exc:
        logger.debug("Cannot read %s: %s", cpuset_path, exc)
    else:
        candidate = os.path.basename(first_line)
        if len(candidate) >= 2:
            return candidate

    try:
        with open(mountinfo_path, "r", encoding="utf-8") as f:
            for line in f:
                m = _CONTAINER_ID_RE.search(line)
                if m:
                    return m.group(1)
    except OSError as exc:
        logger.debug("Cannot read %s: %s", mountinfo_path, exc)

    return None


@dataclass(frozen=True)
class SidecarEndpoint:
    address: IPAddress
    gateway: IPAddress


@dataclass
class Binding:
    """Brief: The active resolve1 link binding (at most one per process)."""

    domain_suffix: str
    link_index: int
    bound_address: IPAddress
    handle: Optional[LinkHandle] = None


class LinkBindingManager:
    """Brief: Owns the sidecar container and the systemd-resolved binding.

    Inputs:
      - settings: Immutable Settings.
      - client: Optional docker.DockerClient (created from settings if None).
      - resolver: Optional ResolverClient.
      - monitor: Optional SystemEventMonitor.
      - cpuset_path / mountinfo_path: Identity marker locations (tests).

    Example:
      >>> mgr = LinkBindingManager(settings)          # doctest: +SKIP
      >>> mgr.start(); mgr.run_event_loop(stop_event)  # doctest: +SKIP
      >>> mgr.close()                                  # doctest: +SKIP
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[docker.DockerClient] = None,
        resolver: Optional[ResolverClient] = None,
        monitor: Optional[SystemEventMonitor] = None,
        cpuset_path: str = CPUSET_PATH,
        mountinfo_path: str = MOUNTINFO_PATH,
    ) -> None:
        self.settings = settings
        self._client = client
        self._resolver = resolver or ResolverClient()
        self._monitor = monitor or SystemEventMonitor()
        self._cpuset_path = cpuset_path
        self._mountinfo_path = mountinfo_path

        self.owner: Optional[Dict[str, Any]] = None
        self.network_id: Optional[str] = None
        self.sidecar: Any = None
        self.binding: Optional[Binding] = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker_client(self.settings)
        return self._client

    # -- startup ---------------------------------------------------------

    def start(self) -> None:
        """Brief: Run the full startup sequence; any error is fatal.

        Raises:
          - IdentityError, TopologyError, ContainerError, AddressError,
            InterfaceNotFoundError, ResolverProtocolError
        """

        logger.info(
            "Configured for %r domain and %r container label.",
            self.settings.domain_suffix,
            self.settings.subdomain_label,
        )
        self.owner = self.resolve_identity()
        self.network_id = self.find_or_create_network()

        logger.info("Starting DNS container...")
        self.find_or_create_sidecar()

        logger.info("Applying DNS change...")
        self.apply_binding()

        self._monitor.start()

    def resolve_identity(self) -> Dict[str, Any]:
        """Brief: Find and inspect the container this process runs in.

        Outputs:
          - dict: docker inspect attributes of the owning container.

        Raises:
          - IdentityError: No container could be determined or inspected.
          - TopologyError: The container is not on the host network.
        """

        container_id = read_own_container_id(self._cpuset_path, self._mountinfo_path)
        if container_id is None:
            container_id = self._find_container_by_name(self.settings.container_name)

        try:
            attrs = self.client.containers.get(container_id).attrs
        except NotFound as exc:
            raise IdentityError(f"own container {container_id} not found") from exc
        except DockerException as exc:
            raise IdentityError(f"failed to inspect container {container_id}: {exc}") from exc

        network_mode = (attrs.get("HostConfig") or {}).get("NetworkMode")
        if network_mode != "host":
            raise TopologyError(
                f"container {container_id} must be run in host network (got {network_mode!r})"
            )
        return attrs

    def _find_container_by_name(self, name: str) -> str:
        try:
            candidates = self.client.containers.list(filters={"name": name})
        except DockerException as exc:
            raise IdentityError(f"failed to list containers: {exc}") from exc

        # The name filter is a substring match; require an exact hit.
        for c in candidates:
            if c.name == name:
                return c.id
        raise IdentityError(f"not executing within a container and no container named {name!r}")

    def find_or_create_network(self) -> str:
        """Brief: Return the shared bridge network ID, creating it if missing."""

        name = self.settings.network_id
        try:
            return self.client.networks.get(name).id
        except NotFound:
            logger.info("Creating %s network...", name)
        except DockerException as exc:
            raise ContainerError(f"failed to inspect network {name}: {exc}") from exc

        try:
            return self.client.networks.create(name, driver="bridge").id
        except DockerException as exc:
            raise ContainerError(f"failed to create network {name}: {exc}") from exc

    def _require_owner(self) -> Dict[str, Any]:
        if self.owner is None:
            raise IdentityError("own container has not been resolved yet")
        return self.owner

    def sidecar_name(self) -> str:
        owner = self._require_owner()
        owner_name = str(owner.get("Name") or "").lstrip("/")
        owner_id = str(owner.get("Id") or "")
        return f"{owner_name}_{owner_id[:12]}"

    def sidecar_labels(self) -> Dict[str, str]:
        owner = self._require_owner()
        return {
            f"{LABEL_PREFIX}/controller-id": str(owner.get("Id") or ""),
            f"{LABEL_PREFIX}/controller-name": str(owner.get("Name") or "").lstrip("/"),
            f"{LABEL_PREFIX}/network-id": self.settings.network_id,
            f"{LABEL_PREFIX}/domain-suffix": self.settings.domain_suffix,
            f"{LABEL_PREFIX}/subdomain-label": self.settings.subdomain_label,
        }

    def find_or_create_sidecar(self) -> Any:
        """Brief: Look up the sidecar by name, create it if absent, start it.

        Outputs:
          - docker Container model for the running sidecar.

        Raises:
          - ContainerError: On create/start/inspect failures or when the
            sidecar is not running right after start.
        """

        name = self.sidecar_name()
        try:
            sidecar = self.client.containers.get(name)
        except NotFound:
            sidecar = self._create_sidecar(name)
        except DockerException as exc:
            raise ContainerError(f"failed to inspect container {name}: {exc}") from exc

        try:
            sidecar.start()
            sidecar.reload()
        except DockerException as exc:
            raise ContainerError(f"failed to start container {name}: {exc}") from exc

        self.sidecar = sidecar
        state = (sidecar.attrs.get("State") or {})
        if not state.get("Running"):
            raise ContainerError(
                f"container {name} exited unexpectedly (status={state.get('Status')!r})"
            )
        return sidecar

    def _create_sidecar(self, name: str) -> Any:
        owner = self._require_owner()
        config = owner.get("Config") or {}
        host_config = owner.get("HostConfig") or {}
        logger.info("Creating %s container...", name)
        try:
            return self.client.containers.create(
                config.get("Image"),
                command=SIDECAR_COMMAND,
                environment=list(config.get("Env") or []),
                labels=self.sidecar_labels(),
                volumes=list(host_config.get("Binds") or []),
                cap_add=SIDECAR_CAPABILITIES,
                auto_remove=True,
                network=self.settings.network_id,
                name=name,
            )
        except DockerException as exc:
            raise ContainerError(f"failed to create container {name}: {exc}") from exc

    # -- binding ---------------------------------------------------------

    def sidecar_endpoint(self) -> SidecarEndpoint:
        """Brief: Parse the sidecar's address and gateway on the shared network.

        Raises:
          - AddressError: When either address is missing or invalid.
        """

        attrs = self.sidecar.attrs if self.sidecar is not None else {}
        networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
        nw = networks.get(self.settings.network_id) or {}
        return SidecarEndpoint(
            address=parse_ip(nw.get("IPAddress"), "container address"),
            gateway=parse_ip(nw.get("Gateway"), "gateway address"),
        )

    def apply_binding(self) -> Binding:
        """Brief: Bind the sidecar address + routing domain to the host link."""

        endpoint = self.sidecar_endpoint()
        index, link_name = find_link_index(endpoint.gateway)
        logger.info("Applying configuration to %r network.", link_name)

        binding = Binding(
            domain_suffix=self.settings.domain_suffix,
            link_index=index,
            bound_address=endpoint.address,
        )
        binding.handle = self._resolver.bind_link(
            index, [endpoint.address], self.settings.domain_suffix
        )
        self.binding = binding
        self._monitor.link_index = index
        return binding

    def reapply(self) -> Binding:
        """Brief: Refresh the sidecar endpoint and rebind it, no recreation."""

        try:
            self.sidecar.reload()
        except DockerException as exc:
            raise ContainerError(f"failed to inspect container {self.sidecar.id}: {exc}") from exc
        return self.apply_binding()

    # -- event loop ------------------------------------------------------

    def run_event_loop(self, stop: threading.Event, poll_interval: float = POLL_INTERVAL) -> None:
        """Brief: Reapply on monitor signals until `stop` is set.

        Raises:
          - Any error from reapply(); a binding that cannot be refreshed is
            not trusted any more.
          - ResolverProtocolError when the monitor's bus connection died.
        """

        logger.info("Running event loop...")
        while not stop.is_set():
            if self._monitor.error is not None:
                raise ResolverProtocolError(
                    f"system bus monitor stopped: {self._monitor.error}"
                ) from self._monitor.error
            try:
                self._monitor.signals.get(timeout=poll_interval)
            except queue.Empty:
                continue
            if stop.is_set():
                break
            logger.info("Reapplying DNS configuration...")
            self.reapply()

    # -- shutdown --------------------------------------------------------

    def close(self) -> None:
        """Brief: Best-effort cleanup; each failing step is logged and skipped."""

        try:
            self._monitor.stop()
        except Exception as exc:  # pragma: no cover - defensive
            logger.error("Failed to stop system bus monitor: %s", exc)

        if self.binding is not None and self.binding.handle is not None:
            logger.info("Reverting DNS change...")
            try:
                self._resolver.revert(self.binding.handle)
                self.binding = None
            except Exception as exc:
                logger.error("Failed to revert DNS: %s", exc)

        if self.sidecar is not None:
            logger.info("Stopping DNS container...")
            try:
                self.sidecar.stop(timeout=self.settings.stop_timeout)
            except Exception as exc:
                logger.error("Failed to stop container %s: %s", self.sidecar.id, exc)

        try:
            self._resolver.close()
        except Exception as exc:
            logger.error("Failed to close system bus connection: %s", exc)

        if self._client is not None:
            try:
                self._client.close()
            except Exception as exc:
                logger.error("Failed to close Docker client: %s", exc)


def run(settings: Settings, stop: threading.Event) -> None:
    """Brief: Controller entrypoint used by `ldhdns controller`.

    Raises:
      - LdhDnsError subclasses for fatal startup/reapply failures. Cleanup
        always runs before the error propagates.
    """

    logger.info("Starting...")
    manager = LinkBindingManager(settings)
    try:
        manager.start()
        manager.run_event_loop(stop)
    finally:
        logger.info("Shutting down...")
        manager.close()
