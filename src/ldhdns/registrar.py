"""DNS mode: keep dnsmasq's hosts directory in sync with labeled containers.

Brief:
  Runs inside the sidecar next to dnsmasq (started with --hostsdir). Every
  running container carrying the subdomain label gets one file, named by its
  container ID, listing each of its addresses against
  `<label value>.<domain suffix>`. Files are removed when the container stops
  or dies, after which dnsmasq is sent SIGHUP so it forgets the old names.

Inputs:
  - Settings (domain_suffix, subdomain_label, hosts_dir, dnsmasq_pidfile)
  - Docker container list and event stream

Outputs:
  - Files under settings.hosts_dir, SIGHUP to dnsmasq
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import docker
from docker.errors import DockerException, NotFound

from .config.config_schema import Settings
from .errors import ContainerError, FileSystemError, StreamError
from .runtime import docker_client

logger = logging.getLogger(__name__)

ADD_ACTIONS = frozenset({"start"})
REMOVE_ACTIONS = frozenset({"stop", "die"})
EVENT_QUEUE_SIZE = 64


@dataclass
class HostRecord:
    """Brief: Addresses published for one container under one hostname."""

    container_id: str
    hostname: str
    addresses: List[str] = field(default_factory=list)

    def lines(self) -> List[str]:
        return [f"{addr}\t{self.hostname}\n" for addr in self.addresses]


def record_from_inspect(
    attrs: Dict[str, Any], subdomain_label: str, domain_suffix: str
) -> Optional[HostRecord]:
    """Brief: Build a HostRecord from docker inspect attributes.

    Inputs:
      - attrs: Container inspect dict.
      - subdomain_label: Label key carrying the subdomain.
      - domain_suffix: Suffix appended to the label value.

    Outputs:
      - HostRecord, or None when the container is not running or not labeled.

    Example:
      >>> attrs = {"Id": "c1", "State": {"Running": True},
      ...          "Config": {"Labels": {"dns.ldh/subdomain": "api"}},
      ...          "NetworkSettings": {"Networks": {"b": {"IPAddress": "172.20.0.5"}}}}
      >>> record_from_inspect(attrs, "dns.ldh/subdomain", "ldh.dns").hostname
      'api.ldh.dns'
    """

    if not (attrs.get("State") or {}).get("Running"):
        return None

    labels = (attrs.get("Config") or {}).get("Labels") or {}
    subdomain = str(labels.get(subdomain_label) or "").strip()
    if not subdomain:
        return None

    record = HostRecord(
        container_id=str(attrs.get("Id") or ""),
        hostname=f"{subdomain}.{domain_suffix}",
    )
    networks = (attrs.get("NetworkSettings") or {}).get("Networks") or {}
    for nw in networks.values():
        nw = nw or {}
        v4 = str(nw.get("IPAddress") or "").strip()
        if v4:
            record.addresses.append(v4)
        v6 = str(nw.get("GlobalIPv6Address") or "").strip()
        if v6:
            record.addresses.append(v6)
    return record


class HostnameRegistrar:
    """Brief: Translate container lifecycle events into dnsmasq host files.

    Inputs:
      - settings: Immutable Settings.
      - client: Optional docker.DockerClient (created from settings if None).

    Notes:
      - All mutations of the hosts directory and of `records` happen under a
        single lock, so bootstrap and event handling never interleave writes.
    """

    def __init__(self, settings: Settings, client: Optional[docker.DockerClient] = None) -> None:
        self.settings = settings
        self._client = client
        self._lock = threading.RLock()
        self.records: Dict[str, HostRecord] = {}
        self._stream: Any = None
        self._stopping = threading.Event()

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker_client(self.settings)
        return self._client

    def record_path(self, container_id: str) -> str:
        return os.path.join(self.settings.hosts_dir, container_id)

    # -- add/remove ------------------------------------------------------

    def container_added(self, container_id: str) -> Optional[HostRecord]:
        """Brief: Write (or overwrite) the host file for a container.

        Outputs:
          - HostRecord written, or None when the container is not running or
            has no subdomain label.

        Raises:
          - NotFound: The container vanished before it could be inspected.
          - ContainerError: Other inspect failures.
          - FileSystemError: The host file could not be written.
        """

        with self._lock:
            logger.info("Examining container %s", container_id)
            try:
                attrs = self.client.containers.get(container_id).attrs
            except NotFound:
                raise
            except DockerException as exc:
                raise ContainerError(
                    f"failed to inspect container {container_id}: {exc}"
                ) from exc

            record = record_from_inspect(
                attrs, self.settings.subdomain_label, self.settings.domain_suffix
            )
            if record is None:
                return None
            record.container_id = record.container_id or container_id

            logger.info("Registering %r", record.hostname)
            for addr in record.addresses:
                logger.info(" → %s", addr)

            path = self.record_path(record.container_id)
            try:
                with open(path, "w", encoding="utf-8") as f:
                    f.writelines(record.lines())
            except OSError as exc:
                raise FileSystemError(f"failed to write {path}: {exc}") from exc

            self.records[record.container_id] = record
            return record

    def container_removed(self, container_id: str) -> bool:
        """Brief: Delete a container's host file and ask dnsmasq to reload.

        Outputs:
          - bool: True when a file was deleted. A file that cannot be deleted
            is logged and reported as False; dnsmasq is not signalled then.
        """

        with self._lock:
            self.records.pop(container_id, None)
            path = self.record_path(container_id)
            if not os.path.exists(path):
                return False
            try:
                os.remove(path)
            except FileNotFoundError:
                return False
            except OSError as exc:
                logger.warning("Error deleting %s: %s", path, exc)
                return False

            logger.info("Unregistered container %s", container_id)
            self.signal_dnsmasq()
            return True

    def read_dnsmasq_pid(self) -> int:
        with open(self.settings.dnsmasq_pidfile, "r", encoding="utf-8") as f:
            contents = f.read()
        try:
            return int(contents.strip())
        except ValueError as exc:
            raise ValueError(f"invalid dnsmasq PID {contents!r}") from exc

    def signal_dnsmasq(self) -> bool:
        """Brief: Send SIGHUP to dnsmasq; failures are logged, never raised.

        dnsmasq re-reads its hosts directory on every reload, so a missed
        signal is corrected by the next one.
        """

        try:
            pid = self.read_dnsmasq_pid()
        except (OSError, ValueError) as exc:
            logger.warning(
                "Error reading dnsmasq PID file %r: %s", self.settings.dnsmasq_pidfile, exc
            )
            return False

        try:
            os.kill(pid, signal.SIGHUP)
        except OSError as exc:
            logger.warning("Error signalling dnsmasq process [PID: %d]: %s", pid, exc)
            return False
        return True

    # -- bootstrap + events ---------------------------------------------

    def load_running_containers(self) -> int:
        """Brief: Register every running container; any failure is fatal.

        Outputs:
          - int: Number of records written.
        """

        try:
            containers = self.client.containers.list()
        except DockerException as exc:
            raise ContainerError(f"failed to list containers: {exc}") from exc

        count = 0
        for c in containers:
            try:
                if self.container_added(c.id) is not None:
                    count += 1
            except NotFound as exc:
                raise ContainerError(f"[{c.id}] error loading container: {exc}") from exc
        return count

    def handle_event(self, event: Dict[str, Any]) -> None:
        """Brief: Dispatch one Docker container event by its action."""

        action = str(event.get("Action") or event.get("status") or "")
        container_id = str((event.get("Actor") or {}).get("ID") or event.get("id") or "")
        if not container_id:
            return

        if action in ADD_ACTIONS:
            try:
                self.container_added(container_id)
            except NotFound:
                logger.info("Container %s is gone; ignoring %s", container_id, action)
        elif action in REMOVE_ACTIONS:
            self.container_removed(container_id)

    def _read_events(self, stream: Any, results: "queue.Queue[Tuple[str, Any]]") -> None:
        try:
            for event in stream:
                results.put(("event", event))
        except Exception as exc:
            # Closing the stream from stop() surfaces as a read error.
            results.put(("eof", None) if self._stopping.is_set() else ("error", exc))
            return
        results.put(("eof", None))

    def run_event_loop(self) -> None:
        """Brief: Process container events in delivery order until EOF.

        Raises:
          - StreamError: The event stream failed for a reason other than stop().
          - ContainerError / FileSystemError from event handling.
        """

        try:
            stream = self.client.events(decode=True, filters={"type": "container"})
        except DockerException as exc:
            raise StreamError(f"failed to open event stream: {exc}") from exc

        self._stream = stream
        if self._stopping.is_set():
            stream.close()

        results: "queue.Queue[Tuple[str, Any]]" = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        reader = threading.Thread(
            target=self._read_events,
            args=(stream, results),
            name="ldhdns-docker-events",
            daemon=True,
        )
        reader.start()

        try:
            while True:
                kind, payload = results.get()
                if kind == "event":
                    self.handle_event(payload)
                elif kind == "eof":
                    logger.info("Event loop shutting down")
                    return
                else:
                    raise StreamError(f"event stream failed: {payload}") from payload
        finally:
            self._stream = None
            stream.close()

    def stop(self) -> None:
        """Brief: Close the event stream so run_event_loop() returns."""

        self._stopping.set()
        stream = self._stream
        if stream is not None:
            stream.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


def run(settings: Settings, registrar: Optional[HostnameRegistrar] = None) -> None:
    """Brief: DNS-mode entrypoint used by `ldhdns dns`."""

    logger.info("Starting...")
    registrar = registrar or HostnameRegistrar(settings)
    logger.info(
        "Configured for %r domain and %r container label.",
        settings.domain_suffix,
        settings.subdomain_label,
    )
    try:
        logger.info("Loading existing containers...")
        registrar.load_running_containers()
        logger.info("Running event loop...")
        registrar.run_event_loop()
    finally:
        logger.info("Shutting down...")
        registrar.close()
