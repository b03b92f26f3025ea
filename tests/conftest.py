"""
Brief: Shared pytest configuration and Docker fakes for ldhdns tests.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys
from typing import Any, Dict, List, Optional

import pytest
from docker.errors import APIError, NotFound

# Ensure 'src' is on sys.path so 'ldhdns' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from ldhdns.config.config_schema import Settings  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


class FakeContainer:
    """Brief: Minimal stand-in for docker.models.containers.Container."""

    def __init__(self, client: "FakeDockerClient", attrs: Dict[str, Any]) -> None:
        self._client = client
        self.attrs = attrs
        self.id = attrs["Id"]
        self.name = str(attrs.get("Name") or "").lstrip("/")
        self.start_calls = 0
        self.stop_calls: List[Optional[int]] = []
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        # Attributes to switch to on start(), e.g. an exited state.
        self.attrs_after_start: Optional[Dict[str, Any]] = None

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        if self.attrs_after_start is not None:
            self._client.inspect[self.id] = self.attrs_after_start

    def reload(self) -> None:
        self.attrs = self._client.inspect_attrs(self.id)

    def stop(self, timeout: Optional[int] = None) -> None:
        self.stop_calls.append(timeout)
        if self.stop_error is not None:
            raise self.stop_error


class FakeContainers:
    def __init__(self, client: "FakeDockerClient") -> None:
        self._client = client
        self.created: List[Dict[str, Any]] = []
        self.list_filters: List[Any] = []

    def get(self, key: str) -> FakeContainer:
        return FakeContainer(self._client, self._client.inspect_attrs(key))

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[FakeContainer]:
        self.list_filters.append(filters)
        if self._client.list_error is not None:
            raise self._client.list_error
        out = []
        for attrs in self._client.inspect.values():
            if not (attrs.get("State") or {}).get("Running"):
                continue
            name = str(attrs.get("Name") or "").lstrip("/")
            if filters and "name" in filters and filters["name"] not in name:
                continue
            out.append(FakeContainer(self._client, attrs))
        return out

    def create(self, image: str, **kwargs: Any) -> FakeContainer:
        if self._client.create_error is not None:
            raise self._client.create_error
        record = dict(kwargs)
        record["image"] = image
        self.created.append(record)
        attrs = self._client.on_create(image, kwargs)
        self._client.inspect[attrs["Id"]] = attrs
        return FakeContainer(self._client, attrs)


class FakeNetwork:
    def __init__(self, net_id: str) -> None:
        self.id = net_id


class FakeNetworks:
    def __init__(self) -> None:
        self.existing: Dict[str, str] = {}
        self.created: List[Any] = []

    def get(self, name: str) -> FakeNetwork:
        if name not in self.existing:
            raise NotFound(f"network {name} not found")
        return FakeNetwork(self.existing[name])

    def create(self, name: str, driver: Optional[str] = None) -> FakeNetwork:
        self.created.append((name, driver))
        self.existing[name] = f"net-{name}"
        return FakeNetwork(self.existing[name])


class FakeEventStream:
    """Brief: Iterable event stream; raises `error` after the events, if set."""

    def __init__(self, events: List[Dict[str, Any]], error: Optional[Exception] = None) -> None:
        self._events = list(events)
        self._error = error
        self.closed = False

    def __iter__(self):
        for event in self._events:
            if self.closed:
                return
            yield event
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True


class FakeDockerClient:
    """Brief: In-memory Docker client keyed by container ID and name."""

    def __init__(self) -> None:
        self.inspect: Dict[str, Dict[str, Any]] = {}
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks()
        self.stream = FakeEventStream([])
        self.events_filters: List[Any] = []
        self.list_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.inspect_errors: Dict[str, Exception] = {}
        self.closed = False
        self.on_create = self._default_on_create

    def _default_on_create(self, image: str, kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "Id": "sidecar" + "0" * 57,
            "Name": "/" + str(kwargs.get("name") or ""),
            "State": {"Running": True, "Status": "running"},
            "Config": {"Image": image, "Labels": kwargs.get("labels") or {}},
            "NetworkSettings": {"Networks": {}},
        }

    def add(self, attrs: Dict[str, Any]) -> None:
        self.inspect[attrs["Id"]] = attrs

    def inspect_attrs(self, key: str) -> Dict[str, Any]:
        if key in self.inspect_errors:
            raise self.inspect_errors[key]
        if key in self.inspect:
            return self.inspect[key]
        for attrs in self.inspect.values():
            if str(attrs.get("Name") or "").lstrip("/") == key:
                return attrs
        raise NotFound(f"No such container: {key}")

    def events(self, decode: bool = False, filters: Optional[Dict[str, Any]] = None):
        self.events_filters.append((decode, filters))
        return self.stream

    def close(self) -> None:
        self.closed = True


def make_container(
    cid: str,
    *,
    label: Optional[str] = None,
    running: bool = True,
    networks: Optional[Dict[str, Dict[str, Any]]] = None,
    label_key: str = "dns.ldh/subdomain",
) -> Dict[str, Any]:
    """Brief: Build docker inspect attributes for a workload container."""

    labels = {} if label is None else {label_key: label}
    return {
        "Id": cid,
        "Name": f"/{cid}",
        "State": {"Running": running, "Status": "running" if running else "exited"},
        "Config": {"Labels": labels},
        "NetworkSettings": {"Networks": networks or {"bridge": {"IPAddress": "172.17.0.9"}}},
    }


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    """Brief: Provide a fresh in-memory Docker client."""

    return FakeDockerClient()


@pytest.fixture
def hosts_dir(tmp_path):
    path = tmp_path / "hosts.d"
    path.mkdir()
    return path


@pytest.fixture
def settings(hosts_dir, tmp_path) -> Settings:
    """Brief: Settings pointing the hosts dir and PID file at tmp_path."""

    return Settings(
        hosts_dir=str(hosts_dir),
        dnsmasq_pidfile=str(tmp_path / "dnsmasq.pid"),
    )


@pytest.fixture
def api_error():
    """Brief: Factory for docker APIError instances."""

    return lambda msg="boom": APIError(msg)


@pytest.fixture
def container_attrs():
    """Brief: Expose make_container to tests as a fixture."""

    return make_container


@pytest.fixture
def event_stream():
    """Brief: Expose FakeEventStream to tests as a fixture."""

    return FakeEventStream
