"""Client for the systemd-resolved D-Bus API (org.freedesktop.resolve1).

Brief:
  Thin typed wrapper used by the controller to bind the sidecar's address as
  the DNS server for one host link, with the ldhdns domain as a routing
  domain, and to revert that link on shutdown.

  See https://www.freedesktop.org/software/systemd/man/org.freedesktop.resolve1.html
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple

from jeepney import DBusAddress, DBusErrorResponse, new_method_call
from jeepney.io.blocking import DBusConnection, open_dbus_connection
from jeepney.wrappers import unwrap_msg

from .errors import ResolverProtocolError
from .links import IPAddress

logger = logging.getLogger(__name__)

RESOLVE1_BUS_NAME = "org.freedesktop.resolve1"
RESOLVE1_PATH = "/org/freedesktop/resolve1"
RESOLVE1_MANAGER_IFACE = "org.freedesktop.resolve1.Manager"
RESOLVE1_LINK_IFACE = "org.freedesktop.resolve1.Link"

Connector = Callable[[], DBusConnection]


def open_system_bus() -> DBusConnection:
    """Brief: Open a new, privately authenticated system bus connection."""

    return open_dbus_connection(bus="SYSTEM")


@dataclass(frozen=True)
class LinkHandle:
    """Brief: Reference to a resolve1 link object that has been configured.

    Inputs:
      - index: Host interface index.
      - path: D-Bus object path returned by Manager.GetLink.
    """

    index: int
    path: str


def address_family(address: IPAddress) -> int:
    """Brief: Return the AF_* constant resolve1 expects for an address."""

    return socket.AF_INET if address.version == 4 else socket.AF_INET6


class ResolverClient:
    """Brief: Synchronous resolve1 client over one dedicated bus connection.

    Inputs:
      - connect: Optional factory returning a jeepney blocking connection;
        defaults to open_system_bus(). The connection is opened lazily on the
        first call and reused until close().
      - timeout: Optional per-call reply timeout in seconds. None (default)
        waits for the reply like any other blocking bus call.
    """

    def __init__(
        self, connect: Optional[Connector] = None, timeout: Optional[float] = None
    ) -> None:
        self._connect = connect or open_system_bus
        self._timeout = timeout
        self._conn: Optional[DBusConnection] = None
        self._lock = threading.Lock()
        self._manager = DBusAddress(
            RESOLVE1_PATH, bus_name=RESOLVE1_BUS_NAME, interface=RESOLVE1_MANAGER_IFACE
        )

    def _connection(self) -> DBusConnection:
        if self._conn is None:
            try:
                self._conn = self._connect()
            except (OSError, ValueError, DBusErrorResponse) as exc:
                raise ResolverProtocolError(
                    f"failed to connect to system bus: {exc}"
                ) from exc
        return self._conn

    def _call(self, what: str, msg: Any) -> Tuple[Any, ...]:
        with self._lock:
            conn = self._connection()
            try:
                reply = conn.send_and_get_reply(msg, timeout=self._timeout)
                return tuple(unwrap_msg(reply))
            except DBusErrorResponse as exc:
                raise ResolverProtocolError(f"failed to {what}: {exc}") from exc
            except (OSError, TimeoutError) as exc:
                raise ResolverProtocolError(f"failed to {what}: {exc}") from exc

    def _link(self, path: str) -> DBusAddress:
        return DBusAddress(path, bus_name=RESOLVE1_BUS_NAME, interface=RESOLVE1_LINK_IFACE)

    def get_link(self, index: int) -> str:
        """Brief: Return the resolve1 object path for interface `index`."""

        body = self._call(
            "get link", new_method_call(self._manager, "GetLink", "i", (int(index),))
        )
        return str(body[0])

    def bind_link(
        self, index: int, addresses: Iterable[IPAddress], domain: str
    ) -> LinkHandle:
        """Brief: Set DNS servers and a single routing domain on a link.

        Inputs:
          - index: Host interface index.
          - addresses: DNS server addresses to set (replaces existing ones).
          - domain: Domain suffix, registered with the routing flag so only
            queries under it are sent to these servers.

        Outputs:
          - LinkHandle for a later revert().

        Raises:
          - ResolverProtocolError: When any bus call fails.
        """

        path = self.get_link(index)
        link = self._link(path)

        servers = [(address_family(a), a.packed) for a in addresses]
        self._call("set link DNS", new_method_call(link, "SetDNS", "a(iay)", (servers,)))
        self._call(
            "set link domain",
            new_method_call(link, "SetDomains", "a(sb)", ([(domain, True)],)),
        )

        logger.debug("Bound %s on link %d (%s) to %s", domain, index, path, servers)
        return LinkHandle(index=int(index), path=path)

    def revert(self, handle: LinkHandle) -> None:
        """Brief: Drop every per-link setting made through this API."""

        self._call("revert link DNS", new_method_call(self._link(handle.path), "Revert"))

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
