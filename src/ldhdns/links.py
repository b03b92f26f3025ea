"""Host network link lookup.

Brief:
  systemd-resolved configures DNS per link (interface index). The controller
  runs on the host network, so the bridge created for the sidecar shows up
  as a local interface whose address is the bridge gateway. find_link_index
  maps that gateway address back to the interface index and name.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Dict, List, Tuple, Union

import psutil

from .errors import AddressError, InterfaceNotFoundError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_ip(value: object, what: str = "address") -> IPAddress:
    """Brief: Parse an IPv4/IPv6 address reported by Docker.

    Inputs:
      - value: Address string (e.g. "172.20.0.2").
      - what: Label used in the error message.

    Outputs:
      - ipaddress.IPv4Address | ipaddress.IPv6Address

    Raises:
      - AddressError: When value is empty or not an IP address.
    """

    text = str(value or "").strip()
    try:
        return ipaddress.ip_address(text)
    except ValueError as exc:
        raise AddressError(f"failed to parse {what} {text!r}") from exc


def _interface_addresses() -> Dict[str, List[IPAddress]]:
    """Brief: Return parsed IPv4/IPv6 addresses per host interface name."""

    result: Dict[str, List[IPAddress]] = {}
    for name, addrs in psutil.net_if_addrs().items():
        parsed: List[IPAddress] = []
        for addr in addrs:
            if addr.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            # Link-local IPv6 addresses carry a "%<iface>" zone suffix.
            text = str(addr.address).split("%", 1)[0]
            try:
                parsed.append(ipaddress.ip_address(text))
            except ValueError:
                logger.debug("Ignoring unparseable address %r on %s", addr.address, name)
        result[name] = parsed
    return result


def find_link_index(gateway: IPAddress) -> Tuple[int, str]:
    """Brief: Find the host interface whose address equals the gateway.

    Inputs:
      - gateway: Gateway address of the sidecar's bridge network.

    Outputs:
      - (index, name): Interface index as used by systemd-resolved and the
        interface name (e.g. "br-3f2a...").

    Raises:
      - InterfaceNotFoundError: When no non-loopback, non-multicast address
        matches exactly.
    """

    for name, addrs in sorted(_interface_addresses().items()):
        for addr in addrs:
            if addr.is_loopback or addr.is_multicast:
                continue
            if addr == gateway:
                try:
                    index = socket.if_nametoindex(name)
                except OSError as exc:
                    raise InterfaceNotFoundError(
                        f"interface {name} vanished while resolving {gateway}"
                    ) from exc
                return index, name

    raise InterfaceNotFoundError(
        f"unable to determine index for network interface with address {gateway}"
    )
