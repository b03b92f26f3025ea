"""Exception taxonomy for ldhdns.

Brief:
  Every failure the controller and the registrar surface to their callers is
  one of the classes below. Library exceptions (docker SDK, jeepney, OSError)
  are wrapped with ``raise ... from exc`` so the original cause stays on the
  traceback.
"""

from __future__ import annotations


class LdhDnsError(Exception):
    """Base class for all ldhdns errors."""


class IdentityError(LdhDnsError):
    """The process could not determine or inspect its own container."""


class TopologyError(LdhDnsError):
    """The owning container is not attached to the host network namespace."""


class ContainerError(LdhDnsError):
    """A container or network create/start/inspect/stop call failed."""


class AddressError(LdhDnsError):
    """An IP address reported by the runtime could not be parsed."""


class InterfaceNotFoundError(LdhDnsError):
    """No host interface carries the requested gateway address."""


class ResolverProtocolError(LdhDnsError):
    """A D-Bus call to systemd-resolved (or the bus daemon) failed."""


class FileSystemError(LdhDnsError):
    """A host-record file could not be written or deleted."""


class StreamError(LdhDnsError):
    """The container runtime event stream failed for a reason other than EOF."""
