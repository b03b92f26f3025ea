"""System bus monitor that detects when the DNS binding needs reapplying.

Brief:
  systemd-resolved silently drops per-link settings when the host suspends or
  when another link is reconfigured (e.g. Wi-Fi toggled). The monitor watches
  two kinds of system bus signals on a dedicated connection:
    - login1 Manager.PrepareForSleep(bool)
    - PropertiesChanged on /org/freedesktop/resolve1

  Each message is decoded into a MonitoredEvent and classified. Events that
  mean "reapply" are published on `signals`, a queue with capacity 1, so a
  burst of messages collapses into a single pending notification.

Threads:
  - reader: receives bus messages into a small bounded queue.
  - decoder: sole consumer of that queue and sole producer of `signals`.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Union

from jeepney import (
    DBusAddress,
    DBusErrorResponse,
    HeaderFields,
    MatchRule,
    MessageType,
    message_bus,
    new_method_call,
)
from jeepney.io.blocking import DBusConnection
from jeepney.wrappers import unwrap_msg

from .errors import ResolverProtocolError
from .resolve1 import RESOLVE1_MANAGER_IFACE, RESOLVE1_PATH, open_system_bus

logger = logging.getLogger(__name__)

LOGIN1_MANAGER_IFACE = "org.freedesktop.login1.Manager"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

INTERNAL_QUEUE_SIZE = 10
RECEIVE_TIMEOUT = 0.5

PREPARE_FOR_SLEEP_RULE = MatchRule(
    type="signal", interface=LOGIN1_MANAGER_IFACE, member="PrepareForSleep"
)
RESOLVE1_PROPERTIES_RULE = MatchRule(
    type="signal",
    interface=PROPERTIES_IFACE,
    member="PropertiesChanged",
    path=RESOLVE1_PATH,
)

_MONITORING = DBusAddress(
    "/org/freedesktop/DBus",
    bus_name="org.freedesktop.DBus",
    interface="org.freedesktop.DBus.Monitoring",
)


@dataclass(frozen=True)
class SuspendResume:
    resuming: bool


@dataclass(frozen=True)
class ResolverPropertiesChanged:
    link_present: bool


MonitoredEvent = Union[SuspendResume, ResolverPropertiesChanged]


def _headers(msg: Any) -> Optional[Tuple[str, str, str]]:
    """Brief: Return (path, interface, member) of a signal, or None.

    Messages that are not signals or lack any of the three fields cannot be
    classified and are skipped by the caller.
    """

    header = getattr(msg, "header", None)
    if header is None or getattr(header, "message_type", None) != MessageType.signal:
        return None
    fields = getattr(header, "fields", None) or {}
    path = fields.get(HeaderFields.path)
    interface = fields.get(HeaderFields.interface)
    member = fields.get(HeaderFields.member)
    if not path or not interface or not member:
        return None
    return str(path), str(interface), str(member)


def _is_prepare_for_sleep(path: str, interface: str, member: str) -> bool:
    return interface == LOGIN1_MANAGER_IFACE and member == "PrepareForSleep"


def _is_resolver_properties(path: str, interface: str, member: str) -> bool:
    return (
        path == RESOLVE1_PATH
        and interface == PROPERTIES_IFACE
        and member == "PropertiesChanged"
    )


def _decode_sleep(body: Tuple[Any, ...], link_index: Optional[int]) -> MonitoredEvent:
    if len(body) != 1 or not isinstance(body[0], bool):
        raise ValueError(f"unexpected PrepareForSleep body {body!r}")
    # True: about to suspend, False: resumed.
    return SuspendResume(resuming=not body[0])


def _decode_properties(
    body: Tuple[Any, ...], link_index: Optional[int]
) -> Optional[MonitoredEvent]:
    if len(body) < 2:
        raise ValueError(f"unexpected PropertiesChanged body {body!r}")
    iface, changed = body[0], body[1]
    if iface != RESOLVE1_MANAGER_IFACE:
        return None
    if not isinstance(changed, dict) or "DNS" not in changed:
        return None

    value = changed["DNS"]
    # Variants decode to (signature, value).
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str):
        value = value[1]
    if not isinstance(value, list):
        raise ValueError(f"unexpected DNS property value {value!r}")

    present = False
    for entry in value:
        if not isinstance(entry, tuple) or len(entry) != 3:
            raise ValueError(f"unexpected DNS entry {entry!r}")
        if link_index is not None and int(entry[0]) == link_index:
            present = True
    return ResolverPropertiesChanged(link_present=present)


Classifier = Tuple[
    Callable[[str, str, str], bool],
    Callable[[Tuple[Any, ...], Optional[int]], Optional[MonitoredEvent]],
]

# First matching predicate wins.
_CLASSIFIERS: List[Classifier] = [
    (_is_prepare_for_sleep, _decode_sleep),
    (_is_resolver_properties, _decode_properties),
]


def decode_message(msg: Any, link_index: Optional[int]) -> Optional[MonitoredEvent]:
    """Brief: Decode a bus message into a MonitoredEvent.

    Inputs:
      - msg: jeepney Message (or anything with .header/.body).
      - link_index: Interface index the controller bound, if any.

    Outputs:
      - MonitoredEvent, or None when the message is not one we track or its
        payload is malformed (logged).
    """

    headers = _headers(msg)
    if headers is None:
        return None

    for matches, decode in _CLASSIFIERS:
        if not matches(*headers):
            continue
        body = getattr(msg, "body", None)
        try:
            return decode(tuple(body or ()), link_index)
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed %s message: %s", headers[2], exc)
            return None
    return None


def needs_reapply(event: Optional[MonitoredEvent]) -> bool:
    """Brief: Decide whether an event means the binding must be reapplied.

    A DNS property change that no longer lists our link is taken to mean the
    binding was reverted by someone else. This can fire when nothing was
    lost, which only costs a redundant reapply.
    """

    if isinstance(event, SuspendResume):
        return event.resuming
    if isinstance(event, ResolverPropertiesChanged):
        return not event.link_present
    return False


class SystemEventMonitor:
    """Brief: Publish "reapply needed" notifications from system bus traffic.

    Inputs:
      - connect: Factory for the dedicated bus connection (defaults to a new
        private system bus connection, never a shared one, since monitor mode
        changes how the whole connection receives messages).
      - queue_size: Capacity of the internal message queue.

    Outputs:
      - signals: queue.Queue(maxsize=1) that receives True per reapply.
      - error: Exception that stopped the reader, if any.
    """

    def __init__(
        self,
        connect: Optional[Callable[[], DBusConnection]] = None,
        queue_size: int = INTERNAL_QUEUE_SIZE,
    ) -> None:
        self._connect = connect or open_system_bus
        self._conn: Optional[DBusConnection] = None
        self._messages: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self.signals: "queue.Queue[bool]" = queue.Queue(maxsize=1)
        self.error: Optional[BaseException] = None
        self.link_index: Optional[int] = None
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Brief: Open the connection, enter monitor mode and start threads.

        Raises:
          - ResolverProtocolError: When the bus connection or subscription fails.
        """

        try:
            self._conn = self._connect()
        except (OSError, ValueError, DBusErrorResponse) as exc:
            raise ResolverProtocolError(f"failed to connect to system bus: {exc}") from exc

        self._subscribe(self._conn)

        for name, target in (
            ("ldhdns-bus-reader", self._read_loop),
            ("ldhdns-bus-decoder", self._decode_loop),
        ):
            t = threading.Thread(target=target, name=name, daemon=True)
            t.start()
            self._threads.append(t)

    def _subscribe(self, conn: DBusConnection) -> None:
        rules = [PREPARE_FOR_SLEEP_RULE.serialise(), RESOLVE1_PROPERTIES_RULE.serialise()]
        try:
            unwrap_msg(
                conn.send_and_get_reply(
                    new_method_call(_MONITORING, "BecomeMonitor", "asu", (rules, 0))
                )
            )
            logger.info("Monitoring system bus for sleep and resolver changes")
            return
        except DBusErrorResponse as exc:
            logger.warning(
                "BecomeMonitor refused (%s); falling back to signal subscriptions", exc
            )
        except OSError as exc:
            raise ResolverProtocolError(f"failed to enter monitor mode: {exc}") from exc

        for rule in rules:
            try:
                unwrap_msg(conn.send_and_get_reply(message_bus.AddMatch(rule)))
            except (DBusErrorResponse, OSError) as exc:
                raise ResolverProtocolError(f"failed to add match {rule!r}: {exc}") from exc

    def _read_loop(self) -> None:
        conn = self._conn
        assert conn is not None
        while not self._stop.is_set():
            try:
                msg = conn.receive(timeout=RECEIVE_TIMEOUT)
            except TimeoutError:
                continue
            except (OSError, ValueError) as exc:
                if not self._stop.is_set():
                    logger.error("System bus connection failed: %s", exc)
                    self.error = exc
                    self._stop.set()
                break
            while not self._stop.is_set():
                try:
                    self._messages.put(msg, timeout=RECEIVE_TIMEOUT)
                    break
                except queue.Full:
                    continue

    def _decode_loop(self) -> None:
        while not self._stop.is_set():
            try:
                msg = self._messages.get(timeout=RECEIVE_TIMEOUT)
            except queue.Empty:
                continue
            self.handle_message(msg)

    def handle_message(self, msg: Any) -> bool:
        """Brief: Classify one message and publish a reapply if needed.

        Outputs:
          - bool: True when the message asked for a reapply (whether or not it
            collapsed into an already pending one).
        """

        event = decode_message(msg, self.link_index)
        if event is None:
            return False
        logger.debug("System bus event: %s", event)
        if not needs_reapply(event):
            return False
        try:
            self.signals.put_nowait(True)
        except queue.Full:
            logger.debug("Reapply already pending; collapsing %s", event)
        return True

    def stop(self) -> None:
        """Brief: Stop the threads and close the dedicated connection."""

        self._stop.set()
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
        for t in self._threads:
            t.join(timeout=2.0)
        self._threads = []
