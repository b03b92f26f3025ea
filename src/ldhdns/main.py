from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

from . import __version__, controller, registrar
from .config.config_parser import load_settings
from .config.logging_config import init_logging
from .errors import LdhDnsError

logger = logging.getLogger("ldhdns.main")


def build_parser() -> argparse.ArgumentParser:
    """Brief: Build the `ldhdns` argument parser.

    Outputs:
      - argparse.ArgumentParser with controller/dns/version subcommands. Flag
        defaults are None so unset flags never override the config file or
        LDHDNS_* environment variables.
    """

    parser = argparse.ArgumentParser(
        prog="ldhdns",
        description="A tool to provide DNS for docker containers running on a single host.",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to YAML config file")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "warning", "error", "crit", "critical"],
        help="Override logging.level",
    )
    sub = parser.add_subparsers(dest="command")

    ctl = sub.add_parser("controller", help="Runs ldhdns in controller mode")
    ctl.add_argument(
        "--network-id", default=None, help="Network name of managed docker bridge network."
    )
    ctl.add_argument(
        "--container-name",
        default=None,
        help="Name of the controller container, used when the cgroup marker is unavailable.",
    )

    dns = sub.add_parser("dns", help="Runs ldhdns in DNS mode")
    dns.add_argument(
        "--dnsmasq-hostsdir",
        dest="hosts_dir",
        default=None,
        help="Directory for host entries to be written to which dnsmasq will read.",
    )
    dns.add_argument(
        "--dnsmasq-pidfile",
        dest="dnsmasq_pidfile",
        default=None,
        help="PID file of the dnsmasq process.",
    )

    for p in (ctl, dns):
        p.add_argument(
            "--domain-suffix", default=None, help="Domain name suffix for DNS resolution."
        )
        p.add_argument(
            "--subdomain-label",
            default=None,
            help="Name of the label used to provide the sub-domain of a container.",
        )

    sub.add_parser("version", help="Prints the version")
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in (
        "network_id",
        "container_name",
        "domain_suffix",
        "subdomain_label",
        "hosts_dir",
        "dnsmasq_pidfile",
    ):
        value = getattr(args, key, None)
        if value is not None:
            out[key] = value
    if args.log_level:
        out["logging"] = {"level": args.log_level}
    return out


def _install_shutdown_handlers(request_shutdown: Callable[[str], None]) -> None:
    def _sigterm_handler(_signum, _frame):
        request_shutdown("SIGTERM")

    def _sigint_handler(_signum, _frame):
        request_shutdown("SIGINT")

    try:
        signal.signal(signal.SIGTERM, _sigterm_handler)
        signal.signal(signal.SIGINT, _sigint_handler)
    except ValueError:  # pragma: no cover - not on the main thread
        logger.warning("Could not install SIGINT/SIGTERM handlers")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_usage()
        return 0
    if args.command == "version":
        print(__version__)
        return 0

    try:
        settings = load_settings(args.config, overrides=_overrides(args))
    except (OSError, ValueError) as e:
        init_logging({"level": args.log_level or "info"})
        logger.error("Failed to load configuration: %s", e)
        return 1

    init_logging(settings.logging)

    # shutdown_event is set by SIGINT/SIGTERM; in dns mode the registrar's
    # event stream is also closed so its blocking read returns.
    shutdown_event = threading.Event()
    dns_registrar: Optional[registrar.HostnameRegistrar] = None

    def _request_shutdown(reason: str) -> None:
        if shutdown_event.is_set():
            return
        shutdown_event.set()
        logger.info("Received %s signal", reason)
        if dns_registrar is not None:
            dns_registrar.stop()

    if args.command == "dns":
        dns_registrar = registrar.HostnameRegistrar(settings)

    _install_shutdown_handlers(_request_shutdown)

    try:
        if args.command == "controller":
            controller.run(settings, shutdown_event)
        else:
            registrar.run(settings, dns_registrar)
    except LdhDnsError as e:
        logger.error("Fatal: %s", e)
        return 1
    except Exception as e:
        logger.exception("Unhandled exception during %s operation: %s", args.command, e)
        return 1

    logger.info("Bye...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))  # pragma: no cover
