from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    """Brief: Map a config level name (e.g. "warn") to a logging constant.

    Inputs:
      - name: Case-insensitive level name or None.
      - default: Level returned for unknown or missing names.

    Outputs:
      - int: logging level constant.
    """

    if name is None:
        return default
    return _LEVELS.get(str(name).strip().lower(), default)


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output without timestamps (syslog adds its own)."""

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return f"{record.level_tag} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Bracketed lowercase level tags with UTC ISO-8601 timestamps."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    if isinstance(syslog_cfg, dict):
        address: Any = syslog_cfg.get("address", "/dev/log")
        if isinstance(address, (list, tuple)) and len(address) == 2:
            address = (str(address[0]), int(address[1]))
        facility = getattr(
            logging.handlers.SysLogHandler,
            f"LOG_{str(syslog_cfg.get('facility', 'daemon')).upper()}",
            logging.handlers.SysLogHandler.LOG_DAEMON,
        )
    else:
        address = "/dev/log"
        facility = logging.handlers.SysLogHandler.LOG_DAEMON

    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter())
    return handler


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Initialize root logging for the controller and dns processes.

    Args:
        cfg: Logging configuration dictionary with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True). Inside containers this
              is what ends up in `docker logs`.
            - file: path to an additional log file (optional)
            - syslog: boolean or dict with address/facility (optional,
              facility defaults to daemon)

    Example config:
        {
            "level": "debug",
            "stderr": True,
            "syslog": {"address": "/dev/log", "facility": "daemon"}
        }
    """
    cfg = cfg or {}

    level = level_from_name(cfg.get("level"))
    formatter = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)

    # Re-running init_logging (tests, CLI overrides) must not stack handlers.
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            root.addHandler(_syslog_handler(syslog_cfg))
        except (
            OSError,
            ValueError,
        ) as e:  # pragma: no cover - depends on /dev/log being present
            root.warning("Failed to configure syslog: %s", e)

    logging.captureWarnings(True)
