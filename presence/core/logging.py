"""
Geo Presence — logging configuration.

Call ``configure_logging()`` once at process startup (station runner or the
reference store app) to install the shared handler configuration.

Per-component levels come from ``LOG_LEVEL_OVERRIDES``, a comma-separated
list of ``logger=LEVEL`` pairs, e.g.::

    LOG_LEVEL_OVERRIDES="presence.realtime=DEBUG,presence.notifications=WARNING"
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Dict, Optional


_CONFIGURED = False

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Loggers that are noisy at INFO on a busy station or store.
_QUIET_BY_DEFAULT = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    # one line per websocket client connect/disconnect
    "presence.websocket": logging.WARNING,
}


def parse_level_overrides(spec: Optional[str]) -> Dict[str, int]:
    """Parse ``"name=LEVEL,name=LEVEL"``; malformed or unknown entries are skipped."""
    overrides: Dict[str, int] = {}
    for item in (spec or "").split(","):
        name, sep, level = item.partition("=")
        name, level = name.strip(), level.strip().upper()
        if not sep or not name or level not in _LEVEL_MAP:
            continue
        overrides[name] = _LEVEL_MAP[level]
    return overrides


def configure_logging(
    level: Optional[str] = None,
    fmt: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    overrides: Optional[str] = None,
) -> None:
    """Configure the root logger exactly once.

    Parameters
    ----------
    level:
        Log level string (DEBUG, INFO, WARNING, …).  Falls back to the
        ``LOG_LEVEL`` environment variable, then ``INFO``.
    fmt:
        Log format string.
    datefmt:
        Date format string for the formatter.
    overrides:
        Per-logger levels in ``LOG_LEVEL_OVERRIDES`` syntax.  Falls back to
        that environment variable; applied after the quiet defaults.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    env_level = os.environ.get("LOG_LEVEL", "INFO").upper()
    resolved = _LEVEL_MAP.get(level.upper() if level else env_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.setLevel(resolved)

    # uvicorn installs its own handlers when it owns the process
    if not root.handlers:
        root.addHandler(handler)

    levels = dict(_QUIET_BY_DEFAULT)
    if resolved == logging.DEBUG:
        # Asking for DEBUG means the package's own loggers too
        levels = {name: lvl for name, lvl in levels.items() if not name.startswith("presence.")}
    levels.update(parse_level_overrides(
        overrides if overrides is not None else os.environ.get("LOG_LEVEL_OVERRIDES"),
    ))
    for name, lvl in levels.items():
        logging.getLogger(name).setLevel(lvl)

    _CONFIGURED = True
