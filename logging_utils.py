#!/usr/bin/env python3
"""Shared logging helpers for WickGuard.

All component loggers live under the ``wickguard`` namespace
(``wickguard.detector``, ``wickguard.executor``, ...). Handlers are attached
once to the namespace root so the detector, executor and reconciler loops
share one console/file sink.
"""

from __future__ import annotations

import logging
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "wickguard"

_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _env_level(default: int) -> int:
    raw = env_str("WICKGUARD_LOG_LEVEL")
    if not raw:
        return default
    val = str(raw).strip().upper()
    if val.isdigit():
        return int(val)
    return getattr(logging, val, default)


def _qualified(name: str) -> str:
    name = str(name or "").strip()
    if not name or name == ROOT_LOGGER:
        return ROOT_LOGGER
    if name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def _formatter() -> logging.Formatter:
    return logging.Formatter(_DEFAULT_FORMAT, datefmt=_DEFAULT_DATEFMT)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get a component logger under the wickguard namespace.

    A stream handler is installed on the namespace root on first use, so
    loggers work standalone (tests, one-off scripts) without setup_logging().
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_formatter())
        root.addHandler(handler)
        root.setLevel(_env_level(logging.INFO))
    logger = logging.getLogger(_qualified(name))
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Configure the namespace root for a long-running process (console + optional file)."""
    root = logging.getLogger(ROOT_LOGGER)
    root.handlers = []
    root.setLevel(_env_level(logging.DEBUG if verbose else logging.INFO) if level is None else level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter())
        root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(_formatter())
    root.addHandler(console_handler)

    return root


def short_ref(ref: Optional[str], keep: int = 10) -> str:
    """Abbreviate a tx hash / address for log lines (0x1234abcd…9f)."""
    text = str(ref or "")
    if len(text) <= keep + 4:
        return text or "-"
    return f"{text[:keep]}…{text[-4:]}"
