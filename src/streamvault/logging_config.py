"""Logging setup for streamvault.

Usage:
    from streamvault.logging_config import setup_logging
    setup_logging()  # once, at process start

    # elsewhere:
    import logging
    log = logging.getLogger(__name__)
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Dict, Optional


_ROOT = "streamvault"
_CONFIGURED = False


def _parse_module_levels(spec: str) -> Dict[str, int]:
    """Parse ``SV_LOG_MODULE_LEVELS`` style overrides.

    Format:
        SV_LOG_MODULE_LEVELS="download=DEBUG,streamvault.replay:WARNING"

    Bare names are prefixed with ``streamvault.``. Entries that do not name a
    known level are skipped.
    """
    out: Dict[str, int] = {}
    if not spec:
        return out
    for part in re.split(r"[;,]+", spec):
        part = part.strip()
        if "=" in part:
            name, level_str = part.split("=", 1)
        elif ":" in part:
            name, level_str = part.split(":", 1)
        else:
            continue
        name = name.strip()
        level_str = level_str.strip().upper()
        if not name or not level_str:
            continue
        if not name.startswith(_ROOT):
            name = f"{_ROOT}.{name}"
        level = getattr(logging, level_str, None)
        if isinstance(level, int):
            out[name] = level
    return out


def parse_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    level = getattr(logging, str(value).strip().upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {value}")
    return level


def setup_logging(
    level: int | str = logging.INFO,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    *,
    force: bool = False,
) -> None:
    """Attach handlers to the ``streamvault`` logger.

    Args:
        level: package log level, as an int or a level name
        log_file: also write to this file when given
        format_string: override the default record format
        force: reconfigure even if already configured
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    formatter = logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S")

    logger = logging.getLogger(_ROOT)
    logger.setLevel(parse_level(level))
    logger.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    # Permissive handler so per-module overrides can go below the package level.
    console.setLevel(logging.DEBUG)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False

    for name, lvl in _parse_module_levels(os.getenv("SV_LOG_MODULE_LEVELS", "")).items():
        logging.getLogger(name).setLevel(lvl)

    _CONFIGURED = True
