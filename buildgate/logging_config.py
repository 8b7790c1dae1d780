"""Central logging configuration driven by LOG_LEVEL and LOG_FILE."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

_CONFIGURED = False

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level_override: Optional[int] = None) -> None:
    """Configure global logging based on LOG_LEVEL and LOG_FILE.

    ``LOG_LEVEL`` 0 (default) is silent, 1 is info, 2 and above is debug.
    Records go to ``LOG_FILE`` when set, otherwise to stderr so they stay
    out of the JSON outcome printed on stdout.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if level_override is not None:
        level: Optional[int] = level_override
    else:
        level = _read_level(os.getenv("LOG_LEVEL", "0"))
    log_path = os.getenv("LOG_FILE")

    if level is None or level <= 0:
        # Silent mode; warnings still reach the last-resort handler.
        _CONFIGURED = True
        return

    if log_path:
        log_file = Path(log_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=_map_level(level),
            filename=log_file,
            filemode="a",
            format=LOG_FORMAT,
            force=True,
        )
    else:
        logging.basicConfig(
            level=_map_level(level),
            format=LOG_FORMAT,
            force=True,
        )
    _CONFIGURED = True


def _read_level(raw: str) -> Optional[int]:
    try:
        return int(raw)
    except ValueError:
        return None


def _map_level(level: int) -> int:
    if level >= 2:
        return logging.DEBUG
    return logging.INFO
