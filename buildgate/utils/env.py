from __future__ import annotations

"""Helpers for loading environment configuration."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple, Union

_ENV_LOADED = False

_LOGGER = logging.getLogger(__name__)


def load_dotenv(dotenv_path: Union[str, Path] = ".env") -> None:
    """Load environment variables from a simple ``.env`` file if present."""
    global _ENV_LOADED
    if _ENV_LOADED:
        return

    path = Path(dotenv_path)
    if path.exists():
        for line in path.read_text().splitlines():
            parsed = _parse_line(line)
            if parsed:
                key, value = parsed
                os.environ.setdefault(key, value)

    _ENV_LOADED = True


def _parse_line(line: str) -> Optional[Tuple[str, str]]:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    if stripped.startswith("export "):
        stripped = stripped[len("export "):].lstrip()

    if "=" not in stripped:
        return None

    key, value = stripped.split("=", 1)
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return (key.strip(), value)


def _truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    lowered = value.strip().lower()
    return lowered in {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return _truthy(raw)


def env_int(name: str, default: int, *, minimum: int = 0) -> int:
    """Read an integer setting, falling back to ``default`` when invalid."""

    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value
    except ValueError:
        _LOGGER.warning("Invalid %s=%s; using default %s", name, raw, default)
        return default


def env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    """Read a float setting, falling back to ``default`` when invalid."""

    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value
    except ValueError:
        _LOGGER.warning("Invalid %s=%s; using default %s", name, raw, default)
        return default


def env_list(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


def env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None
