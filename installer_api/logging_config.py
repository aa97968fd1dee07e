"""Root logger setup driven by ``INSTALLER_LOG_LEVEL`` and ``INSTALLER_DEBUG``."""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def env_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _level_from(value: Union[int, str, None]) -> Optional[int]:
    if isinstance(value, int):
        return value
    text = (value or "").strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper()) if text else None
    return level if isinstance(level, int) else None


def configure_root(default_level: Union[int, str] = logging.INFO) -> int:
    """Install the installer's log format on the root logger and return the level.

    An explicit ``INSTALLER_LOG_LEVEL`` wins; otherwise a truthy
    ``INSTALLER_DEBUG`` selects DEBUG. Existing handlers are left alone so the
    ASGI server's own configuration survives.
    """
    level = _level_from(os.getenv("INSTALLER_LOG_LEVEL"))
    if level is None:
        level = logging.DEBUG if env_truthy(os.getenv("INSTALLER_DEBUG")) else _level_from(default_level)
    level = logging.INFO if level is None else level

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    root.setLevel(level)
    return level


__all__ = ["configure_root", "env_truthy"]
