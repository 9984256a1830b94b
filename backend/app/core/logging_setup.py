"""Root logger configuration for the service."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stdout handler on the root logger.

    Safe to call more than once (tests build many apps); only the level is
    updated after the first call.

    Args:
        level: Logging level name such as "DEBUG" or "warning".
    """
    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    if not getattr(root, "_tile_cache_configured", False):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root._tile_cache_configured = True  # type: ignore[attr-defined]

    root.setLevel(resolved)
