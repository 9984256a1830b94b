"""Pytest configuration to expose the backend package for imports."""

import pathlib
import sys
from collections.abc import Iterator

import pytest

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def _fresh_settings() -> Iterator[None]:
    """Drop cached settings so environment tweaks in one test do not leak."""
    from app.core import config

    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()
