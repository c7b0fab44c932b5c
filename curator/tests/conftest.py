import os
import sys

import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()

from curator.domain.ports import FixedTimePort, SeededRandomPort  # noqa: E402
from curator.tests.factories import NOW_MS  # noqa: E402


@pytest.fixture
def fixed_time():
    return FixedTimePort(NOW_MS)


@pytest.fixture
def seeded_random():
    return SeededRandomPort(42)


@pytest.fixture(autouse=True)
def _clear_curator_env():
    """Keep Spotify credentials and curator settings from leaking into tests."""
    prefixes = ('SPOTIFY_', 'CURATOR_')
    backup = {k: os.environ.pop(k) for k in list(os.environ) if k.startswith(prefixes)}
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith(prefixes)]:
            os.environ.pop(k, None)
        os.environ.update(backup)
