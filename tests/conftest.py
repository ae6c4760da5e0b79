"""Shared fixtures for npm-trustme tests."""

import io
import sys
from pathlib import Path

import pytest

# Modules live at the repository root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fake_console import FakeNpmConsole, FakePage  # noqa: E402
from npm_auth import NpmSession  # noqa: E402
from npm_config import RunOptions  # noqa: E402
from npm_log import Log  # noqa: E402


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def log(output):
    return Log(verbose=True, stream=output)


@pytest.fixture
def console():
    return FakeNpmConsole(logged_in=True)


@pytest.fixture
def page(console):
    return FakePage(console)


@pytest.fixture
def options():
    return RunOptions(headless=True)


@pytest.fixture
def make_session(log):
    """Build an NpmSession on a fake page with simulated time."""

    def _make(page, options, credentials=None):
        return NpmSession(page, options, log, credentials, clock=page.clock)

    return _make


@pytest.fixture
def config_env(tmp_path):
    """Environment pointing the persisted config at a temp file."""
    return {'NPM_TRUSTME_CONFIG': str(tmp_path / 'config.json')}
