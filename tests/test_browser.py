"""Tests for browser session helpers."""

import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from npm_browser import (
    BrowserSession,
    build_screenshot_path,
    capture_screenshot,
    decide_cdp_usage,
    fetch_cdp_version,
    resolve_persistent_profile,
)
from npm_config import RunOptions
from npm_errors import ConfigurationError


class TestScreenshots:
    def test_path_neutralizes_separators(self):
        assert build_screenshot_path(Path('/tmp/shots'), '../secret', 1234) == Path('/tmp/shots/..-secret-1234.png')

    def test_blank_label(self):
        assert build_screenshot_path(Path('/tmp'), '', 1).name == 'screenshot-1.png'

    def test_disabled_without_directory(self):
        page = MagicMock()
        assert capture_screenshot(page, None, 'login-timeout') is None
        page.screenshot.assert_not_called()

    def test_file_is_private(self, tmp_path):
        page = MagicMock()
        page.screenshot.side_effect = lambda path, full_page: Path(path).write_bytes(b'png')

        saved = capture_screenshot(page, tmp_path / 'shots', 'login-timeout')

        assert Path(saved).parent == tmp_path / 'shots'
        assert Path(saved).name.startswith('login-timeout-')
        assert stat.S_IMODE(Path(saved).stat().st_mode) == 0o600

    def test_no_file_means_no_screenshot(self, tmp_path):
        page = MagicMock()

        assert capture_screenshot(page, tmp_path, 'login-timeout') is None
        assert list(tmp_path.iterdir()) == []


class TestDecideCdpUsage:
    """Tests for decide_cdp_usage()."""

    def test_reachable_endpoint_is_used(self):
        decision = decide_cdp_usage('http://127.0.0.1:9222', explicit=True)
        assert decision.cdp_url == 'http://127.0.0.1:9222'
        assert not decision.should_error

    def test_explicit_unreachable_is_an_error(self):
        decision = decide_cdp_usage(None, explicit=True, configured_port=9333)
        assert decision.should_error
        assert decision.attempted_url == 'http://127.0.0.1:9333'

    def test_configured_unreachable_falls_back(self):
        decision = decide_cdp_usage(None, explicit=False, configured_url='http://localhost:9222')
        assert decision.should_fallback
        assert decision.cdp_url is None

    def test_nothing_configured(self):
        decision = decide_cdp_usage(None, explicit=False)
        assert not (decision.should_error or decision.should_fallback or decision.cdp_url)


class TestFetchCdpVersion:
    def test_unreachable(self):
        with patch('npm_browser.requests.get', side_effect=requests.ConnectionError('refused')):
            assert fetch_cdp_version('http://127.0.0.1:9222') is None

    def test_version_info(self):
        response = MagicMock(ok=True)
        response.json.return_value = {'webSocketDebuggerUrl': 'ws://127.0.0.1:9222/devtools/browser/x'}

        with patch('npm_browser.requests.get', return_value=response) as get:
            info = fetch_cdp_version('http://127.0.0.1:9222/')

        assert info['webSocketDebuggerUrl'].startswith('ws://')
        assert get.call_args.args[0] == 'http://127.0.0.1:9222/json/version'


class TestPersistentProfile:
    def test_not_requested(self):
        assert resolve_persistent_profile(RunOptions()) is None

    def test_profile_directory_implies_user_data_dir(self, tmp_path):
        profile_dir = tmp_path / 'Profile 3'
        profile_dir.mkdir()

        user_data_dir, args = resolve_persistent_profile(RunOptions(chrome_profile_dir=profile_dir))

        assert user_data_dir == tmp_path.resolve()
        assert args == ['--profile-directory=Profile 3']

    def test_missing_user_data_dir(self, tmp_path):
        options = RunOptions(chrome_profile='Default', chrome_user_data_dir=tmp_path / 'missing')
        with pytest.raises(ConfigurationError, match='user data directory not found'):
            resolve_persistent_profile(options)


class TestBrowserSession:
    def test_attached_browser_keeps_context_open(self, tmp_path):
        context, browser, playwright = MagicMock(), MagicMock(), MagicMock()
        storage = tmp_path / 'state.json'
        context.storage_state.side_effect = lambda path: Path(path).write_text('{}')

        with BrowserSession(MagicMock(), context, browser, playwright, is_attached=True, storage_state_path=storage):
            pass

        context.close.assert_not_called()
        browser.close.assert_called_once()
        playwright.stop.assert_called_once()
        assert stat.S_IMODE(storage.stat().st_mode) == 0o600

    def test_launched_browser_is_closed(self):
        context = MagicMock()
        BrowserSession(MagicMock(), context).close()
        context.close.assert_called_once()
        context.storage_state.assert_not_called()
