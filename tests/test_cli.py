"""Tests for the npm-trustme command line."""

import json
from unittest.mock import MagicMock, patch

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

import npm_trustme
from fake_console import FakeNpmConsole, FakePage
from npm_config import RunOptions, read_config, write_config
from npm_errors import BrowserError, WaitTimeoutError
from npm_publisher import EnsureResult
from npm_template import TrustedPublisherTemplate

TARGET_ARGS = ['--package', 'demo', '--owner', 'acme', '--repo', 'widgets', '--workflow', 'release.yml']

TEMPLATE = TrustedPublisherTemplate(
    action='https://www.npmjs.com/package/demo/access/trusted-publishers',
    static_fields={'csrftoken': 'csrf-123'},
    field_map={'owner': 'repositoryOwner', 'repo': 'repositoryName', 'workflow': 'workflowName'},
)


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, config_env):
    for name in ('NPM_TRUSTME_PACKAGE', 'NPM_TRUSTME_OWNER', 'NPM_TRUSTME_REPO', 'NPM_TRUSTME_WORKFLOW'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('NPM_TRUSTME_CONFIG', config_env['NPM_TRUSTME_CONFIG'])
    return config_env


@pytest.fixture
def no_registry():
    with patch('npm_trustme.report_registry_status'):
        yield


class TestCheck:
    """Tests for the check command's exit status."""

    def test_matching_state_exits_zero(self, no_registry, capsys):
        result = EnsureResult(publishing_access='ok', trusted_publisher='exists')
        with patch('npm_trustme.run_in_browser', return_value=result) as run:
            assert npm_trustme.main(['check', *TARGET_ARGS, '--json']) == 0

        options = run.call_args.args[1]
        assert options.dry_run
        assert json.loads(capsys.readouterr().out.splitlines()[-1]) == {
            'publishingAccess': 'ok', 'trustedPublisher': 'exists',
        }

    def test_mismatch_exits_two(self, no_registry):
        result = EnsureResult(publishing_access='ok', trusted_publisher='dry-run')
        with patch('npm_trustme.run_in_browser', return_value=result):
            assert npm_trustme.main(['check', *TARGET_ARGS]) == 2

    def test_missing_fields_fail_before_the_browser(self, capsys):
        with patch('npm_trustme.launch_browser') as launch:
            assert npm_trustme.main(['check', '--package', 'demo']) == 1

        launch.assert_not_called()
        assert 'Missing required fields' in capsys.readouterr().out


class TestEnsure:
    def test_applied_changes_exit_zero(self, no_registry):
        result = EnsureResult(publishing_access='updated', trusted_publisher='added')
        with patch('npm_trustme.run_in_browser', return_value=result):
            assert npm_trustme.main(['ensure', *TARGET_ARGS]) == 0

    def test_dry_run_with_pending_changes_exits_two(self, no_registry):
        result = EnsureResult(publishing_access='dry-run', trusted_publisher='exists')
        with patch('npm_trustme.run_in_browser', return_value=result) as run:
            assert npm_trustme.main(['ensure', *TARGET_ARGS, '--dry-run']) == 2
        assert run.call_args.args[1].dry_run

    def test_via_template_dry_run(self, isolated_config, capsys):
        write_config({'trusted_publisher_template': TEMPLATE.to_dict()}, isolated_config)

        with patch('npm_trustme.apply_template') as apply:
            code = npm_trustme.main([
                'ensure', *TARGET_ARGS, '--via-template', '--dry-run', '--token', 't', '--json',
            ])

        assert code == 2
        apply.assert_not_called()
        out = capsys.readouterr().out
        assert 'cannot be applied via template' in out
        assert json.loads(out.splitlines()[-1]) == {'publishingAccess': 'skipped', 'trustedPublisher': 'dry-run'}

    def test_via_template_applies(self, isolated_config):
        write_config({'trusted_publisher_template': TEMPLATE.to_dict()}, isolated_config)

        with patch('npm_trustme.apply_template', return_value='added') as apply, \
                patch('npm_trustme.launch_browser') as launch:
            code = npm_trustme.main(['ensure', *TARGET_ARGS, '--via-template', '--token', 't'])

        assert code == 0
        launch.assert_not_called()
        template, target, token, _ = apply.call_args.args
        assert template == TEMPLATE
        assert (target.slug, token) == ('acme/widgets', 't')

    def test_via_template_without_capture_fails(self):
        assert npm_trustme.main(['ensure', *TARGET_ARGS, '--via-template', '--token', 't']) == 1


class TestBuildRunOptions:
    def test_flags_then_env_then_config(self, isolated_config, log):
        write_config({'chrome_profile': 'Profile 2', 'chrome_cdp_url': 'http://config:9222'}, isolated_config)
        env = {**isolated_config, 'NPM_TRUSTME_CHROME_DEBUG_PORT': '9333', 'NPM_TRUSTME_HEADLESS': '1'}
        args = npm_trustme.build_parser().parse_args(['check', '--chrome-cdp-url', 'http://flag:9222'])

        options = npm_trustme.build_run_options(args, log, env)

        assert options.chrome_cdp_url == 'http://flag:9222'
        assert options.chrome_debug_port == 9333
        assert options.chrome_profile == 'Profile 2'
        assert options.headless
        assert options.cdp_explicit
        assert options.manual_login

    def test_configured_endpoint_is_not_explicit(self, isolated_config, log):
        write_config({'chrome_cdp_url': 'http://config:9222'}, isolated_config)
        args = npm_trustme.build_parser().parse_args(['check', '--no-manual-login'])

        options = npm_trustme.build_run_options(args, log, isolated_config)

        assert options.chrome_cdp_url == 'http://config:9222'
        assert not options.cdp_explicit
        assert not options.manual_login


class TestChromeAndConfig:
    def test_detect_and_save(self, isolated_config):
        with patch('npm_trustme.resolve_chrome_profile_auto', return_value=('Profile 1', 'cookies')):
            assert npm_trustme.main(['chrome', 'detect', '--save']) == 0

        assert read_config(isolated_config)['chrome_profile'] == 'Profile 1'

    def test_detect_nothing(self):
        with patch('npm_trustme.resolve_chrome_profile_auto', return_value=(None, 'none')):
            assert npm_trustme.main(['chrome', 'detect']) == 2

    def test_config_show_masks_static_values(self, isolated_config, capsys):
        write_config({'chrome_profile': 'Default', 'trusted_publisher_template': TEMPLATE.to_dict()}, isolated_config)

        assert npm_trustme.main(['config', 'show']) == 0

        out = capsys.readouterr().out
        assert 'csrf-123' not in out
        shown = json.loads(out.split('\n', 1)[1])
        assert shown['trusted_publisher_template']['staticFields'] == ['csrftoken']
        assert shown['chrome_profile'] == 'Default'


class TestBrowserFailures:
    """Playwright errors end the command with status 1 and a screenshot."""

    def test_playwright_timeout_exits_one(self, no_registry, capsys):
        error = PlaywrightTimeoutError('Timeout 30000ms exceeded. page.goto')
        with patch('npm_trustme.run_in_browser', side_effect=error):
            assert npm_trustme.main(['ensure', *TARGET_ARGS]) == 1

        assert 'Timeout 30000ms exceeded' in capsys.readouterr().out

    def test_timeout_on_the_live_page_takes_a_screenshot(self, tmp_path, log):
        page = FakePage(FakeNpmConsole(logged_in=True))
        browser = MagicMock()
        browser.__enter__.return_value.page = page
        args = npm_trustme.build_parser().parse_args(['ensure', *TARGET_ARGS])
        options = RunOptions(headless=True, screenshot_dir=tmp_path)

        def action(manager):
            raise PlaywrightTimeoutError('Timeout 30000ms exceeded. locator.click')

        with patch('npm_trustme.launch_browser', return_value=browser):
            with pytest.raises(WaitTimeoutError, match='Browser action timed out') as excinfo:
                npm_trustme.run_in_browser(args, options, log, action)

        assert 'browser-timeout' in excinfo.value.screenshot
        assert page.screenshots == [excinfo.value.screenshot]

    def test_other_playwright_errors_become_browser_errors(self, tmp_path, log):
        page = FakePage(FakeNpmConsole(logged_in=True))
        browser = MagicMock()
        browser.__enter__.return_value.page = page
        args = npm_trustme.build_parser().parse_args(['ensure', *TARGET_ARGS])
        options = RunOptions(headless=True, screenshot_dir=tmp_path)

        def action(manager):
            raise PlaywrightError('Target page, context or browser has been closed')

        with patch('npm_trustme.launch_browser', return_value=browser):
            with pytest.raises(BrowserError, match='has been closed') as excinfo:
                npm_trustme.run_in_browser(args, options, log, action)

        assert 'browser-error' in excinfo.value.screenshot
