"""Tests for the npm login state machine."""

import os

import pytest

from fake_console import FakeNpmConsole, FakePage
from npm_auth import SessionState, is_logged_in, is_two_factor_gate
from npm_config import RunOptions
from npm_credentials import Credentials
from npm_errors import AuthenticationError, WaitTimeoutError
from npm_publisher import TrustedPublisherManager, access_url, is_access_url, is_trusted_publishers_ready
from npm_targets import Target


class TestLoginDetection:
    """Tests for logged-in and two-factor detection on the current page."""

    def test_login_page_is_not_logged_in(self):
        """The login form means nobody is logged in."""
        page = FakePage(FakeNpmConsole())
        page.goto('https://www.npmjs.com/settings/profile')

        assert page.url == 'https://www.npmjs.com/login'
        assert not is_logged_in(page)

    def test_profile_page_is_logged_in(self, page):
        page.goto('https://www.npmjs.com/settings/profile')
        assert is_logged_in(page)
        assert not is_two_factor_gate(page)

    def test_otp_prompt_is_a_two_factor_gate(self):
        console = FakeNpmConsole(otp='123456')
        console.gate_pending = console.complete_login
        page = FakePage(console)

        assert is_two_factor_gate(page)


class TestEnsureLoggedIn:
    """Tests for NpmSession.ensure_logged_in()."""

    def test_existing_session_is_ready_without_login(self, page, options, make_session):
        session = make_session(page, options)
        session.ensure_logged_in()

        assert session.state == SessionState.READY
        assert 'https://www.npmjs.com/login' not in page.visits

    def test_credentials_are_submitted(self, options, make_session):
        console = FakeNpmConsole()
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2'))

        session.ensure_logged_in()

        assert console.logged_in
        assert session.state == SessionState.READY
        assert ('fill', 'username', 'octocat') in page.actions

    def test_held_otp_is_submitted_at_the_gate(self, options, make_session):
        console = FakeNpmConsole(otp='654321')
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2', '654321'))

        session.ensure_logged_in()

        assert console.logged_in
        assert ('fill', 'otp', '654321') in page.actions

    def test_missing_otp_fails_when_headless(self, options, make_session):
        """Headless with a code prompt and no held code cannot continue."""
        console = FakeNpmConsole(otp='654321')
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2'))

        with pytest.raises(AuthenticationError, match='2FA'):
            session.ensure_logged_in()
        assert session.state == SessionState.FAILED
        assert not console.logged_in

    def test_rejected_otp_fails_when_headless(self, options, make_session):
        console = FakeNpmConsole(otp='654321')
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2', '000000'))

        with pytest.raises(AuthenticationError, match='one-time password'):
            session.ensure_logged_in()

    def test_rejected_otp_is_not_resubmitted_after_reload(self, options, make_session):
        """The gate briefly disappears while npm reloads after a wrong code."""
        console = FakeNpmConsole(otp='654321')
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2', '000000'))
        submit_otp = console.submit_otp
        render = console.elements

        def submit_then_reload():
            submit_otp()
            reloaded_at = page.now + 1.5
            console.elements = lambda: [] if page.now < reloaded_at else render()

        console.submit_otp = submit_then_reload

        with pytest.raises(AuthenticationError, match='did not accept'):
            session.ensure_logged_in()
        assert page.actions.count(('fill', 'otp', '000000')) == 1

    def test_held_otp_is_reused_after_login(self, options, make_session):
        """A re-verification gate after login gets the held code again."""
        console = FakeNpmConsole(otp='112233', escalate_on_mutation=True)
        page = FakePage(console)
        session = make_session(page, options, Credentials('octocat', 'hunter2', '112233'))
        session.ensure_logged_in()

        target = Target(package_name='demo', owner='acme', repo='widgets', workflow='release.yml')
        assert TrustedPublisherManager(session).ensure_trusted_publisher(target) == 'added'
        assert page.actions.count(('fill', 'otp', '112233')) == 2

    def test_wrong_password_is_reported(self, options, make_session):
        page = FakePage(FakeNpmConsole())
        session = make_session(page, options, Credentials('octocat', 'wrong'))

        with pytest.raises(AuthenticationError, match='rejected'):
            session.ensure_logged_in()

    def test_headless_without_credentials_fails_fast(self, options, make_session):
        page = FakePage(FakeNpmConsole())
        session = make_session(page, options)

        with pytest.raises(AuthenticationError, match='without --headless'):
            session.ensure_logged_in()
        assert page.now == 0

    def test_manual_login_is_awaited(self, make_session):
        """An attended browser waits for the operator to log in."""
        console = FakeNpmConsole()
        page = FakePage(console)
        page.schedule(3, console.complete_login)
        session = make_session(page, RunOptions(headless=False))

        session.ensure_logged_in()

        assert console.logged_in
        assert 3 <= page.now < 10

    def test_security_key_is_triggered_when_attended(self, make_session):
        console = FakeNpmConsole(security_key=True)
        page = FakePage(console)
        session = make_session(page, RunOptions(headless=False), Credentials('octocat', 'hunter2'))

        session.ensure_logged_in()

        assert console.security_key_triggered
        assert session.state == SessionState.READY

    def test_manual_login_timeout_takes_screenshot(self, tmp_path, make_session):
        page = FakePage(FakeNpmConsole())
        options = RunOptions(headless=False, timeout_ms=5000, screenshot_dir=tmp_path)
        session = make_session(page, options)

        with pytest.raises(WaitTimeoutError) as excinfo:
            session.ensure_logged_in()

        screenshot = excinfo.value.screenshot
        assert screenshot and screenshot.startswith(str(tmp_path))
        assert 'login-timeout' in screenshot
        assert screenshot in str(excinfo.value)
        assert oct(os.stat(screenshot).st_mode & 0o777) == oct(0o600)
        assert session.state == SessionState.FAILED


class TestWaitUntilReady:
    """Tests for waiting on a settings page."""

    def test_renavigation_is_rate_limited(self, page, options, make_session):
        """Away from the target page, it is reloaded at most every five seconds."""
        page.goto('https://www.npmjs.com/')
        session = make_session(page, options)
        url = access_url('demo')

        session.wait_until_ready(url, lambda current: is_access_url(current, 'demo'), is_trusted_publishers_ready, 'access')

        assert page.visits.count(url) == 1
        assert page.now > 5

    def test_login_redirect_fails_when_headless(self, options, make_session):
        page = FakePage(FakeNpmConsole())
        page.goto(access_url('demo'))
        session = make_session(page, options)

        with pytest.raises(AuthenticationError, match='redirected to login'):
            session.wait_until_ready(access_url('demo'), lambda u: True, is_trusted_publishers_ready, 'access')

    def test_timeout_names_current_page(self, page, options, make_session):
        page.goto('https://www.npmjs.com/')
        session = make_session(page, RunOptions(headless=True, timeout_ms=3000))

        with pytest.raises(WaitTimeoutError, match='current: https://www.npmjs.com/'):
            session.wait_until_ready(access_url('demo'), lambda u: False, is_trusted_publishers_ready, 'access')
