"""
npm Authentication

Gets a browser page into an authenticated state on npmjs.com and keeps it there
while other code works on it. The login flow is a small state machine:

    UNAUTHENTICATED -> LOGIN_SUBMITTED -> CHALLENGE_GATE -> READY
                                                 \\-> FAILED (timeout / explicit error)

- With credentials, the login form is filled and submitted. If npm then asks
  for a one-time code, the held code is submitted; without one, an attended
  (visible) browser waits for the operator and a headless one fails.
- Without credentials, an attended browser waits for the operator to log in
  manually. Headless runs fail fast since nobody can interact.
- Security-key / passkey challenges are triggered automatically in attended
  mode and then waited out.

Every wait is bounded. On timeout a diagnostic screenshot is taken (when a
screenshot directory is configured) and WaitTimeoutError is raised.

Usage:
    session = NpmSession(browser.page, options, log, credentials)
    session.ensure_logged_in()
"""

import re
import time
from enum import Enum
from typing import Callable

from playwright.sync_api import Page

from npm_browser import capture_screenshot
from npm_config import RunOptions
from npm_credentials import Credentials
from npm_errors import AuthenticationError, WaitTimeoutError
from npm_log import Log
from npm_page import (
    by_label,
    by_placeholder,
    by_role,
    by_selector,
    find_button,
    first_editable,
    first_visible,
    is_visible,
    page_sleeper,
    poll_until,
)

NPM_BASE_URL = 'https://www.npmjs.com'
LOGIN_URL = f'{NPM_BASE_URL}/login'
PROFILE_URL = f'{NPM_BASE_URL}/settings/profile'

LOGIN_TIMEOUT_MS = 120000
NAVIGATION_INTERVAL_S = 5
POLL_INTERVAL_MS = 1000

LOGIN_FIELD_SELECTORS = (
    'input[name="username"]',
    'input#username',
    'input[autocomplete="username"]',
    'input[type="password"]',
)
OTP_SELECTORS = (
    'input[autocomplete="one-time-code"]',
    'input[name="otp"]',
    'input#otp',
    'input[type="tel"]',
)

SIGN_IN_RE = re.compile(r'sign in|log in', re.IGNORECASE)
TWO_FACTOR_HEADING_RE = re.compile(r'two[-\s]?factor', re.IGNORECASE)
SECURITY_KEY_RE = re.compile(r'use security key|use passkey|use security', re.IGNORECASE)
ALTERNATE_FACTOR_RE = re.compile(r'use password|unable to verify', re.IGNORECASE)
LOGIN_ERROR_RE = re.compile(r'incorrect (username|password)|invalid (username|password|login)', re.IGNORECASE)
USERNAME_RE = re.compile(r'username|email', re.IGNORECASE)
VERIFY_RE = re.compile(r'verify|submit|continue|sign in', re.IGNORECASE)


class SessionState(str, Enum):
    UNAUTHENTICATED = 'unauthenticated'
    LOGIN_SUBMITTED = 'login-submitted'
    CHALLENGE_GATE = 'challenge-gate'
    READY = 'ready'
    FAILED = 'failed'


def is_login_url(url: str) -> bool:
    return '/login' in url


def is_logged_in(page: Page) -> bool:
    """Inspect the current page (no navigation) for signs of a logged-out visitor."""
    if is_login_url(page.url):
        return False
    for selector in LOGIN_FIELD_SELECTORS:
        if is_visible(page.locator(selector).first):
            return False
    for role in ('button', 'link'):
        if is_visible(page.get_by_role(role, name=SIGN_IN_RE).first):
            return False
    return True


def check_logged_in(page: Page) -> bool:
    """Load an authenticated-only page and report whether npm let us stay there."""
    page.goto(PROFILE_URL, wait_until='domcontentloaded')
    return is_logged_in(page)


def otp_input(page: Page):
    return first_visible(page, [by_selector(selector) for selector in OTP_SELECTORS])


def is_two_factor_gate(page: Page) -> bool:
    """True when npm shows a 2FA interstitial (one-time code or security key)."""
    signals = [
        by_role('heading', TWO_FACTOR_HEADING_RE),
        by_role('button', SECURITY_KEY_RE),
        by_role('link', ALTERNATE_FACTOR_RE),
    ] + [by_selector(selector) for selector in OTP_SELECTORS]
    return first_visible(page, signals) is not None


def trigger_security_key_if_present(page: Page, log: Log) -> bool:
    button = page.get_by_role('button', name=SECURITY_KEY_RE).first
    if not is_visible(button):
        return False
    button.click()
    log.info('Triggered security key prompt.')
    return True


class NpmSession:
    """
    An npm page plus the credentials and options needed to keep it logged in.

    The reconciler calls wait_until_ready() before touching settings pages and
    handle_challenge() inside its own polling loops, so a 2FA prompt that shows up
    mid-flow is handled the same way everywhere.
    """

    def __init__(
        self,
        page: Page,
        options: RunOptions,
        log: Log,
        credentials: Credentials | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ):
        self.page = page
        self.options = options
        self.log = log
        self.credentials = credentials
        self.clock = clock
        self.sleep = sleep or page_sleeper(page)
        self.state = SessionState.UNAUTHENTICATED
        self._otp_submitted = False
        self._login_prompted = False
        self._challenge_prompted = False

    @property
    def attended(self) -> bool:
        """A human can interact with the browser window."""
        return not self.options.headless and self.options.manual_login

    def poll(self, predicate: Callable[[], bool], timeout_ms: int, interval_ms: int = POLL_INTERVAL_MS) -> bool:
        return poll_until(predicate, timeout_ms, interval_ms, sleep=self.sleep, clock=self.clock)

    def screenshot(self, label: str) -> str | None:
        return capture_screenshot(self.page, self.options.screenshot_dir, label)

    def fail(self, message: str, label: str) -> WaitTimeoutError:
        self.state = SessionState.FAILED
        return WaitTimeoutError(message, self.screenshot(label))

    def mark_ready(self) -> None:
        self.state = SessionState.READY
        # A later gate (re-verification before a settings change) gets the held code again
        self._otp_submitted = False

    def ensure_logged_in(self) -> None:
        if check_logged_in(self.page):
            self.mark_ready()
            self.log.info('Already logged in to npm.')
            return

        self.state = SessionState.UNAUTHENTICATED
        if self.credentials and self.credentials.is_complete:
            self.submit_credentials()
        elif self.attended:
            self.page.goto(LOGIN_URL, wait_until='domcontentloaded')
            self.log.info('Please complete npm login in the browser window...')
            self._login_prompted = True
        else:
            self.state = SessionState.FAILED
            raise AuthenticationError(
                'Not logged in to npm and no credentials available; '
                'provide credentials or rerun without --headless to log in manually.'
            )

        timeout = self.options.timeout(LOGIN_TIMEOUT_MS)
        if not self.poll(self._login_step, timeout):
            raise self.fail('Timed out waiting for npm login', 'login-timeout')
        self.mark_ready()
        self.log.success('Logged in to npm.')

    def submit_credentials(self) -> None:
        self.log.info('Submitting npm credentials...')
        self.page.goto(LOGIN_URL, wait_until='domcontentloaded')

        username_input = first_editable(self.page, [
            by_selector('input[name="username"]'),
            by_selector('input#login_username'),
            by_selector('input[autocomplete="username"]'),
            by_label(USERNAME_RE),
            by_placeholder(USERNAME_RE),
        ], timeout_ms=10000)
        password_input = first_editable(self.page, [
            by_selector('input[name="password"]'),
            by_selector('input[type="password"]'),
        ], timeout_ms=5000)
        if not username_input or not password_input:
            raise self.fail('Unable to locate the npm login form', 'login-form')

        username_input.fill(self.credentials.username)
        password_input.fill(self.credentials.password)
        submit = find_button(self.page, [SIGN_IN_RE])
        if submit:
            submit.click()
        else:
            password_input.press('Enter')
        self.state = SessionState.LOGIN_SUBMITTED

    def _login_step(self) -> bool:
        if self.handle_challenge():
            return False
        if is_login_url(self.page.url):
            if self.state == SessionState.LOGIN_SUBMITTED and is_visible(
                self.page.get_by_text(LOGIN_ERROR_RE).first
            ):
                self.state = SessionState.FAILED
                raise AuthenticationError('npm rejected the username or password.')
            return False
        return is_logged_in(self.page)

    def handle_challenge(self) -> bool:
        """
        Deal with a 2FA gate if one is showing.

        Returns True while a gate is present (the caller keeps waiting), False
        when there is none. Raises AuthenticationError when the gate needs a human
        and none is available.
        """
        if not is_two_factor_gate(self.page):
            return False
        self.state = SessionState.CHALLENGE_GATE

        code_input = otp_input(self.page)
        otp = self.credentials.otp if self.credentials else None
        if code_input and otp and not self._otp_submitted:
            self.log.info('Submitting one-time password...')
            code_input.fill(otp)
            button = find_button(self.page, [VERIFY_RE])
            if button:
                button.click()
            else:
                code_input.press('Enter')
            self._otp_submitted = True
            return True

        if not self.attended:
            self.state = SessionState.FAILED
            if code_input and self._otp_submitted:
                raise AuthenticationError('npm did not accept the one-time password.')
            raise AuthenticationError('npm requires 2FA verification; rerun without --headless or pass --otp.')

        trigger_security_key_if_present(self.page, self.log)
        if not self._challenge_prompted:
            self.log.info('Complete npm 2FA in the browser window (security key or OTP).')
            self._challenge_prompted = True
        return True

    def wait_until_ready(
        self,
        url: str,
        is_target_url: Callable[[str], bool],
        is_ready: Callable[[Page], bool],
        label: str,
        default_timeout_ms: int = 120000,
    ) -> None:
        """
        Wait until is_ready(page) holds, surviving login redirects and 2FA gates.

        While the browser sits on some other page, url is reloaded, but not more
        often than every NAVIGATION_INTERVAL_S seconds.
        """
        last_navigation = self.clock()

        def step() -> bool:
            nonlocal last_navigation
            if is_login_url(self.page.url):
                if not self.attended:
                    self.state = SessionState.FAILED
                    raise AuthenticationError('Not logged in (redirected to login).')
                if not self._login_prompted:
                    self.log.info('Please complete npm login in the browser window...')
                    self._login_prompted = True
                return False

            if self.handle_challenge():
                return False

            if is_ready(self.page):
                self.mark_ready()
                return True

            now = self.clock()
            if not is_target_url(self.page.url) and now - last_navigation > NAVIGATION_INTERVAL_S:
                last_navigation = now
                self.page.goto(url, wait_until='domcontentloaded')
            return False

        if not self.poll(step, self.options.timeout(default_timeout_ms)):
            raise self.fail(f'Timed out waiting for {label} (current: {self.page.url})', f'{label}-timeout')
