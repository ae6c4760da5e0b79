"""
Browser session management.

Three ways to get a page on npmjs.com, in order of preference:

1. Attach to a running Chrome over its remote-debugging endpoint (CDP). The
   operator's existing login is reused and nothing is closed on exit.
2. Launch Chrome with a persistent local profile (--profile-directory).
3. Launch a fresh Chromium, optionally seeded from a saved storage-state file,
   with stealth mode applied.

One BrowserSession exists per invocation; close() persists storage state first
when a storage file is configured.
"""

import re
import time
from dataclasses import dataclass
from pathlib import Path

import requests
from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError
from playwright_stealth import Stealth

from npm_config import RunOptions
from npm_errors import ConfigurationError
from npm_log import Log
from npm_profiles import default_chrome_user_data_dir

DEFAULT_CDP_PORT = 9222
VIEWPORT = {'width': 1280, 'height': 900}


class BrowserSession:
    """
    A live browser page plus everything needed to shut it down cleanly.

    Use as a context manager to ensure cleanup.
    """

    def __init__(
        self,
        page: Page,
        context: BrowserContext,
        browser: Browser | None = None,
        playwright_instance: Playwright | None = None,
        is_persistent: bool = False,
        is_attached: bool = False,
        storage_state_path: Path | None = None,
    ):
        self.page = page
        self.context = context
        self._browser = browser
        self._playwright = playwright_instance
        self.is_persistent = is_persistent
        self.is_attached = is_attached
        self.storage_state_path = storage_state_path

    def close(self) -> None:
        """Persist storage state (when configured), then close the browser."""
        try:
            save_storage_state(self.context, self.storage_state_path)
        finally:
            if not self.is_attached:
                try:
                    self.context.close()
                except PlaywrightError:
                    pass
            if self._browser:
                try:
                    self._browser.close()
                except PlaywrightError:
                    pass
                self._browser = None
            if self._playwright:
                self._playwright.stop()
                self._playwright = None

    def __enter__(self) -> 'BrowserSession':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def build_screenshot_path(directory: Path, label: str, timestamp_ms: int) -> Path:
    """<dir>/<label>-<millis>.png with path separators in label neutralized."""
    safe_label = re.sub(r'[\\/]+', '-', label).strip() or 'screenshot'
    return Path(directory) / f'{safe_label}-{timestamp_ms}.png'


def capture_screenshot(page: Page, directory: Path | None, label: str) -> str | None:
    """Save a full-page diagnostic screenshot. Returns its path, or None when disabled."""
    if not directory:
        return None
    path = build_screenshot_path(directory, label, int(time.time() * 1000))
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        page.screenshot(path=str(path), full_page=True)
    except PlaywrightError:
        return None
    if not path.exists():
        return None
    path.chmod(0o600)
    return str(path)


def save_storage_state(context: BrowserContext, storage_state_path: Path | None) -> None:
    if not storage_state_path:
        return
    path = Path(storage_state_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    context.storage_state(path=str(path))
    path.chmod(0o600)  # Contains npm session cookies


def build_cdp_url(port: int) -> str:
    return f'http://127.0.0.1:{port}'


def fetch_cdp_version(url: str, timeout_ms: int = 800) -> dict | None:
    try:
        response = requests.get(f'{url.rstrip("/")}/json/version', timeout=timeout_ms / 1000)
    except requests.RequestException:
        return None
    if not response.ok:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def is_cdp_available(url: str, timeout_ms: int = 800) -> bool:
    info = fetch_cdp_version(url, timeout_ms)
    return bool(info and info.get('webSocketDebuggerUrl'))


def detect_cdp_url(urls: list[str], timeout_ms: int = 800) -> str | None:
    for url in urls:
        if is_cdp_available(url, timeout_ms):
            return url
    return None


@dataclass
class CdpDecision:
    cdp_url: str | None = None
    attempted_url: str | None = None
    should_error: bool = False
    should_fallback: bool = False


def decide_cdp_usage(
    detected_url: str | None,
    explicit: bool,
    configured_url: str | None = None,
    configured_port: int | None = None,
) -> CdpDecision:
    """
    Decide whether to attach over CDP.

    A reachable endpoint is used. An explicitly requested endpoint that is not
    reachable is an error; a merely configured one falls back to launching.
    """
    if detected_url:
        return CdpDecision(cdp_url=detected_url, attempted_url=detected_url)
    attempted = configured_url or (build_cdp_url(configured_port) if configured_port else None)
    if not attempted:
        return CdpDecision()
    if explicit:
        return CdpDecision(attempted_url=attempted, should_error=True)
    return CdpDecision(attempted_url=attempted, should_fallback=True)


def resolve_persistent_profile(options: RunOptions) -> tuple[Path, list[str]] | None:
    """Return (user_data_dir, launch args) when a persistent Chrome profile was requested."""
    if not (options.chrome_profile or options.chrome_profile_dir or options.chrome_user_data_dir):
        return None

    profile_name = options.chrome_profile or 'Default'
    user_data_dir = options.chrome_user_data_dir

    if options.chrome_profile_dir:
        profile_dir = Path(options.chrome_profile_dir).expanduser().resolve()
        if not profile_dir.exists():
            raise ConfigurationError(f'Chrome profile directory not found: {profile_dir}')
        user_data_dir = profile_dir.parent
        profile_name = options.chrome_profile or profile_dir.name
    elif not user_data_dir:
        user_data_dir = default_chrome_user_data_dir()

    if not user_data_dir:
        raise ConfigurationError('Unable to determine Chrome user data directory. Pass --chrome-user-data-dir.')

    resolved = Path(user_data_dir).expanduser().resolve()
    if not resolved.exists():
        raise ConfigurationError(f'Chrome user data directory not found: {resolved}')

    return resolved, [f'--profile-directory={profile_name}']


def _resolve_cdp_url(options: RunOptions, log: Log) -> str | None:
    candidates = []
    if options.chrome_cdp_url:
        candidates.append(options.chrome_cdp_url)
    if options.chrome_debug_port:
        candidates.append(build_cdp_url(options.chrome_debug_port))
    if not candidates:
        return None

    decision = decide_cdp_usage(
        detect_cdp_url(candidates),
        explicit=options.cdp_explicit,
        configured_url=options.chrome_cdp_url,
        configured_port=options.chrome_debug_port,
    )
    if decision.should_error:
        raise ConfigurationError(f'Chrome remote debugging endpoint not reachable: {decision.attempted_url}')
    if decision.should_fallback:
        log.warn(f'Chrome debugging endpoint {decision.attempted_url} not reachable; launching a browser instead.')
    return decision.cdp_url


def launch_browser(options: RunOptions, log: Log) -> BrowserSession:
    """Start (or attach to) a browser according to options."""
    cdp_url = _resolve_cdp_url(options, log)
    persistent = None if cdp_url else resolve_persistent_profile(options)

    p = sync_playwright().start()
    try:
        if cdp_url:
            log.info(f'Attaching to Chrome at {cdp_url}...')
            browser = p.chromium.connect_over_cdp(cdp_url)
            context = browser.contexts[0] if browser.contexts else browser.new_context()
            page = context.pages[0] if context.pages else context.new_page()
            return BrowserSession(
                page, context, browser=browser, playwright_instance=p,
                is_attached=True, storage_state_path=options.storage_state_path,
            )

        if persistent:
            user_data_dir, args = persistent
            log.info(f'Launching Chrome with profile from {user_data_dir}...')
            context = p.chromium.launch_persistent_context(
                str(user_data_dir),
                headless=options.headless,
                slow_mo=options.slow_mo,
                args=args,
                channel=None if options.chrome_path else 'chrome',
                executable_path=options.chrome_path,
            )
            page = context.pages[0] if context.pages else context.new_page()
            return BrowserSession(
                page, context, browser=context.browser, playwright_instance=p,
                is_persistent=True, storage_state_path=options.storage_state_path,
            )

        log.info('Launching browser...')
        browser = p.chromium.launch(
            headless=options.headless,
            slow_mo=options.slow_mo,
            executable_path=options.chrome_path,
        )
        storage_state = options.storage_state_path
        context = browser.new_context(
            storage_state=str(storage_state) if storage_state and Path(storage_state).exists() else None,
            viewport=VIEWPORT,
        )
        page = context.new_page()
        # Fresh automation browsers get flagged by bot detection on the login page
        Stealth().apply_stealth_sync(page)
        return BrowserSession(
            page, context, browser=browser, playwright_instance=p,
            storage_state_path=options.storage_state_path,
        )
    except PlaywrightError as e:
        p.stop()
        error_msg = str(e)
        if "Executable doesn't exist" in error_msg:
            raise ConfigurationError(
                f'Browser is not installed. Try running:\n'
                f'  playwright install chromium\n\n'
                f'Original error: {e}'
            ) from e
        raise
