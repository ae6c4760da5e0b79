"""
Chrome profile auto-detection.

Picks the local Chrome profile most likely to already be logged in to npm by
reading each profile's stored npmjs.com cookies and scoring them:

    score = auth_matches * 10 + http_only_count * 3 + min(cookie_count, 50)

where auth_matches counts cookies whose name looks like a session/token/login
cookie. When no profile has any npm cookies, the profile Chrome itself last used
(from "Local State") is the fallback.
"""

import json
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import browser_cookie3

from npm_log import Log

NPM_URLS = ('https://www.npmjs.com', 'https://www.npmjs.com/settings/profile')
AUTH_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (r'session', r'token', r'auth', r'npm', r'login')]

REASON_COOKIES = 'cookies'
REASON_LAST_ACTIVE = 'last-active'
REASON_NONE = 'none'


class CookieReader(Protocol):
    def get_cookies(self, url: str, profile: str) -> list[dict]:
        ...


@dataclass
class CookieCandidate:
    profile: str
    cookie_count: int
    auth_matches: int
    http_only_count: int
    score: int

    @property
    def sort_key(self) -> tuple[int, int, int, int]:
        return (self.score, self.auth_matches, self.http_only_count, self.cookie_count)


def default_chrome_user_data_dir() -> Path | None:
    home = Path.home()
    if sys.platform == 'darwin':
        return home / 'Library' / 'Application Support' / 'Google' / 'Chrome'
    if sys.platform == 'win32':
        local = os.environ.get('LOCALAPPDATA') or os.environ.get('USERPROFILE')
        if not local:
            return None
        return Path(local) / 'Google' / 'Chrome' / 'User Data'
    linux_default = home / '.config' / 'google-chrome'
    if linux_default.exists():
        return linux_default
    chromium = home / '.config' / 'chromium'
    return chromium if chromium.exists() else linux_default


def list_chrome_profiles(user_data_dir: Path) -> list[str]:
    """Profile directories (Default, Profile N) under a Chrome user data dir."""
    try:
        entries = list(Path(user_data_dir).iterdir())
    except OSError:
        return []
    return sorted(
        entry.name for entry in entries
        if entry.is_dir() and (entry.name == 'Default' or entry.name.startswith('Profile'))
    )


def read_last_active_profile(user_data_dir: Path) -> str | None:
    local_state = Path(user_data_dir) / 'Local State'
    if not local_state.exists():
        return None
    try:
        data = json.loads(local_state.read_text(encoding='utf-8'))
    except (json.JSONDecodeError, OSError):
        return None
    last_used = ((data or {}).get('profile') or {}).get('last_used')
    return last_used if isinstance(last_used, str) else None


def score_cookies(cookies: list[dict]) -> tuple[int, int]:
    """Return (auth_matches, http_only_count)."""
    auth_matches = 0
    http_only_count = 0
    for cookie in cookies:
        name = (cookie.get('name') or '').lower()
        if any(pattern.search(name) for pattern in AUTH_PATTERNS):
            auth_matches += 1
        if cookie.get('http_only'):
            http_only_count += 1
    return auth_matches, http_only_count


def build_candidate(profile: str, cookies: list[dict]) -> CookieCandidate:
    auth_matches, http_only_count = score_cookies(cookies)
    cookie_count = len(cookies)
    return CookieCandidate(
        profile=profile,
        cookie_count=cookie_count,
        auth_matches=auth_matches,
        http_only_count=http_only_count,
        score=auth_matches * 10 + http_only_count * 3 + min(cookie_count, 50),
    )


def detect_profile_by_cookies(profiles: list[str], reader: CookieReader, log: Log) -> CookieCandidate | None:
    candidates = []
    for profile in profiles:
        cookies: list[dict] = []
        for url in NPM_URLS:
            try:
                cookies.extend(reader.get_cookies(url, profile) or [])
            except Exception as e:
                # Locked or encrypted cookie stores are common; skip the profile
                log.warn(f'Cookie read failed for profile {profile}: {e}')
        if not cookies:
            continue
        candidates.append(build_candidate(profile, cookies))

    if not candidates:
        return None
    return max(candidates, key=lambda c: c.sort_key)


class ChromeCookieReader:
    """Reads a Chrome profile's cookie store via browser_cookie3."""

    def __init__(self, user_data_dir: Path):
        self.user_data_dir = Path(user_data_dir)

    def cookie_file(self, profile: str) -> Path:
        profile_dir = self.user_data_dir / profile
        network = profile_dir / 'Network' / 'Cookies'
        return network if network.exists() else profile_dir / 'Cookies'

    def get_cookies(self, url: str, profile: str) -> list[dict]:
        cookie_file = self.cookie_file(profile)
        if not cookie_file.exists():
            return []
        host = urlparse(url).hostname or ''
        key_file = self.user_data_dir / 'Local State'
        jar = browser_cookie3.chrome(
            cookie_file=str(cookie_file),
            domain_name=host,
            key_file=str(key_file) if key_file.exists() else None,
        )
        path = urlparse(url).path or '/'
        return [
            {
                'name': cookie.name,
                'domain': cookie.domain,
                'path': cookie.path,
                'value': cookie.value,
                'expires': cookie.expires,
                'http_only': cookie.has_nonstandard_attr('HTTPOnly') or cookie.has_nonstandard_attr('HttpOnly'),
                'secure': cookie.secure,
            }
            for cookie in jar
            if path.startswith(cookie.path or '/')
        ]


def resolve_chrome_profile_auto(
    log: Log,
    user_data_dir: Path | None = None,
    reader: CookieReader | None = None,
) -> tuple[str | None, str]:
    """
    Pick a Chrome profile to reuse.

    Returns (profile, reason) with reason one of 'cookies', 'last-active' or
    'none'. Never raises for a missing or empty Chrome directory.
    """
    user_data_dir = Path(user_data_dir) if user_data_dir else default_chrome_user_data_dir()
    if not user_data_dir:
        log.warn('Chrome user data directory not found; pass --chrome-user-data-dir.')
        return None, REASON_NONE
    if not user_data_dir.exists():
        log.warn(f'Chrome user data directory not found: {user_data_dir}')
        return None, REASON_NONE

    profiles = list_chrome_profiles(user_data_dir)
    if not profiles:
        log.warn(f'No Chrome profiles found under {user_data_dir}')
        return None, REASON_NONE

    reader = reader or ChromeCookieReader(user_data_dir)
    candidate = detect_profile_by_cookies(profiles, reader, log)
    if candidate:
        log.debug(
            f'Profile {candidate.profile}: score={candidate.score} auth={candidate.auth_matches} '
            f'httpOnly={candidate.http_only_count} total={candidate.cookie_count}'
        )
        return candidate.profile, REASON_COOKIES

    last_active = read_last_active_profile(user_data_dir)
    if last_active and last_active in profiles:
        return last_active, REASON_LAST_ACTIVE

    return None, REASON_NONE
