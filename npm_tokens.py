"""
npm access token creation.

Creates a granular access token through the registry's token API using an
existing npm session token. When npm insists on web authentication (security
key or passkey), the API answers 401 with an authUrl/doneUrl pair: the authUrl
is opened in the system browser and doneUrl is polled until it hands back a
one-time password, which is then sent with the retried request.
"""

import json
import os
import re
import subprocess
import time
import webbrowser
from dataclasses import dataclass, field
from typing import Callable

import requests

from npm_errors import AuthenticationError, TrustmeError, WaitTimeoutError
from npm_log import DebugLogger, Log
from npm_registry import REGISTRY_URL, create_session

TOKENS_ENDPOINT = f'{REGISTRY_URL}/-/npm/v1/tokens'
REQUEST_TIMEOUT_S = 30
OTP_RE = re.compile(r'\b\d{6,20}\b')
PERMISSIONS = ('read-only', 'read-write', 'no-access')


@dataclass
class TokenCreateOptions:
    name: str
    description: str | None = None
    expires: int | str | None = None
    bypass_2fa: bool = False
    cidr: list[str] = field(default_factory=list)
    packages: list[str] = field(default_factory=list)
    scopes: list[str] = field(default_factory=list)
    orgs: list[str] = field(default_factory=list)
    packages_permission: str | None = None
    orgs_permission: str | None = None
    otp: str | None = None
    timeout_ms: int = 120000
    poll_interval_ms: int = 2000


def build_token_payload(password: str, options: TokenCreateOptions) -> dict:
    payload = {
        'password': password,
        'name': options.name,
        'token_description': options.description,
        'expires': options.expires,
        'bypass_2fa': bool(options.bypass_2fa),
    }
    if options.cidr:
        payload['cidr'] = list(options.cidr)
    if options.packages:
        payload['packages'] = list(options.packages)
    if options.scopes:
        payload['scopes'] = list(options.scopes)
    if options.orgs:
        payload['orgs'] = list(options.orgs)
    if options.packages_permission:
        payload['packages_and_scopes_permission'] = options.packages_permission
    if options.orgs_permission:
        payload['orgs_permission'] = options.orgs_permission
    return payload


def _first_string(record: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_webauth_urls(payload) -> tuple[str, str] | None:
    """(auth_url, done_url) from a 401 body, when npm asks for web authentication."""
    if not isinstance(payload, dict):
        return None
    auth_url = _first_string(payload, ('authUrl', 'auth_url', 'authURL'))
    done_url = _first_string(payload, ('doneUrl', 'done_url', 'doneURL'))
    if auth_url and done_url:
        return auth_url, done_url
    return None


def parse_otp(payload) -> str | None:
    if isinstance(payload, str):
        match = OTP_RE.search(payload)
        return match.group(0) if match else None
    if not isinstance(payload, dict):
        return None
    candidate = _first_string(payload, ('otp', 'code', 'token'))
    if candidate and re.search(r'\d{6,20}', candidate):
        return candidate
    return None


def get_npm_session_token(env: dict | None = None) -> str | None:
    """Session token from NPM_TRUSTME_SESSION_TOKEN, NPM_SESSION_TOKEN or the npm CLI config."""
    env = os.environ if env is None else env
    from_env = env.get('NPM_TRUSTME_SESSION_TOKEN') or env.get('NPM_SESSION_TOKEN')
    if from_env:
        return from_env.strip()
    try:
        result = subprocess.run(
            ['npm', 'config', 'get', '//registry.npmjs.org/:_authToken'],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    raw = result.stdout.strip()
    if raw and raw not in ('undefined', 'null'):
        return raw
    return None


def _json_or_none(response: requests.Response):
    if not response.text:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def handle_token_response(response: requests.Response) -> dict:
    body = _json_or_none(response)
    if response.ok:
        if isinstance(body, dict):
            return body
        raise TrustmeError('npm token create failed: invalid JSON response')

    message = f'npm token create failed (HTTP {response.status_code})'
    if isinstance(body, dict):
        detail = _first_string(body, ('error', 'message'))
        if detail:
            message = f'{message}: {detail}'
    elif response.text and response.text.strip():
        message = f'{message}: {response.text.strip()[:160]}'
    if response.status_code == 401:
        raise AuthenticationError(message)
    raise TrustmeError(message)


def poll_for_otp(
    done_url: str,
    session: requests.Session,
    timeout_ms: int = 120000,
    poll_interval_ms: int = 2000,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    deadline = clock() + timeout_ms / 1000
    while clock() < deadline:
        response = session.get(done_url, timeout=REQUEST_TIMEOUT_S)
        if response.ok:
            otp = parse_otp(response.text)
            if not otp:
                otp = parse_otp(_json_or_none(response))
            if otp:
                return otp
        sleep(poll_interval_ms / 1000)
    raise WaitTimeoutError('Timed out waiting for web authentication to complete (doneUrl).')


def open_url(url: str, log: Log) -> None:
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        log.warn(f'Failed to open browser automatically: {e}')
        return
    if not opened:
        log.warn('Failed to open browser automatically; open the URL above manually.')


def create_access_token(
    session_token: str,
    password: str,
    options: TokenCreateOptions,
    log: Log,
    session: requests.Session | None = None,
    debug_log: DebugLogger | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """
    Create a token and return the registry's JSON response (the secret is in 'token').

    The POST is never retried automatically except once after web
    authentication, with the one-time password npm handed back.
    """
    if not session_token:
        raise AuthenticationError('No npm session token found. Set NPM_TRUSTME_SESSION_TOKEN or run `npm login`.')

    session = session or create_session(retry=False)
    payload = build_token_payload(password, options)
    headers = {
        'Authorization': f'Bearer {session_token}',
        'Content-Type': 'application/json',
        'npm-auth-type': 'web',
        'npm-command': 'token',
    }

    def post(extra_headers: dict) -> requests.Response:
        request_headers = {**headers, **extra_headers}
        if debug_log:
            debug_log.log_request('POST', TOKENS_ENDPOINT, request_headers, payload)
        response = session.post(
            TOKENS_ENDPOINT,
            data=json.dumps(payload),
            headers=request_headers,
            timeout=REQUEST_TIMEOUT_S,
        )
        if debug_log:
            debug_log.log_response(response)
        return response

    if debug_log:
        debug_log.log_section(f'Create access token {options.name}')

    if options.otp:
        return handle_token_response(post({'npm-otp': options.otp}))

    response = post({})
    if response.status_code != 401:
        return handle_token_response(response)

    challenge = extract_webauth_urls(_json_or_none(response))
    if not challenge:
        return handle_token_response(response)

    auth_url, done_url = challenge
    log.info('npm requires web authentication to create this token.')
    log.info(f'Open this URL to authenticate: {auth_url}')
    open_url(auth_url, log)

    otp = poll_for_otp(
        done_url,
        session,
        timeout_ms=options.timeout_ms,
        poll_interval_ms=options.poll_interval_ms,
        sleep=sleep,
    )
    log.debug('Received one-time password from web authentication.')
    return handle_token_response(post({'npm-otp': otp}))
