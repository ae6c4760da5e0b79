#!/usr/bin/env python3
# /// script
# dependencies = [
#   "requests",
#   "playwright",
#   "playwright-stealth",
#   "python-dotenv",
#   "browser-cookie3",
# ]
# ///
"""
npm-trustme

Configure npm trusted publishing (OIDC) for a package from the command line by
driving the npmjs.com package settings page.

Usage:
    uv run npm_trustme.py check --package demo --owner acme --repo widgets --workflow release.yml
    uv run npm_trustme.py ensure --auto-repo
    uv run npm_trustme.py capture --auto-repo
    uv run npm_trustme.py ensure --auto-repo --via-template
    uv run npm_trustme.py token create --name ci-bootstrap --packages demo
    uv run npm_trustme.py chrome detect --save
    uv run npm_trustme.py config show

Exit status:
    0   everything already matches (or was applied)
    2   something differs and was left unchanged (check / --dry-run)
    1   error or aborted

Every flag also has an NPM_TRUSTME_* environment variable (e.g.
NPM_TRUSTME_PACKAGE, NPM_TRUSTME_OP_ITEM, NPM_TRUSTME_HEADLESS). A .env file in
the current directory is loaded first.
"""

import argparse
import json
import os
import sys
from pathlib import Path

import requests
from dotenv import load_dotenv
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from npm_auth import NpmSession
from npm_browser import launch_browser
from npm_config import RunOptions, env_value, get_config_path, read_config, to_bool, to_int, write_config
from npm_credentials import CredentialOptions, resolve_credentials
from npm_errors import BrowserError, TrustmeError
from npm_log import DebugLogger, Log
from npm_profiles import REASON_NONE, resolve_chrome_profile_auto
from npm_publisher import (
    DRY_RUN,
    EXISTS,
    OK,
    SKIPPED,
    EnsureResult,
    TrustedPublisherManager,
    ensure_access_then_publisher,
)
from npm_registry import registry_status
from npm_targets import PUBLISHING_ACCESS_CHOICES, PROVIDERS, SKIP, Target, resolve_target
from npm_template import TrustedPublisherTemplate, apply_template, capture_template
from npm_tokens import PERMISSIONS, TokenCreateOptions, create_access_token, get_npm_session_token

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_MISMATCH = 2

CREDENTIAL_FLAGS = (
    'username', 'password', 'otp',
    'op_username', 'op_password', 'op_otp', 'op_vault', 'op_item',
    'op_username_field', 'op_password_field', 'op_otp_field',
    'bw_item', 'bw_session', 'lpass_item', 'lpass_otp_field',
    'kpx_db', 'kpx_entry', 'kpx_keyfile', 'kpx_password', 'kpx_pw_stdin',
)


def add_target_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('target')
    group.add_argument('--package', help='npm package name')
    group.add_argument('--owner', help='Repository owner (user or organization)')
    group.add_argument('--repo', help='Repository name')
    group.add_argument('--workflow', help='Workflow filename (paths are reduced to the filename)')
    group.add_argument('--environment', help='Deployment environment name')
    group.add_argument('--maintainer', help='Maintainer label shown on npm')
    group.add_argument('--publisher', choices=PROVIDERS, help='CI provider (default: github)')
    group.add_argument('--publishing-access', choices=PUBLISHING_ACCESS_CHOICES,
                       help='Publishing access policy (default: disallow-tokens)')
    group.add_argument('--auto-repo', action='store_true',
                       help='Infer owner/repo from git origin, package from package.json, workflow from .github/workflows')


def add_browser_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('browser')
    group.add_argument('--headless', action='store_true', default=None, help='Run the browser without a window')
    group.add_argument('--no-manual-login', action='store_true', help='Never wait for a human to log in')
    group.add_argument('--slow-mo', type=int, help='Slow down browser actions by N ms')
    group.add_argument('--timeout', type=int, help='Timeout in ms for each wait (default depends on the step)')
    group.add_argument('--storage', type=Path, help='Storage-state file to load and save the npm session')
    group.add_argument('--screenshot-dir', type=Path, help='Directory for diagnostic screenshots')
    group.add_argument('--chrome-profile', help='Chrome profile name (e.g. "Default", "Profile 1")')
    group.add_argument('--chrome-profile-dir', type=Path, help='Path to a Chrome profile directory')
    group.add_argument('--chrome-user-data-dir', type=Path, help='Chrome user data directory')
    group.add_argument('--chrome-path', help='Chrome executable path')
    group.add_argument('--chrome-cdp-url', help='Attach to a running Chrome at this remote-debugging URL')
    group.add_argument('--chrome-debug-port', type=int, help='Attach to a running Chrome on this debugging port')
    group.add_argument('--chrome-auto-profile', action='store_true', default=None,
                       help='Pick the Chrome profile that looks logged in to npm')


def add_credential_arguments(parser: argparse.ArgumentParser):
    group = parser.add_argument_group('credentials')
    group.add_argument('--username', help='npm username')
    group.add_argument('--password', help='npm password')
    group.add_argument('--otp', help='npm one-time password')
    group.add_argument('--prompt', action='store_true', help='Prompt for credentials that are still missing')
    group.add_argument('--op-username', help='1Password reference for the username (op://...)')
    group.add_argument('--op-password', help='1Password reference for the password')
    group.add_argument('--op-otp', help='1Password reference for the one-time password')
    group.add_argument('--op-vault', help='1Password vault')
    group.add_argument('--op-item', help='1Password item')
    group.add_argument('--op-username-field', help='1Password username field (default: username)')
    group.add_argument('--op-password-field', help='1Password password field (default: password)')
    group.add_argument('--op-otp-field', help='1Password one-time password field')
    group.add_argument('--bw-item', help='Bitwarden item')
    group.add_argument('--bw-session', help='Bitwarden session key')
    group.add_argument('--lpass-item', help='LastPass item')
    group.add_argument('--lpass-otp-field', help='LastPass field holding the one-time password')
    group.add_argument('--kpx-db', help='KeePassXC database')
    group.add_argument('--kpx-entry', help='KeePassXC entry')
    group.add_argument('--kpx-keyfile', help='KeePassXC key file')
    group.add_argument('--kpx-password', help='KeePassXC database password')
    group.add_argument('--kpx-pw-stdin', action='store_true', help='Pass the KeePassXC password on stdin')


def build_run_options(args, log: Log, env: dict | None = None) -> RunOptions:
    """Flags win over NPM_TRUSTME_* env vars, which win over the config file."""
    env = os.environ if env is None else env
    config = read_config(env)

    def pick(flag_value, name: str):
        if flag_value:
            return flag_value
        return env_value(name.upper(), env) or config.get(name)

    cdp_url = pick(args.chrome_cdp_url, 'chrome_cdp_url')
    debug_port = to_int(pick(args.chrome_debug_port, 'chrome_debug_port'))
    user_data_dir = pick(args.chrome_user_data_dir, 'chrome_user_data_dir')
    profile_dir = args.chrome_profile_dir or env_value('CHROME_PROFILE_DIR', env)
    profile = pick(args.chrome_profile, 'chrome_profile')

    if to_bool(args.chrome_auto_profile, env_value('CHROME_AUTO_PROFILE', env)) and not profile and not profile_dir:
        profile, reason = resolve_chrome_profile_auto(log, Path(user_data_dir) if user_data_dir else None)
        if reason != REASON_NONE:
            log.info(f'Using Chrome profile "{profile}" ({reason}).')

    screenshot_dir = args.screenshot_dir or env_value('SCREENSHOT_DIR', env)
    storage = args.storage or env_value('STORAGE', env)

    return RunOptions(
        headless=to_bool(args.headless, env_value('HEADLESS', env)),
        timeout_ms=args.timeout if args.timeout is not None else to_int(env_value('TIMEOUT', env)),
        screenshot_dir=Path(screenshot_dir) if screenshot_dir else None,
        storage_state_path=Path(storage).expanduser() if storage else None,
        slow_mo=args.slow_mo if args.slow_mo is not None else to_int(env_value('SLOW_MO', env)),
        chrome_profile=profile,
        chrome_profile_dir=Path(profile_dir) if profile_dir else None,
        chrome_user_data_dir=Path(user_data_dir) if user_data_dir else None,
        chrome_path=pick(args.chrome_path, 'chrome_path'),
        chrome_cdp_url=cdp_url,
        chrome_debug_port=debug_port,
        cdp_explicit=bool(args.chrome_cdp_url or args.chrome_debug_port),
        manual_login=not (args.no_manual_login or to_bool(None, env_value('NO_MANUAL_LOGIN', env))),
    )


def credential_options(args) -> CredentialOptions:
    return CredentialOptions.from_env(**{name: getattr(args, name, None) for name in CREDENTIAL_FLAGS})


def target_from_args(args) -> Target:
    return resolve_target(
        package=args.package,
        owner=args.owner,
        repo=args.repo,
        workflow=args.workflow,
        environment=args.environment,
        maintainer=args.maintainer,
        publisher=args.publisher,
        publishing_access=args.publishing_access,
        auto_repo=args.auto_repo,
    )


def describe_target(target: Target, log: Log):
    log.info(f'Package:    {target.package_name}')
    log.info(f'Repository: {target.slug} ({target.provider})')
    log.info(f'Workflow:   {target.workflow}')
    if target.environment:
        log.info(f'Environment: {target.environment}')
    log.info(f'Publishing access: {target.publishing_access}')


def report_registry_status(target: Target, log: Log):
    """Best-effort; registry problems never fail the command."""
    try:
        status = registry_status(target.package_name)
    except (requests.RequestException, ValueError) as e:
        log.debug(f'Registry status unavailable: {e}')
        return
    log.info(f'Registry: {status.describe()}')


def run_in_browser(args, options: RunOptions, log: Log, action):
    """Log in to npm in a browser and call action(manager)."""
    credentials = resolve_credentials(
        credential_options(args),
        interactive=args.prompt,
        log=log,
        allow_missing=True,
    )
    if not credentials:
        log.debug('No npm credentials resolved; relying on an existing session or manual login.')

    with launch_browser(options, log) as browser:
        session = NpmSession(browser.page, options, log, credentials)
        try:
            session.ensure_logged_in()
            return action(TrustedPublisherManager(session))
        except PlaywrightTimeoutError as e:
            raise session.fail(f'Browser action timed out: {e}', 'browser-timeout') from e
        except PlaywrightError as e:
            raise BrowserError(f'Browser action failed: {e}', session.screenshot('browser-error')) from e


def print_result(result: EnsureResult, args, log: Log):
    if args.json:
        print(json.dumps(result.to_dict()))
        return
    log.info(f'Trusted publisher: {result.trusted_publisher}')
    log.info(f'Publishing access: {result.publishing_access}')


def cmd_check(args, log: Log) -> int:
    target = target_from_args(args)
    describe_target(target, log)
    report_registry_status(target, log)
    options = build_run_options(args, log).with_dry_run(True)

    result = run_in_browser(args, options, log, lambda manager: ensure_access_then_publisher(manager, target))
    print_result(result, args, log)
    satisfied = result.trusted_publisher == EXISTS and result.publishing_access in (OK, SKIPPED)
    return EXIT_OK if satisfied else EXIT_MISMATCH


def ensure_via_template(target: Target, args, log: Log) -> EnsureResult:
    template = TrustedPublisherTemplate.from_dict(read_config().get('trusted_publisher_template'))
    token = args.token or get_npm_session_token()
    if target.publishing_access != SKIP:
        log.warn('Publishing access cannot be applied via template; leaving it unchanged.')

    if args.dry_run:
        log.info(f'[dry-run] Would apply trusted publisher {target.slug} via template.')
        return EnsureResult(publishing_access=SKIPPED, trusted_publisher=DRY_RUN)

    with DebugLogger(args.debug_log) as debug_log:
        trusted_publisher = apply_template(template, target, token, log, debug_log=debug_log)
    return EnsureResult(publishing_access=SKIPPED, trusted_publisher=trusted_publisher)


def cmd_ensure(args, log: Log) -> int:
    target = target_from_args(args)
    describe_target(target, log)

    if args.via_template:
        result = ensure_via_template(target, args, log)
    else:
        report_registry_status(target, log)
        options = build_run_options(args, log).with_dry_run(args.dry_run)
        result = run_in_browser(args, options, log, lambda manager: ensure_access_then_publisher(manager, target))

    print_result(result, args, log)
    return EXIT_MISMATCH if result.changes_pending else EXIT_OK


def cmd_capture(args, log: Log) -> int:
    target = target_from_args(args)
    options = build_run_options(args, log)
    template = run_in_browser(args, options, log, lambda manager: capture_template(manager, target))
    write_config({'trusted_publisher_template': template.to_dict()})
    log.success(f'Template saved to {get_config_path()}')
    return EXIT_OK


def cmd_token_create(args, log: Log) -> int:
    session_token = args.session_token or get_npm_session_token()
    credentials = resolve_credentials(credential_options(args), interactive=args.prompt, log=log)
    options = TokenCreateOptions(
        name=args.name,
        description=args.description,
        expires=args.expires,
        bypass_2fa=args.bypass_2fa,
        cidr=args.cidr or [],
        packages=args.packages or [],
        scopes=args.scopes or [],
        orgs=args.orgs or [],
        packages_permission=args.packages_permission,
        orgs_permission=args.orgs_permission,
        otp=credentials.otp,
        timeout_ms=args.timeout or 120000,
    )
    with DebugLogger(args.debug_log) as debug_log:
        response = create_access_token(session_token, credentials.password, options, log, debug_log=debug_log)

    if args.json:
        print(json.dumps(response, indent=2))
        return EXIT_OK
    log.success(f'Created token {response.get("key") or options.name}.')
    if response.get('token'):
        print(response['token'])
    return EXIT_OK


def cmd_chrome_detect(args, log: Log) -> int:
    profile, reason = resolve_chrome_profile_auto(log, args.chrome_user_data_dir)
    if reason == REASON_NONE:
        log.warn('No Chrome profile detected.')
        return EXIT_MISMATCH
    log.success(f'Detected Chrome profile "{profile}" ({reason}).')
    if args.save:
        update = {'chrome_profile': profile}
        if args.chrome_user_data_dir:
            update['chrome_user_data_dir'] = str(args.chrome_user_data_dir)
        write_config(update)
        log.info(f'Saved to {get_config_path()}')
    return EXIT_OK


def cmd_config_show(args, log: Log) -> int:
    config = read_config()
    shown = {key: value for key, value in config.items() if key != 'trusted_publisher_template'}
    template = config.get('trusted_publisher_template')
    if isinstance(template, dict):
        # Static field values can include session-bound tokens
        shown['trusted_publisher_template'] = {
            'action': template.get('action'),
            'method': template.get('method'),
            'fieldMap': template.get('fieldMap'),
            'staticFields': sorted((template.get('staticFields') or {}).keys()),
        }
    print(f'# {get_config_path()}')
    print(json.dumps(shown, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='npm-trustme',
        description='Configure npm trusted publishing (OIDC) from the command line',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--env-file', type=Path, help='Load environment variables from this file (default: .env)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Show debug output')
    parser.add_argument('--debug-log', type=Path, help='Write HTTP request/response details to this file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    check = subparsers.add_parser('check', help='Report whether npm matches the target (no changes)')
    ensure = subparsers.add_parser('ensure', help='Apply publishing access and the trusted publisher')
    capture = subparsers.add_parser('capture', help='Capture the trusted publisher form as a template')
    for sub in (check, ensure, capture):
        add_target_arguments(sub)
        add_browser_arguments(sub)
        add_credential_arguments(sub)
    for sub in (check, ensure):
        sub.add_argument('--json', action='store_true', help='Print the result as JSON')
    check.set_defaults(handler=cmd_check)
    ensure.add_argument('--dry-run', action='store_true', help='Report what would change without changing it')
    ensure.add_argument('--via-template', action='store_true',
                        help='Apply the trusted publisher over HTTP with the captured template (no browser)')
    ensure.add_argument('--token', help='Session token for --via-template (default: npm config)')
    ensure.set_defaults(handler=cmd_ensure)
    capture.set_defaults(handler=cmd_capture)

    token = subparsers.add_parser('token', help='Access token commands')
    token_sub = token.add_subparsers(dest='token_command', required=True)
    create = token_sub.add_parser('create', help='Create a granular access token')
    create.add_argument('--name', required=True, help='Token name')
    create.add_argument('--description', help='Token description')
    create.add_argument('--expires', type=int, help='Expiry in days')
    create.add_argument('--bypass-2fa', action='store_true', help='Allow the token to publish without 2FA')
    create.add_argument('--cidr', action='append', help='Allowed CIDR range (repeatable)')
    create.add_argument('--packages', action='append', help='Package the token may access (repeatable)')
    create.add_argument('--scopes', action='append', help='Scope the token may access (repeatable)')
    create.add_argument('--orgs', action='append', help='Organization the token may access (repeatable)')
    create.add_argument('--packages-permission', choices=PERMISSIONS)
    create.add_argument('--orgs-permission', choices=PERMISSIONS)
    create.add_argument('--session-token', help='npm session token (default: NPM_TRUSTME_SESSION_TOKEN or npm config)')
    create.add_argument('--timeout', type=int, help='Timeout in ms for web authentication')
    create.add_argument('--json', action='store_true', help='Print the full registry response')
    add_credential_arguments(create)
    create.set_defaults(handler=cmd_token_create)

    chrome = subparsers.add_parser('chrome', help='Chrome profile commands')
    chrome_sub = chrome.add_subparsers(dest='chrome_command', required=True)
    detect = chrome_sub.add_parser('detect', help='Find the Chrome profile logged in to npm')
    detect.add_argument('--chrome-user-data-dir', type=Path, help='Chrome user data directory')
    detect.add_argument('--save', action='store_true', help='Save the detected profile to the config file')
    detect.set_defaults(handler=cmd_chrome_detect)

    config = subparsers.add_parser('config', help='Configuration commands')
    config_sub = config.add_subparsers(dest='config_command', required=True)
    show = config_sub.add_parser('show', help='Print the persisted configuration')
    show.set_defaults(handler=cmd_config_show)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        load_dotenv(args.env_file)
    else:
        load_dotenv()
    log = Log(verbose=args.verbose or to_bool(None, env_value('VERBOSE')))

    try:
        return args.handler(args, log)
    except KeyboardInterrupt:
        print()
        log.error('Aborted.')
        return EXIT_ERROR
    except TrustmeError as e:
        log.error(str(e))
        return EXIT_ERROR
    except requests.RequestException as e:
        log.error(f'Network error: {e}')
        return EXIT_ERROR
    except PlaywrightError as e:
        log.error(f'Browser error: {e}')
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
