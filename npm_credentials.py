"""
npm login credentials.

Credentials are resolved through a fixed chain of providers:

    direct flags/env -> 1Password -> Bitwarden -> LastPass -> KeePassXC -> prompt

Each provider sees what has been resolved so far and only fills the fields that
are still missing; a value, once set, is never overwritten. Providers that are
not configured return nothing. Providers that are configured but whose CLI fails
raise CredentialError.
"""

import getpass
import json
import os
import subprocess
from dataclasses import dataclass, field

from npm_config import env_value, to_bool
from npm_errors import CredentialError
from npm_log import Log


@dataclass
class Credentials:
    username: str | None = None
    password: str | None = None
    otp: str | None = None

    @property
    def is_complete(self) -> bool:
        """Username and password present; otp is optional."""
        return bool(self.username and self.password)

    @property
    def has_all(self) -> bool:
        return bool(self.username and self.password and self.otp)

    def merge(self, other: 'Credentials') -> 'Credentials':
        """Fill missing fields from other without overwriting existing ones."""
        return Credentials(
            username=self.username or other.username,
            password=self.password or other.password,
            otp=self.otp or other.otp,
        )


@dataclass
class CredentialOptions:
    username: str | None = None
    password: str | None = None
    otp: str | None = None
    op_username: str | None = None
    op_password: str | None = None
    op_otp: str | None = None
    op_vault: str | None = None
    op_item: str | None = None
    op_username_field: str | None = None
    op_password_field: str | None = None
    op_otp_field: str | None = None
    bw_item: str | None = None
    bw_session: str | None = None
    lpass_item: str | None = None
    lpass_otp_field: str | None = None
    kpx_db: str | None = None
    kpx_entry: str | None = None
    kpx_keyfile: str | None = None
    kpx_password: str | None = None
    kpx_pw_stdin: bool = False

    @classmethod
    def from_env(cls, env: dict | None = None, **overrides) -> 'CredentialOptions':
        """Build options from NPM_TRUSTME_* env vars, with explicit overrides winning."""
        env = os.environ if env is None else env
        values = {
            'username': env_value('USERNAME', env) or env.get('NPM_USERNAME'),
            'password': env_value('PASSWORD', env) or env.get('NPM_PASSWORD'),
            'otp': env_value('OTP', env) or env.get('NPM_OTP'),
            'bw_session': env_value('BW_SESSION', env) or env.get('BW_SESSION'),
        }
        for name in cls.__dataclass_fields__:
            if name in values or name == 'kpx_pw_stdin':
                continue
            values[name] = env_value(name.upper(), env)
        for name, value in overrides.items():
            if name == 'kpx_pw_stdin':
                continue
            if value:
                values[name] = value
        values['kpx_pw_stdin'] = to_bool(overrides.get('kpx_pw_stdin') or None, env_value('KPX_PW_STDIN', env))
        return cls(**values)


def _run(args: list[str], tool: str, install_hint: str, stdin: str | None = None) -> str:
    """Run a password-manager CLI and return its stdout."""
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            check=True,
            input=stdin,
        )
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or '').strip() or f'exit code {e.returncode}'
        raise CredentialError(f'{tool} failed: {detail}') from e
    except FileNotFoundError as e:
        raise CredentialError(f'{tool} not found. {install_hint}') from e
    return result.stdout


def _parse_json(stdout: str, tool: str):
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise CredentialError(f'{tool} returned invalid JSON for item') from e


class DirectProvider:
    """Values passed on the command line or via environment variables."""

    name = 'direct'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        return Credentials(
            username=(options.username or '').strip() or None,
            password=options.password or None,
            otp=(options.otp or '').strip() or None,
        )


class OnePasswordProvider:
    """
    1Password CLI (op).

    Explicit op:// references win. Otherwise a vault + item builds references
    (op read), and an item alone is looked up with op item get.
    """

    name = '1password'
    INSTALL_HINT = 'Install it: https://developer.1password.com/docs/cli/get-started/'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        refs = {
            'username': options.op_username,
            'password': options.op_password,
            'otp': options.op_otp,
        }
        fields = {
            'username': options.op_username_field or 'username',
            'password': options.op_password_field or 'password',
            'otp': options.op_otp_field or 'one-time password',
        }
        if not (any(refs.values()) or options.op_item):
            return Credentials()

        log.info('Resolving credentials via 1Password CLI...')
        resolved = Credentials()
        for attr in ('username', 'password', 'otp'):
            if getattr(current, attr):
                continue
            ref = refs[attr]
            try:
                if ref:
                    value = self._read(ref)
                elif options.op_vault and options.op_item:
                    value = self._read(f'op://{options.op_vault}/{options.op_item}/{fields[attr]}')
                elif options.op_item:
                    value = self._item_field(options.op_item, attr, fields[attr])
                else:
                    value = None
            except CredentialError:
                # An item without a one-time password is fine unless it was asked for explicitly
                if attr != 'otp' or ref:
                    raise
                log.debug('1Password item has no one-time password field.')
                value = None
            setattr(resolved, attr, value or None)
        return resolved

    def _read(self, ref: str) -> str:
        return _run(['op', 'read', ref], '1Password CLI (op)', self.INSTALL_HINT).strip()

    def _item_field(self, item: str, attr: str, field_name: str) -> str:
        if attr == 'otp':
            args = ['op', 'item', 'get', item, '--otp']
        else:
            # Secret fields need --reveal
            args = ['op', 'item', 'get', item, '--fields', field_name, '--reveal']
        return _run(args, '1Password CLI (op)', self.INSTALL_HINT).strip()


class BitwardenProvider:
    """Bitwarden CLI (bw get item / bw get totp)."""

    name = 'bitwarden'
    INSTALL_HINT = 'Install it: https://bitwarden.com/help/cli/'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        if not options.bw_item:
            return Credentials()

        resolved = Credentials()
        if not current.is_complete:
            data = _parse_json(self._bw(['get', 'item', options.bw_item], options), 'Bitwarden CLI')
            login = (data or {}).get('login') or {}
            if not current.username and login.get('username'):
                resolved.username = str(login['username'])
            if not current.password and login.get('password'):
                resolved.password = str(login['password'])

        if not current.otp:
            try:
                otp = self._bw(['get', 'totp', options.bw_item], options).strip()
            except CredentialError:
                log.debug('Bitwarden CLI did not return a TOTP value.')
                otp = ''
            resolved.otp = otp or None
        return resolved

    def _bw(self, args: list[str], options: CredentialOptions) -> str:
        cmd = ['bw', *args]
        if options.bw_session:
            cmd += ['--session', options.bw_session]
        return _run(cmd, 'Bitwarden CLI (bw)', self.INSTALL_HINT)


class LastPassProvider:
    """LastPass CLI (lpass show)."""

    name = 'lastpass'
    INSTALL_HINT = 'Install it: https://github.com/lastpass/lastpass-cli'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        if not options.lpass_item:
            return Credentials()

        resolved = Credentials()
        if not current.is_complete:
            stdout = _run(['lpass', 'show', '--json', options.lpass_item], 'LastPass CLI (lpass)', self.INSTALL_HINT)
            entry = _parse_json(stdout, 'LastPass CLI')
            if isinstance(entry, list):
                entry = entry[0] if entry else {}
            entry = entry or {}
            login = entry.get('login') or {}
            username = entry.get('username') or login.get('username')
            password = entry.get('password') or login.get('password')
            if not current.username and username:
                resolved.username = str(username)
            if not current.password and password:
                resolved.password = str(password)

        if not current.otp and options.lpass_otp_field:
            try:
                otp = _run(
                    ['lpass', 'show', f'--field={options.lpass_otp_field}', options.lpass_item],
                    'LastPass CLI (lpass)',
                    self.INSTALL_HINT,
                ).strip()
            except CredentialError:
                log.debug('LastPass CLI did not return a field value.')
                otp = ''
            resolved.otp = otp or None
        return resolved


class KeePassXCProvider:
    """
    KeePassXC CLI (keepassxc-cli show).

    Output is line oriented: username, password, then the TOTP code when
    --totp was requested.
    """

    name = 'keepassxc'
    TOOL = 'keepassxc-cli'
    INSTALL_HINT = 'Install KeePassXC: https://keepassxc.org/download/'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        if not options.kpx_db or not options.kpx_entry:
            return Credentials()

        wants_otp = not current.otp
        lines = self._read_entry(options, log, wants_otp)
        if not lines:
            return Credentials()

        resolved = Credentials()
        if not current.username and len(lines) > 0:
            resolved.username = lines[0]
        if not current.password and len(lines) > 1:
            resolved.password = lines[1]
        if wants_otp and len(lines) > 2:
            resolved.otp = lines[2]
        return resolved

    def _read_entry(self, options: CredentialOptions, log: Log, include_otp: bool) -> list[str]:
        args = [
            self.TOOL, 'show', options.kpx_db, options.kpx_entry,
            '--show-protected', '--attributes', 'username', '--attributes', 'password',
        ]
        if include_otp:
            args.append('--totp')

        help_text = self._help_text()
        if options.kpx_keyfile and '--key-file' in help_text:
            args += ['--key-file', options.kpx_keyfile]

        supports_pw_stdin = '--pw-stdin' in help_text
        stdin = None
        if (options.kpx_password or options.kpx_pw_stdin) and supports_pw_stdin:
            args.append('--pw-stdin')
            # Without a stored password the caller's own stdin is passed through
            stdin = f'{options.kpx_password}\n' if options.kpx_password else None
        elif options.kpx_password:
            log.warn('keepassxc-cli does not support --pw-stdin; password will be prompted interactively.')

        output = _run(args, 'KeePassXC CLI (keepassxc-cli)', self.INSTALL_HINT, stdin=stdin)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _help_text(self) -> str:
        try:
            result = subprocess.run([self.TOOL, '--help'], capture_output=True, text=True)
        except FileNotFoundError:
            return ''
        return f'{result.stdout}\n{result.stderr}'


class PromptProvider:
    """Ask on the terminal for whatever is still missing."""

    name = 'prompt'

    def resolve(self, options: CredentialOptions, current: Credentials, log: Log) -> Credentials:
        resolved = Credentials()
        if current.is_complete:
            # The browser asks for a 2FA code only if the account needs one
            return resolved

        print()
        print('Please enter your npm credentials:')
        if not current.username:
            resolved.username = input('  Username or email: ').strip() or None
        if not current.password:
            resolved.password = getpass.getpass('  Password: ') or None
        if not current.otp:
            resolved.otp = input('  2FA code (leave blank to skip): ').strip() or None
        return resolved


@dataclass
class CredentialChain:
    """Ordered providers; built once per invocation."""

    providers: list = field(default_factory=list)

    @classmethod
    def default(cls, interactive: bool) -> 'CredentialChain':
        providers = [
            DirectProvider(),
            OnePasswordProvider(),
            BitwardenProvider(),
            LastPassProvider(),
            KeePassXCProvider(),
        ]
        if interactive:
            providers.append(PromptProvider())
        return cls(providers)

    def resolve(self, options: CredentialOptions, log: Log) -> Credentials:
        current = Credentials()
        for provider in self.providers:
            if current.has_all:
                break
            found = provider.resolve(options, current, log)
            current = current.merge(found)
            if found.username or found.password or found.otp:
                log.debug(f'Credentials partially resolved via {provider.name}.')
        return current


def resolve_credentials(
    options: CredentialOptions,
    interactive: bool,
    log: Log,
    allow_missing: bool = False,
    chain: CredentialChain | None = None,
) -> Credentials | None:
    """
    Resolve npm credentials through the provider chain.

    Returns None when username/password are incomplete and allow_missing is set
    (the caller then falls back to interactive browser login). Otherwise an
    incomplete identity raises CredentialError.
    """
    chain = chain or CredentialChain.default(interactive)
    current = chain.resolve(options, log)
    if not current.is_complete:
        if allow_missing:
            return None
        raise CredentialError(
            'Missing npm username/password (use --op-* refs, --username/--password, or env vars).'
        )
    return current
