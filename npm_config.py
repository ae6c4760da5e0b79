"""
npm-trustme configuration.

Two kinds of configuration live here:

- The persisted JSON config file (~/.npm-trustme/config.json by default) holding
  browser-connection settings and the captured trusted publisher template.
  Writes merge into whatever is already on disk (last writer wins).
- RunOptions, the per-invocation settings built once by the command line and
  passed explicitly to everything that needs them.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path

CONFIG_ENV_VAR = 'NPM_TRUSTME_CONFIG'
DEFAULT_CONFIG_NAME = 'config.json'
ENV_PREFIX = 'NPM_TRUSTME_'

# Keys understood in the persisted config file
CONFIG_KEYS = (
    'chrome_cdp_url',
    'chrome_debug_port',
    'chrome_user_data_dir',
    'chrome_profile',
    'chrome_path',
    'trusted_publisher_template',
)


def default_trustme_dir() -> Path:
    return Path.home() / '.npm-trustme'


def get_config_path(env: dict | None = None) -> Path:
    env = os.environ if env is None else env
    configured = env.get(CONFIG_ENV_VAR)
    if configured:
        return Path(configured).expanduser().resolve()
    return default_trustme_dir() / DEFAULT_CONFIG_NAME


def read_config(env: dict | None = None) -> dict:
    """Load the persisted config. Missing or corrupt files read as empty."""
    path = get_config_path(env)
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def write_config(update: dict, env: dict | None = None) -> dict:
    """Merge update into the persisted config and write it back."""
    path = get_config_path(env)
    merged = {**read_config(env), **update}
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(merged, indent=2))
    path.chmod(0o600)  # May hold a captured form with session-bound static fields
    return merged


def env_value(name: str, env: dict | None = None) -> str | None:
    """Read NPM_TRUSTME_<name>, treating blank values as unset."""
    env = os.environ if env is None else env
    value = env.get(f'{ENV_PREFIX}{name}')
    if value is None:
        return None
    value = value.strip()
    return value or None


def to_bool(value: bool | None, env_raw: str | None) -> bool:
    if value is not None:
        return value
    if not env_raw:
        return False
    return env_raw.strip().lower() in ('1', 'true', 'yes', 'on')


def to_int(value) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass
class RunOptions:
    """Per-invocation settings shared by the browser session and the reconciler."""

    headless: bool = False
    dry_run: bool = False
    timeout_ms: int | None = None
    screenshot_dir: Path | None = None
    storage_state_path: Path | None = None
    slow_mo: int | None = None
    chrome_profile: str | None = None
    chrome_profile_dir: Path | None = None
    chrome_user_data_dir: Path | None = None
    chrome_path: str | None = None
    chrome_cdp_url: str | None = None
    chrome_debug_port: int | None = None
    cdp_explicit: bool = False
    manual_login: bool = True

    def timeout(self, default_ms: int) -> int:
        """Operator-configured timeout, or the step's own default."""
        return self.timeout_ms if self.timeout_ms is not None else default_ms

    def with_dry_run(self, dry_run: bool) -> 'RunOptions':
        copy = RunOptions(**self.__dict__)
        copy.dry_run = dry_run
        return copy
