"""
Public npm registry lookups.

Best-effort, read-only status for a package: does it exist, what is the latest
version, and was that version published through a trusted publisher.
"""

from dataclasses import dataclass
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

REGISTRY_URL = 'https://registry.npmjs.org'
USER_AGENT = 'npm-trustme (+https://www.npmjs.com)'
REQUEST_TIMEOUT_S = 15

GITHUB_OIDC_USER = {'name': 'GitHub Actions', 'email': 'npm-oidc-no-reply@github.com'}


def create_session(retry: bool = True) -> requests.Session:
    """Create a requests session, with retries for idempotent reads when asked."""
    session = requests.Session()

    if retry:
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=['GET'],
        )
        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=10,
            pool_maxsize=10,
        )
        session.mount('https://', adapter)

    session.headers.update({
        'Accept': 'application/json',
        'User-Agent': USER_AGENT,
    })
    return session


def package_metadata_url(name: str) -> str:
    # Scoped names keep their '@' but the slash is encoded
    return f'{REGISTRY_URL}/{quote(name, safe="@")}'


def fetch_package_metadata(name: str, session: requests.Session | None = None) -> dict | None:
    """Packument for name, or None when the registry has never seen it."""
    session = session or create_session()
    response = session.get(package_metadata_url(name), timeout=REQUEST_TIMEOUT_S)
    if response.status_code == 404:
        return None
    response.raise_for_status()
    return response.json() if response.content else {}


def get_latest_version(meta: dict) -> str | None:
    latest = (meta.get('dist-tags') or {}).get('latest')
    if isinstance(latest, str) and latest.strip():
        return latest.strip()
    return None


def has_trusted_publisher(meta: dict, version: str) -> bool:
    user = ((meta.get('versions') or {}).get(version) or {}).get('_npmUser')
    if not user:
        return False
    if user.get('trustedPublisher'):
        return True
    return user.get('name') == GITHUB_OIDC_USER['name'] and user.get('email') == GITHUB_OIDC_USER['email']


@dataclass
class RegistryStatus:
    exists: bool
    latest_version: str | None = None
    has_trusted_publisher: bool | None = None
    repository: object = None

    def describe(self) -> str:
        if not self.exists:
            return 'not published yet'
        if not self.latest_version:
            return 'published (no latest tag)'
        via = 'trusted publisher' if self.has_trusted_publisher else 'token or manual publish'
        return f'latest {self.latest_version} ({via})'


def registry_status(name: str, session: requests.Session | None = None) -> RegistryStatus:
    meta = fetch_package_metadata(name, session)
    if meta is None:
        return RegistryStatus(exists=False)
    latest = get_latest_version(meta)
    return RegistryStatus(
        exists=True,
        latest_version=latest,
        has_trusted_publisher=has_trusted_publisher(meta, latest) if latest else None,
        repository=meta.get('repository'),
    )
