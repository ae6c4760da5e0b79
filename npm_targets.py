"""
Trusted publisher targets.

A Target is the desired end state for one package: which repository and
workflow may publish it via OIDC, and which publishing-access policy the package
should have. Targets are built once per invocation from CLI flags, environment
variables and (optionally) the local git checkout, and never change afterwards.
"""

import json
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

from npm_config import env_value
from npm_errors import ConfigurationError

DISALLOW_TOKENS = 'disallow-tokens'
ALLOW_BYPASS_TOKEN = 'allow-bypass-token'
SKIP = 'skip'
PUBLISHING_ACCESS_CHOICES = (DISALLOW_TOKENS, ALLOW_BYPASS_TOKEN, SKIP)

PROVIDERS = ('github', 'gitlab')
DEFAULT_WORKFLOW = 'npm-release.yml'

GITHUB_REMOTE_RE = re.compile(r'github\.com[:/](.+?)/(.+?)(?:\.git)?/?$')


@dataclass(frozen=True)
class Target:
    package_name: str
    owner: str
    repo: str
    workflow: str
    environment: str | None = None
    maintainer: str | None = None
    provider: str = 'github'
    publishing_access: str = DISALLOW_TOKENS

    @property
    def slug(self) -> str:
        return f'{self.owner}/{self.repo}'


def normalize_workflow_name(value: str) -> str:
    """Reduce a workflow reference to its bare filename."""
    trimmed = (value or '').strip()
    if not trimmed:
        raise ConfigurationError('Workflow filename cannot be empty.')
    name = PureWindowsPath(PurePosixPath(trimmed).name).name
    if not name:
        raise ConfigurationError('Workflow filename cannot be empty.')
    return name


def normalize_publishing_access(value: str | None) -> str:
    normalized = (value or '').strip().lower()
    if normalized in ('allow-bypass-token', 'allow-bypass'):
        return ALLOW_BYPASS_TOKEN
    if normalized == 'skip':
        return SKIP
    return DISALLOW_TOKENS


def normalize_provider(value: str | None) -> str:
    return 'gitlab' if (value or '').strip().lower() == 'gitlab' else 'github'


def parse_github_remote(remote_url: str) -> tuple[str, str] | None:
    """Extract (owner, repo) from an https or ssh GitHub remote URL."""
    match = GITHUB_REMOTE_RE.search((remote_url or '').strip())
    if not match:
        return None
    return match.group(1), match.group(2)


def infer_github_repo(cwd: Path | None = None) -> tuple[str, str] | None:
    try:
        result = subprocess.run(
            ['git', 'remote', 'get-url', 'origin'],
            capture_output=True,
            text=True,
            check=True,
            cwd=cwd,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    return parse_github_remote(result.stdout)


def infer_package_name(root_dir: Path) -> str | None:
    pkg_path = root_dir / 'package.json'
    if not pkg_path.exists():
        return None
    try:
        data = json.loads(pkg_path.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    name = data.get('name') if isinstance(data, dict) else None
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def infer_workflow_file(root_dir: Path) -> str | None:
    """Prefer npm-release.yml, otherwise the only workflow file present."""
    workflows_dir = root_dir / '.github' / 'workflows'
    if (workflows_dir / DEFAULT_WORKFLOW).is_file():
        return DEFAULT_WORKFLOW
    if not workflows_dir.is_dir():
        return None
    candidates = sorted(
        entry.name for entry in workflows_dir.iterdir()
        if entry.is_file() and entry.suffix in ('.yml', '.yaml')
    )
    if len(candidates) == 1:
        return candidates[0]
    return None


def resolve_target(
    package: str | None = None,
    owner: str | None = None,
    repo: str | None = None,
    workflow: str | None = None,
    environment: str | None = None,
    maintainer: str | None = None,
    publisher: str | None = None,
    publishing_access: str | None = None,
    auto_repo: bool = False,
    root_dir: Path | None = None,
    env: dict | None = None,
) -> Target:
    """
    Build a Target from explicit values, falling back to NPM_TRUSTME_* env vars.

    With auto_repo, missing owner/repo come from the git origin remote and a
    missing package/workflow from package.json and .github/workflows.
    Raises ConfigurationError when package, owner, repo or workflow is missing.
    """
    package = package or env_value('PACKAGE', env)
    owner = owner or env_value('OWNER', env)
    repo = repo or env_value('REPO', env)
    workflow = workflow or env_value('WORKFLOW', env)
    environment = environment or env_value('ENVIRONMENT', env)
    maintainer = maintainer or env_value('MAINTAINER', env)
    publisher = publisher or env_value('PUBLISHER', env)
    publishing_access = publishing_access or env_value('PUBLISHING_ACCESS', env)

    if auto_repo:
        root = root_dir or Path.cwd()
        if not owner or not repo:
            inferred = infer_github_repo(root)
            if inferred:
                owner = owner or inferred[0]
                repo = repo or inferred[1]
        package = package or infer_package_name(root)
        workflow = workflow or infer_workflow_file(root)

    missing = [
        flag for flag, value in (
            ('--package', package),
            ('--owner', owner),
            ('--repo', repo),
            ('--workflow', workflow),
        ) if not value
    ]
    if missing:
        raise ConfigurationError(
            f'Missing required fields: {", ".join(missing)} (or NPM_TRUSTME_* env equivalents).'
        )

    return Target(
        package_name=package,
        owner=owner,
        repo=repo,
        workflow=normalize_workflow_name(workflow),
        environment=environment or None,
        maintainer=maintainer or None,
        provider=normalize_provider(publisher),
        publishing_access=normalize_publishing_access(publishing_access),
    )
