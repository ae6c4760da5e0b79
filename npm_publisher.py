"""
npm Trusted Publisher Reconciliation

Drives the package access page on npmjs.com toward a Target:

- Trusted publisher: if owner/repo, workflow (and environment) are already shown
  on the page the result is 'exists'; otherwise the connection form is filled,
  submitted and re-checked until the page shows the new entry ('added').
- Publishing access: selects the desired publishing-access radio and saves it,
  then waits until the radio reads back as checked ('updated'). A policy of
  'skip' never touches the page.

Presence detection is textual: the page is considered to hold the trusted
publisher when the slug and workflow text are visible. npm exposes no read API
for this setting, so a matching but different entry would count as present.
"""

import re
from dataclasses import dataclass

from playwright.sync_api import Locator, Page

from npm_auth import NpmSession
from npm_errors import ConfirmationError, TrustmeError
from npm_page import (
    by_label,
    by_role,
    by_selector,
    field_strategies,
    find_button,
    first_editable,
    first_visible,
    is_checked,
    is_visible,
    text_visible,
)
from npm_targets import ALLOW_BYPASS_TOKEN, DISALLOW_TOKENS, SKIP, Target

ACCESS_READY_TIMEOUT_MS = 120000
FORM_TIMEOUT_MS = 60000
PUBLISHER_CONFIRM_TIMEOUT_MS = 30000
ACCESS_CONFIRM_TIMEOUT_MS = 60000
FORM_POLL_INTERVAL_MS = 500

TRUSTED_PUBLISHERS_RE = re.compile(r'trusted publishers', re.IGNORECASE)
OWNER_FIELD_RE = re.compile(r'organization|owner|user', re.IGNORECASE)
MAINTAINER_RE = re.compile(r'maintainer', re.IGNORECASE)

SAVE_PATTERNS = [
    re.compile(r'save', re.IGNORECASE),
    re.compile(r'update package settings', re.IGNORECASE),
    re.compile(r'update settings', re.IGNORECASE),
    re.compile(r'save changes', re.IGNORECASE),
]
SETUP_CONNECTION_PATTERNS = [
    re.compile(r'set up connection', re.IGNORECASE),
    re.compile(r'setup connection', re.IGNORECASE),
    re.compile(r'connect', re.IGNORECASE),
    re.compile(r'create connection', re.IGNORECASE),
]

PUBLISHER_CONTROLS = {
    'github': (re.compile(r'github actions', re.IGNORECASE), 'button[aria-label*="GitHub"]'),
    'gitlab': (re.compile(r'gitlab', re.IGNORECASE), 'button[aria-label*="GitLab"]'),
}

ACCESS_VALUES = {
    DISALLOW_TOKENS: 'tfa-always-required',
    ALLOW_BYPASS_TOKEN: 'tfa-required-unless-automation',
}
ACCESS_LABELS = {
    DISALLOW_TOKENS: re.compile(r'require two-factor authentication and disallow tokens', re.IGNORECASE),
    ALLOW_BYPASS_TOKEN: re.compile(r'require two-factor authentication or a granular access token', re.IGNORECASE),
}

# (input names, label patterns) tried in order for each form field
OWNER_FIELD = (['repositoryOwner', 'owner', 'organization'], [re.compile(p, re.IGNORECASE) for p in ('organization', 'owner', 'user')])
REPO_FIELD = (['repositoryName', 'repo'], [re.compile(p, re.IGNORECASE) for p in ('repository', 'repo')])
WORKFLOW_FIELD = (['workflowName'], [re.compile(p, re.IGNORECASE) for p in ('workflow', 'workflow filename')])
ENVIRONMENT_FIELD = (['githubEnvironmentName', 'environment'], [re.compile(r'environment', re.IGNORECASE)])

# Result values
EXISTS = 'exists'
ADDED = 'added'
DRY_RUN = 'dry-run'
OK = 'ok'
UPDATED = 'updated'
SKIPPED = 'skipped'


class FormFieldError(TrustmeError):
    """A control on the trusted publisher form could not be found."""


def access_url(package_name: str) -> str:
    return f'https://www.npmjs.com/package/{package_name}/access'


def is_access_url(url: str, package_name: str) -> bool:
    return f'/package/{package_name}/access' in url


def radio_selector(value: str) -> str:
    return f'input[type="radio"][name="publishingAccess"][value="{value}"]'


def is_trusted_publishers_ready(page: Page) -> bool:
    return first_visible(page, [
        by_role('tab', TRUSTED_PUBLISHERS_RE),
        by_role('heading', TRUSTED_PUBLISHERS_RE),
        by_role('textbox', OWNER_FIELD_RE),
    ]) is not None


def is_form_visible(page: Page) -> bool:
    return first_visible(page, [
        by_role('textbox', OWNER_FIELD_RE),
        by_selector('input[name="repositoryOwner"], input[name="repositoryName"], input[name="workflowName"]'),
    ]) is not None


@dataclass
class EnsureResult:
    publishing_access: str
    trusted_publisher: str

    @property
    def changes_pending(self) -> bool:
        """True when something was missing and left unchanged (dry run)."""
        return DRY_RUN in (self.publishing_access, self.trusted_publisher)

    def to_dict(self) -> dict:
        return {'publishingAccess': self.publishing_access, 'trustedPublisher': self.trusted_publisher}


class TrustedPublisherManager:
    """Reconciles one package's access page against a Target."""

    def __init__(self, session: NpmSession):
        self.session = session
        self.page = session.page
        self.options = session.options
        self.log = session.log

    def open_access_page(self, target: Target) -> None:
        url = access_url(target.package_name)
        self.page.goto(url, wait_until='domcontentloaded')
        self.session.wait_until_ready(
            url,
            lambda current: is_access_url(current, target.package_name),
            is_trusted_publishers_ready,
            'npm access page',
            ACCESS_READY_TIMEOUT_MS,
        )

    def focus_trusted_publishers_section(self) -> None:
        tab = self.page.get_by_role('tab', name=TRUSTED_PUBLISHERS_RE).first
        if is_visible(tab, 1500):
            tab.click()
            self.page.wait_for_timeout(500)
            return
        heading = self.page.get_by_role('heading', name=TRUSTED_PUBLISHERS_RE).first
        if is_visible(heading):
            heading.scroll_into_view_if_needed()

    def has_trusted_publisher(self, target: Target) -> bool:
        if not text_visible(self.page, target.slug):
            return False
        if not text_visible(self.page, target.workflow):
            return False
        return not target.environment or text_visible(self.page, target.environment)

    def select_publisher(self, provider: str) -> None:
        label, aria_selector = PUBLISHER_CONTROLS[provider]
        control = first_visible(self.page, [
            by_role('button', label),
            by_role('radio', label),
            by_role('tab', label),
            by_selector(aria_selector),
        ], timeout_ms=1000)
        if control:
            control.click()
            self.page.wait_for_timeout(300)
        else:
            self.log.debug(f'No {provider} publisher control found; assuming the form is already shown.')

    def wait_for_form(self) -> None:
        def form_ready() -> bool:
            if self.session.handle_challenge():
                return False
            return is_form_visible(self.page)

        timeout = self.options.timeout(FORM_TIMEOUT_MS)
        if not self.session.poll(form_ready, timeout, FORM_POLL_INTERVAL_MS):
            raise self.session.fail('Timed out waiting for trusted publisher form', 'trusted-publisher-form-timeout')

    def _fill(self, field: tuple[list[str], list[re.Pattern]], value: str, description: str) -> None:
        input_names, labels = field
        locator = first_editable(self.page, field_strategies(input_names, labels), timeout_ms=1000)
        if not locator:
            raise FormFieldError(f'Unable to locate the {description} field')
        locator.fill(value)

    def fill_form(self, target: Target) -> None:
        self._fill(OWNER_FIELD, target.owner, 'owner')
        self._fill(REPO_FIELD, target.repo, 'repository')
        self._fill(WORKFLOW_FIELD, target.workflow, 'workflow')
        if target.environment:
            self._fill(ENVIRONMENT_FIELD, target.environment, 'environment')
        if target.maintainer:
            maintainer = first_editable(self.page, field_strategies([], [MAINTAINER_RE]))
            if maintainer:
                maintainer.fill(target.maintainer)
            else:
                self.log.warn('Maintainer field not found; leaving it unset.')

    def click_setup_connection(self) -> None:
        button = find_button(self.page, SETUP_CONNECTION_PATTERNS, timeout_ms=1500)
        if not button:
            raise FormFieldError('Unable to locate the set up connection button')
        button.click()
        self.page.wait_for_timeout(1000)

    def wait_for_trusted_publisher(self, target: Target) -> bool:
        def present() -> bool:
            if self.session.handle_challenge():
                return False
            return self.has_trusted_publisher(target)

        return self.session.poll(present, self.options.timeout(PUBLISHER_CONFIRM_TIMEOUT_MS))

    def ensure_trusted_publisher(self, target: Target) -> str:
        self.open_access_page(target)
        self.focus_trusted_publishers_section()

        if self.has_trusted_publisher(target):
            self.log.success('Trusted publisher already exists.')
            return EXISTS

        if self.options.dry_run:
            self.log.info('[dry-run] Would add trusted publisher.')
            return DRY_RUN

        self.log.info(f'Adding trusted publisher {target.slug} ({target.workflow})...')
        self.select_publisher(target.provider)
        self.wait_for_form()
        try:
            self.fill_form(target)
            self.click_setup_connection()
        except FormFieldError as e:
            screenshot = self.session.screenshot('trusted-publisher-form')
            raise ConfirmationError(str(e), screenshot) from e

        if not self.wait_for_trusted_publisher(target):
            screenshot = self.session.screenshot('trusted-publisher-failed')
            raise ConfirmationError('Failed to confirm trusted publisher creation', screenshot)

        self.log.success('Trusted publisher added.')
        return ADDED

    def find_access_radio(self, publishing_access: str) -> Locator | None:
        label = ACCESS_LABELS[publishing_access]
        return first_visible(self.page, [
            by_selector(radio_selector(ACCESS_VALUES[publishing_access])),
            by_role('radio', label),
            by_label(label),
        ], timeout_ms=1500)

    def wait_for_publishing_access(self, radio: Locator) -> bool:
        """Poll the radio that was clicked, however it was located."""

        def selected() -> bool:
            if self.session.handle_challenge():
                return False
            return is_visible(radio) and is_checked(radio)

        return self.session.poll(selected, self.options.timeout(ACCESS_CONFIRM_TIMEOUT_MS))

    def ensure_publishing_access(self, target: Target) -> str:
        if target.publishing_access == SKIP:
            self.log.info('Skipping publishing access settings.')
            return SKIPPED

        self.open_access_page(target)
        radio = self.find_access_radio(target.publishing_access)
        if not radio:
            self.log.warn('Unable to locate publishing access option; skipping.')
            return SKIPPED

        if is_checked(radio):
            self.log.success('Publishing access already set.')
            return OK

        if self.options.dry_run:
            self.log.info('[dry-run] Would update publishing access settings.')
            return DRY_RUN

        radio.scroll_into_view_if_needed()
        radio.click()
        save = find_button(self.page, SAVE_PATTERNS, timeout_ms=1500)
        if not save:
            raise ConfirmationError(
                'Unable to locate the save button for publishing access',
                self.session.screenshot('publishing-access-save'),
            )
        save.click()

        if not self.wait_for_publishing_access(radio):
            screenshot = self.session.screenshot('publishing-access-failed')
            raise ConfirmationError('Failed to confirm publishing access update', screenshot)

        self.log.success('Publishing access updated.')
        return UPDATED


def ensure_access_then_publisher(manager: TrustedPublisherManager, target: Target) -> EnsureResult:
    """Publishing access first, then the trusted publisher."""
    publishing_access = manager.ensure_publishing_access(target)
    trusted_publisher = manager.ensure_trusted_publisher(target)
    return EnsureResult(publishing_access=publishing_access, trusted_publisher=trusted_publisher)
