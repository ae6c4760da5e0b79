"""
Trusted publisher form templates.

capture_template() walks the browser to the trusted publisher form and records
its structure: where it posts, how, which input carries which logical value
(owner, repo, workflow, environment, maintainer, publisher) and which other
non-empty inputs must be sent back verbatim (CSRF token and the like).

apply_template() replays that form without a browser by posting the same
fields, with the target's values substituted in, using a bearer token.

A template is tied to the live form's field names. If npm renames them, replay
starts failing and the template must be captured again.
"""

from dataclasses import dataclass, field
from urllib.parse import urljoin

import requests

from npm_errors import ReplayError, TemplateError
from npm_log import DebugLogger, Log
from npm_publisher import TrustedPublisherManager
from npm_registry import create_session
from npm_targets import Target

NPM_BASE_URL = 'https://www.npmjs.com'
REPLAY_TIMEOUT_S = 30

# Substring patterns matched against "name label placeholder", in field order.
# Each input is claimed by at most one field and the first matching input wins.
FIELD_PATTERNS = (
    ('owner', ('repositoryowner', 'owner', 'organization', 'namespace')),
    ('repo', ('repositoryname', 'repository', 'repo', 'project')),
    ('workflow', ('workflow', 'pipeline', 'config file')),
    ('environment', ('environment',)),
    ('maintainer', ('maintainer',)),
    ('publisher', ('publisher', 'provider')),
)
REQUIRED_FIELDS = ('owner', 'repo', 'workflow')

CAPTURE_FORM_JS = """() => {
    const anchor = document.querySelector(
        'input[name="repositoryOwner"], input[name="repositoryName"], input[name="workflowName"]'
    )
    let form = anchor ? anchor.closest('form') : null
    if (!form) {
        form = Array.from(document.querySelectorAll('form')).find((f) =>
            /owner|organization|workflow/i.test(f.innerText + ' ' + f.innerHTML)
        ) || null
    }
    if (!form) return null

    const labelFor = (el) => {
        if (el.labels && el.labels.length) return el.labels[0].innerText.trim()
        const aria = el.getAttribute('aria-label')
        if (aria) return aria.trim()
        const wrapping = el.closest('label')
        return wrapping ? wrapping.innerText.trim() : ''
    }

    const inputs = []
    for (const el of form.querySelectorAll('input, select, textarea')) {
        const type = (el.getAttribute('type') || el.tagName).toLowerCase()
        if (!el.name || ['submit', 'button', 'reset', 'image', 'file'].includes(type)) continue
        if ((type === 'radio' || type === 'checkbox') && !el.checked) continue
        inputs.push({
            name: el.name,
            type: type,
            value: el.value || '',
            placeholder: el.getAttribute('placeholder') || '',
            label: labelFor(el),
        })
    }
    return {
        action: form.getAttribute('action') || window.location.pathname,
        method: (form.getAttribute('method') || 'POST').toUpperCase(),
        inputs: inputs,
    }
}"""


@dataclass
class FieldInput:
    name: str
    type: str = 'text'
    value: str = ''
    placeholder: str = ''
    label: str = ''

    @property
    def search_text(self) -> str:
        return f'{self.name} {self.label} {self.placeholder}'.lower()


@dataclass
class TrustedPublisherTemplate:
    action: str
    method: str = 'POST'
    static_fields: dict = field(default_factory=dict)
    field_map: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'action': self.action,
            'method': self.method,
            'staticFields': dict(self.static_fields),
            'fieldMap': dict(self.field_map),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> 'TrustedPublisherTemplate':
        if not isinstance(data, dict) or not data.get('action'):
            raise TemplateError('No trusted publisher template captured. Run `npm-trustme capture` first.')
        field_map = data.get('fieldMap') or {}
        missing = [name for name in REQUIRED_FIELDS if not field_map.get(name)]
        if missing:
            raise TemplateError(f'Stored template is missing fields: {", ".join(missing)}. Capture it again.')
        return cls(
            action=data['action'],
            method=(data.get('method') or 'POST').upper(),
            static_fields=dict(data.get('staticFields') or {}),
            field_map=dict(field_map),
        )


def map_fields(inputs: list[FieldInput]) -> dict:
    """Assign inputs to logical fields; first match wins per field."""
    field_map = {}
    claimed = set()
    for field_name, patterns in FIELD_PATTERNS:
        for item in inputs:
            if item.name in claimed:
                continue
            if any(pattern in item.search_text for pattern in patterns):
                field_map[field_name] = item.name
                claimed.add(item.name)
                break
    return field_map


def build_template(
    action: str,
    method: str,
    inputs: list[FieldInput],
    base_url: str = NPM_BASE_URL,
) -> TrustedPublisherTemplate:
    field_map = map_fields(inputs)
    missing = [name for name in REQUIRED_FIELDS if name not in field_map]
    if missing:
        raise TemplateError(f'Could not identify form fields: {", ".join(missing)}')

    mapped = set(field_map.values())
    static_fields = {item.name: item.value for item in inputs if item.name not in mapped and item.value}
    return TrustedPublisherTemplate(
        action=urljoin(base_url, action or ''),
        method=(method or 'POST').upper(),
        static_fields=static_fields,
        field_map=field_map,
    )


def capture_template(manager: TrustedPublisherManager, target: Target) -> TrustedPublisherTemplate:
    """Open the trusted publisher form for target's package and record it."""
    manager.open_access_page(target)
    manager.focus_trusted_publishers_section()
    manager.select_publisher(target.provider)
    manager.wait_for_form()

    captured = manager.page.evaluate(CAPTURE_FORM_JS)
    if not captured:
        screenshot = manager.session.screenshot('template-capture')
        hint = f' (screenshot: {screenshot})' if screenshot else ''
        raise TemplateError(f'Trusted publisher form not found on the page{hint}')

    inputs = [
        FieldInput(
            name=item.get('name') or '',
            type=item.get('type') or 'text',
            value=item.get('value') or '',
            placeholder=item.get('placeholder') or '',
            label=item.get('label') or '',
        )
        for item in captured.get('inputs') or []
    ]
    manager.log.debug(f'Captured {len(inputs)} form inputs from {captured.get("action")}')
    template = build_template(captured.get('action'), captured.get('method'), inputs, base_url=manager.page.url)
    manager.log.success(f'Captured trusted publisher template ({", ".join(sorted(template.field_map))}).')
    return template


def target_values(target: Target) -> dict:
    return {
        'owner': target.owner,
        'repo': target.repo,
        'workflow': target.workflow,
        'environment': target.environment,
        'maintainer': target.maintainer,
        'publisher': target.provider,
    }


def build_replay_body(template: TrustedPublisherTemplate, target: Target) -> dict:
    body = dict(template.static_fields)
    values = target_values(target)
    for field_name, input_name in template.field_map.items():
        value = values.get(field_name)
        if value:
            body[input_name] = value
    return body


def apply_template(
    template: TrustedPublisherTemplate,
    target: Target,
    token: str,
    log: Log,
    session: requests.Session | None = None,
    debug_log: DebugLogger | None = None,
) -> str:
    """
    Submit the captured form directly over HTTP.

    Any 2xx or 3xx status counts as accepted. Returns 'added'; raises
    ReplayError otherwise.
    """
    if not token:
        raise TemplateError('A session token is required to apply the template.')

    session = session or create_session(retry=False)
    body = build_replay_body(template, target)
    headers = {
        'Authorization': f'Bearer {token}',
        'Content-Type': 'application/x-www-form-urlencoded',
        'Accept': 'text/html,application/json',
    }

    log.info(f'Applying trusted publisher {target.slug} via template...')
    if debug_log:
        debug_log.log_section('Trusted publisher template replay')
        debug_log.log_request(template.method, template.action, headers, body)

    response = session.request(
        template.method,
        template.action,
        data=body,
        headers=headers,
        allow_redirects=False,
        timeout=REPLAY_TIMEOUT_S,
    )
    if debug_log:
        debug_log.log_response(response)

    if not 200 <= response.status_code < 400:
        raise ReplayError(response.status_code, response.text or '')

    log.success('Trusted publisher submitted via template.')
    return 'added'
