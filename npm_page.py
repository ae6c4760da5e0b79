"""
Page helpers shared by the login state machine and the reconciler.

The npm website has no stable, versioned markup, so element lookups are
expressed as ordered lists of strategies (structural selector, accessible role,
label, placeholder). Each strategy yields a locator; the first one that is
visible (and, for inputs, editable) wins.
"""

import re
import time
from typing import Callable, Iterable

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator, Page

Strategy = Callable[[Page], Locator]


def poll_until(
    predicate: Callable[[], bool],
    timeout_ms: int,
    interval_ms: int = 1000,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Call predicate every interval_ms until it returns True or timeout_ms elapses.

    Returns False on timeout. Exceptions raised by the predicate propagate and
    end the wait immediately.
    """
    deadline = clock() + timeout_ms / 1000
    while clock() < deadline:
        if predicate():
            return True
        sleep(interval_ms / 1000)
    return False


def page_sleeper(page: Page) -> Callable[[float], None]:
    """Sleep via the page so Playwright keeps processing events meanwhile."""
    return lambda seconds: page.wait_for_timeout(seconds * 1000)


def is_visible(locator: Locator, timeout_ms: int = 0) -> bool:
    """Visibility check that never raises; with a timeout it waits for the element to appear."""
    try:
        if timeout_ms:
            locator.wait_for(state='visible', timeout=timeout_ms)
            return True
        return locator.is_visible()
    except PlaywrightError:
        return False


def is_checked(locator: Locator) -> bool:
    try:
        return locator.is_checked()
    except PlaywrightError:
        return False


def is_editable(locator: Locator) -> bool:
    """True for input/textarea/select, contenteditable, and textbox/combobox roles."""
    try:
        return bool(locator.evaluate(
            """(el) => {
                const tag = el.tagName.toLowerCase()
                if (tag === 'input' || tag === 'textarea' || tag === 'select') return true
                if (el.isContentEditable) return true
                const role = el.getAttribute('role')
                return role === 'textbox' || role === 'combobox'
            }"""
        ))
    except PlaywrightError:
        return False


def first_visible(page: Page, strategies: Iterable[Strategy], timeout_ms: int = 0) -> Locator | None:
    for strategy in strategies:
        locator = strategy(page)
        if is_visible(locator, timeout_ms):
            return locator
    return None


def first_editable(page: Page, strategies: Iterable[Strategy], timeout_ms: int = 0) -> Locator | None:
    for strategy in strategies:
        locator = strategy(page)
        if is_visible(locator, timeout_ms) and is_editable(locator):
            return locator
    return None


def by_selector(selector: str) -> Strategy:
    return lambda page: page.locator(selector).first


def by_role(role: str, name: re.Pattern) -> Strategy:
    return lambda page: page.get_by_role(role, name=name).first


def by_label(label: re.Pattern) -> Strategy:
    return lambda page: page.get_by_label(label).first


def by_placeholder(label: re.Pattern) -> Strategy:
    return lambda page: page.get_by_placeholder(label).first


def field_strategies(input_names: Iterable[str], labels: Iterable[re.Pattern]) -> list[Strategy]:
    """Structural input name first, then role, label and placeholder lookups per label."""
    strategies = [by_selector(f'input[name="{name}"]') for name in input_names]
    for label in labels:
        strategies += [
            by_role('textbox', label),
            by_role('combobox', label),
            by_label(label),
            by_placeholder(label),
        ]
    return strategies


def find_button(page: Page, patterns: Iterable[re.Pattern], timeout_ms: int = 0) -> Locator | None:
    strategies = [by_role('button', pattern) for pattern in patterns]
    strategies.append(by_selector('button[type="submit"]'))
    return first_visible(page, strategies, timeout_ms)


def text_visible(page: Page, text: str) -> bool:
    return is_visible(page.get_by_text(text, exact=False).first)


def click_if_visible(locator: Locator) -> bool:
    if not is_visible(locator):
        return False
    locator.click()
    return True
