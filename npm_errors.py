"""
Error types raised by npm-trustme.

Everything derives from TrustmeError (a RuntimeError) so command handlers can
catch a single type and turn it into exit status 1.
"""


class TrustmeError(RuntimeError):
    """Base class for all npm-trustme failures."""


class ConfigurationError(TrustmeError):
    """Required target fields are missing or invalid. Raised before any browser launch."""


class AuthenticationError(TrustmeError):
    """Not logged in and unable to log in (headless without credentials, unattended 2FA, ...)."""


class CredentialError(TrustmeError):
    """A configured credential provider failed (CLI error, malformed output)."""


class WaitTimeoutError(TrustmeError):
    """A bounded wait expired. Carries the diagnostic screenshot path when one was taken."""

    def __init__(self, message: str, screenshot: str | None = None):
        if screenshot:
            message = f'{message} (screenshot: {screenshot})'
        super().__init__(message)
        self.screenshot = screenshot


class ConfirmationError(TrustmeError):
    """A mutation was submitted but the page never showed the desired state."""

    def __init__(self, message: str, screenshot: str | None = None):
        if screenshot:
            message = f'{message} (screenshot: {screenshot})'
        super().__init__(message)
        self.screenshot = screenshot


class TemplateError(TrustmeError):
    """A form template could not be captured or is unusable."""


class ReplayError(TrustmeError):
    """Replaying a captured template returned a non-success HTTP status."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        snippet = body.strip()[:200]
        message = f'Token apply failed (HTTP {status})'
        if snippet:
            message = f'{message}: {snippet}'
        super().__init__(message)


class BrowserError(TrustmeError):
    """Playwright failed on the live page (navigation, click, fill)."""

    def __init__(self, message: str, screenshot: str | None = None):
        if screenshot:
            message = f'{message} (screenshot: {screenshot})'
        super().__init__(message)
        self.screenshot = screenshot
