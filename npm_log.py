"""
Console progress output and an opt-in HTTP debug log.

Log prints tagged progress lines to stdout; debug lines only appear in verbose
mode. DebugLogger writes full request/response details of the browser-free HTTP
calls (template replay, token creation) to a file.
"""

import json
import sys
from datetime import datetime
from pathlib import Path

import requests

MASKED = '***MASKED***'
SECRET_KEYS = {'password', 'otp', 'token'}
SECRET_HEADERS = {'authorization', 'npm-otp', 'cookie'}


class Log:
    """Tagged progress output, gated on verbosity for debug messages."""

    TAGS = {
        'info': '[i]',
        'success': '[ok]',
        'warn': '[!]',
        'error': '[x]',
        'debug': '[..]',
    }

    def __init__(self, verbose: bool = False, stream=None):
        self.verbose = verbose
        self.stream = stream

    def _write(self, level: str, message: str):
        if level == 'debug' and not self.verbose:
            return
        stream = self.stream or sys.stdout
        stream.write(f'{self.TAGS[level]} {message}\n')
        stream.flush()

    def info(self, message: str):
        self._write('info', message)

    def success(self, message: str):
        self._write('success', message)

    def warn(self, message: str):
        self._write('warn', message)

    def error(self, message: str):
        self._write('error', message)

    def debug(self, message: str):
        self._write('debug', message)


def mask_fields(body: dict) -> dict:
    """Copy of a request body with secret-looking values masked."""
    safe = {}
    for key, value in body.items():
        if any(secret in key.lower() for secret in SECRET_KEYS):
            safe[key] = MASKED
        else:
            safe[key] = value
    return safe


class DebugLogger:
    """Logs HTTP request/response details to a file for debugging."""

    def __init__(self, filepath: Path | None = None):
        self.filepath = filepath
        self.enabled = False
        self._file = None

    def enable(self):
        if not self.filepath:
            return
        self.enabled = True
        self._file = open(self.filepath, 'w', encoding='utf-8')
        self.filepath.chmod(0o600)
        self._write('=== npm-trustme HTTP Debug Log ===')
        self._write(f'Started: {datetime.now().isoformat()}')
        self._write('')

    def disable(self):
        if self._file:
            self._file.close()
            self._file = None
        self.enabled = False

    def __enter__(self) -> 'DebugLogger':
        self.enable()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disable()

    def _write(self, text: str):
        if self._file:
            self._file.write(text + '\n')
            self._file.flush()

    def log_section(self, title: str):
        if not self.enabled:
            return
        self._write('')
        self._write('=' * 80)
        self._write(f'  {title}')
        self._write('=' * 80)

    def log_request(self, method: str, url: str, headers: dict, body=None):
        if not self.enabled:
            return
        self._write(f'\n>>> REQUEST: {method} {url}')
        self._write('--- Request Headers ---')
        for k, v in headers.items():
            v_str = MASKED if k.lower() in SECRET_HEADERS else str(v)
            if len(v_str) > 200:
                v_str = v_str[:200] + '...'
            self._write(f'  {k}: {v_str}')
        if body:
            self._write('--- Request Body ---')
            if isinstance(body, dict):
                self._write(json.dumps(mask_fields(body), indent=2))
            else:
                self._write(str(body)[:500])

    def log_response(self, response: requests.Response):
        if not self.enabled:
            return
        self._write(f'\n<<< RESPONSE: {response.status_code} {response.reason}')
        self._write(f'    Final URL: {response.url}')
        self._write('--- Response Headers ---')
        for k, v in response.headers.items():
            self._write(f'  {k}: {v}')
        self._write('--- Response Body ---')
        content_type = response.headers.get('Content-Type', '')
        if 'html' in content_type:
            self._write(f'[HTML Response - {len(response.text)} chars]')
            self._write(response.text[:1000])
            if len(response.text) > 1000:
                self._write('... [truncated]')
        else:
            self._write(response.text[:2000] if response.text else '[empty]')
