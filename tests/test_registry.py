"""Tests for public registry lookups."""

from unittest.mock import MagicMock

import pytest
import requests

from npm_registry import (
    fetch_package_metadata,
    get_latest_version,
    has_trusted_publisher,
    package_metadata_url,
    registry_status,
)

PACKUMENT = {
    'dist-tags': {'latest': '1.2.0'},
    'repository': {'type': 'git', 'url': 'git+https://github.com/acme/widgets.git'},
    'versions': {
        '1.1.0': {'_npmUser': {'name': 'octocat', 'email': 'octocat@example.com'}},
        '1.2.0': {'_npmUser': {'name': 'GitHub Actions', 'email': 'npm-oidc-no-reply@github.com'}},
        '1.3.0-beta': {'_npmUser': {'name': 'bot', 'trustedPublisher': {'id': 'github'}}},
    },
}


def session_returning(status: int, payload=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = b'{}' if payload is not None else b''
    response.json.return_value = payload
    if status >= 400 and status != 404:
        response.raise_for_status.side_effect = requests.HTTPError(f'{status} Server Error')
    session = MagicMock()
    session.get.return_value = response
    return session


class TestMetadataUrl:
    def test_scoped_names_encode_the_slash(self):
        assert package_metadata_url('@acme/widgets') == 'https://registry.npmjs.org/@acme%2Fwidgets'

    def test_plain_name(self):
        assert package_metadata_url('demo') == 'https://registry.npmjs.org/demo'


class TestFetchPackageMetadata:
    def test_unknown_package_is_none(self):
        assert fetch_package_metadata('demo', session_returning(404)) is None

    def test_server_errors_propagate(self):
        with pytest.raises(requests.HTTPError):
            fetch_package_metadata('demo', session_returning(503))

    def test_returns_packument(self):
        assert fetch_package_metadata('demo', session_returning(200, PACKUMENT)) == PACKUMENT


class TestTrustedPublisherDetection:
    def test_latest_version(self):
        assert get_latest_version(PACKUMENT) == '1.2.0'
        assert get_latest_version({'dist-tags': {'latest': '  '}}) is None
        assert get_latest_version({}) is None

    @pytest.mark.parametrize('version, expected', [
        ('1.1.0', False),
        ('1.2.0', True),
        ('1.3.0-beta', True),
        ('9.9.9', False),
    ])
    def test_has_trusted_publisher(self, version, expected):
        assert has_trusted_publisher(PACKUMENT, version) is expected


class TestRegistryStatus:
    def test_published_via_trusted_publisher(self):
        status = registry_status('demo', session_returning(200, PACKUMENT))

        assert status.exists
        assert status.latest_version == '1.2.0'
        assert status.has_trusted_publisher is True
        assert status.describe() == 'latest 1.2.0 (trusted publisher)'

    def test_not_published(self):
        status = registry_status('demo', session_returning(404))

        assert not status.exists
        assert status.describe() == 'not published yet'
