"""Tests for the persisted config file and run options."""

import json
import stat
from pathlib import Path

from npm_config import RunOptions, env_value, get_config_path, read_config, to_bool, to_int, write_config


class TestConfigFile:
    """Tests for read_config() and write_config()."""

    def test_path_from_env(self, config_env):
        assert get_config_path(config_env) == Path(config_env['NPM_TRUSTME_CONFIG']).resolve()

    def test_default_path(self):
        assert get_config_path({}).parts[-2:] == ('.npm-trustme', 'config.json')

    def test_missing_file_reads_empty(self, config_env):
        assert read_config(config_env) == {}

    def test_writes_merge(self, config_env):
        write_config({'chrome_profile': 'Default', 'chrome_debug_port': 9222}, config_env)
        merged = write_config({'chrome_profile': 'Profile 1'}, config_env)

        assert merged == {'chrome_profile': 'Profile 1', 'chrome_debug_port': 9222}
        assert read_config(config_env) == merged

    def test_file_is_private(self, config_env):
        write_config({'chrome_profile': 'Default'}, config_env)
        mode = stat.S_IMODE(get_config_path(config_env).stat().st_mode)
        assert mode == 0o600

    def test_corrupt_file_reads_empty(self, config_env):
        path = get_config_path(config_env)
        path.write_text('{not json')
        assert read_config(config_env) == {}

    def test_non_object_reads_empty(self, config_env):
        get_config_path(config_env).write_text(json.dumps(['a']))
        assert read_config(config_env) == {}


class TestEnvHelpers:
    def test_env_value_ignores_blank(self):
        assert env_value('PACKAGE', {'NPM_TRUSTME_PACKAGE': '  '}) is None
        assert env_value('PACKAGE', {'NPM_TRUSTME_PACKAGE': ' demo '}) == 'demo'

    def test_to_bool(self):
        assert to_bool(True, 'false') is True
        assert to_bool(None, 'yes') is True
        assert to_bool(None, '0') is False
        assert to_bool(None, None) is False

    def test_to_int(self):
        assert to_int(' 9222 ') == 9222
        assert to_int('abc') is None
        assert to_int(None) is None


class TestRunOptions:
    def test_timeout_falls_back_to_step_default(self):
        assert RunOptions().timeout(60000) == 60000
        assert RunOptions(timeout_ms=5000).timeout(60000) == 5000

    def test_with_dry_run_copies(self):
        options = RunOptions(headless=True)
        dry = options.with_dry_run(True)

        assert dry.dry_run and dry.headless
        assert not options.dry_run
