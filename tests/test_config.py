"""
Tests for the configuration module.

Uses Python's unittest module.
Tests YAML loading, environment overrides, validation and conversion
into engine objects.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from cobaltsync.backup.types import ConflictStrategy
from cobaltsync.config.settings import (
    DEFAULT_CONFIG_FILE,
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
    to_backup_options,
    to_provider_config,
    to_retry_policy,
)


class TestSettingsDefaults(unittest.TestCase):
    """Tests for default settings."""

    def test_defaults(self) -> None:
        """Test default values of a fresh Settings instance."""
        settings = Settings()

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.provider.kind, "local-dir")
        self.assertEqual(settings.backup.conflict_strategy, "skip-existing")
        self.assertFalse(settings.backup.include_thumbnails)
        self.assertEqual(settings.retry.max_retries, 3)


class TestGetConfigPath(unittest.TestCase):
    """Tests for get_config_path function."""

    def test_default_config_path(self) -> None:
        """Test default config path when no environment variable is set."""
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)

    def test_config_path_from_environment(self) -> None:
        """Test config path from environment variable."""
        with patch.dict(os.environ, {"COBALTSYNC_CONFIG": "/srv/cobalt/config.yaml"}):
            self.assertEqual(get_config_path(), Path("/srv/cobalt/config.yaml"))


class TestLoadConfig(unittest.TestCase):
    """Tests for load_config function."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"
        env = patch.dict(os.environ, {}, clear=True)
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_nonexistent_file_returns_defaults(self) -> None:
        """Test a missing config file yields defaults."""
        settings = load_config(Path(self.temp_dir) / "missing.yaml")

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.provider.kind, "local-dir")

    def test_load_from_yaml(self) -> None:
        """Test every section is read from YAML."""
        self.config_path.write_text(
            """
cobaltsync:
  data_dir: /srv/astro/data
  log_level: debug
  device_name: pier-pc

provider:
  kind: webdav
  timeout: 30
  webdav:
    url: https://cloud.example.com/remote.php/dav/files/alice
    username: alice
    password: app-password

backup:
  include_thumbnails: true
  include_sessions: false
  local_payload_mode: metadata-only
  conflict_strategy: merge
  auto_backup_interval_hours: 6

retry:
  max_retries: 5
  base_delay: 0.5
  max_delay: 10
"""
        )

        settings = load_config(self.config_path)

        self.assertEqual(settings.data_dir, "/srv/astro/data")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.device_name, "pier-pc")
        self.assertEqual(settings.provider.kind, "webdav")
        self.assertEqual(settings.provider.timeout, 30.0)
        self.assertEqual(settings.provider.webdav_username, "alice")
        self.assertEqual(settings.provider.webdav_password, "app-password")
        self.assertTrue(settings.backup.include_thumbnails)
        self.assertFalse(settings.backup.include_sessions)
        self.assertEqual(settings.backup.local_payload_mode, "metadata-only")
        self.assertEqual(settings.backup.conflict_strategy, "merge")
        self.assertEqual(settings.backup.auto_backup_interval_hours, 6.0)
        self.assertEqual(settings.retry.max_retries, 5)
        self.assertEqual(settings.retry.base_delay, 0.5)

    def test_empty_file(self) -> None:
        """Test an empty config file yields defaults."""
        self.config_path.write_text("")

        self.assertEqual(load_config(self.config_path).log_level, "INFO")

    def test_invalid_yaml(self) -> None:
        """Test malformed YAML raises ConfigurationError."""
        self.config_path.write_text("provider: [unclosed")

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)

        self.assertIn("Invalid YAML", str(ctx.exception))

    def test_non_mapping(self) -> None:
        """Test a YAML list is rejected."""
        self.config_path.write_text("- one\n- two\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_bad_value_type(self) -> None:
        """Test a non-numeric retry count is rejected."""
        self.config_path.write_text("retry:\n  max_retries: lots\n")

        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)

        self.assertIn("Invalid value", str(ctx.exception))

    def test_environment_overrides(self) -> None:
        """Test COBALTSYNC_ variables override the file."""
        self.config_path.write_text("cobaltsync:\n  log_level: INFO\n")
        overrides = {
            "COBALTSYNC_DATA_DIR": "/tmp/cobalt",
            "COBALTSYNC_LOG_LEVEL": "warning",
            "COBALTSYNC_PROVIDER": "webdav",
            "COBALTSYNC_WEBDAV_URL": "https://dav.example.com",
            "COBALTSYNC_WEBDAV_USERNAME": "bob",
            "COBALTSYNC_WEBDAV_PASSWORD": "hunter2",
            "COBALTSYNC_PROVIDER_ROOT": "/mnt/nas",
        }

        with patch.dict(os.environ, overrides):
            settings = load_config(self.config_path)

        self.assertEqual(settings.data_dir, "/tmp/cobalt")
        self.assertEqual(settings.log_level, "WARNING")
        self.assertEqual(settings.provider.kind, "webdav")
        self.assertEqual(settings.provider.webdav_url, "https://dav.example.com")
        self.assertEqual(settings.provider.webdav_username, "bob")
        self.assertEqual(settings.provider.webdav_password, "hunter2")
        self.assertEqual(settings.provider.root, "/mnt/nas")


class TestValidation(unittest.TestCase):
    """Tests for configuration validation."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"
        env = patch.dict(os.environ, {}, clear=True)
        env.start()
        self.addCleanup(env.stop)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def assert_rejected(self, config_yaml: str, fragment: str) -> None:
        self.config_path.write_text(config_yaml)
        with self.assertRaises(ConfigurationError) as ctx:
            load_config(self.config_path)
        self.assertIn(fragment, str(ctx.exception))

    def test_invalid_log_level(self) -> None:
        """Test an unknown log level is rejected."""
        self.assert_rejected("cobaltsync:\n  log_level: LOUD\n", "log_level")

    def test_unregistered_provider(self) -> None:
        """Test a provider kind without an implementation is rejected."""
        self.assert_rejected("provider:\n  kind: dropbox\n", "provider kind")

    def test_invalid_payload_mode(self) -> None:
        """Test an unknown payload mode is rejected."""
        self.assert_rejected("backup:\n  local_payload_mode: partial\n", "local_payload_mode")

    def test_invalid_strategy(self) -> None:
        """Test an unknown conflict strategy is rejected."""
        self.assert_rejected("backup:\n  conflict_strategy: newest-wins\n", "conflict strategy")

    def test_invalid_interval(self) -> None:
        """Test a non-positive auto backup interval is rejected."""
        self.assert_rejected("backup:\n  auto_backup_interval_hours: 0\n", "interval")

    def test_invalid_retry(self) -> None:
        """Test negative retries and inverted delays are rejected."""
        self.assert_rejected("retry:\n  max_retries: -1\n", "max_retries")
        self.assert_rejected("retry:\n  base_delay: 5\n  max_delay: 1\n", "delays")

    def test_invalid_timeout(self) -> None:
        """Test a zero timeout is rejected."""
        self.assert_rejected("provider:\n  timeout: 0\n", "timeout")


class TestSaveConfig(unittest.TestCase):
    """Tests for save_config function."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "nested" / "config.yaml"

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_and_reload(self) -> None:
        """Test saved settings load back unchanged."""
        settings = Settings(device_name="dome", log_level="DEBUG")
        settings.provider.kind = "webdav"
        settings.provider.webdav_url = "https://dav.example.com"
        settings.backup.conflict_strategy = "merge"
        settings.retry.max_retries = 1

        save_config(settings, self.config_path)

        with patch.dict(os.environ, {}, clear=True):
            reloaded = load_config(self.config_path)
        self.assertEqual(reloaded, settings)

    def test_saved_yaml_layout(self) -> None:
        """Test the saved file uses the documented sections."""
        save_config(Settings(), self.config_path)

        data = yaml.safe_load(self.config_path.read_text())

        self.assertEqual(set(data), {"cobaltsync", "provider", "backup", "retry"})
        self.assertIn("webdav", data["provider"])


class TestConverters(unittest.TestCase):
    """Tests for conversions into engine objects."""

    def test_to_backup_options(self) -> None:
        """Test options follow the defaults and honour overrides."""
        settings = Settings()
        settings.backup.include_thumbnails = True
        settings.backup.conflict_strategy = "overwrite-existing"

        options = to_backup_options(settings, include_files=False, include_albums=None)

        self.assertFalse(options.include_files)
        self.assertTrue(options.include_albums)
        self.assertTrue(options.include_thumbnails)
        self.assertIs(options.restore_conflict_strategy, ConflictStrategy.OVERWRITE_EXISTING)

    def test_to_provider_config(self) -> None:
        """Test empty strings become None in the provider config."""
        settings = Settings()
        settings.provider.root = "/mnt/nas"

        config = to_provider_config(settings)

        self.assertEqual(config.kind, "local-dir")
        self.assertEqual(config.root, "/mnt/nas")
        self.assertIsNone(config.webdav_url)

    def test_to_retry_policy(self) -> None:
        """Test the retry policy mirrors the retry settings."""
        settings = Settings()
        settings.retry.max_retries = 7
        settings.retry.max_delay = 2.0

        policy = to_retry_policy(settings)

        self.assertEqual(policy.max_retries, 7)
        self.assertEqual(policy.delay_for(5), 2.0)


if __name__ == "__main__":
    unittest.main()
