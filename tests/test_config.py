"""
Tests for configuration loading.
"""

import os
from pathlib import Path
import pytest

from timelapse.utils.config import Config, get_config, load_config, ConfigurationError


class TestConfig:
    """Test configuration loading and validation."""

    @pytest.fixture
    def valid_config_content(self):
        """Valid configuration YAML content."""
        return """
capture:
  ffmpeg_path: "/usr/local/bin/ffmpeg"
  max_attempts: 4
  retry_base_delay: 1.5
  retry_max_delay: 20
  failure_ceiling: 8
  resume_on_startup: true

storage:
  snapshots_dir: "./data/snapshots"
  videos_dir: "./data/videos"
  database_path: "./data/timelapse.db"
  max_total_storage_mb: 2048
  retention_days: 14

cleanup:
  interval_seconds: 1800

assembly:
  default_format: "gif"
  default_fps: 12

server:
  enabled: true
  port: 8080

logging:
  level: "INFO"
  file: "./data/logs/test.log"
"""

    @pytest.fixture
    def config_file(self, valid_config_content, tmp_path):
        """Create a temporary config file."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(valid_config_content)
        return config_path

    def test_load_valid_config(self, config_file):
        """Test loading a valid configuration."""
        config = load_config(str(config_file))

        assert config.get('capture.max_attempts') == 4
        assert config.get('storage.retention_days') == 14
        assert config.get('assembly.default_format') == 'gif'
        assert config.get_ffmpeg_path() == '/usr/local/bin/ffmpeg'

    def test_config_not_found(self):
        """Test error when config file not found."""
        with pytest.raises(ConfigurationError) as exc_info:
            load_config('nonexistent.yaml')

        assert "not found" in str(exc_info.value)

    def test_env_var_substitution(self, tmp_path, monkeypatch):
        """Test environment variable substitution."""
        monkeypatch.setenv('TEST_FFMPEG', '/opt/ffmpeg/bin/ffmpeg')

        config_path = tmp_path / "env_config.yaml"
        config_path.write_text('capture:\n  ffmpeg_path: "${TEST_FFMPEG}"\n')

        config = load_config(str(config_path))
        assert config.get_ffmpeg_path() == '/opt/ffmpeg/bin/ffmpeg'

    def test_unset_env_var_kept(self, tmp_path, monkeypatch):
        """Test unknown variables are left as written."""
        monkeypatch.delenv('TIMELAPSE_UNSET_VAR', raising=False)

        config_path = tmp_path / "env_config.yaml"
        config_path.write_text('server:\n  host: "${TIMELAPSE_UNSET_VAR}"\n')

        config = load_config(str(config_path))
        assert config.get('server.host') == '${TIMELAPSE_UNSET_VAR}'

    def test_get_nested_value(self, config_file):
        """Test getting nested configuration values."""
        config = load_config(str(config_file))

        assert config.get('cleanup.interval_seconds') == 1800
        assert config.get('server.enabled') is True
        assert config.get('nonexistent.key', 'default') == 'default'

    def test_get_paths(self, config_file):
        """Test path getter methods."""
        config = load_config(str(config_file))

        assert isinstance(config.get_snapshots_dir(), Path)
        assert isinstance(config.get_videos_dir(), Path)
        assert isinstance(config.get_database_path(), Path)
        assert isinstance(config.get_log_file(), Path)

    def test_defaults_without_file_values(self):
        """Test defaults apply when keys are absent."""
        config = Config({})

        assert config.get_snapshots_dir() == Path('./data/snapshots')
        assert config.get_videos_dir() == Path('./data/videos')
        assert config.get_database_path() == Path('./data/timelapse.db')
        assert config.get_ffmpeg_path() == 'ffmpeg'

    def test_empty_file_means_defaults(self, tmp_path):
        """Test an empty file loads as an empty configuration."""
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")

        config = load_config(str(config_path))
        assert config.to_dict() == {}

    def test_invalid_yaml(self, tmp_path):
        """Test error on invalid YAML."""
        config_path = tmp_path / "invalid.yaml"
        config_path.write_text("invalid: yaml: content: [")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(config_path))

        assert "Invalid YAML" in str(exc_info.value)

    def test_non_mapping_document(self, tmp_path):
        """Test a YAML list is rejected."""
        config_path = tmp_path / "list.yaml"
        config_path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError):
            load_config(str(config_path))

    @pytest.mark.parametrize("content", [
        "capture:\n  max_attempts: 0\n",
        "capture:\n  failure_ceiling: -1\n",
        "capture:\n  retry_base_delay: 0\n",
        "cleanup:\n  interval_seconds: 'hourly'\n",
    ])
    def test_invalid_policy_values(self, tmp_path, content):
        """Test non-positive policy values are rejected."""
        config_path = tmp_path / "bad.yaml"
        config_path.write_text(content)

        with pytest.raises(ConfigurationError):
            load_config(str(config_path))

    def test_unknown_assembly_format(self, tmp_path):
        """Test an unsupported default output format is rejected."""
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("assembly:\n  default_format: avi\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(config_path))

        assert "avi" in str(exc_info.value)

    def test_policy_defaults(self):
        """Test policy lookups fall back to built-in defaults."""
        config = Config({'capture': {'failure_ceiling': 4}})

        assert config.policy('capture.failure_ceiling') == 4
        assert config.policy('capture.max_attempts') == 3
        assert config.policy('cleanup.orphan_grace_seconds') == 300

    @pytest.mark.parametrize("content", [
        "capture:\n  retry_base_delay: 10\n  retry_max_delay: 5\n",
        "assembly:\n  default_fps: 500\n",
        "cleanup:\n  orphan_grace_seconds: -1\n",
        "capture:\n  max_attempts: true\n",
    ])
    def test_inconsistent_policy_values(self, tmp_path, content):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text(content)

        with pytest.raises(ConfigurationError):
            load_config(str(config_path))

    def test_zero_grace_period_allowed(self, tmp_path):
        config_path = tmp_path / "grace.yaml"
        config_path.write_text("cleanup:\n  orphan_grace_seconds: 0\n")

        assert load_config(str(config_path)).policy('cleanup.orphan_grace_seconds') == 0

    def test_get_config_returns_last_loaded(self, config_file):
        config = load_config(str(config_file))

        assert get_config() is config
