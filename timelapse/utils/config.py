"""
Configuration loader for the timelapse capture service.

Loads YAML configuration with environment variable substitution.
"""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError


# Load .env file if present
load_dotenv()


ASSEMBLY_FORMATS = ('mp4', 'gif')

# key: (default, kind). count = positive int, seconds = positive number,
# grace = non-negative number
POLICY_DEFAULTS = {
    'capture.max_attempts': (3, 'count'),
    'capture.failure_ceiling': (10, 'count'),
    'capture.retry_base_delay': (2, 'seconds'),
    'capture.retry_max_delay': (30, 'seconds'),
    'capture.process_timeout': (30, 'seconds'),
    'capture.connect_timeout': (10, 'seconds'),
    'capture.stop_join_timeout': (30, 'seconds'),
    'capture.image_quality': (2, 'count'),
    'cleanup.interval_seconds': (3600, 'count'),
    'cleanup.orphan_grace_seconds': (300, 'grace'),
    'storage.max_total_storage_mb': (1024, 'count'),
    'storage.max_session_storage_mb': (100, 'count'),
    'storage.retention_days': (7, 'count'),
    'assembly.default_fps': (10, 'count'),
    'assembly.timeout': (600, 'seconds'),
}


class Config:
    """
    Configuration manager with environment variable substitution.

    Usage:
        config = Config.load('config.yaml')
        max_attempts = config.get('capture.max_attempts', 3)
        snapshots = config.get_snapshots_dir()
    """

    _instance: Optional['Config'] = None
    _env_pattern = re.compile(r'\$\{([^}]+)\}')

    def __init__(self, config_data: Optional[dict] = None):
        self._data = config_data or {}

    @classmethod
    def load(cls, config_path: str = 'config.yaml') -> 'Config':
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Config instance

        Raises:
            ConfigurationError: If file not found or invalid YAML
        """
        path = Path(config_path)

        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(path, 'r') as f:
                raw_content = f.read()

            content = cls._substitute_env_vars(raw_content)
            data = yaml.safe_load(content)

            # An empty file means "all defaults"
            if data is None:
                data = {}

            if not isinstance(data, dict):
                raise ConfigurationError("Configuration must be a YAML dictionary")

            instance = cls(data)
            instance._validate()

            cls._instance = instance

            return instance

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration: {e}")

    @classmethod
    def get_instance(cls) -> 'Config':
        """Get the most recently loaded Config instance."""
        if cls._instance is None:
            raise ConfigurationError("Configuration not loaded. Call Config.load() first.")
        return cls._instance

    @classmethod
    def _substitute_env_vars(cls, content: str) -> str:
        """
        Substitute ${VAR} patterns with environment variable values.

        Args:
            content: Raw file content

        Returns:
            Content with environment variables substituted
        """
        def replace(match):
            var_name = match.group(1)
            value = os.environ.get(var_name)
            if value is None:
                # Keep original if not found (might be optional)
                return match.group(0)
            return value

        return cls._env_pattern.sub(replace, content)

    def _validate(self) -> None:
        """
        Check every policy value that is present against POLICY_DEFAULTS.

        Raises:
            ConfigurationError: If a value has the wrong type or range
        """
        for key, (_, kind) in POLICY_DEFAULTS.items():
            value = self.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{key} must be a number, got {value!r}")
            if kind == 'count' and (not isinstance(value, int) or value < 1):
                raise ConfigurationError(f"{key} must be a positive integer")
            if kind == 'seconds' and value <= 0:
                raise ConfigurationError(f"{key} must be a positive number")
            if kind == 'grace' and value < 0:
                raise ConfigurationError(f"{key} must not be negative")

        if self.policy('capture.retry_max_delay') < self.policy('capture.retry_base_delay'):
            raise ConfigurationError("capture.retry_max_delay must not be below capture.retry_base_delay")

        fps = self.policy('assembly.default_fps')
        if not 1 <= fps <= 120:
            raise ConfigurationError(f"assembly.default_fps must be between 1 and 120, got {fps}")

        fmt = self.get('assembly.default_format', 'mp4')
        if fmt not in ASSEMBLY_FORMATS:
            raise ConfigurationError(f"Unsupported assembly.default_format: {fmt}")

    def policy(self, key: str) -> Any:
        """Configured value of a policy key, or its built-in default."""
        return self.get(key, POLICY_DEFAULTS[key][0])

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-separated key.

        Args:
            key: Dot-separated key (e.g., 'capture.max_attempts')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self._data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_capture_config(self) -> dict:
        """Get capture configuration section."""
        return self._data.get('capture', {})

    def get_assembly_config(self) -> dict:
        """Get assembly configuration section."""
        return self._data.get('assembly', {})

    def get_server_config(self) -> dict:
        """Get server configuration section."""
        return self._data.get('server', {})

    def get_logging_config(self) -> dict:
        """Get logging configuration section."""
        return self._data.get('logging', {})

    def get_snapshots_dir(self) -> Path:
        """Get frame storage root as Path object."""
        return Path(self.get('storage.snapshots_dir', './data/snapshots'))

    def get_videos_dir(self) -> Path:
        """Get produced video root as Path object."""
        return Path(self.get('storage.videos_dir', './data/videos'))

    def get_database_path(self) -> Path:
        """Get database path as Path object."""
        return Path(self.get('storage.database_path', './data/timelapse.db'))

    def get_log_file(self) -> Path:
        """Get log file path as Path object."""
        return Path(self.get('logging.file', './data/logs/timelapse.log'))

    def get_ffmpeg_path(self) -> str:
        """Get the encoder/decoder executable name or path."""
        return self.get('capture.ffmpeg_path', 'ffmpeg')

    def to_dict(self) -> dict:
        """Return configuration as dictionary."""
        return self._data.copy()


def load_config(config_path: str = 'config.yaml') -> Config:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Config instance
    """
    return Config.load(config_path)


def get_config() -> Config:
    """
    Get the current configuration instance.

    Returns:
        Config instance

    Raises:
        ConfigurationError: If configuration not loaded
    """
    return Config.get_instance()
