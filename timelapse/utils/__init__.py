"""
Utilities module for the timelapse service.
"""

from .config import load_config, get_config, Config
from .logger import setup_logging, get_logger, mask_credentials
from .events import CaptureEvent, EventBus, EventType
from .exceptions import (
    TimelapseError,
    ConfigurationError,
    UnsupportedPlatformError,
    UnknownSourceKindError,
    CaptureError,
    FailureKind,
    QuotaExceededError,
    AssemblyError,
    SessionNotFoundError,
    DatabaseError,
)

__all__ = [
    'load_config',
    'get_config',
    'Config',
    'setup_logging',
    'get_logger',
    'mask_credentials',
    'CaptureEvent',
    'EventBus',
    'EventType',
    'TimelapseError',
    'ConfigurationError',
    'UnsupportedPlatformError',
    'UnknownSourceKindError',
    'CaptureError',
    'FailureKind',
    'QuotaExceededError',
    'AssemblyError',
    'SessionNotFoundError',
    'DatabaseError',
]
