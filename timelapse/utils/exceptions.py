"""
Custom exceptions for the timelapse capture service.
"""

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Classified reasons a capture attempt can fail."""

    NOT_FOUND = "not_found"                     # device/stream unreachable
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"               # credentials rejected
    STREAM_NOT_FOUND = "stream_not_found"       # server up, path unknown
    CORRUPT_DATA = "corrupt_data"
    UNVERIFIED = "unverified"                   # output file never appeared
    UNSUPPORTED_PLATFORM = "unsupported_platform"
    UNKNOWN_SOURCE_KIND = "unknown_source_kind"


class TimelapseError(Exception):
    """Base exception for all service errors."""
    pass


class ConfigurationError(TimelapseError):
    """Raised when configuration or source parameters are invalid or missing."""
    pass


class UnsupportedPlatformError(ConfigurationError):
    """Raised when a source kind cannot be captured on this host OS family."""

    kind = FailureKind.UNSUPPORTED_PLATFORM


class UnknownSourceKindError(ConfigurationError):
    """Raised when a source kind is not part of the supported set."""

    kind = FailureKind.UNKNOWN_SOURCE_KIND


class CaptureError(TimelapseError):
    """Raised or returned when a frame capture attempt fails."""

    def __init__(
        self,
        message: str,
        kind: FailureKind = FailureKind.UNVERIFIED,
        detail: str = '',
        fallback_eligible: bool = False
    ):
        super().__init__(message)
        self.kind = kind
        self.detail = detail
        self.fallback_eligible = fallback_eligible

    @property
    def is_authorization(self) -> bool:
        return self.kind == FailureKind.UNAUTHORIZED


class QuotaExceededError(TimelapseError):
    """Raised when storage admission control denies a new capture."""

    def __init__(self, message: str, reason: str, current: int, limit: int):
        super().__init__(message)
        self.reason = reason
        self.current = current
        self.limit = limit


class AssemblyError(TimelapseError):
    """Raised when a video/animation cannot be assembled from frames."""
    pass


class SessionNotFoundError(TimelapseError):
    """Raised when an operation references an unknown session."""

    def __init__(self, session_id: str, message: Optional[str] = None):
        super().__init__(message or f"Session not found: {session_id}")
        self.session_id = session_id


class DatabaseError(TimelapseError):
    """Raised when SQLite catalog operations fail."""
    pass
