"""
State management module for the timelapse service.
"""

from .models import (
    Frame,
    ProducedVideo,
    Schedule,
    Session,
    SessionDetail,
    SessionStatus,
    SessionSummary,
    SourceKind,
    StopReason,
    StorageStats,
)
from .database import Database

__all__ = [
    'Frame',
    'ProducedVideo',
    'Schedule',
    'Session',
    'SessionDetail',
    'SessionStatus',
    'SessionSummary',
    'SourceKind',
    'StopReason',
    'StorageStats',
    'Database',
]
