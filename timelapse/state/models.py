"""
Data models for the timelapse capture service.

Defines sessions, captured frames, produced videos and storage summaries.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class SourceKind(Enum):
    """Where a session's frames come from."""

    NETWORK_STREAM = "network_stream"     # RTSP IP cameras
    LOCAL_DEVICE = "local_device"         # USB cameras, capture cards
    HTTP_STREAM = "http_stream"           # MJPEG/HLS over HTTP
    PROTOCOL_STREAM = "protocol_stream"   # RTMP/SRT live streams
    SCREEN_REGION = "screen_region"       # desktop or a rectangle of it
    MANUAL_UPLOAD = "manual_upload"       # frames pushed by the caller
    DIRECTORY_IMPORT = "directory_import" # frames picked up from a folder
    EVENT_TRIGGERED = "event_triggered"   # capture on a broker message edge


class SessionStatus(Enum):
    """Persisted lifecycle status. Only a ticking loop is ACTIVE."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class StopReason(Enum):
    """Why a session left the Active state."""

    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILURE_EXHAUSTED = "failure_exhausted"
    QUOTA_DENIED = "quota_denied"


@dataclass
class Schedule:
    """When a session captures."""

    interval_seconds: float = 60.0
    duration_seconds: Optional[float] = None
    use_timer: bool = False

    @property
    def duration_bound(self) -> Optional[float]:
        """Duration limit in seconds, or None when the session is open-ended."""
        if self.use_timer and self.duration_seconds:
            return self.duration_seconds
        return None

    @classmethod
    def from_dict(cls, data: dict) -> 'Schedule':
        duration = data.get('duration_seconds')
        return cls(
            interval_seconds=float(data.get('interval_seconds', 60)),
            duration_seconds=float(duration) if duration is not None else None,
            use_timer=bool(data.get('use_timer', duration is not None)),
        )


@dataclass
class Session:
    """
    One capture task against one source.

    The source configuration is stored as a plain mapping and interpreted
    only by the capture layer.
    """

    id: str
    source_kind: SourceKind
    source_config: dict = field(default_factory=dict)
    schedule: Schedule = field(default_factory=Schedule)

    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retention_days: int = 7

    def __post_init__(self):
        if isinstance(self.source_kind, str):
            self.source_kind = SourceKind(self.source_kind)
        if isinstance(self.status, str):
            self.status = SessionStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'source_kind': self.source_kind.value,
            'source_config': self.source_config,
            'interval_seconds': self.schedule.interval_seconds,
            'duration_seconds': self.schedule.duration_seconds,
            'use_timer': self.schedule.use_timer,
            'status': self.status.value,
            'active': self.is_active,
            'created_at': self.created_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'retention_days': self.retention_days,
        }

    @classmethod
    def from_row(cls, row: dict) -> 'Session':
        """Create Session from a database row."""
        return cls(
            id=row['id'],
            source_kind=SourceKind(row['source_kind']),
            source_config=json.loads(row['source_config']) if row.get('source_config') else {},
            schedule=Schedule(
                interval_seconds=row['interval_seconds'],
                duration_seconds=row.get('duration_seconds'),
                use_timer=bool(row.get('use_timer')),
            ),
            status=SessionStatus.ACTIVE if row.get('active') else SessionStatus.INACTIVE,
            created_at=datetime.fromisoformat(row['created_at']),
            started_at=_parse_time(row.get('started_at')),
            completed_at=_parse_time(row.get('completed_at')),
            retention_days=row.get('retention_days') or 7,
        )


@dataclass
class Frame:
    """
    One captured still image. Immutable once recorded.

    file_path is relative to the snapshot root. source_path is the original
    file an imported frame was copied from.
    """

    session_id: str
    file_path: str
    file_size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    captured_at: datetime = field(default_factory=datetime.now)
    source_path: Optional[str] = None

    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'width': self.width,
            'height': self.height,
            'captured_at': self.captured_at.isoformat(),
            'source_path': self.source_path,
        }

    @classmethod
    def from_row(cls, row: dict) -> 'Frame':
        return cls(
            id=row.get('id'),
            session_id=row['session_id'],
            file_path=row['file_path'],
            file_size=row.get('file_size') or 0,
            width=row.get('width'),
            height=row.get('height'),
            captured_at=datetime.fromisoformat(row['captured_at']),
            source_path=row.get('source_path'),
        )


@dataclass
class ProducedVideo:
    """An assembled video or animation. file_path is relative to the video root."""

    session_id: str
    file_path: str
    fps: int
    format: str = 'mp4'
    file_size: int = 0
    duration_seconds: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)

    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'fps': self.fps,
            'format': self.format,
            'duration_seconds': self.duration_seconds,
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict) -> 'ProducedVideo':
        return cls(
            id=row.get('id'),
            session_id=row['session_id'],
            file_path=row['file_path'],
            file_size=row.get('file_size') or 0,
            fps=row['fps'],
            format=row.get('format') or 'mp4',
            duration_seconds=row.get('duration_seconds'),
            created_at=datetime.fromisoformat(row['created_at']),
        )


@dataclass
class SessionSummary:
    """A session plus its aggregate counts, for listings."""

    session: Session
    frame_count: int = 0
    frame_bytes: int = 0
    video_count: int = 0

    def to_dict(self) -> dict:
        return {
            **self.session.to_dict(),
            'frame_count': self.frame_count,
            'total_frame_size': self.frame_bytes,
            'video_count': self.video_count,
        }


@dataclass
class SessionDetail:
    """A session with its frames, videos and live loop state."""

    session: Session
    frames: list = field(default_factory=list)
    videos: list = field(default_factory=list)
    running: bool = False
    consecutive_failures: int = 0

    def to_dict(self) -> dict:
        return {
            **self.session.to_dict(),
            'running': self.running,
            'consecutive_failures': self.consecutive_failures,
            'frame_count': len(self.frames),
            'frames': [f.to_dict() for f in self.frames],
            'videos': [v.to_dict() for v in self.videos],
        }


@dataclass
class StorageStats:
    """Aggregate catalog usage across all sessions."""

    total_sessions: int = 0
    total_frames: int = 0
    total_videos: int = 0
    frame_bytes: int = 0
    video_bytes: int = 0

    @property
    def total_bytes(self) -> int:
        return self.frame_bytes + self.video_bytes

    def to_dict(self) -> dict:
        return {
            'total_sessions': self.total_sessions,
            'total_frames': self.total_frames,
            'total_videos': self.total_videos,
            'total_frame_size': self.frame_bytes,
            'total_video_size': self.video_bytes,
            'total_size': self.total_bytes,
            'total_size_mb': round(self.total_bytes / (1024 * 1024), 2),
        }


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
