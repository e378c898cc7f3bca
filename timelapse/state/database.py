"""
SQLite catalog for the timelapse capture service.

Stores sessions, captured frames, produced videos and key/value settings.
No business logic: row-level CRUD plus the aggregate queries the quota
guard and the sweeper need.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .models import (
    Frame,
    ProducedVideo,
    Session,
    SessionStatus,
    SessionSummary,
    StorageStats,
)
from ..utils.exceptions import DatabaseError
from ..utils.logger import get_logger


logger = get_logger(__name__)

SCHEMA_VERSION = 2


class Database:
    """
    SQLite catalog manager.

    Thread-safe with one connection per thread. Every public method is a
    single transaction.
    """

    def __init__(self, db_path: Path):
        """
        Initialize catalog.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._local = threading.local()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, 'connection', None) is None:
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30
            )
            conn.row_factory = sqlite3.Row
            # Cascades are per-connection in SQLite
            conn.execute('PRAGMA foreign_keys = ON')
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor with auto-commit."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError(f"Database operation failed: {e}")
        finally:
            cursor.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        with self._cursor() as cursor:
            cursor.execute('PRAGMA journal_mode = WAL')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    source_kind TEXT NOT NULL,
                    source_config TEXT,
                    interval_seconds REAL NOT NULL,
                    duration_seconds REAL,
                    use_timer INTEGER DEFAULT 0,
                    active INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    retention_days INTEGER DEFAULT 7
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS frames (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER DEFAULT 0,
                    width INTEGER,
                    height INTEGER,
                    captured_at TEXT NOT NULL,
                    source_path TEXT,
                    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS videos (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    file_size INTEGER DEFAULT 0,
                    fps INTEGER NOT NULL,
                    format TEXT NOT NULL DEFAULT 'mp4',
                    duration_seconds REAL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
                )
            ''')

            cursor.execute('PRAGMA table_info(frames)')
            if 'source_path' not in {row['name'] for row in cursor.fetchall()}:
                cursor.execute('ALTER TABLE frames ADD COLUMN source_path TEXT')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_frames_session ON frames(session_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_frames_captured ON frames(captured_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_videos_session ON videos(session_id)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(active)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_sessions_created ON sessions(created_at)')

            cursor.execute('''
                INSERT OR REPLACE INTO settings (key, value, updated_at)
                VALUES ('db_version', ?, ?)
            ''', (str(SCHEMA_VERSION), datetime.now().isoformat()))

        logger.info(f"Catalog initialized at {self.db_path}")

    # Sessions

    def create_session(self, session: Session) -> Session:
        """
        Insert a new session row.

        Raises:
            DatabaseError: If insert fails (e.g. duplicate id)
        """
        with self._cursor() as cursor:
            cursor.execute('''
                INSERT INTO sessions
                (id, source_kind, source_config, interval_seconds, duration_seconds,
                 use_timer, active, created_at, started_at, completed_at, retention_days)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                session.id,
                session.source_kind.value,
                json.dumps(session.source_config),
                session.schedule.interval_seconds,
                session.schedule.duration_seconds,
                int(session.schedule.use_timer),
                int(session.is_active),
                session.created_at.isoformat(),
                session.started_at.isoformat() if session.started_at else None,
                session.completed_at.isoformat() if session.completed_at else None,
                session.retention_days,
            ))

        logger.debug(f"Created session {session.id} ({session.source_kind.value})")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get session by id, or None."""
        with self._cursor() as cursor:
            cursor.execute('SELECT * FROM sessions WHERE id = ?', (session_id,))
            row = cursor.fetchone()

        return Session.from_row(dict(row)) if row else None

    def set_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        completed_at: Optional[datetime] = None
    ) -> bool:
        """
        Update a session's persisted status.

        Returns:
            True if a row was updated
        """
        with self._cursor() as cursor:
            if status == SessionStatus.ACTIVE:
                cursor.execute('''
                    UPDATE sessions SET active = 1, completed_at = NULL, started_at = ?
                    WHERE id = ?
                ''', (datetime.now().isoformat(), session_id))
            else:
                cursor.execute('''
                    UPDATE sessions SET active = 0, completed_at = ?
                    WHERE id = ?
                ''', (
                    completed_at.isoformat() if completed_at else None,
                    session_id,
                ))
            updated = cursor.rowcount > 0

        logger.debug(f"Session {session_id} -> {status.value}")
        return updated

    def delete_session(self, session_id: str) -> bool:
        """
        Delete a session row; frames and videos cascade.

        Returns:
            True if a row was deleted
        """
        with self._cursor() as cursor:
            cursor.execute('DELETE FROM sessions WHERE id = ?', (session_id,))
            return cursor.rowcount > 0

    def delete_inactive_session(self, session_id: str) -> bool:
        """
        Delete a session row only if it is still inactive.

        Returns:
            True if a row was deleted
        """
        with self._cursor() as cursor:
            cursor.execute('DELETE FROM sessions WHERE id = ? AND active = 0', (session_id,))
            return cursor.rowcount > 0

    def list_sessions(self, limit: int = 50, offset: int = 0) -> list[SessionSummary]:
        """
        Page through sessions, newest first, with per-session aggregates.
        """
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT s.*,
                    (SELECT COUNT(*) FROM frames f WHERE f.session_id = s.id) AS frame_count,
                    (SELECT COALESCE(SUM(f.file_size), 0) FROM frames f
                        WHERE f.session_id = s.id) AS frame_bytes,
                    (SELECT COUNT(*) FROM videos v WHERE v.session_id = s.id) AS video_count
                FROM sessions s
                ORDER BY s.created_at DESC
                LIMIT ? OFFSET ?
            ''', (limit, offset))
            rows = cursor.fetchall()

        return [
            SessionSummary(
                session=Session.from_row(dict(row)),
                frame_count=row['frame_count'],
                frame_bytes=row['frame_bytes'],
                video_count=row['video_count'],
            )
            for row in rows
        ]

    def get_active_sessions(self) -> list[Session]:
        """Get every session persisted as active."""
        with self._cursor() as cursor:
            cursor.execute('SELECT * FROM sessions WHERE active = 1 ORDER BY created_at ASC')
            rows = cursor.fetchall()

        return [Session.from_row(dict(row)) for row in rows]

    def get_sessions_for_cleanup(self, cutoff: datetime) -> list[Session]:
        """
        Get inactive sessions created strictly before cutoff.

        Active sessions are never returned, regardless of age.
        """
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT * FROM sessions
                WHERE active = 0 AND created_at < ?
                ORDER BY created_at ASC
            ''', (cutoff.isoformat(),))
            rows = cursor.fetchall()

        return [Session.from_row(dict(row)) for row in rows]

    # Frames

    def add_frame(self, frame: Frame) -> Frame:
        """Insert a frame row and set its id."""
        with self._cursor() as cursor:
            cursor.execute('''
                INSERT INTO frames
                (session_id, file_path, file_size, width, height, captured_at, source_path)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                frame.session_id,
                frame.file_path,
                frame.file_size,
                frame.width,
                frame.height,
                frame.captured_at.isoformat(),
                frame.source_path,
            ))
            frame.id = cursor.lastrowid

        logger.debug(f"Added frame {frame.file_path} (id={frame.id})")
        return frame

    def get_frames(self, session_id: str) -> list[Frame]:
        """Get a session's frames in capture order."""
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT * FROM frames
                WHERE session_id = ?
                ORDER BY captured_at ASC, id ASC
            ''', (session_id,))
            rows = cursor.fetchall()

        return [Frame.from_row(dict(row)) for row in rows]

    def count_frames(self, session_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute('SELECT COUNT(*) AS count FROM frames WHERE session_id = ?', (session_id,))
            return cursor.fetchone()['count']

    def get_source_paths(self, session_id: str) -> set[str]:
        """Original files already imported into a session."""
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT source_path FROM frames
                WHERE session_id = ? AND source_path IS NOT NULL
            ''', (session_id,))
            return {row['source_path'] for row in cursor.fetchall()}

    def get_all_frame_paths(self) -> list[str]:
        """Every frame path the catalog knows about (relative to snapshot root)."""
        with self._cursor() as cursor:
            cursor.execute('SELECT file_path FROM frames')
            return [row['file_path'] for row in cursor.fetchall()]

    # Videos

    def add_video(self, video: ProducedVideo) -> ProducedVideo:
        """Insert a produced video row and set its id."""
        with self._cursor() as cursor:
            cursor.execute('''
                INSERT INTO videos
                (session_id, file_path, file_size, fps, format, duration_seconds, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                video.session_id,
                video.file_path,
                video.file_size,
                video.fps,
                video.format,
                video.duration_seconds,
                video.created_at.isoformat(),
            ))
            video.id = cursor.lastrowid

        logger.debug(f"Added video {video.file_path} (id={video.id})")
        return video

    def get_videos(self, session_id: str) -> list[ProducedVideo]:
        """Get a session's produced videos, newest first."""
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT * FROM videos
                WHERE session_id = ?
                ORDER BY created_at DESC, id DESC
            ''', (session_id,))
            rows = cursor.fetchall()

        return [ProducedVideo.from_row(dict(row)) for row in rows]

    def get_all_video_paths(self) -> list[str]:
        """Every produced video path the catalog knows about (relative to video root)."""
        with self._cursor() as cursor:
            cursor.execute('SELECT file_path FROM videos')
            return [row['file_path'] for row in cursor.fetchall()]

    # Aggregates

    def get_storage_stats(self) -> StorageStats:
        """Counts and byte totals across all sessions."""
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT
                    (SELECT COUNT(*) FROM sessions) AS total_sessions,
                    (SELECT COUNT(*) FROM frames) AS total_frames,
                    (SELECT COUNT(*) FROM videos) AS total_videos,
                    (SELECT COALESCE(SUM(file_size), 0) FROM frames) AS frame_bytes,
                    (SELECT COALESCE(SUM(file_size), 0) FROM videos) AS video_bytes
            ''')
            row = cursor.fetchone()

        return StorageStats(
            total_sessions=row['total_sessions'],
            total_frames=row['total_frames'],
            total_videos=row['total_videos'],
            frame_bytes=row['frame_bytes'],
            video_bytes=row['video_bytes'],
        )

    def get_session_usage(self, session_id: str) -> int:
        """Frame plus video bytes owned by one session."""
        with self._cursor() as cursor:
            cursor.execute('''
                SELECT
                    (SELECT COALESCE(SUM(file_size), 0) FROM frames WHERE session_id = ?)
                  + (SELECT COALESCE(SUM(file_size), 0) FROM videos WHERE session_id = ?)
                    AS total
            ''', (session_id, session_id))
            row = cursor.fetchone()

        return row['total'] if row else 0

    # Settings

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._cursor() as cursor:
            cursor.execute('SELECT value FROM settings WHERE key = ?', (key,))
            row = cursor.fetchone()

        return row['value'] if row else default

    def set_setting(self, key: str, value) -> None:
        """Upsert a setting. Values are stored as text."""
        with self._cursor() as cursor:
            cursor.execute('''
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                    updated_at = excluded.updated_at
            ''', (key, str(value), datetime.now().isoformat()))

    def close(self) -> None:
        """Close this thread's database connection."""
        if getattr(self._local, 'connection', None) is not None:
            self._local.connection.close()
            self._local.connection = None
