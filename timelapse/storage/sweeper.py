"""
Retention and reconciliation sweeps.

Runs on its own thread, independent of every session loop:
- retention pass: deletes inactive sessions older than the retention window
- orphan pass: deletes files under the frame/video roots that the catalog
  does not know about

A catalog row whose file is missing is reported, never deleted.
"""

import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from ..state.database import Database
from ..utils.config import Config
from ..utils.logger import get_logger


logger = get_logger(__name__)

SETTING_RETENTION_DAYS = 'retention_days'


@dataclass
class SweepReport:
    """What one sweep did."""

    deleted_sessions: list = field(default_factory=list)
    deleted_files: list = field(default_factory=list)
    missing_files: list = field(default_factory=list)
    errors: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'deleted_sessions': list(self.deleted_sessions),
            'deleted_files': len(self.deleted_files),
            'missing_files': list(self.missing_files),
            'errors': self.errors,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class Sweeper:
    """Periodic retention and orphan cleanup."""

    def __init__(
        self,
        database: Database,
        snapshots_dir: Path,
        videos_dir: Path,
        interval: float = 3600,
        default_retention_days: int = 7,
        orphan_grace_seconds: float = 300
    ):
        """
        Initialize sweeper.

        Args:
            database: Catalog
            snapshots_dir: Frame storage root
            videos_dir: Produced video root
            interval: Seconds between sweeps
            default_retention_days: Used when no retention setting is stored
            orphan_grace_seconds: Files younger than this are never orphaned
        """
        self.database = database
        self.snapshots_dir = Path(snapshots_dir)
        self.videos_dir = Path(videos_dir)
        self.interval = interval
        self.default_retention_days = default_retention_days
        self.orphan_grace_seconds = orphan_grace_seconds

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._run_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, database: Database) -> 'Sweeper':
        return cls(
            database,
            config.get_snapshots_dir(),
            config.get_videos_dir(),
            interval=config.policy('cleanup.interval_seconds'),
            default_retention_days=int(config.policy('storage.retention_days')),
            orphan_grace_seconds=config.policy('cleanup.orphan_grace_seconds'),
        )

    @property
    def retention_days(self) -> int:
        raw = self.database.get_setting(SETTING_RETENTION_DAYS)
        if raw is None:
            return self.default_retention_days
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid retention setting {raw!r}")
            return self.default_retention_days

    def set_retention_days(self, days: int) -> int:
        """Persist how long inactive sessions are kept."""
        if not isinstance(days, int) or isinstance(days, bool) or days < 1:
            raise ValueError(f"retention_days must be a positive integer, got {days!r}")
        self.database.set_setting(SETTING_RETENTION_DAYS, days)
        logger.info(f"Retention set to {days} day(s)")
        return days

    def start(self) -> None:
        """Start the periodic sweep thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            daemon=True,
            name="retention-sweeper"
        )
        self._thread.start()
        logger.info(f"Sweeper started (every {self.interval}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("Sweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Sweep error: {e}")

            self._stop_event.wait(self.interval)

    def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run both passes once.

        Args:
            now: Reference time for the retention cutoff (default: now)

        Returns:
            SweepReport
        """
        with self._run_lock:
            report = SweepReport()
            self.retention_pass(report, now=now)
            self.orphan_pass(report)
            report.finished_at = datetime.now()

        logger.info(
            f"Sweep finished: {len(report.deleted_sessions)} sessions, "
            f"{len(report.deleted_files)} orphan files deleted, "
            f"{len(report.missing_files)} missing files, {report.errors} errors"
        )
        return report

    def retention_pass(self, report: SweepReport, now: Optional[datetime] = None) -> None:
        """Delete inactive sessions created before now - retention_days."""
        cutoff = (now or datetime.now()) - timedelta(days=self.retention_days)

        for session in self.database.get_sessions_for_cleanup(cutoff):
            try:
                videos = self.database.get_videos(session.id)

                if not self.database.delete_inactive_session(session.id):
                    # Resumed or already removed since it was selected
                    continue

                session_dir = self.snapshots_dir / session.id
                if session_dir.exists():
                    shutil.rmtree(session_dir)

                for video in videos:
                    (self.videos_dir / video.file_path).unlink(missing_ok=True)

                report.deleted_sessions.append(session.id)
                logger.info(f"Retention: deleted session {session.id} (created {session.created_at:%Y-%m-%d})")

            except Exception as e:
                report.errors += 1
                logger.warning(f"Retention: failed to delete session {session.id}: {e}")

    def orphan_pass(self, report: SweepReport) -> None:
        """Delete files the catalog does not reference; report rows without files."""
        known_frames = {
            (self.snapshots_dir / p).resolve() for p in self.database.get_all_frame_paths()
        }
        known_videos = {
            (self.videos_dir / p).resolve() for p in self.database.get_all_video_paths()
        }

        self._delete_unknown(self.snapshots_dir, known_frames, report)
        self._delete_unknown(self.videos_dir, known_videos, report)
        self._remove_empty_session_dirs(report)

        for path in sorted(known_frames | known_videos):
            if not path.exists():
                report.missing_files.append(str(path))
                logger.warning(f"Catalog references a missing file: {path}")

    def _delete_unknown(self, root: Path, known: set, report: SweepReport) -> None:
        if not root.exists():
            return

        cutoff = time.time() - self.orphan_grace_seconds

        for path in root.rglob('*'):
            try:
                if not path.is_file() or path.resolve() in known:
                    continue
                # Possibly still being written by a capture or an assembly
                if path.stat().st_mtime > cutoff:
                    continue
                path.unlink()
                report.deleted_files.append(str(path))
                logger.info(f"Orphan: deleted {path}")
            except Exception as e:
                report.errors += 1
                logger.warning(f"Orphan: failed to delete {path}: {e}")

    def _remove_empty_session_dirs(self, report: SweepReport) -> None:
        if not self.snapshots_dir.exists():
            return

        for path in self.snapshots_dir.iterdir():
            try:
                if not path.is_dir() or any(path.iterdir()):
                    continue
                if self.database.get_session(path.name) is not None:
                    continue
                path.rmdir()
                logger.debug(f"Orphan: removed empty directory {path}")
            except Exception as e:
                report.errors += 1
                logger.warning(f"Orphan: failed to remove directory {path}: {e}")
