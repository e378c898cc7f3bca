"""
Session lifecycle engine.

Every active session owns one loop thread and one registry entry. A loop
runs one tick at a time: the next capture is only scheduled after the
previous one (including its retries) has resolved.

Loop kinds:
- timer loop: extractable sources, every interval, optional duration bound
- event loop: event-triggered sources, one capture per armed -> fired edge
- directory loop: directory-import sources, ingesting images as they appear

Manual-upload sessions never run a loop; frames arrive via import_frames().
"""

import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Union

from ..state.database import Database
from ..state.models import (
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
from ..storage.assembler import Assembler, AssemblyParams
from ..storage.importer import DirectoryWatcher, FrameImporter
from ..storage.quota import QuotaGuard, Quotas
from ..storage.sweeper import Sweeper, SweepReport
from ..utils.config import Config
from ..utils.events import EventBus, EventType
from ..utils.exceptions import (
    CaptureError,
    ConfigurationError,
    FailureKind,
    QuotaExceededError,
    SessionNotFoundError,
)
from ..utils.logger import get_logger
from .resilience import CaptureController, CaptureResult
from .sources import (
    EXTRACTABLE_KINDS,
    build_capture,
    coerce_kind,
    parse_source_config,
)
from .triggers import EdgeTrigger, EventSource, MqttEventSource


logger = get_logger(__name__)

LOOPING_KINDS = EXTRACTABLE_KINDS | {SourceKind.EVENT_TRIGGERED, SourceKind.DIRECTORY_IMPORT}
IMPORTABLE_KINDS = frozenset({SourceKind.MANUAL_UPLOAD, SourceKind.DIRECTORY_IMPORT})


@dataclass
class LoopHandle:
    """Registry entry for one running session loop."""

    session_id: str
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    failures: int = 0


class SessionEngine:
    """
    Starts, runs and stops capture sessions.

    Shares nothing between sessions except the catalog and the loop
    registry, which is guarded by a lock.
    """

    def __init__(
        self,
        database: Database,
        controller: CaptureController,
        quota: QuotaGuard,
        sweeper: Sweeper,
        assembler: Assembler,
        importer: Optional[FrameImporter] = None,
        events: Optional[EventBus] = None,
        event_source: Optional[EventSource] = None,
        failure_ceiling: int = 10,
        stop_join_timeout: float = 30,
        resume_on_startup: bool = False,
        poll_interval: float = 1.0,
        settle_delay: float = 0.5,
        default_retention_days: int = 7
    ):
        """
        Initialize session engine.

        Args:
            database: Catalog
            controller: Capture controller for extractable sources
            quota: Admission control, consulted on start and resume
            sweeper: Retention/orphan sweeper behind run_cleanup()
            assembler: Video/animation renderer
            importer: Frame importer for uploads and directory imports
            events: Observer notification bus
            event_source: Broker client factory for event-triggered sessions
            failure_ceiling: Consecutive failed ticks before a session gives up
            stop_join_timeout: Seconds stop_session() waits for an in-flight tick
            resume_on_startup: recover() resumes sessions left active by a crash
            poll_interval: Event loop wake-up period while waiting for messages
            settle_delay: Directory loop delay before reading a new file
            default_retention_days: Recorded on new sessions
        """
        self.database = database
        self.controller = controller
        self.quota = quota
        self.sweeper = sweeper
        self.assembler = assembler
        self.importer = importer or FrameImporter(controller.snapshots_dir)
        self.events = events or EventBus()
        self.event_source = event_source or MqttEventSource()
        self.failure_ceiling = failure_ceiling
        self.stop_join_timeout = stop_join_timeout
        self.resume_on_startup = resume_on_startup
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.default_retention_days = default_retention_days

        self._loops: dict[str, LoopHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, database: Database, **kwargs) -> 'SessionEngine':
        capture = config.get_capture_config()
        options = dict(
            controller=CaptureController.from_config(config),
            quota=QuotaGuard.from_config(config, database),
            sweeper=Sweeper.from_config(config, database),
            assembler=Assembler.from_config(config),
            failure_ceiling=int(config.policy('capture.failure_ceiling')),
            stop_join_timeout=float(config.policy('capture.stop_join_timeout')),
            resume_on_startup=bool(capture.get('resume_on_startup', False)),
            default_retention_days=int(config.policy('storage.retention_days')),
        )
        options.update(kwargs)
        return cls(database, **options)

    # Lifecycle

    def start_session(
        self,
        kind: Union[SourceKind, str],
        config: dict,
        schedule: Union[Schedule, dict, None] = None
    ) -> str:
        """
        Admit and start a new session.

        Args:
            kind: Source kind
            config: Raw source configuration
            schedule: Interval and optional duration bound

        Returns:
            New session id

        Raises:
            ConfigurationError: Unknown kind, invalid config, unsupported host
            QuotaExceededError: Storage quota denies admission
        """
        kind = coerce_kind(kind)
        config = dict(config or {})
        source = parse_source_config(kind, config)

        if isinstance(schedule, dict):
            try:
                schedule = Schedule.from_dict(schedule)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid schedule: {e}")
        schedule = schedule or Schedule()
        if schedule.interval_seconds <= 0:
            raise ConfigurationError(f"interval_seconds must be positive, got {schedule.interval_seconds}")
        if schedule.duration_seconds is not None and schedule.duration_seconds <= 0:
            raise ConfigurationError(f"duration_seconds must be positive, got {schedule.duration_seconds}")

        if kind in EXTRACTABLE_KINDS or kind == SourceKind.EVENT_TRIGGERED:
            # Surfaces unsupported host platforms before anything is persisted
            build_capture(
                kind, source, Path('probe.jpg'),
                settings=self.controller.settings,
                platform_name=self.controller.platform_name
            )
        if kind == SourceKind.DIRECTORY_IMPORT and not Path(source.directory).is_dir():
            raise ConfigurationError(f"Import directory does not exist: {source.directory}")

        decision = self.quota.check_quota()
        if not decision.allowed:
            raise QuotaExceededError(decision.message, decision.reason, decision.current, decision.limit)

        now = datetime.now()
        looping = kind in LOOPING_KINDS
        session = Session(
            id=str(uuid.uuid4()),
            source_kind=kind,
            source_config=config,
            schedule=schedule,
            status=SessionStatus.ACTIVE if looping else SessionStatus.INACTIVE,
            created_at=now,
            started_at=now,
            retention_days=self.default_retention_days,
        )
        self.database.create_session(session)

        if looping:
            self._launch(session)
            logger.info(
                f"[{session.id}] Started {kind.value} session "
                f"(interval {schedule.interval_seconds}s, duration {schedule.duration_bound or 'unbounded'})"
            )
        else:
            logger.info(f"[{session.id}] Created {kind.value} session, waiting for uploads")

        return session.id

    def stop_session(self, session_id: str) -> bool:
        """
        Stop a running session.

        No further capture starts once this is called. A capture already
        running is allowed to finish and persist its frame first.

        Returns:
            False if the session has no running loop
        """
        with self._lock:
            handle = self._loops.pop(session_id, None)

        if handle is None:
            logger.debug(f"[{session_id}] Stop requested but no loop is running")
            return False

        handle.stop_event.set()
        self._join(handle)

        self.database.set_session_status(session_id, SessionStatus.INACTIVE, completed_at=datetime.now())
        frame_count = self.database.count_frames(session_id)
        logger.info(f"[{session_id}] Stopped ({frame_count} frames)")
        self.events.emit(
            EventType.CAPTURE_STOPPED, session_id,
            reason=StopReason.STOPPED.value, frame_count=frame_count
        )
        return True

    def delete_session(self, session_id: str) -> bool:
        """Stop a session if running, then remove its files and catalog rows."""
        self.stop_session(session_id)

        session = self.database.get_session(session_id)
        if session is None:
            return False

        videos = self.database.get_videos(session_id)
        self.database.delete_session(session_id)

        session_dir = self.controller.snapshots_dir / session_id
        if session_dir.exists():
            shutil.rmtree(session_dir, ignore_errors=True)
        for video in videos:
            try:
                (self.assembler.videos_dir / video.file_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[{session_id}] Could not remove video {video.file_path}: {e}")

        logger.info(f"[{session_id}] Deleted session ({len(videos)} videos)")
        return True

    def recover(self) -> list[str]:
        """
        Reconcile sessions left active by a previous process.

        Sessions are resumed when resume_on_startup is set and the quota
        guard admits them; otherwise they are marked inactive.

        Returns:
            Ids of resumed sessions
        """
        resumed = []

        for session in self.database.get_active_sessions():
            if self.is_running(session.id):
                continue

            if self.resume_on_startup and session.source_kind in LOOPING_KINDS:
                decision = self.quota.check_quota(session.id)
                if decision.allowed:
                    self._launch(session)
                    resumed.append(session.id)
                    logger.info(f"[{session.id}] Resumed {session.source_kind.value} session")
                    continue
                reason = StopReason.QUOTA_DENIED
            else:
                reason = StopReason.STOPPED

            self.database.set_session_status(session.id, SessionStatus.INACTIVE, completed_at=datetime.now())
            logger.info(f"[{session.id}] Marked inactive after restart ({reason.value})")
            self.events.emit(EventType.CAPTURE_STOPPED, session.id, reason=reason.value)

        return resumed

    def shutdown(self) -> None:
        """Stop every loop; rows stay active so recover() can pick them up."""
        with self._lock:
            handles = list(self._loops.values())
            self._loops.clear()

        for handle in handles:
            handle.stop_event.set()
        for handle in handles:
            self._join(handle)

        if handles:
            logger.info(f"Stopped {len(handles)} session loop(s)")

    # Queries

    def get_session(self, session_id: str) -> SessionDetail:
        """
        Raises:
            SessionNotFoundError: If no such session exists
        """
        session = self._require_session(session_id)
        with self._lock:
            handle = self._loops.get(session_id)

        return SessionDetail(
            session=session,
            frames=self.database.get_frames(session_id),
            videos=self.database.get_videos(session_id),
            running=handle is not None,
            consecutive_failures=handle.failures if handle else 0,
        )

    def list_sessions(self, limit: int = 50, offset: int = 0) -> list[SessionSummary]:
        return self.database.list_sessions(limit=limit, offset=offset)

    def storage_stats(self) -> StorageStats:
        return self.database.get_storage_stats()

    def get_quotas(self) -> Quotas:
        return self.quota.get_quotas()

    def set_quotas(self, max_total_mb: int, max_session_mb: int) -> Quotas:
        return self.quota.set_quotas(max_total_mb, max_session_mb)

    def get_retention_days(self) -> int:
        return self.sweeper.retention_days

    def set_retention_days(self, days: int) -> int:
        return self.sweeper.set_retention_days(days)

    def run_cleanup(self) -> SweepReport:
        """Run the retention and orphan passes now."""
        return self.sweeper.run_once()

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._loops

    def failure_count(self, session_id: str) -> int:
        """Current consecutive-failure count of a running session (0 if not running)."""
        with self._lock:
            handle = self._loops.get(session_id)
        return handle.failures if handle else 0

    def running_sessions(self) -> list[str]:
        with self._lock:
            return list(self._loops)

    def test_source(self, kind: Union[SourceKind, str], config: dict) -> CaptureResult:
        """
        Grab a single throwaway frame to check a source is reachable.

        Nothing is persisted; the test frame is deleted afterwards.

        Raises:
            ConfigurationError: Unknown kind, invalid config, or a kind
                without a frame extraction pipeline
        """
        kind = coerce_kind(kind)
        parse_source_config(kind, config)
        if kind not in EXTRACTABLE_KINDS and kind != SourceKind.EVENT_TRIGGERED:
            raise ConfigurationError(f"Source kind {kind.value} cannot be tested")

        probe = Session(id=f"test-{uuid.uuid4().hex[:8]}", source_kind=kind, source_config=dict(config))
        with tempfile.TemporaryDirectory(prefix='timelapse-test-') as work:
            result = self.controller.capture_once(probe, destination=Path(work) / 'test.jpg')

        if result.error is None:
            logger.info(f"Source test succeeded ({kind.value}, {result.width}x{result.height})")
        else:
            logger.warning(f"Source test failed ({kind.value}): {result.error}")
        return result

    # Frames and videos

    def import_frames(self, session_id: str, paths: Iterable[Union[str, Path]]) -> list[Frame]:
        """
        Import image files into a manual-upload or directory-import session.

        Every path is checked before anything is copied.

        Raises:
            SessionNotFoundError: Unknown session
            ConfigurationError: Wrong session kind or unreadable file
        """
        session = self._require_session(session_id)
        if session.source_kind not in IMPORTABLE_KINDS:
            raise ConfigurationError(
                f"Session {session_id} ({session.source_kind.value}) does not accept imported frames"
            )

        paths = [Path(p) for p in paths]
        for path in paths:
            if not path.is_file() or path.stat().st_size == 0:
                raise ConfigurationError(f"Not an importable image: {path}")

        frames = [self._ingest(session_id, path) for path in paths]
        logger.info(f"[{session_id}] Imported {len(frames)} frame(s)")
        return frames

    def assemble(self, session_id: str, params: Union[AssemblyParams, dict, None] = None) -> ProducedVideo:
        """
        Render a session's frames into a new video or animation.

        Earlier videos of the session are left untouched.

        Raises:
            SessionNotFoundError: Unknown session
            AssemblyError: Too few frames, bad parameters or encoder failure
        """
        self._require_session(session_id)

        if not isinstance(params, AssemblyParams):
            params = AssemblyParams.from_dict(params or {}, self.assembler.defaults)

        frames = self.database.get_frames(session_id)
        video = self.assembler.assemble(session_id, frames, params)
        self.database.add_video(video)

        logger.info(
            f"[{session_id}] Assembly ready: {video.file_path} "
            f"({video.file_size / 1024:.1f}KB, {video.duration_seconds}s)"
        )
        self.events.emit(EventType.ASSEMBLY_READY, session_id, video=video.to_dict())
        return video

    # Loops

    def _launch(self, session: Session) -> LoopHandle:
        handle = LoopHandle(session_id=session.id)

        with self._lock:
            if session.id in self._loops:
                return self._loops[session.id]
            self._loops[session.id] = handle

        handle.thread = threading.Thread(
            target=self._run_loop,
            args=(handle, session),
            daemon=True,
            name=f"session-{session.id[:8]}"
        )
        handle.thread.start()
        return handle

    def _join(self, handle: LoopHandle) -> None:
        thread = handle.thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self.stop_join_timeout)
        if thread.is_alive():
            logger.warning(f"[{handle.session_id}] Loop did not exit within {self.stop_join_timeout}s")

    def _run_loop(self, handle: LoopHandle, session: Session) -> None:
        try:
            if session.source_kind == SourceKind.EVENT_TRIGGERED:
                self._run_event_loop(handle, session)
            elif session.source_kind == SourceKind.DIRECTORY_IMPORT:
                self._run_directory_loop(handle, session)
            else:
                self._run_timer_loop(handle, session)
        except Exception as e:
            logger.exception(f"[{session.id}] Session loop crashed: {e}")
            self._finish(handle, StopReason.FAILURE_EXHAUSTED, error=str(e))

    def _run_timer_loop(self, handle: LoopHandle, session: Session) -> None:
        bound = session.schedule.duration_bound
        started = session.started_at or datetime.now()

        while not handle.stop_event.is_set():
            reason = self._tick(handle, session)
            if reason is not None:
                self._finish(handle, reason)
                return

            if bound is not None and (datetime.now() - started).total_seconds() >= bound:
                self._finish(handle, StopReason.COMPLETED)
                return

            handle.stop_event.wait(session.schedule.interval_seconds)

    def _run_event_loop(self, handle: LoopHandle, session: Session) -> None:
        trigger = parse_source_config(session.source_kind, session.source_config)
        edge = EdgeTrigger(trigger.armed_value, trigger.fired_value)
        subscription = None

        try:
            while not handle.stop_event.is_set():
                if subscription is None:
                    try:
                        subscription = self.event_source.subscribe(trigger)
                        logger.info(f"[{session.id}] Waiting for {trigger.topic} on {trigger.broker}")
                    except Exception as e:
                        reason = self._record_failure(
                            handle, session,
                            CaptureError(f"Event subscription failed: {e}", FailureKind.NOT_FOUND)
                        )
                        if reason is not None:
                            self._finish(handle, reason)
                            return
                        handle.stop_event.wait(self.controller.backoff_delay(handle.failures))
                        continue

                message = subscription.get(timeout=self.poll_interval)
                if message is None:
                    continue

                topic, payload = message
                if not edge.update(payload):
                    continue

                logger.info(f"[{session.id}] Trigger fired on {topic}")
                reason = self._tick(handle, session)
                if reason is not None:
                    self._finish(handle, reason)
                    return
        finally:
            if subscription is not None:
                subscription.close()

    def _run_directory_loop(self, handle: LoopHandle, session: Session) -> None:
        source = parse_source_config(session.source_kind, session.source_config)

        def on_image(path: Path) -> None:
            if handle.stop_event.is_set():
                return
            try:
                self._ingest(session.id, path)
                handle.failures = 0
            except Exception as e:
                kind = FailureKind.PERMISSION_DENIED if isinstance(e, PermissionError) else FailureKind.CORRUPT_DATA
                error = CaptureError(f"Import of {path.name} failed: {e}", kind)
                reason = self._record_failure(handle, session, error)
                if reason is not None:
                    self._finish(handle, reason, error=str(error))
                    handle.stop_event.set()

        watcher = DirectoryWatcher(
            source.directory,
            on_image,
            patterns=source.patterns,
            recursive=source.recursive,
            settle_delay=self.settle_delay,
            seen=self.database.get_source_paths(session.id)
        )

        try:
            watcher.start()
        except ConfigurationError as e:
            self._record_failure(handle, session, CaptureError(str(e), FailureKind.NOT_FOUND))
            self._finish(handle, StopReason.FAILURE_EXHAUSTED, error=str(e))
            return

        try:
            bound = session.schedule.duration_bound
            if bound is None:
                handle.stop_event.wait()
                return

            started = session.started_at or datetime.now()
            remaining = bound - (datetime.now() - started).total_seconds()
            if not handle.stop_event.wait(max(remaining, 0)):
                self._finish(handle, StopReason.COMPLETED)
        finally:
            watcher.stop()

    def _tick(self, handle: LoopHandle, session: Session) -> Optional[StopReason]:
        """
        Capture one frame and record the outcome.

        Returns:
            A terminal StopReason, or None to keep going
        """
        try:
            result = self.controller.capture_with_retry(session, cancel_event=handle.stop_event)
            if result.success:
                self._record_frame(handle, session, result)
                return None
            error = result.error
        except Exception as e:
            logger.exception(f"[{session.id}] Unexpected error during capture: {e}")
            error = CaptureError(str(e))

        if handle.stop_event.is_set():
            # Stopped mid-capture; not a source failure
            return None

        return self._record_failure(handle, session, error)

    def _record_frame(self, handle: LoopHandle, session: Session, result: CaptureResult) -> None:
        frame = Frame(
            session_id=session.id,
            file_path=result.path.relative_to(self.controller.snapshots_dir).as_posix(),
            file_size=result.file_size,
            width=result.width,
            height=result.height,
            captured_at=result.captured_at or datetime.now(),
        )
        self.database.add_frame(frame)
        handle.failures = 0

        frame_count = self.database.count_frames(session.id)
        logger.info(f"[{session.id}] Frame {frame_count} captured ({frame.file_size / 1024:.1f}KB)")
        self.events.emit(
            EventType.FRAME_CAPTURED, session.id,
            frame=frame.to_dict(), frame_count=frame_count
        )

    def _record_failure(self, handle: LoopHandle, session: Session, error: CaptureError) -> Optional[StopReason]:
        handle.failures += 1
        logger.warning(
            f"[{session.id}] Capture failed ({handle.failures}/{self.failure_ceiling} consecutive): {error}"
        )
        self.events.emit(
            EventType.CAPTURE_ERROR, session.id,
            error=str(error),
            kind=error.kind.value,
            consecutive_failures=handle.failures,
        )

        if handle.failures >= self.failure_ceiling:
            return StopReason.FAILURE_EXHAUSTED
        return None

    def _ingest(self, session_id: str, path: Path) -> Frame:
        frame = self.importer.ingest(session_id, path)
        self.database.add_frame(frame)

        frame_count = self.database.count_frames(session_id)
        logger.info(f"[{session_id}] Imported {path.name} as frame {frame_count}")
        self.events.emit(
            EventType.FRAME_CAPTURED, session_id,
            frame=frame.to_dict(), frame_count=frame_count
        )
        return frame

    def _finish(self, handle: LoopHandle, reason: StopReason, error: Optional[str] = None) -> None:
        """Terminal transition from inside a loop."""
        session_id = handle.session_id

        with self._lock:
            if self._loops.get(session_id) is not handle:
                # stop_session() already took over
                return
            del self._loops[session_id]

        self.database.set_session_status(session_id, SessionStatus.INACTIVE, completed_at=datetime.now())
        frame_count = self.database.count_frames(session_id)

        if reason == StopReason.COMPLETED:
            logger.info(f"[{session_id}] Completed ({frame_count} frames)")
            self.events.emit(EventType.CAPTURE_COMPLETED, session_id, frame_count=frame_count)
            return

        logger.warning(f"[{session_id}] Stopped: {reason.value} after {handle.failures} consecutive failures")
        data = {'reason': reason.value, 'frame_count': frame_count, 'consecutive_failures': handle.failures}
        if error:
            data['error'] = error
        self.events.emit(EventType.CAPTURE_STOPPED, session_id, **data)

    def _require_session(self, session_id: str) -> Session:
        session = self.database.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session


def create_session_engine(config: Config, database: Database, **kwargs) -> SessionEngine:
    """Factory function to create a session engine."""
    return SessionEngine.from_config(config, database, **kwargs)
