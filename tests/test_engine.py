"""
Tests for the session lifecycle engine.
"""

import os
import threading
import time
from datetime import datetime, timedelta
import pytest

from timelapse.capture.engine import SessionEngine
from timelapse.capture.resilience import CaptureController, ProcessOutcome
from timelapse.state.models import Frame, Schedule, Session, SessionStatus, SourceKind
from timelapse.storage.assembler import Assembler
from timelapse.storage.quota import QuotaGuard, MB
from timelapse.storage.sweeper import Sweeper
from timelapse.utils.events import EventType
from timelapse.utils.exceptions import (
    AssemblyError,
    ConfigurationError,
    QuotaExceededError,
    SessionNotFoundError,
    UnknownSourceKindError,
    UnsupportedPlatformError,
)

from conftest import (
    EventRecorder,
    FakeEncoder,
    FakeEventSource,
    FakeRunner,
    fail,
    ok,
    wait_for,
    write_jpeg,
)


RTSP = {'url': 'rtsp://cam/live'}
SLOW = Schedule(interval_seconds=60)
FAST = Schedule(interval_seconds=0.01)


class GatedRunner(FakeRunner):
    """A runner whose captures only proceed when the test allows them."""

    def __init__(self, default=None):
        super().__init__(default=default)
        self.permits = threading.Semaphore(0)
        self.entered = threading.Event()
        self.closed = threading.Event()

    def allow(self, n=1):
        for _ in range(n):
            self.permits.release()

    def run(self, invocation):
        self.entered.set()
        while not self.permits.acquire(timeout=0.01):
            if self.closed.is_set():
                return ProcessOutcome(returncode=255, stderr='Exiting normally, received signal 15.')
        return super().run(invocation)


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def make_engine(db, snapshots_dir, videos_dir, events):
    engines = []

    def factory(runner=None, **kwargs):
        controller = CaptureController(
            snapshots_dir,
            runner=runner or FakeRunner(),
            max_attempts=kwargs.pop('max_attempts', 1),
            base_delay=0.01,
            max_delay=0.01,
            platform_name=kwargs.pop('platform_name', 'Linux'),
        )
        engine = SessionEngine(
            db,
            controller,
            QuotaGuard(db),
            Sweeper(db, snapshots_dir, videos_dir, orphan_grace_seconds=0),
            Assembler(snapshots_dir, videos_dir, runner=kwargs.pop('encoder', FakeEncoder())),
            events=events,
            event_source=kwargs.pop('event_source', FakeEventSource()),
            stop_join_timeout=5,
            poll_interval=0.02,
            settle_delay=0.01,
            **kwargs
        )
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.shutdown()


class TestStartSession:
    """Test admission and the first tick."""

    def test_start_persists_and_captures_immediately(self, make_engine, db, recorder):
        engine = make_engine()

        session_id = engine.start_session('network_stream', RTSP, SLOW)

        assert wait_for(lambda: db.count_frames(session_id) == 1)
        session = db.get_session(session_id)
        assert session.is_active
        assert session.started_at is not None
        assert engine.is_running(session_id)

        captured = recorder.of_type(EventType.FRAME_CAPTURED)
        assert captured[0].session_id == session_id
        assert captured[0].data['frame_count'] == 1

    def test_frame_paths_relative_to_snapshot_root(self, make_engine, db, snapshots_dir):
        engine = make_engine()

        session_id = engine.start_session('network_stream', RTSP, SLOW)

        assert wait_for(lambda: db.count_frames(session_id) == 1)
        frame = db.get_frames(session_id)[0]
        assert frame.file_path.startswith(f"{session_id}/frame-")
        assert (snapshots_dir / frame.file_path).is_file()
        assert frame.width == 32

    def test_schedule_from_dict(self, make_engine, db):
        engine = make_engine()

        session_id = engine.start_session('http_stream', {'url': 'http://cam/mjpg'}, {'interval_seconds': 30})

        assert db.get_session(session_id).schedule.interval_seconds == 30

    @pytest.mark.parametrize("kind,config", [
        ('network_stream', {}),
        ('network_stream', {'url': 'ftp://cam/live'}),
        ('directory_import', {'directory': '/definitely/not/here'}),
    ])
    def test_invalid_config_persists_nothing(self, make_engine, db, kind, config):
        engine = make_engine()

        with pytest.raises(ConfigurationError):
            engine.start_session(kind, config, SLOW)

        assert db.list_sessions() == []

    def test_unknown_kind(self, make_engine, db):
        engine = make_engine()

        with pytest.raises(UnknownSourceKindError):
            engine.start_session('carrier_pigeon', {}, SLOW)

        assert db.list_sessions() == []

    def test_unsupported_platform(self, make_engine, db):
        """Test an unsupported host is rejected before anything is persisted."""
        engine = make_engine(platform_name='Plan9')

        with pytest.raises(UnsupportedPlatformError):
            engine.start_session('screen_region', {}, SLOW)

        assert db.list_sessions() == []

    def test_invalid_interval(self, make_engine):
        engine = make_engine()

        with pytest.raises(ConfigurationError):
            engine.start_session('network_stream', RTSP, {'interval_seconds': 0})

    def test_quota_denied(self, make_engine, db):
        """Test admission fails when aggregate usage exceeds the ceiling."""
        engine = make_engine()
        engine.set_quotas(1, 1)
        db.create_session(Session(id='big', source_kind=SourceKind.MANUAL_UPLOAD, status=SessionStatus.INACTIVE))
        db.add_frame(Frame(session_id='big', file_path='big/a.jpg', file_size=2 * MB))

        with pytest.raises(QuotaExceededError) as exc_info:
            engine.start_session('network_stream', RTSP, SLOW)

        assert exc_info.value.reason == 'total_quota_exceeded'
        assert exc_info.value.current == 2 * MB
        assert exc_info.value.limit == 1 * MB
        assert [s.session.id for s in db.list_sessions()] == ['big']


class TestTicks:
    """Test the per-tick success and failure paths."""

    def test_isolated_failures_tolerated_and_counter_reset(self, make_engine, db, recorder):
        runner = FakeRunner([fail(), fail(), ok()])
        engine = make_engine(runner=runner, failure_ceiling=5)

        session_id = engine.start_session('network_stream', RTSP, FAST)

        assert wait_for(lambda: db.count_frames(session_id) >= 1)
        errors = recorder.of_type(EventType.CAPTURE_ERROR)
        assert [e.data['consecutive_failures'] for e in errors[:2]] == [1, 2]
        assert errors[0].data['kind'] == 'not_found'
        assert engine.failure_count(session_id) == 0
        assert engine.is_running(session_id)

    def test_failure_ceiling_ends_session(self, make_engine, db, recorder):
        runner = FakeRunner(default=fail())
        engine = make_engine(runner=runner, failure_ceiling=3)

        session_id = engine.start_session('network_stream', RTSP, FAST)

        assert wait_for(lambda: not engine.is_running(session_id))
        session = db.get_session(session_id)
        assert not session.is_active
        assert session.completed_at is not None
        assert len(runner.calls) == 3

        counts = [e.data['consecutive_failures'] for e in recorder.of_type(EventType.CAPTURE_ERROR)]
        assert counts == [1, 2, 3]
        stopped = recorder.of_type(EventType.CAPTURE_STOPPED)
        assert stopped[-1].data['reason'] == 'failure_exhausted'

    def test_duration_bound_completes(self, make_engine, db, recorder):
        engine = make_engine()
        schedule = Schedule(interval_seconds=0.01, duration_seconds=0.1, use_timer=True)

        session_id = engine.start_session('network_stream', RTSP, schedule)

        assert wait_for(lambda: not engine.is_running(session_id))
        session = db.get_session(session_id)
        assert not session.is_active
        assert session.completed_at is not None
        assert db.count_frames(session_id) >= 1

        completed = recorder.of_type(EventType.CAPTURE_COMPLETED)
        assert [e.session_id for e in completed] == [session_id]
        assert recorder.of_type(EventType.CAPTURE_STOPPED) == []

    def test_duration_ignored_without_timer(self, make_engine, db):
        engine = make_engine()
        schedule = Schedule(interval_seconds=0.01, duration_seconds=0.01, use_timer=False)

        session_id = engine.start_session('network_stream', RTSP, schedule)

        assert wait_for(lambda: db.count_frames(session_id) >= 3)
        assert engine.is_running(session_id)

    def test_sessions_are_independent(self, make_engine, db):
        """Test one failing session does not affect another."""
        class PerSourceRunner(FakeRunner):
            def run(self, invocation):
                if 'broken' in ' '.join(invocation.args):
                    return fail()[1]
                return super().run(invocation)

        engine = make_engine(runner=PerSourceRunner(), failure_ceiling=2)

        healthy = engine.start_session('network_stream', RTSP, FAST)
        broken = engine.start_session('network_stream', {'url': 'rtsp://broken/live'}, FAST)

        assert wait_for(lambda: not engine.is_running(broken))
        assert engine.is_running(healthy)
        assert wait_for(lambda: db.count_frames(healthy) >= 3)


class TestStopSession:
    """Test manual stop semantics."""

    def test_stop_prevents_further_ticks(self, make_engine, db, recorder):
        runner = GatedRunner()
        engine = make_engine(runner=runner, failure_ceiling=1000)
        session_id = engine.start_session('network_stream', RTSP, FAST)

        runner.allow(3)
        assert wait_for(lambda: db.count_frames(session_id) == 3)

        runner.closed.set()
        assert engine.stop_session(session_id)
        calls_at_stop = len(runner.calls)

        time.sleep(0.1)
        assert db.count_frames(session_id) == 3
        assert len(runner.calls) == calls_at_stop
        assert not engine.is_running(session_id)

        session = db.get_session(session_id)
        assert not session.is_active
        assert session.completed_at is not None
        assert recorder.of_type(EventType.CAPTURE_STOPPED)[-1].data['reason'] == 'stopped'

    def test_in_flight_capture_persists_before_inactive(self, make_engine, db):
        runner = GatedRunner()
        engine = make_engine(runner=runner)
        session_id = engine.start_session('network_stream', RTSP, SLOW)
        assert runner.entered.wait(5)

        stopper = threading.Thread(target=engine.stop_session, args=(session_id,))
        stopper.start()
        time.sleep(0.05)
        assert stopper.is_alive()
        assert db.get_session(session_id).is_active

        runner.allow(1)
        stopper.join(5)

        assert not stopper.is_alive()
        assert db.count_frames(session_id) == 1
        assert not db.get_session(session_id).is_active

    def test_stop_is_idempotent(self, make_engine):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)

        assert engine.stop_session(session_id)
        assert not engine.stop_session(session_id)
        assert not engine.stop_session('no-such-session')

    def test_stop_during_backoff_is_not_a_failure(self, make_engine, db, recorder):
        runner = FakeRunner(default=fail())
        engine = make_engine(runner=runner, max_attempts=5)
        engine.controller.base_delay = engine.controller.max_delay = 30
        session_id = engine.start_session('network_stream', RTSP, SLOW)

        assert wait_for(lambda: len(runner.calls) == 1)
        started = time.monotonic()
        assert engine.stop_session(session_id)

        assert time.monotonic() - started < 5
        assert recorder.of_type(EventType.CAPTURE_ERROR) == []


class TestUploadsAndImports:
    """Test manual-upload and directory-import sessions."""

    def test_manual_upload_session_has_no_loop(self, make_engine, db):
        engine = make_engine()

        session_id = engine.start_session('manual_upload', {}, SLOW)

        assert not engine.is_running(session_id)
        assert not db.get_session(session_id).is_active

    def test_import_frames(self, make_engine, db, tmp_path, recorder):
        engine = make_engine()
        session_id = engine.start_session('manual_upload', {}, SLOW)
        taken = datetime(2023, 6, 1, 8, 30, 0)
        paths = [
            write_jpeg(tmp_path / 'upload' / 'b.jpg'),
            write_jpeg(tmp_path / 'upload' / 'a.jpg', taken_at=taken),
        ]

        frames = engine.import_frames(session_id, paths)

        assert len(frames) == 2
        stored = db.get_frames(session_id)
        # Embedded capture time wins, so the older photo sorts first
        assert stored[0].captured_at == taken
        assert len(recorder.of_type(EventType.FRAME_CAPTURED)) == 2

    def test_import_validates_before_copying(self, make_engine, db, tmp_path, snapshots_dir):
        engine = make_engine()
        session_id = engine.start_session('manual_upload', {}, SLOW)
        good = write_jpeg(tmp_path / 'good.jpg')

        with pytest.raises(ConfigurationError):
            engine.import_frames(session_id, [good, tmp_path / 'missing.jpg'])

        assert db.count_frames(session_id) == 0
        assert not (snapshots_dir / session_id).exists()

    def test_import_rejects_capture_sessions(self, make_engine, tmp_path):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)

        with pytest.raises(ConfigurationError):
            engine.import_frames(session_id, [write_jpeg(tmp_path / 'x.jpg')])

    def test_import_unknown_session(self, make_engine, tmp_path):
        engine = make_engine()

        with pytest.raises(SessionNotFoundError):
            engine.import_frames('nope', [write_jpeg(tmp_path / 'x.jpg')])

    def test_directory_import(self, make_engine, db, tmp_path):
        watched = tmp_path / 'incoming'
        write_jpeg(watched / 'one.jpg')
        write_jpeg(watched / 'two.png')
        (watched / 'notes.txt').write_text('not an image')
        engine = make_engine()

        session_id = engine.start_session('directory_import', {'directory': str(watched)}, SLOW)

        assert wait_for(lambda: db.count_frames(session_id) == 2)
        assert engine.is_running(session_id)

        staged = write_jpeg(tmp_path / "staging" / "three.jpg")
        staged.rename(watched / "three.jpg")
        assert wait_for(lambda: db.count_frames(session_id) == 3)

        assert engine.stop_session(session_id)
        assert not db.get_session(session_id).is_active

    def test_resumed_directory_session_skips_imported_files(self, make_engine, db, tmp_path):
        """Test a restart only ingests images that arrived after the last import."""
        watched = tmp_path / 'incoming'
        write_jpeg(watched / 'one.jpg')
        write_jpeg(watched / 'two.jpg')
        first = make_engine()
        session_id = first.start_session('directory_import', {'directory': str(watched)}, SLOW)
        assert wait_for(lambda: db.count_frames(session_id) == 2)
        first.shutdown()

        resumed = make_engine(resume_on_startup=True)
        assert resumed.recover() == [session_id]
        time.sleep(0.2)

        assert db.count_frames(session_id) == 2

        staged = write_jpeg(tmp_path / 'staging' / 'three.jpg')
        staged.rename(watched / 'three.jpg')
        assert wait_for(lambda: db.count_frames(session_id) == 3)

    def test_directory_import_failures_reach_ceiling(self, make_engine, db, tmp_path, recorder):
        """Test unreadable images count as consecutive failures like capture ticks."""
        watched = tmp_path / 'incoming'
        watched.mkdir()
        (watched / 'a.jpg').write_bytes(b'')
        (watched / 'b.jpg').write_bytes(b'')
        engine = make_engine(failure_ceiling=2)

        session_id = engine.start_session('directory_import', {'directory': str(watched)}, SLOW)

        assert wait_for(lambda: not engine.is_running(session_id))
        errors = recorder.of_type(EventType.CAPTURE_ERROR)
        assert [e.data['consecutive_failures'] for e in errors] == [1, 2]
        assert recorder.of_type(EventType.CAPTURE_STOPPED)[-1].data['reason'] == 'failure_exhausted'
        assert not db.get_session(session_id).is_active
        assert db.count_frames(session_id) == 0

    def test_directory_import_success_resets_failures(self, make_engine, db, tmp_path, recorder):
        watched = tmp_path / 'incoming'
        watched.mkdir()
        empty = watched / 'broken.jpg'
        empty.write_bytes(b'')
        os.utime(empty, (time.time() - 100, time.time() - 100))
        write_jpeg(watched / 'good.jpg')
        engine = make_engine(failure_ceiling=5)

        session_id = engine.start_session('directory_import', {'directory': str(watched)}, SLOW)

        assert wait_for(lambda: db.count_frames(session_id) == 1)
        assert len(recorder.of_type(EventType.CAPTURE_ERROR)) == 1
        assert engine.failure_count(session_id) == 0


class TestEventTriggered:
    """Test edge-triggered sessions."""

    CONFIG = {
        'broker': 'mqtt.local',
        'topic': 'sensors/door',
        'capture': {'kind': 'network_stream', 'config': RTSP},
    }

    def test_captures_once_per_edge(self, make_engine, db, recorder):
        source = FakeEventSource()
        runner = FakeRunner()
        engine = make_engine(runner=runner, event_source=source)

        session_id = engine.start_session('event_triggered', self.CONFIG, SLOW)
        assert source.subscribed.wait(5)
        subscription = source.subscriptions[0]

        for payload in ('0', '1', '1', b'1'):
            subscription.push(payload)
        assert wait_for(lambda: db.count_frames(session_id) == 1)
        time.sleep(0.1)
        assert db.count_frames(session_id) == 1
        assert len(runner.calls) == 1

        subscription.push('0')
        subscription.push('1')
        assert wait_for(lambda: db.count_frames(session_id) == 2)

    def test_no_capture_without_edge(self, make_engine, db):
        source = FakeEventSource()
        runner = FakeRunner()
        engine = make_engine(runner=runner, event_source=source)

        engine.start_session('event_triggered', self.CONFIG, SLOW)
        assert source.subscribed.wait(5)
        for payload in ('1', '1', '0', '0'):
            source.subscriptions[0].push(payload)

        time.sleep(0.2)
        assert runner.calls == []

    def test_stop_closes_subscription(self, make_engine):
        source = FakeEventSource()
        engine = make_engine(event_source=source)

        session_id = engine.start_session('event_triggered', self.CONFIG, SLOW)
        assert source.subscribed.wait(5)
        assert engine.stop_session(session_id)

        assert source.subscriptions[0].closed


class TestAssemble:
    """Test assembly through the engine."""

    @pytest.fixture
    def upload_session(self, make_engine, tmp_path):
        engine = make_engine()
        session_id = engine.start_session('manual_upload', {}, SLOW)
        base = datetime(2024, 3, 1, 10, 0, 0)
        paths = [write_jpeg(tmp_path / f"f{i}.jpg", taken_at=base + timedelta(minutes=i)) for i in range(4)]
        engine.import_frames(session_id, paths)
        return engine, session_id

    def test_assemble_persists_and_notifies(self, upload_session, db, videos_dir, recorder):
        engine, session_id = upload_session

        video = engine.assemble(session_id, {'fps': 2})

        assert video.id is not None
        assert video.duration_seconds == 2.0
        assert (videos_dir / video.file_path).is_file()
        assert [v.id for v in db.get_videos(session_id)] == [video.id]
        ready = recorder.of_type(EventType.ASSEMBLY_READY)
        assert ready[0].data['video']['file_path'] == video.file_path

    def test_reassembly_keeps_earlier_videos(self, upload_session, db, videos_dir):
        engine, session_id = upload_session

        first = engine.assemble(session_id, {'fps': 10})
        second = engine.assemble(session_id, {'fps': 5, 'format': 'gif'})

        assert first.file_path != second.file_path
        assert (videos_dir / first.file_path).is_file()
        assert {v.id for v in db.get_videos(session_id)} == {first.id, second.id}

    def test_assemble_needs_two_frames(self, make_engine, tmp_path, videos_dir):
        engine = make_engine()
        session_id = engine.start_session('manual_upload', {}, SLOW)
        engine.import_frames(session_id, [write_jpeg(tmp_path / 'only.jpg')])

        with pytest.raises(AssemblyError):
            engine.assemble(session_id)

        assert list(videos_dir.iterdir()) == []

    def test_assemble_unknown_session(self, make_engine):
        with pytest.raises(SessionNotFoundError):
            make_engine().assemble('nope')


class TestQueriesAndMaintenance:
    """Test read operations, deletion, recovery and shutdown."""

    def test_get_session_detail(self, make_engine, db):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)
        assert wait_for(lambda: db.count_frames(session_id) == 1)

        detail = engine.get_session(session_id)

        assert detail.running
        assert len(detail.frames) == 1
        assert detail.to_dict()['frame_count'] == 1

    def test_get_unknown_session(self, make_engine):
        with pytest.raises(SessionNotFoundError):
            make_engine().get_session('nope')

    def test_list_and_stats(self, make_engine, db):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)
        assert wait_for(lambda: db.count_frames(session_id) == 1)

        summaries = engine.list_sessions()
        stats = engine.storage_stats()

        assert summaries[0].frame_count == 1
        assert stats.total_sessions == 1
        assert stats.total_frames == 1
        assert stats.frame_bytes > 0

    def test_delete_running_session(self, make_engine, db, snapshots_dir):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)
        assert wait_for(lambda: db.count_frames(session_id) == 1)

        assert engine.delete_session(session_id)

        assert not engine.is_running(session_id)
        assert db.get_session(session_id) is None
        assert not (snapshots_dir / session_id).exists()
        assert not engine.delete_session(session_id)

    def test_recover_marks_orphaned_active_sessions_inactive(self, make_engine, db, recorder):
        db.create_session(Session(id='left-over', source_kind=SourceKind.NETWORK_STREAM, source_config=RTSP))
        engine = make_engine()

        assert engine.recover() == []

        assert not db.get_session('left-over').is_active
        assert recorder.of_type(EventType.CAPTURE_STOPPED)[0].data['reason'] == 'stopped'

    def test_recover_resumes_when_enabled(self, make_engine, db):
        db.create_session(Session(
            id='left-over', source_kind=SourceKind.NETWORK_STREAM, source_config=RTSP, schedule=SLOW,
            started_at=datetime.now(),
        ))
        engine = make_engine(resume_on_startup=True)

        assert engine.recover() == ['left-over']

        assert engine.is_running('left-over')
        assert wait_for(lambda: db.count_frames('left-over') == 1)

    def test_recover_respects_quota(self, make_engine, db, recorder):
        db.create_session(Session(id='left-over', source_kind=SourceKind.NETWORK_STREAM, source_config=RTSP))
        db.add_frame(Frame(session_id='left-over', file_path='left-over/a.jpg', file_size=2 * MB))
        engine = make_engine(resume_on_startup=True)
        engine.set_quotas(10, 1)

        assert engine.recover() == []

        assert not db.get_session('left-over').is_active
        assert recorder.of_type(EventType.CAPTURE_STOPPED)[0].data['reason'] == 'quota_denied'

    def test_shutdown_leaves_rows_active(self, make_engine, db):
        engine = make_engine()
        session_id = engine.start_session('network_stream', RTSP, SLOW)

        engine.shutdown()

        assert not engine.is_running(session_id)
        assert db.get_session(session_id).is_active

    def test_test_source_persists_nothing(self, make_engine, db, snapshots_dir):
        engine = make_engine()

        result = engine.test_source('network_stream', RTSP)

        assert result.success
        assert db.list_sessions() == []
        assert list(snapshots_dir.iterdir()) == []

    def test_test_source_reports_failure(self, make_engine):
        engine = make_engine(runner=FakeRunner(default=fail('401 Unauthorized')))

        result = engine.test_source('network_stream', RTSP)

        assert not result.success
        assert result.error.is_authorization

    def test_run_cleanup(self, make_engine, snapshots_dir):
        engine = make_engine()
        stray = snapshots_dir / 'stray.jpg'
        stray.write_bytes(b"x")
        os.utime(stray, (time.time() - 60, time.time() - 60))

        report = engine.run_cleanup()

        assert str(stray) in report.deleted_files
        assert not stray.exists()

    def test_retention_setting_drives_cleanup(self, make_engine, db):
        """Test a shortened retention window is applied by the next sweep."""
        engine = make_engine()
        db.create_session(Session(
            id='old', source_kind=SourceKind.MANUAL_UPLOAD, status=SessionStatus.INACTIVE,
            created_at=datetime.now() - timedelta(days=3),
        ))

        assert engine.run_cleanup().deleted_sessions == []

        assert engine.set_retention_days(2) == 2
        assert engine.get_retention_days() == 2
        assert engine.run_cleanup().deleted_sessions == ['old']

    def test_invalid_retention_rejected(self, make_engine):
        with pytest.raises(ValueError):
            make_engine().set_retention_days(0)
