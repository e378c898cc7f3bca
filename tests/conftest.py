"""
Shared fixtures and fakes.

Nothing here needs ffmpeg, a camera or a broker: process runs, event
streams and images are all simulated.
"""

import threading
import time
from datetime import datetime
from pathlib import Path
from queue import Empty, Queue
from typing import Optional

import pytest
from PIL import Image

from timelapse.capture.resilience import ProcessOutcome
from timelapse.state.database import Database
from timelapse.utils.events import EventBus


def write_jpeg(path: Path, size=(32, 24), color=(120, 80, 40), taken_at: Optional[datetime] = None) -> Path:
    """Write a small real JPEG, optionally with an embedded EXIF DateTime."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new('RGB', size, color)

    if taken_at is not None:
        exif = Image.Exif()
        exif[306] = taken_at.strftime('%Y:%m:%d %H:%M:%S')
        img.save(path, 'JPEG', exif=exif)
    else:
        img.save(path, 'JPEG')
    return path


def ok():
    """Process succeeded and wrote a frame."""
    return True, ProcessOutcome(returncode=0)


def noisy():
    """Process reported an error but still wrote a usable frame."""
    return True, ProcessOutcome(returncode=1, stderr='[h264 @ 0x1] error while decoding MB 3 4')


def fail(stderr: str = 'Connection refused', returncode: int = 1):
    """Process failed without writing anything."""
    return False, ProcessOutcome(returncode=returncode, stderr=stderr)


def partial(stderr: str = 'Invalid data found when processing input'):
    """Process left an empty file behind and failed."""
    return 'empty', ProcessOutcome(returncode=1, stderr=stderr)


class FakeRunner:
    """
    Scripted stand-in for ProcessRunner.

    Each run pops the next scripted step; when the script is exhausted the
    default step is used.
    """

    def __init__(self, steps=None, default=None):
        self.steps = list(steps or [])
        self.default = default or ok()
        self.calls = []
        self._lock = threading.Lock()

    def run(self, invocation):
        with self._lock:
            self.calls.append(invocation)
            produce, outcome = self.steps.pop(0) if self.steps else self.default

        destination = Path(invocation.destination)
        if produce == 'empty':
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(b'')
        elif produce:
            write_jpeg(destination)
        return outcome


class FakeSubscription:
    def __init__(self):
        self.queue = Queue()
        self.closed = False

    def push(self, payload, topic='sensors/door'):
        self.queue.put((topic, payload))

    def get(self, timeout):
        try:
            return self.queue.get(timeout=timeout)
        except Empty:
            return None

    def close(self):
        self.closed = True


class FakeEventSource:
    """Hands out FakeSubscriptions and remembers them."""

    def __init__(self):
        self.subscriptions = []
        self.subscribed = threading.Event()

    def subscribe(self, trigger):
        subscription = FakeSubscription()
        self.subscriptions.append(subscription)
        self.subscribed.set()
        return subscription


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self, bus: EventBus):
        self.events = []
        self._lock = threading.Lock()
        bus.subscribe(self._record)

    def _record(self, event):
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type):
        with self._lock:
            return [e for e in self.events if e.type == event_type]


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def db(tmp_path):
    """Create a temporary catalog."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def snapshots_dir(tmp_path):
    path = tmp_path / "snapshots"
    path.mkdir()
    return path


@pytest.fixture
def videos_dir(tmp_path):
    path = tmp_path / "videos"
    path.mkdir()
    return path


@pytest.fixture
def events():
    return EventBus()


class FakeEncoder:
    """Stand-in for ffmpeg during assembly: writes whatever output it is asked for."""

    def __init__(self, fail_on: Optional[str] = None, stderr: str = 'Conversion failed!'):
        self.fail_on = fail_on
        self.stderr = stderr
        self.calls = []

    def run(self, invocation):
        self.calls.append(invocation)
        destination = Path(invocation.destination)
        if self.fail_on and destination.suffix == self.fail_on:
            destination.write_bytes(b'partial')
            return ProcessOutcome(returncode=1, stderr=self.stderr)
        destination.write_bytes(b'\x00\x00\x00\x18ftypisom' + b'\x00' * 64)
        return ProcessOutcome(returncode=0)
