"""
Frame ingestion from existing image files.

Used by manual-upload sessions (the caller hands over files) and by
directory-import sessions, which watch a folder with watchdog and ingest
every image that appears in it.
"""

import fnmatch
import shutil
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..capture.metadata import read_image_info, resolve_capture_time
from ..capture.sources import IMAGE_PATTERNS
from ..state.models import Frame
from ..utils.exceptions import ConfigurationError
from ..utils.logger import get_logger


logger = get_logger(__name__)


class FrameImporter:
    """Copies image files into a session's frame directory."""

    def __init__(self, snapshots_dir: Path):
        self.snapshots_dir = Path(snapshots_dir)

    def ingest(self, session_id: str, source: Path) -> Frame:
        """
        Copy one image into the session and describe it as a Frame.

        The capture timestamp comes from the source file: embedded EXIF
        time, else its creation time, else now.

        Args:
            session_id: Owning session
            source: Image file to import

        Returns:
            Unsaved Frame with a path relative to the snapshot root

        Raises:
            ConfigurationError: If the source is missing or empty
        """
        source = Path(source)
        if not source.is_file() or source.stat().st_size == 0:
            raise ConfigurationError(f"Not an importable image: {source}")

        info = read_image_info(source)
        captured_at = resolve_capture_time(source, info)

        session_dir = self.snapshots_dir / session_id
        session_dir.mkdir(parents=True, exist_ok=True)

        stamp = datetime.now().strftime('%Y%m%d-%H%M%S-%f')
        target = session_dir / f"import-{stamp}{source.suffix.lower() or '.jpg'}"
        shutil.copy2(source, target)

        return Frame(
            session_id=session_id,
            file_path=target.relative_to(self.snapshots_dir).as_posix(),
            file_size=target.stat().st_size,
            width=info.width,
            height=info.height,
            captured_at=captured_at,
            source_path=str(source.resolve()),
        )


class ImageEventHandler(FileSystemEventHandler):
    """Forwards newly created or moved-in image files."""

    def __init__(
        self,
        on_image: Callable[[Path], None],
        patterns: Iterable[str] = IMAGE_PATTERNS,
        settle_delay: float = 0.5
    ):
        super().__init__()
        self.on_image = on_image
        self.patterns = tuple(p.lower() for p in patterns)
        self.settle_delay = settle_delay

    def matches(self, path: Path) -> bool:
        name = path.name.lower()
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.patterns)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle(Path(event.dest_path))

    def _handle(self, path: Path) -> None:
        if not self.matches(path):
            return

        # Give the writer a moment to finish
        time.sleep(self.settle_delay)

        if path.exists():
            logger.debug(f"New image detected: {path.name}")
            self.on_image(path)


class DirectoryWatcher:
    """
    Watches one directory and reports each image exactly once.

    Images already present when the watcher starts are reported first,
    oldest first. Resolved paths passed as `seen` are never reported.
    """

    def __init__(
        self,
        directory: Path,
        on_image: Callable[[Path], None],
        patterns: Iterable[str] = IMAGE_PATTERNS,
        recursive: bool = False,
        settle_delay: float = 0.5,
        seen: Iterable[str] = ()
    ):
        self.directory = Path(directory)
        self.on_image = on_image
        self.recursive = recursive

        self._handler = ImageEventHandler(self._report, patterns, settle_delay)
        self._observer: Optional[Observer] = None
        self._seen: set[str] = set(seen)
        self._lock = threading.Lock()

    def start(self) -> None:
        """Report existing images, then start watching."""
        if not self.directory.is_dir():
            raise ConfigurationError(f"Import directory does not exist: {self.directory}")

        self._observer = Observer()
        self._observer.schedule(self._handler, str(self.directory), recursive=self.recursive)
        self._observer.start()

        self._process_existing()
        logger.info(f"Watching {self.directory} for new images")

    def stop(self) -> None:
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def _process_existing(self) -> None:
        walker = self.directory.rglob('*') if self.recursive else self.directory.iterdir()
        existing = [p for p in walker if p.is_file() and self._handler.matches(p)]
        existing.sort(key=lambda p: p.stat().st_mtime)

        for path in existing:
            self._report(path)

        if existing:
            logger.info(f"Processed {len(existing)} existing images in {self.directory}")

    def _report(self, path: Path) -> None:
        key = str(path.resolve())
        # Held across on_image so a session never ingests two files at once
        with self._lock:
            if key in self._seen:
                return
            self._seen.add(key)

            try:
                self.on_image(path)
            except Exception as e:
                logger.error(f"Error importing {path.name}: {e}")
