"""
Frame capture with verification, retry and fallback.

The produced file is authoritative: an existing, non-empty output counts as
a captured frame even when ffmpeg exits non-zero (some camera decoders emit
error-level warnings on usable frames). A missing or empty output is a
failure whatever the exit status says.
"""

import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..state.models import Session
from ..utils.config import Config
from ..utils.exceptions import CaptureError, ConfigurationError, FailureKind
from ..utils.logger import get_logger
from .metadata import read_image_info
from .sources import (
    CaptureSettings,
    ExternalInvocation,
    build_capture,
    build_fallback_capture,
)


logger = get_logger(__name__)


class Strategy(Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


# ffmpeg exited without ever producing a parseable stream
FALLBACK_MARKERS = (
    'invalid data found when processing input',
    'does not contain any stream',
    'could not find codec parameters',
    'unspecified size',
)

_CLASSIFIERS = (
    (FailureKind.UNAUTHORIZED, ('401 unauthorized', 'unauthorized', 'authorization failed')),
    (FailureKind.PERMISSION_DENIED, ('permission denied', '403 forbidden', 'operation not permitted')),
    (FailureKind.STREAM_NOT_FOUND, ('404 not found', 'stream not found', '454 session not found')),
    (FailureKind.TIMEOUT, ('timed out', 'timeout')),
    (FailureKind.NOT_FOUND, (
        'connection refused',
        'no route to host',
        'no such file or directory',
        'no such device',
        'network is unreachable',
        'name or service not known',
        'could not resolve',
        'cannot open',
    )),
    (FailureKind.CORRUPT_DATA, FALLBACK_MARKERS + ('corrupt', 'error while decoding', 'missing picture')),
)


@dataclass
class ProcessOutcome:
    """What the external process reported."""

    returncode: Optional[int]
    stderr: str = ''
    timed_out: bool = False
    missing_executable: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ProcessRunner:
    """Runs an ExternalInvocation to completion."""

    def run(self, invocation: ExternalInvocation) -> ProcessOutcome:
        try:
            result = subprocess.run(
                invocation.argv,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=invocation.timeout
            )
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode('utf-8', 'replace') if isinstance(e.stderr, bytes) else (e.stderr or '')
            return ProcessOutcome(returncode=None, stderr=stderr, timed_out=True)
        except FileNotFoundError:
            return ProcessOutcome(
                returncode=None,
                stderr=f"{invocation.program} not found",
                missing_executable=True
            )
        except OSError as e:
            return ProcessOutcome(returncode=None, stderr=str(e))

        return ProcessOutcome(returncode=result.returncode, stderr=result.stderr or '')


def classify_failure(outcome: ProcessOutcome) -> CaptureError:
    """
    Map a failed process outcome to the capture failure taxonomy.

    Returns:
        CaptureError with kind, diagnostic detail and fallback eligibility
    """
    detail = outcome.stderr.strip()
    last_line = detail.splitlines()[-1] if detail else ''

    if outcome.missing_executable:
        return CaptureError(detail, FailureKind.NOT_FOUND, detail)

    if outcome.timed_out:
        return CaptureError("Capture process timed out", FailureKind.TIMEOUT, detail)

    text = detail.lower()
    exited_abnormally = outcome.returncode not in (0, None)
    fallback_eligible = exited_abnormally and any(marker in text for marker in FALLBACK_MARKERS)

    for kind, markers in _CLASSIFIERS:
        if any(marker in text for marker in markers):
            # Reachability and credential failures never get the fallback
            return CaptureError(
                last_line or kind.value,
                kind,
                detail,
                fallback_eligible=fallback_eligible and kind == FailureKind.CORRUPT_DATA
            )

    if outcome.returncode == 0:
        message = "Capture process exited cleanly without writing a frame"
    else:
        message = last_line or f"Capture process exited with code {outcome.returncode}"
    return CaptureError(message, FailureKind.UNVERIFIED, detail, fallback_eligible=fallback_eligible)


@dataclass
class CaptureResult:
    """Outcome of one or more capture attempts for a single tick."""

    path: Optional[Path] = None
    error: Optional[CaptureError] = None
    attempts: int = 1
    used_fallback: bool = False
    retryable: bool = True
    captured_at: Optional[datetime] = None
    file_size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    reported_error: bool = False

    @property
    def success(self) -> bool:
        return self.path is not None and self.error is None

    @classmethod
    def failed(cls, error: CaptureError, retryable: bool = True) -> 'CaptureResult':
        return cls(error=error, retryable=retryable)


class CaptureController:
    """
    Runs single-frame captures for a session.

    capture_once() runs one attempt and verifies the artifact.
    capture_with_retry() adds exponential backoff and the one-shot fallback.
    """

    def __init__(
        self,
        snapshots_dir: Path,
        settings: Optional[CaptureSettings] = None,
        runner: Optional[ProcessRunner] = None,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        platform_name: Optional[str] = None
    ):
        """
        Initialize capture controller.

        Args:
            snapshots_dir: Frame storage root; frames go in <root>/<session id>/
            settings: ffmpeg path, timeouts, JPEG quality
            runner: Process runner (replaceable in tests)
            max_attempts: Default attempts per tick
            base_delay: Backoff base in seconds
            max_delay: Backoff ceiling in seconds
            sleep: Delay function used when no cancel event is given
            platform_name: Host OS override for command building
        """
        self.snapshots_dir = Path(snapshots_dir)
        self.settings = settings or CaptureSettings()
        self.runner = runner or ProcessRunner()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self.platform_name = platform_name

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> 'CaptureController':
        return cls(
            snapshots_dir=config.get_snapshots_dir(),
            settings=CaptureSettings.from_config(config),
            max_attempts=int(config.policy('capture.max_attempts')),
            base_delay=float(config.policy('capture.retry_base_delay')),
            max_delay=float(config.policy('capture.retry_max_delay')),
            **kwargs
        )

    def frame_destination(self, session: Session) -> Path:
        """Unique output path for the next frame of a session."""
        stamp = datetime.now().strftime('%Y%m%d-%H%M%S-%f')
        return self.snapshots_dir / session.id / f"frame-{stamp}.jpg"

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def build_invocation(
        self,
        session: Session,
        destination: Path,
        strategy: Strategy = Strategy.PRIMARY
    ) -> ExternalInvocation:
        builder = build_fallback_capture if strategy == Strategy.FALLBACK else build_capture
        return builder(
            session.source_kind,
            session.source_config,
            destination,
            settings=self.settings,
            platform_name=self.platform_name
        )

    def capture_once(
        self,
        session: Session,
        destination: Optional[Path] = None,
        strategy: Strategy = Strategy.PRIMARY
    ) -> CaptureResult:
        """
        Run one capture attempt and verify its artifact.

        Args:
            session: Session to capture for
            destination: Output path (generated if omitted)
            strategy: Primary command or the minimal fallback command

        Returns:
            CaptureResult; success is decided by the output file alone
        """
        destination = Path(destination) if destination else self.frame_destination(session)

        try:
            invocation = self.build_invocation(session, destination, strategy)
        except ConfigurationError as e:
            kind = getattr(e, 'kind', FailureKind.UNVERIFIED)
            return CaptureResult.failed(CaptureError(str(e), kind), retryable=False)

        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"[{session.id}] {strategy.value} capture: {invocation}")

        outcome = self.runner.run(invocation)

        if self._verify(destination):
            if not outcome.ok:
                logger.debug(
                    f"[{session.id}] ffmpeg reported failure (code {outcome.returncode}) "
                    f"but produced a frame; keeping it"
                )
            info = read_image_info(destination)
            return CaptureResult(
                path=destination,
                captured_at=datetime.now(),
                file_size=destination.stat().st_size,
                width=info.width,
                height=info.height,
                reported_error=not outcome.ok,
            )

        self._discard(destination)
        return CaptureResult.failed(classify_failure(outcome))

    def capture_with_retry(
        self,
        session: Session,
        max_attempts: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> CaptureResult:
        """
        Capture one frame, retrying with exponential backoff.

        The first fallback-eligible failure makes the next attempt use the
        minimal fallback command; that attempt counts toward max_attempts.

        Args:
            session: Session to capture for
            max_attempts: Attempts for this tick (default from settings)
            cancel_event: When set, no further attempts are started

        Returns:
            The successful result, or the last failure
        """
        attempts = max_attempts or self.max_attempts
        strategy = Strategy.PRIMARY
        used_fallback = False
        result = None

        for attempt in range(1, attempts + 1):
            result = self.capture_once(session, strategy=strategy)
            result.attempts = attempt
            result.used_fallback = used_fallback

            if result.success:
                if attempt > 1:
                    logger.info(f"[{session.id}] Capture succeeded on attempt {attempt}")
                return result

            error = result.error
            logger.warning(
                f"[{session.id}] Capture attempt {attempt}/{attempts} failed "
                f"({error.kind.value}, {strategy.value}): {error}"
            )

            if not result.retryable or attempt == attempts:
                break
            if cancel_event is not None and cancel_event.is_set():
                break

            if strategy == Strategy.PRIMARY and not used_fallback and error.fallback_eligible:
                strategy = Strategy.FALLBACK
                used_fallback = True
            else:
                strategy = Strategy.PRIMARY

            delay = self.backoff_delay(attempt)
            logger.info(f"[{session.id}] Retrying in {delay:.1f}s...")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    break
            else:
                self._sleep(delay)

        error = result.error
        result.error = CaptureError(
            f"Capture failed after {result.attempts} attempt(s): {error}",
            error.kind,
            error.detail,
            fallback_eligible=error.fallback_eligible
        )
        return result

    @staticmethod
    def _verify(path: Path) -> bool:
        try:
            return path.is_file() and path.stat().st_size > 0
        except OSError:
            return False

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial frame {path}: {e}")
