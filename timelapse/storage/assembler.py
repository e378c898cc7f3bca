"""
Video and animation assembly from a session's frames.

Frames are concatenated in capture-time order through ffmpeg's concat
demuxer. GIF output takes two passes: palette generation, then palette
application with the chosen dithering algorithm. The concat list and the
palette live in a temporary directory that is always removed.
"""

import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..capture.resilience import ProcessRunner
from ..capture.sources import ExternalInvocation
from ..state.models import Frame, ProducedVideo
from ..utils.config import ASSEMBLY_FORMATS, Config
from ..utils.exceptions import AssemblyError
from ..utils.logger import get_logger


logger = get_logger(__name__)

DITHER_MODES = ('bayer', 'heckbert', 'floyd_steinberg', 'sierra2', 'sierra2_4a', 'none')
RESOLUTION_PATTERN = re.compile(r'^(\d+)(?:x(\d+))?$')
MIN_FRAMES = 2


@dataclass
class AssemblyParams:
    """How to render one artifact."""

    fps: int = 10
    format: str = 'mp4'
    resolution: Optional[str] = None   # "WxH", or "W" to keep aspect ratio
    dither: str = 'sierra2_4a'

    def validate(self) -> None:
        """Raise AssemblyError on out-of-range parameters."""
        if not isinstance(self.fps, int) or isinstance(self.fps, bool) or not 1 <= self.fps <= 120:
            raise AssemblyError(f"fps must be an integer between 1 and 120, got {self.fps!r}")
        if self.format not in ASSEMBLY_FORMATS:
            raise AssemblyError(f"Unsupported output format: {self.format}")
        if self.resolution and not RESOLUTION_PATTERN.match(self.resolution):
            raise AssemblyError(f"Invalid resolution: {self.resolution}")
        if self.dither not in DITHER_MODES:
            raise AssemblyError(f"Unsupported dither mode: {self.dither}")

    @property
    def scale_filter(self) -> Optional[str]:
        if not self.resolution:
            return None
        width, height = RESOLUTION_PATTERN.match(self.resolution).groups()
        return f"scale={width}:{height or -2}:flags=lanczos"

    @classmethod
    def from_dict(cls, data: dict, defaults: Optional['AssemblyParams'] = None) -> 'AssemblyParams':
        defaults = defaults or cls()
        fps = data.get('fps', defaults.fps)
        try:
            fps = int(fps)
        except (TypeError, ValueError):
            raise AssemblyError(f"fps must be an integer, got {fps!r}")
        return cls(
            fps=fps,
            format=data.get('format', defaults.format),
            resolution=data.get('resolution', defaults.resolution),
            dither=data.get('dither', defaults.dither),
        )


class Assembler:
    """Renders frames into an mp4 video or an animated GIF."""

    def __init__(
        self,
        snapshots_dir: Path,
        videos_dir: Path,
        ffmpeg_path: str = 'ffmpeg',
        runner: Optional[ProcessRunner] = None,
        timeout: float = 600,
        defaults: Optional[AssemblyParams] = None
    ):
        self.snapshots_dir = Path(snapshots_dir)
        self.videos_dir = Path(videos_dir)
        self.ffmpeg_path = ffmpeg_path
        self.runner = runner or ProcessRunner()
        self.timeout = timeout
        self.defaults = defaults or AssemblyParams()

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> 'Assembler':
        assembly = config.get_assembly_config()
        defaults = AssemblyParams(
            fps=int(config.policy('assembly.default_fps')),
            format=assembly.get('default_format', 'mp4'),
            dither=assembly.get('gif_dither', 'sierra2_4a'),
        )
        return cls(
            config.get_snapshots_dir(),
            config.get_videos_dir(),
            ffmpeg_path=config.get_ffmpeg_path(),
            timeout=float(config.policy('assembly.timeout')),
            defaults=defaults,
            **kwargs
        )

    def assemble(self, session_id: str, frames: list[Frame], params: AssemblyParams) -> ProducedVideo:
        """
        Render frames into a new artifact.

        Nothing is written unless at least two usable frames exist.

        Args:
            session_id: Owning session
            frames: The session's frames, any order
            params: Rendering parameters

        Returns:
            Unsaved ProducedVideo (path relative to the video root)

        Raises:
            AssemblyError: Too few frames, bad parameters, or ffmpeg failure
        """
        if len(frames) < MIN_FRAMES:
            raise AssemblyError(
                f"At least {MIN_FRAMES} frames are required, session {session_id} has {len(frames)}"
            )
        params.validate()

        ordered = sorted(frames, key=lambda f: (f.captured_at, f.id or 0))
        paths = []
        for frame in ordered:
            path = (self.snapshots_dir / frame.file_path).resolve()
            if path.is_file():
                paths.append(path)
            else:
                logger.warning(f"[{session_id}] Skipping missing frame {frame.file_path}")

        if len(paths) < MIN_FRAMES:
            raise AssemblyError(f"Only {len(paths)} frame file(s) found on disk for session {session_id}")

        self.videos_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime('%Y%m%d-%H%M%S-%f')
        name = f"timelapse-{session_id}-{stamp}.{params.format}"
        output = self.videos_dir / name

        logger.info(f"[{session_id}] Assembling {len(paths)} frames into {name} at {params.fps}fps")

        try:
            with tempfile.TemporaryDirectory(prefix='timelapse-assembly-') as work:
                concat_list = Path(work) / 'frames.txt'
                concat_list.write_text(self._concat_lines(paths))

                if params.format == 'gif':
                    palette = Path(work) / 'palette.png'
                    self._run(self._palette_command(concat_list, palette, params), palette)
                    self._run(self._gif_command(concat_list, palette, output, params), output)
                else:
                    self._run(self._mp4_command(concat_list, output, params), output)
        except Exception:
            output.unlink(missing_ok=True)
            raise

        return ProducedVideo(
            session_id=session_id,
            file_path=name,
            fps=params.fps,
            format=params.format,
            file_size=output.stat().st_size,
            duration_seconds=round(len(paths) / params.fps, 3),
        )

    @staticmethod
    def _concat_lines(paths: list[Path]) -> str:
        lines = []
        for path in paths:
            escaped = str(path).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        return '\n'.join(lines) + '\n'

    def _input_args(self, concat_list: Path, params: AssemblyParams) -> list[str]:
        return [
            '-hide_banner', '-loglevel', 'error', '-y',
            '-f', 'concat', '-safe', '0', '-r', str(params.fps),
            '-i', str(concat_list),
        ]

    def _mp4_command(self, concat_list: Path, output: Path, params: AssemblyParams) -> list[str]:
        # yuv420p needs even dimensions
        video_filter = params.scale_filter or 'scale=trunc(iw/2)*2:trunc(ih/2)*2'
        return self._input_args(concat_list, params) + [
            '-vf', video_filter,
            '-c:v', 'libx264',
            '-pix_fmt', 'yuv420p',
            '-preset', 'medium',
            '-crf', '23',
            '-r', str(params.fps),
            '-movflags', '+faststart',
            str(output),
        ]

    def _palette_command(self, concat_list: Path, palette: Path, params: AssemblyParams) -> list[str]:
        filters = [f for f in (params.scale_filter, 'palettegen=stats_mode=diff') if f]
        return self._input_args(concat_list, params) + [
            '-vf', ','.join(filters),
            str(palette),
        ]

    def _gif_command(self, concat_list: Path, palette: Path, output: Path, params: AssemblyParams) -> list[str]:
        source = f"[0:v]{params.scale_filter}[x];[x]" if params.scale_filter else '[0:v]'
        return self._input_args(concat_list, params) + [
            '-i', str(palette),
            '-lavfi', f"{source}[1:v]paletteuse=dither={params.dither}",
            '-loop', '0',
            str(output),
        ]

    def _run(self, args: list[str], expected: Path) -> None:
        invocation = ExternalInvocation(
            program=self.ffmpeg_path,
            args=tuple(args),
            destination=expected,
            timeout=self.timeout,
        )
        logger.debug(f"Running: {invocation}")
        outcome = self.runner.run(invocation)

        if outcome.ok and expected.is_file() and expected.stat().st_size > 0:
            return

        detail = outcome.stderr.strip()
        reason = detail.splitlines()[-1] if detail else f"exit code {outcome.returncode}"
        if outcome.timed_out:
            reason = f"timed out after {self.timeout}s"
        raise AssemblyError(f"ffmpeg failed producing {expected.name}: {reason}")
