"""
Source configuration and single-frame ffmpeg command building.

Each source kind has its own configuration dataclass, validated once at the
boundary by parse_source_config(). build_capture() turns a kind plus its
configuration into an ExternalInvocation that extracts exactly one frame.
Nothing here executes a process.
"""

import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union
from urllib.parse import quote, unquote, urlsplit, urlunsplit

from ..state.models import SourceKind
from ..utils.config import Config
from ..utils.exceptions import (
    ConfigurationError,
    UnknownSourceKindError,
    UnsupportedPlatformError,
)


RESOLUTION_PATTERN = re.compile(r'^\d+x\d+$')

IMAGE_PATTERNS = ('*.jpg', '*.jpeg', '*.png', '*.webp')

# Kinds whose frames come from running the external decoder
EXTRACTABLE_KINDS = frozenset({
    SourceKind.NETWORK_STREAM,
    SourceKind.LOCAL_DEVICE,
    SourceKind.HTTP_STREAM,
    SourceKind.PROTOCOL_STREAM,
    SourceKind.SCREEN_REGION,
})


@dataclass
class CaptureSettings:
    """Process-wide knobs applied to every capture command."""

    ffmpeg_path: str = 'ffmpeg'
    connect_timeout: float = 10.0
    process_timeout: float = 30.0
    image_quality: int = 2

    @classmethod
    def from_config(cls, config: Config) -> 'CaptureSettings':
        return cls(
            ffmpeg_path=config.get_ffmpeg_path(),
            connect_timeout=float(config.policy('capture.connect_timeout')),
            process_timeout=float(config.policy('capture.process_timeout')),
            image_quality=int(config.policy('capture.image_quality')),
        )


# Source configurations

@dataclass
class NetworkStreamSource:
    url: str
    username: str = ''
    password: str = ''
    port: Optional[int] = None
    transport: str = 'tcp'


@dataclass
class LocalDeviceSource:
    device: str
    input_format: Optional[str] = None
    resolution: Optional[str] = None
    framerate: Optional[float] = None


@dataclass
class HttpStreamSource:
    url: str


@dataclass
class ProtocolStreamSource:
    url: str


@dataclass
class Region:
    x: int
    y: int
    width: int
    height: int

    @property
    def size(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class ScreenRegionSource:
    display: Optional[str] = None
    region: Optional[Region] = None


@dataclass
class ManualUploadSource:
    pass


@dataclass
class DirectoryImportSource:
    directory: str
    patterns: tuple = IMAGE_PATTERNS
    recursive: bool = False


@dataclass
class EventTriggeredSource:
    """Capture from `capture` whenever `topic` goes from armed to fired."""

    broker: str
    topic: str
    capture_kind: SourceKind
    capture: 'ExtractableSource'
    port: int = 1883
    username: str = ''
    password: str = ''
    armed_value: str = '0'
    fired_value: str = '1'


ExtractableSource = Union[
    NetworkStreamSource,
    LocalDeviceSource,
    HttpStreamSource,
    ProtocolStreamSource,
    ScreenRegionSource,
]

SourceConfig = Union[
    ExtractableSource,
    ManualUploadSource,
    DirectoryImportSource,
    EventTriggeredSource,
]


@dataclass(frozen=True)
class ExternalInvocation:
    """A fully specified command that writes one frame to destination."""

    program: str
    args: tuple
    destination: Path
    timeout: float
    redacted: str = ''
    fallback: bool = False

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return self.redacted or ' '.join(self.argv)


@dataclass
class _InputSpec:
    """Input side of a capture command, split so the fallback can drop robustness flags."""

    format_args: list = field(default_factory=list)
    robustness_args: list = field(default_factory=list)
    target: str = ''
    video_filter: Optional[str] = None
    secret: str = ''


def coerce_kind(kind: Union[SourceKind, str]) -> SourceKind:
    """Map a kind name to SourceKind or raise UnknownSourceKindError."""
    if isinstance(kind, SourceKind):
        return kind
    try:
        return SourceKind(kind)
    except ValueError:
        raise UnknownSourceKindError(f"Unknown source kind: {kind}")


def parse_source_config(kind: Union[SourceKind, str], data: Optional[Mapping]) -> SourceConfig:
    """
    Validate a raw configuration mapping for a source kind.

    Args:
        kind: Source kind (enum or its value)
        data: Raw configuration mapping (e.g. decoded JSON)

    Returns:
        The kind's configuration dataclass

    Raises:
        UnknownSourceKindError: If kind is not supported
        ConfigurationError: If a required field is missing or invalid
    """
    kind = coerce_kind(kind)
    data = dict(data or {})

    if kind == SourceKind.NETWORK_STREAM:
        url = _require(data, 'url', kind)
        _check_scheme(url, ('rtsp', 'rtsps'), kind)
        transport = data.get('transport') or 'tcp'
        if transport not in ('tcp', 'udp'):
            raise ConfigurationError(f"Invalid transport for {kind.value}: {transport}")
        return NetworkStreamSource(
            url=url,
            username=data.get('username') or '',
            password=data.get('password') or '',
            port=_optional_int(data, 'port', kind),
            transport=transport,
        )

    if kind == SourceKind.LOCAL_DEVICE:
        resolution = data.get('resolution')
        if resolution and not RESOLUTION_PATTERN.match(str(resolution)):
            raise ConfigurationError(f"Invalid resolution format: {resolution}")
        framerate = data.get('framerate')
        if framerate is not None:
            try:
                framerate = float(framerate)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Invalid framerate for {kind.value}: {framerate}")
            if framerate <= 0:
                raise ConfigurationError(f"framerate must be positive: {framerate}")
        return LocalDeviceSource(
            device=str(_require(data, 'device', kind)),
            input_format=data.get('input_format'),
            resolution=resolution,
            framerate=framerate,
        )

    if kind == SourceKind.HTTP_STREAM:
        url = _require(data, 'url', kind)
        _check_scheme(url, ('http', 'https'), kind)
        return HttpStreamSource(url=url)

    if kind == SourceKind.PROTOCOL_STREAM:
        url = _require(data, 'url', kind)
        _check_scheme(url, ('rtmp', 'rtmps', 'srt'), kind)
        return ProtocolStreamSource(url=url)

    if kind == SourceKind.SCREEN_REGION:
        region = data.get('region')
        if region is not None:
            if not isinstance(region, Mapping):
                raise ConfigurationError("region must be a mapping with x, y, width, height")
            region = Region(
                x=_required_int(region, 'x', kind),
                y=_required_int(region, 'y', kind),
                width=_required_int(region, 'width', kind),
                height=_required_int(region, 'height', kind),
            )
            if region.width <= 0 or region.height <= 0 or region.x < 0 or region.y < 0:
                raise ConfigurationError(f"Invalid screen region: {region}")
        display = data.get('display')
        return ScreenRegionSource(display=str(display) if display is not None else None, region=region)

    if kind == SourceKind.MANUAL_UPLOAD:
        return ManualUploadSource()

    if kind == SourceKind.DIRECTORY_IMPORT:
        patterns = data.get('patterns') or IMAGE_PATTERNS
        if isinstance(patterns, str):
            patterns = (patterns,)
        return DirectoryImportSource(
            directory=str(_require(data, 'directory', kind)),
            patterns=tuple(patterns),
            recursive=bool(data.get('recursive', False)),
        )

    # SourceKind.EVENT_TRIGGERED
    nested = data.get('capture')
    if not isinstance(nested, Mapping) or 'kind' not in nested:
        raise ConfigurationError(f"Missing required field for {kind.value}: capture.kind")
    capture_kind = coerce_kind(nested['kind'])
    if capture_kind not in EXTRACTABLE_KINDS:
        raise ConfigurationError(
            f"{kind.value} cannot capture from {capture_kind.value}"
        )
    return EventTriggeredSource(
        broker=str(_require(data, 'broker', kind)),
        topic=str(_require(data, 'topic', kind)),
        capture_kind=capture_kind,
        capture=parse_source_config(capture_kind, nested.get('config')),
        port=_optional_int(data, 'port', kind) or 1883,
        username=data.get('username') or '',
        password=data.get('password') or '',
        armed_value=str(data.get('armed_value', '0')),
        fired_value=str(data.get('fired_value', '1')),
    )


def build_stream_url(source: NetworkStreamSource) -> str:
    """
    Merge credentials and port into a network stream URL.

    Credentials already present in the URL are kept unless the source
    carries its own.
    """
    parts = urlsplit(source.url)
    host = parts.hostname or ''
    if ':' in host:
        host = f"[{host}]"

    username = source.username or unquote(parts.username or '')
    password = source.password or unquote(parts.password or '')
    port = source.port or parts.port

    if username and password:
        auth = f"{quote(username, safe='')}:{quote(password, safe='')}@"
    elif username:
        auth = f"{quote(username, safe='')}@"
    else:
        auth = ''

    netloc = f"{auth}{host}:{port}" if port else f"{auth}{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact_url(url: str) -> str:
    """Mask the password of a URL for logging."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":****@")
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def host_family(platform_name: Optional[str] = None) -> str:
    """Normalize an OS name (platform.system() style) to linux/darwin/windows."""
    name = (platform_name or platform.system()).lower()
    if name.startswith('linux'):
        return 'linux'
    if name in ('darwin', 'macos', 'mac'):
        return 'darwin'
    if name.startswith('win'):
        return 'windows'
    return name


def build_capture(
    kind: Union[SourceKind, str],
    config: Union[SourceConfig, Mapping],
    destination: Path,
    settings: Optional[CaptureSettings] = None,
    platform_name: Optional[str] = None
) -> ExternalInvocation:
    """
    Build the command that extracts one frame from a source.

    Args:
        kind: Source kind
        config: Parsed configuration or raw mapping
        destination: Output image path
        settings: Timeouts, quality and executable
        platform_name: Host OS name; defaults to the running host

    Returns:
        ExternalInvocation ready to execute

    Raises:
        ConfigurationError: Kind has no extraction pipeline or config invalid
        UnsupportedPlatformError: Device/screen capture on an unknown OS family
    """
    return _build(kind, config, destination, settings, platform_name, fallback=False)


def build_fallback_capture(
    kind: Union[SourceKind, str],
    config: Union[SourceConfig, Mapping],
    destination: Path,
    settings: Optional[CaptureSettings] = None,
    platform_name: Optional[str] = None
) -> ExternalInvocation:
    """
    Build the minimal direct command used after a parse-failure exit.

    Drops transport tuning and corruption-tolerance flags, keeping only the
    input format, the input, and the single-frame output.
    """
    return _build(kind, config, destination, settings, platform_name, fallback=True)


def _build(kind, config, destination, settings, platform_name, fallback: bool) -> ExternalInvocation:
    kind = coerce_kind(kind)
    if isinstance(config, Mapping):
        config = parse_source_config(kind, config)
    settings = settings or CaptureSettings()

    if kind == SourceKind.EVENT_TRIGGERED:
        kind, config = config.capture_kind, config.capture

    if kind not in EXTRACTABLE_KINDS:
        raise ConfigurationError(f"Source kind {kind.value} has no frame extraction pipeline")

    spec = _input_spec(kind, config, settings, host_family(platform_name))
    destination = Path(destination)

    args = ['-hide_banner', '-loglevel', 'error', '-y']
    args.extend(spec.format_args)
    if not fallback:
        args.extend(spec.robustness_args)
    args.extend(['-i', spec.target])
    if spec.video_filter:
        args.extend(['-vf', spec.video_filter])
    args.extend(['-frames:v', '1'])
    if not fallback:
        args.extend(['-q:v', str(settings.image_quality), '-update', '1'])
    args.append(str(destination))

    redacted = ' '.join([settings.ffmpeg_path, *args])
    if spec.secret:
        redacted = redacted.replace(spec.secret, redact_url(spec.secret))

    return ExternalInvocation(
        program=settings.ffmpeg_path,
        args=tuple(args),
        destination=destination,
        timeout=settings.process_timeout,
        redacted=redacted,
        fallback=fallback,
    )


def _input_spec(kind: SourceKind, config, settings: CaptureSettings, family: str) -> _InputSpec:
    timeout_us = str(int(settings.connect_timeout * 1_000_000))

    if kind == SourceKind.NETWORK_STREAM:
        url = build_stream_url(config)
        return _InputSpec(
            format_args=['-rtsp_transport', config.transport],
            robustness_args=[
                '-timeout', timeout_us,
                '-analyzeduration', timeout_us,
                '-probesize', '5000000',
                '-fflags', '+discardcorrupt+genpts',
                '-err_detect', 'ignore_err',
            ],
            target=url,
            secret=url,
        )

    if kind == SourceKind.HTTP_STREAM:
        return _InputSpec(
            robustness_args=[
                '-reconnect', '1',
                '-reconnect_streamed', '1',
                '-reconnect_delay_max', '2',
                '-rw_timeout', timeout_us,
                '-fflags', '+discardcorrupt',
            ],
            target=config.url,
            secret=config.url,
        )

    if kind == SourceKind.PROTOCOL_STREAM:
        return _InputSpec(
            robustness_args=[
                '-rw_timeout', timeout_us,
                '-analyzeduration', timeout_us,
                '-fflags', '+discardcorrupt',
            ],
            target=config.url,
            secret=config.url,
        )

    if kind == SourceKind.LOCAL_DEVICE:
        return _device_spec(config, family)

    return _screen_spec(config, family)


def _device_spec(config: LocalDeviceSource, family: str) -> _InputSpec:
    size_args = ['-video_size', config.resolution] if config.resolution else []
    rate_args = ['-framerate', _fmt_number(config.framerate)] if config.framerate else []

    if family == 'linux':
        format_args = ['-f', 'v4l2']
        if config.input_format:
            format_args += ['-input_format', config.input_format]
        return _InputSpec(format_args=format_args + size_args + rate_args, target=config.device)

    if family == 'darwin':
        format_args = ['-f', 'avfoundation']
        if config.input_format:
            format_args += ['-pixel_format', config.input_format]
        # avfoundation refuses to open without an explicit rate
        rate_args = rate_args or ['-framerate', '30']
        return _InputSpec(
            format_args=format_args + size_args + rate_args,
            target=f"{config.device}:none",
        )

    if family == 'windows':
        return _InputSpec(
            format_args=['-f', 'dshow'] + size_args + rate_args,
            target=f"video={config.device}",
        )

    raise UnsupportedPlatformError(f"Device capture not supported on {family}")


def _screen_spec(config: ScreenRegionSource, family: str) -> _InputSpec:
    region = config.region

    if family == 'linux':
        display = config.display or ':0.0'
        if region:
            return _InputSpec(
                format_args=['-f', 'x11grab', '-video_size', region.size],
                target=f"{display}+{region.x},{region.y}",
            )
        return _InputSpec(format_args=['-f', 'x11grab'], target=display)

    if family == 'darwin':
        display = config.display or '1'
        crop = f"crop={region.width}:{region.height}:{region.x}:{region.y}" if region else None
        return _InputSpec(
            format_args=['-f', 'avfoundation', '-capture_cursor', '0'],
            target=f"{display}:none",
            video_filter=crop,
        )

    if family == 'windows':
        format_args = ['-f', 'gdigrab']
        if region:
            format_args += [
                '-offset_x', str(region.x),
                '-offset_y', str(region.y),
                '-video_size', region.size,
            ]
        return _InputSpec(format_args=format_args, target=config.display or 'desktop')

    raise UnsupportedPlatformError(f"Screen capture not supported on {family}")


def _require(data: Mapping, key: str, kind: SourceKind):
    value = data.get(key)
    if value is None or value == '':
        raise ConfigurationError(f"Missing required field for {kind.value}: {key}")
    return value


def _required_int(data: Mapping, key: str, kind: SourceKind) -> int:
    value = _require(data, key, kind)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Field {key} for {kind.value} must be an integer: {value}")


def _optional_int(data: Mapping, key: str, kind: SourceKind) -> Optional[int]:
    if data.get(key) in (None, ''):
        return None
    return _required_int(data, key, kind)


def _check_scheme(url: str, schemes: tuple, kind: SourceKind) -> None:
    scheme = urlsplit(str(url)).scheme.lower()
    if scheme not in schemes:
        raise ConfigurationError(
            f"Invalid URL scheme for {kind.value}: expected {'/'.join(schemes)}, got {scheme or 'none'}"
        )


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
