"""
Capture module for the timelapse service.

Builds ffmpeg frame-extraction commands, runs them with retries, and
listens for broker events. The session engine lives in capture.engine.
"""

from .sources import (
    CaptureSettings,
    ExternalInvocation,
    build_capture,
    build_fallback_capture,
    parse_source_config,
)
from .resilience import CaptureController, CaptureResult, ProcessRunner, Strategy
from .triggers import EdgeTrigger, MqttEventSource

__all__ = [
    'CaptureSettings',
    'ExternalInvocation',
    'build_capture',
    'build_fallback_capture',
    'parse_source_config',
    'CaptureController',
    'CaptureResult',
    'ProcessRunner',
    'Strategy',
    'EdgeTrigger',
    'MqttEventSource',
]
