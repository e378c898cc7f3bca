"""
Timelapse Capture Service

Captures still frames from network cameras, local devices, HTTP and
protocol streams, screens, uploads, watched folders and broker-triggered
events, and assembles them into videos and animated GIFs.
"""

__version__ = "1.0.0"
__author__ = "Timelapse Team"

from .utils.config import load_config, get_config, Config
from .utils.logger import setup_logging, get_logger
from .main import Application, main

__all__ = [
    'load_config',
    'get_config',
    'Config',
    'setup_logging',
    'get_logger',
    'Application',
    'main',
]
