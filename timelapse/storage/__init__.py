"""
Storage module for the timelapse service.

Handles frame import, video assembly, quotas and retention cleanup.
"""

from .assembler import Assembler, AssemblyParams
from .importer import DirectoryWatcher, FrameImporter
from .quota import QuotaDecision, QuotaGuard, Quotas
from .sweeper import Sweeper, SweepReport

__all__ = [
    'Assembler',
    'AssemblyParams',
    'DirectoryWatcher',
    'FrameImporter',
    'QuotaDecision',
    'QuotaGuard',
    'Quotas',
    'Sweeper',
    'SweepReport',
]
