"""
Image metadata helpers.

Reads pixel dimensions and the capture timestamp of a still image. The
timestamp precedence is embedded capture metadata (EXIF), then filesystem
creation time, then the time of processing.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError

from ..utils.logger import get_logger


logger = get_logger(__name__)

EXIF_IFD = 0x8769
EXIF_DATETIME_ORIGINAL = 36867
EXIF_DATETIME_DIGITIZED = 36868
TIFF_DATETIME = 306
EXIF_TIME_FORMAT = '%Y:%m:%d %H:%M:%S'


@dataclass
class ImageInfo:
    width: Optional[int] = None
    height: Optional[int] = None
    taken_at: Optional[datetime] = None


def read_image_info(path: Path) -> ImageInfo:
    """
    Read dimensions and embedded capture time of an image.

    Unreadable images yield an empty ImageInfo rather than an error.
    """
    try:
        with Image.open(path) as img:
            info = ImageInfo(width=img.width, height=img.height)
            info.taken_at = _exif_time(img)
            return info
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"Could not read image metadata from {path}: {e}")
        return ImageInfo()


def _exif_time(img: Image.Image) -> Optional[datetime]:
    try:
        exif = img.getexif()
    except Exception as e:
        logger.debug(f"Unreadable EXIF block: {e}")
        return None

    candidates = []
    try:
        sub = exif.get_ifd(EXIF_IFD)
        candidates += [sub.get(EXIF_DATETIME_ORIGINAL), sub.get(EXIF_DATETIME_DIGITIZED)]
    except (KeyError, AttributeError):
        pass
    candidates.append(exif.get(TIFF_DATETIME))

    for value in candidates:
        if not value:
            continue
        try:
            return datetime.strptime(str(value).strip('\x00 '), EXIF_TIME_FORMAT)
        except ValueError:
            continue
    return None


def file_creation_time(path: Path) -> Optional[datetime]:
    """Creation time where the filesystem records it, else modification time."""
    try:
        stat = os.stat(path)
    except OSError:
        return None
    created = getattr(stat, 'st_birthtime', None)
    return datetime.fromtimestamp(created if created else stat.st_mtime)


def resolve_capture_time(path: Path, info: Optional[ImageInfo] = None) -> datetime:
    """
    Pick a frame's capture timestamp.

    Embedded capture metadata > filesystem creation time > now.
    """
    if info is not None and info.taken_at is not None:
        return info.taken_at
    return file_creation_time(path) or datetime.now()
