"""
Configuration constants and the run configuration for the media organizer.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Iterable, Optional, Union

from .exceptions import ConfigurationError
from .models import DuplicateStrategy, MonthFormat

VERSION = "1.0.0"

# --- File Type Definitions ---
RAW_EXTS = {'.cr2', '.cr3', '.nef', '.arw', '.orf', '.rw2', '.dng'}
JPEG_EXTS = {'.jpg', '.jpeg', '.jpe', '.gif', '.png', '.heic', '.heif', '.webp', '.bmp'}
TIFF_EXTS = {'.tif', '.tiff'}

IMAGE_EXTS = frozenset(RAW_EXTS | JPEG_EXTS | TIFF_EXTS)
VIDEO_EXTS = frozenset({'.mp4', '.mov', '.m4v', '.avi', '.mkv', '.mts', '.m2ts', '.3gp', '.mpg', '.mpeg', '.tod'})

# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# Pillow fallback: (IFD pointer or None for IFD0, tag id)
PIL_EXIF_IFD = 0x8769
PIL_GPS_IFD = 0x8825
PIL_DATE_TAGS = [
    (PIL_EXIF_IFD, 36867),  # DateTimeOriginal
    (PIL_EXIF_IFD, 36868),  # DateTimeDigitized
    (None, 306),            # DateTime
]

# MediaInfo general-track fields, most trustworthy first.
# file_last_modification_date is left out on purpose: it is the mtime.
VIDEO_DATE_FIELDS = ["recorded_date", "encoded_date", "tagged_date"]
EXIFTOOL_DATE_FIELDS = ["CreateDate", "CreationDate", "DateTimeOriginal", "MediaCreateDate"]

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

# --- Hashing & Performance ---
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks for reading
HASH_CACHE_SHARDS = 16
QUEUE_SIZE = 100             # bounded queue between scanner and mover
SINK_QUEUE_SIZE = 50

# --- Organization ---
DEFAULT_CACHE_FILENAME = "hash_cache.json"
DEFAULT_LOG_FILENAME = "organizer.log"
UNKNOWN_FOLDER = "unknown"
IMAGES_FOLDER = "images"
VIDEOS_FOLDER = "videos"
DUPLICATES_SUFFIX = "_duplicates"
MAX_COLLISION_ATTEMPTS = 10000
MAX_PLACEMENT_RETRIES = 5


def default_workers() -> int:
    """Half the available parallelism, at least one."""
    return max(1, (os.cpu_count() or 1) // 2)


def default_index_workers() -> int:
    return min(32, (os.cpu_count() or 1) * 4)


def parse_extension_list(value: Union[str, Iterable[str], None]) -> Optional[FrozenSet[str]]:
    """
    Normalizes an extension allow-list ("jpg, .MP4" -> {'.jpg', '.mp4'}).
    Returns None when no list was given.
    Raises ConfigurationError for extensions outside the image/video tables.
    """
    if value is None:
        return None
    items = value.split(",") if isinstance(value, str) else list(value)

    exts = set()
    for item in items:
        ext = item.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        if ext not in IMAGE_EXTS and ext not in VIDEO_EXTS:
            raise ConfigurationError(f"Unsupported file type in extension list: {item.strip()}")
        exts.add(ext)

    if not exts:
        raise ConfigurationError("Extension list is empty")
    return frozenset(exts)


@dataclass
class OrganizerConfig:
    """Everything a run needs, validated once before the pipeline starts."""
    source: Path
    destination: Path
    organize_photos: bool = True
    organize_videos: bool = True
    extensions: Optional[FrozenSet[str]] = None
    month_format: MonthFormat = MonthFormat.WORD
    geo_mode: bool = False
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.MOVE
    move_unknown: bool = True
    cache_path: Optional[Path] = None
    log_path: Optional[Path] = None
    scan_workers: int = field(default_factory=default_workers)
    move_workers: int = field(default_factory=default_workers)
    index_workers: int = field(default_factory=default_index_workers)
    show_progress: bool = False

    def __post_init__(self):
        self.source = Path(self.source).expanduser().resolve()
        self.destination = Path(self.destination).expanduser().resolve()

        if isinstance(self.month_format, str):
            self.month_format = MonthFormat.parse(self.month_format)
        if isinstance(self.duplicate_strategy, str):
            self.duplicate_strategy = DuplicateStrategy.parse(self.duplicate_strategy)
        if self.extensions is not None:
            self.extensions = parse_extension_list(self.extensions)

        if self.cache_path is None:
            self.cache_path = self.destination / DEFAULT_CACHE_FILENAME
        self.cache_path = Path(self.cache_path).expanduser().resolve()
        if self.log_path is not None:
            self.log_path = Path(self.log_path).expanduser().resolve()

    def validate(self) -> None:
        """Raises ConfigurationError on the first fatal problem."""
        if not self.source.is_dir():
            raise ConfigurationError(f"Source path {self.source} does not exist or is not a directory")
        if not self.destination.is_dir():
            raise ConfigurationError(f"Destination path {self.destination} does not exist or is not a directory")
        if self.source == self.destination or self.destination in self.source.parents:
            raise ConfigurationError(
                f"Source {self.source} must not be the destination or lie inside it ({self.destination})"
            )
        for name in ("scan_workers", "move_workers", "index_workers"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")

    @property
    def reserved_paths(self) -> FrozenSet[Path]:
        """Files the run writes itself; never scanned, hashed or moved."""
        paths = {self.cache_path}
        if self.log_path is not None:
            paths.add(self.log_path)
        return frozenset(paths)
