from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from .exceptions import ConfigurationError


class FileCategory(Enum):
    IMAGE = "image"
    VIDEO = "video"
    UNKNOWN = "unknown"
    EXCLUDED = "excluded"
    FOLDER = "folder"


class MonthFormat(Enum):
    """Naming of the month level in date-mode folders."""
    WORD = "word"           # June
    NUMBER = "number"       # 06
    COMBINED = "combined"   # 06_June

    @classmethod
    def parse(cls, value: str) -> "MonthFormat":
        try:
            return cls(value.lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ConfigurationError(f"Invalid month format '{value}' (expected one of: {choices})")


class DuplicateStrategy(Enum):
    """What happens to a file whose content already exists at the destination."""
    MOVE = "move"       # place under a '<name>_duplicates' folder next to the original
    SKIP = "skip"       # leave the source file untouched
    DELETE = "delete"   # remove the source file

    @classmethod
    def parse(cls, value: str) -> "DuplicateStrategy":
        try:
            return cls(value.lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ConfigurationError(f"Invalid duplicate strategy '{value}' (expected one of: {choices})")


@dataclass(frozen=True)
class FileRecord:
    """
    Represents a file found during a scan.
    Frozen: records cross the queue by value and are never mutated afterwards.
    """
    path: Path
    category: FileCategory
    created_at: datetime
    has_reliable_timestamp: bool = False
    country: str = ""
    size_bytes: int = 0
    content_hash: Optional[str] = None  # None for UNKNOWN files, which are never deduplicated

    # Set by the duplicate resolver before enqueue
    is_duplicate: bool = False
    duplicate_of: Optional[Path] = None


@dataclass(frozen=True)
class HashCacheEntry:
    path: str
    size: int
    mtime_ns: int
    hash: str  # hex-encoded SHA-256

    def matches(self, size: int, mtime_ns: int) -> bool:
        return self.size == size and self.mtime_ns == mtime_ns


# A ring is a closed sequence of (lon, lat) points, GeoJSON order.
Ring = Tuple[Tuple[float, float], ...]
# Outer ring first, then holes.
Polygon = Tuple[Ring, ...]


@dataclass(frozen=True)
class CountryFeature:
    name: str
    polygons: Tuple[Polygon, ...]
