import os
from datetime import datetime
from pathlib import Path

from .. import config
from ..exceptions import DestinationResolutionError
from ..models import FileCategory, FileRecord, MonthFormat


def month_label(dt: datetime, fmt: MonthFormat) -> str:
    name = config.MONTH_NAMES[dt.month - 1]
    if fmt is MonthFormat.NUMBER:
        return f"{dt.month:02d}"
    if fmt is MonthFormat.COMBINED:
        return f"{dt.month:02d}_{name}"
    return name


def safe_folder_name(name: str) -> str:
    """Country names come from external data; keep them to one path component."""
    cleaned = name.replace(os.sep, "-").replace("/", "-").strip().strip(".")
    return cleaned or config.UNKNOWN_FOLDER


class DestinationResolver:
    """
    Computes where a record goes under the destination root.

      date:  dest/YYYY/<month>/{images|videos}/<name>
      geo:   dest/<country>/{images|videos}/<name>
      other: dest/unknown/<name>
    """

    def __init__(self,
                 dest_root: Path,
                 geo_mode: bool = False,
                 month_format: MonthFormat = MonthFormat.WORD,
                 max_attempts: int = config.MAX_COLLISION_ATTEMPTS):
        self.dest_root = Path(dest_root)
        self.geo_mode = geo_mode
        self.month_format = month_format
        self.max_attempts = max_attempts

    def canonical_path(self, record: FileRecord) -> Path:
        """Where the record would go if nothing were in the way. No I/O."""
        name = record.path.name
        media_folder = {
            FileCategory.IMAGE: config.IMAGES_FOLDER,
            FileCategory.VIDEO: config.VIDEOS_FOLDER,
        }.get(record.category)

        if media_folder is None:
            return self.dest_root / config.UNKNOWN_FOLDER / name

        if self.geo_mode:
            if not record.country:
                return self.dest_root / config.UNKNOWN_FOLDER / name
            return self.dest_root / safe_folder_name(record.country) / media_folder / name

        dt = record.created_at
        return self.dest_root / f"{dt.year:04d}" / month_label(dt, self.month_format) / media_folder / name

    def duplicate_path(self, record: FileRecord) -> Path:
        """Duplicates sit in '<original stem>_duplicates/' next to the original."""
        anchor = record.duplicate_of or self.canonical_path(record)
        return anchor.parent / f"{anchor.stem}{config.DUPLICATES_SUFFIX}" / record.path.name

    def target_path(self, record: FileRecord) -> Path:
        if record.is_duplicate:
            return self.duplicate_path(record)
        return self.canonical_path(record)

    def resolve(self, record: FileRecord) -> Path:
        """Collision-free destination for the record (best effort under concurrency)."""
        return self.resolve_collision(self.target_path(record))

    def resolve_collision(self, path: Path) -> Path:
        """
        Appends _1, _2, ... before the extension until the name is free.
        Raises DestinationResolutionError once max_attempts is exhausted.
        """
        if not os.path.lexists(path):
            return path

        stem, ext = path.stem, path.suffix
        for counter in range(1, self.max_attempts + 1):
            candidate = path.with_name(f"{stem}_{counter}{ext}")
            if not os.path.lexists(candidate):
                return candidate

        raise DestinationResolutionError(
            f"No free name for {path} after {self.max_attempts} attempts", dest=path
        )
