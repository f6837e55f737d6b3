from pathlib import Path
from typing import AbstractSet, Optional

from .. import config
from ..models import FileCategory


def classify(path: Path,
             organize_photos: bool = True,
             organize_videos: bool = True,
             allowed_exts: Optional[AbstractSet[str]] = None,
             is_dir: bool = False) -> FileCategory:
    """
    Category of a path from its extension alone (case-insensitive).

    EXCLUDED wins when an allow-list is set and the extension is not on it.
    UNKNOWN means no metadata-based placement is possible: the extension is
    in neither table, or its table is switched off.
    """
    if is_dir:
        return FileCategory.FOLDER

    ext = path.suffix.lower()
    if allowed_exts is not None and ext not in allowed_exts:
        return FileCategory.EXCLUDED

    if organize_photos and ext in config.IMAGE_EXTS:
        return FileCategory.IMAGE
    if organize_videos and ext in config.VIDEO_EXTS:
        return FileCategory.VIDEO
    return FileCategory.UNKNOWN
