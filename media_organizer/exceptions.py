"""
Custom exception hierarchy for the media organizer.

Configuration errors are fatal and abort a run before the pipeline starts.
Everything else is raised for a single file and reported through the
event sink while the rest of the run carries on.
"""
from pathlib import Path
from typing import Optional


class MediaOrganizerError(Exception):
    """Base exception for all media organizer errors."""
    pass


class ConfigurationError(MediaOrganizerError):
    """Raised when the run configuration is invalid (missing paths, bad strategy, bad extensions)."""
    pass


class FileHashError(MediaOrganizerError):
    """Raised when file hashing fails."""
    pass


class MetadataExtractionError(MediaOrganizerError):
    """Raised when metadata cannot be extracted from a file."""
    pass


class GeoDataError(MediaOrganizerError):
    """Raised when the country polygon set cannot be loaded."""
    pass


class FileOperationError(MediaOrganizerError):
    """Raised when a move/delete operation fails. Carries both paths."""

    def __init__(self, message: str, src: Optional[Path] = None, dest: Optional[Path] = None):
        super().__init__(message)
        self.src = src
        self.dest = dest


class DestinationResolutionError(FileOperationError):
    """Raised when no free destination name could be found."""
    pass
