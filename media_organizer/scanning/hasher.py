import hashlib
from pathlib import Path

from .. import config
from ..exceptions import FileHashError


class FileHasher:
    """Content fingerprint over the complete byte stream (SHA-256)."""

    def __init__(self, chunk_size: int = config.HASH_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def hash_file(self, path: Path) -> str:
        """Reads entire file. High I/O cost."""
        h = hashlib.sha256()
        try:
            with open(path, 'rb') as f:
                while chunk := f.read(self.chunk_size):
                    h.update(chunk)
        except OSError as e:
            raise FileHashError(f"Failed to hash {path}: {e}") from e
        return h.hexdigest()
