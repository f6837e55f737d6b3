import os
import pytest
from datetime import datetime
from pathlib import Path

from media_organizer.config import OrganizerConfig
from media_organizer.scanning.hasher import FileHasher


class FakeMetadata:
    """MetadataReader keyed by file name; anything not listed has no metadata."""

    def __init__(self, times=None, coords=None):
        self.times = dict(times or {})
        self.coords = dict(coords or {})

    def read_creation_time(self, path: Path):
        return self.times.get(path.name)

    def read_coordinates(self, path: Path):
        return self.coords.get(path.name)


class CountingHasher(FileHasher):
    """Counts how often file bytes are actually read."""

    def __init__(self):
        super().__init__()
        self.reads = []

    def hash_file(self, path: Path) -> str:
        self.reads.append(Path(path))
        return super().hash_file(path)


@pytest.fixture
def fake_metadata():
    return FakeMetadata()


@pytest.fixture
def counting_hasher():
    return CountingHasher()


@pytest.fixture
def src(tmp_path):
    d = tmp_path / "src"
    d.mkdir()
    return d


@pytest.fixture
def dest(tmp_path):
    d = tmp_path / "dest"
    d.mkdir()
    return d


@pytest.fixture
def make_config(src, dest, tmp_path):
    """Builds a deterministic single-worker config; keyword overrides win."""
    def _make(**overrides):
        params = dict(
            source=src,
            destination=dest,
            cache_path=tmp_path / "cache" / "hash_cache.json",
            scan_workers=1,
            move_workers=1,
            index_workers=2,
        )
        params.update(overrides)
        return OrganizerConfig(**params)
    return _make


def write_file(path: Path, data: bytes, mtime: datetime = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        ts = mtime.timestamp()
        os.utime(path, (ts, ts))
    return path


def tree_snapshot(root: Path, exclude=()) -> dict:
    """relative path -> bytes for every file under root."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and p.name not in exclude
    }
