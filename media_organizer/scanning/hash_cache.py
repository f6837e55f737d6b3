"""
Persistent content-hash cache.

Entries are keyed by absolute path and stay valid only while the file's
size and modification time match what was recorded. The in-memory map is
split into shards, each with its own lock, so scanner workers can look up
and insert concurrently without any locking on their side.

Iterating the cache (save, prune) is only safe once the pipeline has joined.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .. import config
from ..exceptions import FileHashError
from ..models import HashCacheEntry
from .hasher import FileHasher

CACHE_VERSION = 1

PathLike = Union[str, Path]


class HashCache:
    def __init__(self,
                 cache_path: Optional[Path] = None,
                 hasher: Optional[FileHasher] = None,
                 shards: int = config.HASH_CACHE_SHARDS):
        self.cache_path = Path(cache_path) if cache_path else None
        self.hasher = hasher or FileHasher()
        self._shards: List[Tuple[threading.Lock, Dict[str, HashCacheEntry]]] = [
            (threading.Lock(), {}) for _ in range(max(1, shards))
        ]

    # --- Lookup ---

    def get_or_compute(self, path: PathLike) -> str:
        """
        Returns the hex digest for path, reading the file only when the
        cached entry is missing or stale.
        Raises FileHashError if the file cannot be stat'ed or read.
        """
        key = self._key(path)
        try:
            st = os.stat(key)
        except OSError as e:
            raise FileHashError(f"Failed to stat {key}: {e}") from e

        lock, entries = self._shard(key)
        with lock:
            cached = entries.get(key)
        if cached is not None and cached.matches(st.st_size, st.st_mtime_ns):
            return cached.hash

        # Hash outside the lock; two workers racing on the same path both
        # compute and store the same value.
        digest = self.hasher.hash_file(Path(key))
        entry = HashCacheEntry(path=key, size=st.st_size, mtime_ns=st.st_mtime_ns, hash=digest)
        with lock:
            entries[key] = entry
        return digest

    def get(self, path: PathLike) -> Optional[HashCacheEntry]:
        key = self._key(path)
        lock, entries = self._shard(key)
        with lock:
            return entries.get(key)

    def put(self, entry: HashCacheEntry) -> None:
        lock, entries = self._shard(entry.path)
        with lock:
            entries[entry.path] = entry

    def relocate(self, old_path: PathLike, new_path: PathLike) -> None:
        """Re-keys an entry after a rename (size and mtime survive a rename)."""
        old_key, new_key = self._key(old_path), self._key(new_path)
        lock, entries = self._shard(old_key)
        with lock:
            entry = entries.pop(old_key, None)
        if entry is not None:
            self.put(HashCacheEntry(path=new_key, size=entry.size, mtime_ns=entry.mtime_ns, hash=entry.hash))

    def discard(self, path: PathLike) -> None:
        key = self._key(path)
        lock, entries = self._shard(key)
        with lock:
            entries.pop(key, None)

    def __len__(self) -> int:
        return sum(len(entries) for _, entries in self._shards)

    def __iter__(self) -> Iterator[HashCacheEntry]:
        for _, entries in self._shards:
            yield from list(entries.values())

    def prune(self) -> int:
        """Drops entries whose file no longer exists. Returns the number removed."""
        removed = 0
        for lock, entries in self._shards:
            with lock:
                stale = [key for key in entries if not os.path.exists(key)]
                for key in stale:
                    del entries[key]
            removed += len(stale)
        return removed

    # --- Persistence ---

    @classmethod
    def load(cls, cache_path: Path, hasher: Optional[FileHasher] = None) -> "HashCache":
        """
        Loads a snapshot. A missing file yields an empty cache; an unreadable
        file is logged and also yields an empty cache. Individual records
        that fail to decode are skipped.
        """
        cache = cls(cache_path, hasher)
        cache_path = Path(cache_path)
        if not cache_path.exists():
            logging.info(f"No hash cache at {cache_path}, starting empty.")
            return cache

        try:
            with cache_path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            files = data["files"]
            if not isinstance(files, dict):
                raise ValueError("'files' is not an object")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logging.warning(f"Failed to load hash cache {cache_path}: {e}. Using empty cache.")
            return cache

        skipped = 0
        for path, raw in files.items():
            entry = _decode_entry(path, raw)
            if entry is None:
                skipped += 1
                continue
            cache.put(entry)

        if skipped:
            logging.warning(f"Skipped {skipped} corrupt hash cache entries.")
        logging.info(f"Loaded {len(cache)} hash cache entries from {cache_path}")
        return cache

    def save(self, cache_path: Optional[Path] = None) -> None:
        """
        Writes the snapshot atomically: temp file in the target directory,
        then os.replace(). A crash mid-save leaves the previous file intact.
        """
        target = Path(cache_path or self.cache_path)
        payload = {
            "version": CACHE_VERSION,
            "files": {
                entry.path: {"size": entry.size, "mtime_ns": entry.mtime_ns, "hash": entry.hash}
                for entry in sorted(self, key=lambda e: e.path)
            },
        }

        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".hash_cache_", suffix=".tmp")
        try:
            with open(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # --- Internals ---

    @staticmethod
    def _key(path: PathLike) -> str:
        return os.path.abspath(os.fspath(path))

    def _shard(self, key: str) -> Tuple[threading.Lock, Dict[str, HashCacheEntry]]:
        return self._shards[hash(key) % len(self._shards)]


def _decode_entry(path, raw) -> Optional[HashCacheEntry]:
    if not isinstance(path, str) or not isinstance(raw, dict):
        return None
    size, mtime_ns, digest = raw.get("size"), raw.get("mtime_ns"), raw.get("hash")
    if type(size) is not int or type(mtime_ns) is not int or not isinstance(digest, str):
        return None
    try:
        if len(bytes.fromhex(digest)) != 32:
            return None
    except ValueError:
        return None
    return HashCacheEntry(path=path, size=size, mtime_ns=mtime_ns, hash=digest.lower())
