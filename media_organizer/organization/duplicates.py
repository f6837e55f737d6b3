"""
Content-based duplicate detection against the destination tree.

The index maps content hash -> anchor, the destination path of the first
file seen with that content. It is seeded from everything already under
the destination before scanning starts, then grows as the scanner accepts
new files, so repeats within one run are caught too (first in traversal
order wins).

An in-run anchor starts out as the canonical path of the original and is
pending until the mover has placed the original; collision suffixes can
make the final path differ. Duplicates wait for the final path before
choosing their '<stem>_duplicates' folder.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AbstractSet, Callable, Dict, Iterator, Optional, Tuple

from tqdm import tqdm

from ..exceptions import FileHashError
from ..scanning.hash_cache import HashCache


class DuplicateResolver:
    def __init__(self, hash_cache: HashCache):
        self.hash_cache = hash_cache
        self._anchors: Dict[str, Path] = {}
        self._pending: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._anchors)

    def build_index(self,
                    dest_root: Path,
                    iter_files: Callable[[Path], Iterator[Path]],
                    skip: AbstractSet[Path] = frozenset(),
                    max_workers: int = 4,
                    on_error: Optional[Callable[[Path, Exception], None]] = None,
                    show_progress: bool = False) -> int:
        """
        Hashes every file already under dest_root (through the shared cache)
        and registers it as an anchor. Unreadable files are reported and
        left out. Returns the number of indexed files.
        """
        files = [p for p in iter_files(dest_root) if p not in skip]
        logging.info(f"Creating file hash-map on the destination path ({len(files)} files).")

        def hash_one(path: Path) -> Tuple[Path, Optional[str]]:
            try:
                return path, self.hash_cache.get_or_compute(path)
            except FileHashError as e:
                if on_error:
                    on_error(path, e)
                else:
                    logging.error(str(e))
                return path, None

        indexed = 0
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = pool.map(hash_one, files)
            for path, digest in tqdm(results, total=len(files), desc="Hashing destination", disable=not show_progress):
                if digest is None:
                    continue
                with self._lock:
                    self._anchors.setdefault(digest, path)
                indexed += 1
        return indexed

    def register(self, digest: str, anchor: Path, pending: bool = False) -> Optional[Path]:
        """
        Returns the anchor of the earlier file with the same content, or
        registers `anchor` for this content and returns None.

        A pending anchor is only where the file is expected to go; it stays
        pending until settle() records where the file actually went.
        """
        with self._lock:
            existing = self._anchors.get(digest)
            if existing is not None:
                return existing
            self._anchors[digest] = anchor
            if pending:
                self._pending[digest] = threading.Event()
            return None

    def settle(self, digest: str, placed_at: Optional[Path] = None) -> None:
        """
        Ends the pending state of an anchor. With placed_at the anchor moves
        to the final path; without it (the move failed) it stays as registered.
        """
        with self._lock:
            if placed_at is not None:
                self._anchors[digest] = placed_at
            event = self._pending.pop(digest, None)
        if event is not None:
            event.set()

    def final_anchor(self, digest: str) -> Optional[Path]:
        """Anchor for digest, blocking while its original is still being placed."""
        with self._lock:
            event = self._pending.get(digest)
        if event is not None:
            event.wait()
        return self.anchor_for(digest)

    def check(self, path: Path, anchor: Path) -> Optional[Path]:
        """
        Hashes path through the cache, then register()s it.
        Raises FileHashError if the file cannot be hashed.
        """
        return self.register(self.hash_cache.get_or_compute(path), anchor)

    def is_duplicate(self, path: Path) -> bool:
        """True if this content is already indexed. Registers it (anchored at path) if not."""
        return self.check(path, path) is not None

    def anchor_for(self, digest: str) -> Optional[Path]:
        with self._lock:
            return self._anchors.get(digest)
