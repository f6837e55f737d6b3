import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import AbstractSet, Callable, Dict, Iterator, Optional, Tuple

from .. import config
from ..config import OrganizerConfig
from ..exceptions import FileOperationError
from ..geo.resolver import GeoResolver
from ..metadata.extract import MetadataReader
from ..models import DuplicateStrategy, FileCategory, FileRecord
from ..organization.duplicates import DuplicateResolver
from ..organization.rules import DestinationResolver
from ..reporting import EventSink, RunStats
from .classifier import classify

# Marks the end of a queue. A consumer that sees it puts it back for its peers.
END_OF_QUEUE = object()


def iter_files(root: Path, skip_dirs: Optional[AbstractSet[Path]] = None) -> Iterator[Path]:
    """Depth-first walker using os.scandir for speed. Regular files only, symlinks not followed."""
    skip_dirs = skip_dirs or set()
    stack = [root]
    while stack:
        current = stack.pop()
        if current in skip_dirs:
            continue

        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            logging.warning(f"Cannot read directory {current}: {e}")
            continue

        # Sort for stable traversal order
        entries.sort(key=lambda e: e.name.lower())

        dirs = []
        files = []
        for e in entries:
            if e.is_dir(follow_symlinks=False):
                dirs.append(Path(e.path))
            elif e.is_file(follow_symlinks=False):
                files.append(Path(e.path))

        # Push dirs to stack (reversed so we process A before Z)
        for d in reversed(dirs):
            stack.append(d)

        for f in files:
            yield f


class DiskScanner:
    """
    Producer side of the pipeline.

    Walks the source tree on the calling thread and feeds a bounded path
    queue. A fixed pool of workers classifies files, reads metadata and
    hashes content; results are then admitted in traversal order (duplicate
    check and strategy) and put on the output queue.
    """

    def __init__(self,
                 cfg: OrganizerConfig,
                 duplicates: DuplicateResolver,
                 resolver: DestinationResolver,
                 metadata: MetadataReader,
                 geo: Optional[GeoResolver] = None,
                 sink: Optional[EventSink] = None,
                 stats: Optional[RunStats] = None,
                 on_progress: Optional[Callable[[int], None]] = None):
        self.cfg = cfg
        self.duplicates = duplicates
        self.resolver = resolver
        self.metadata = metadata
        self.geo = geo
        self.sink = sink or EventSink()
        self.stats = stats or RunStats()
        self.on_progress = on_progress

    def skip_dirs(self) -> set:
        skip = set()
        dest = self.cfg.destination
        if dest == self.cfg.source or self.cfg.source in dest.parents:
            skip.add(dest)
        return skip

    def iter_candidates(self) -> Iterator[Path]:
        reserved = self.cfg.reserved_paths
        for path in iter_files(self.cfg.source, self.skip_dirs()):
            if path not in reserved:
                yield path

    def count_candidates(self) -> int:
        """Files that will reach the output queue if nothing is a duplicate (progress total)."""
        count = 0
        for path in self.iter_candidates():
            category = self._classify(path)
            if category in (FileCategory.IMAGE, FileCategory.VIDEO):
                count += 1
            elif category is FileCategory.UNKNOWN and self.cfg.move_unknown:
                count += 1
        return count

    def scan(self, out_queue: "queue.Queue", workers: Optional[int] = None) -> None:
        """
        Runs the walk to completion, then closes out_queue.
        The close happens strictly after every worker has exited.

        Workers inspect files in parallel; duplicate decisions are made in
        traversal order, so which copy counts as the original does not
        depend on thread scheduling.
        """
        workers = workers or self.cfg.scan_workers
        paths: "queue.Queue" = queue.Queue(maxsize=config.QUEUE_SIZE)
        ordered = _InOrder(lambda item: self._admit_in_order(item, out_queue))

        logging.info(f"Scanning {self.cfg.source} with {workers} workers...")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as pool:
                futures = [pool.submit(self._worker, paths, ordered) for _ in range(workers)]
                try:
                    for seq, path in enumerate(self.iter_candidates()):
                        paths.put((seq, path))
                finally:
                    paths.put(END_OF_QUEUE)
            # Leaving the with-block joined the pool; surface anything unexpected
            for future in futures:
                future.result()
        finally:
            out_queue.put(END_OF_QUEUE)

    def _worker(self, paths: "queue.Queue", ordered: "_InOrder") -> None:
        while True:
            item = paths.get()
            if item is END_OF_QUEUE:
                paths.put(END_OF_QUEUE)
                return
            seq, path = item
            record = None
            try:
                record = self.inspect(path)
            except Exception as e:
                self._fail(path, e)
            finally:
                ordered.complete(seq, record)

    def _admit_in_order(self, record: Optional[FileRecord], out_queue: "queue.Queue") -> None:
        if record is None:
            return
        try:
            admitted = self.admit(record)
        except Exception as e:
            self._fail(record.path, e)
            return
        if admitted is not None:
            out_queue.put(admitted)

    def _fail(self, path: Path, exc: Exception) -> None:
        self.stats.increment("failed")
        self.sink.error(path, exc)
        self._advance()

    def _advance(self) -> None:
        # A counted file left the pipeline before reaching the mover
        if self.on_progress:
            self.on_progress(1)

    # --- Per-file Work ---

    def process_file(self, path: Path) -> Optional[FileRecord]:
        """
        Builds the record for one file, or returns None when the file leaves
        the pipeline here (excluded, unknown without move_unknown, skipped or
        deleted duplicate).
        """
        record = self.inspect(path)
        if record is None:
            return None
        return self.admit(record)

    def inspect(self, path: Path) -> Optional[FileRecord]:
        """Classification, metadata and content hash. No shared state is changed."""
        category = self._classify(path)
        if category in (FileCategory.EXCLUDED, FileCategory.FOLDER):
            return None
        if category is FileCategory.UNKNOWN and not self.cfg.move_unknown:
            self.stats.increment("scanned")
            return None

        stat_result = path.stat()
        self.stats.increment("scanned")

        if category is FileCategory.UNKNOWN:
            return FileRecord(
                path=path,
                category=category,
                created_at=datetime.fromtimestamp(stat_result.st_mtime),
                has_reliable_timestamp=False,
                size_bytes=stat_result.st_size,
            )

        if self.cfg.geo_mode:
            # The date plays no part in geo placement
            created_at, reliable = datetime.fromtimestamp(stat_result.st_mtime), False
            country = self._country(path)
        else:
            created_at, reliable = self._creation_time(path, stat_result.st_mtime)
            country = ""

        return FileRecord(
            path=path,
            category=category,
            created_at=created_at,
            has_reliable_timestamp=reliable,
            country=country,
            size_bytes=stat_result.st_size,
            content_hash=self.duplicates.hash_cache.get_or_compute(path),
        )

    def admit(self, record: FileRecord) -> Optional[FileRecord]:
        """Registers the record's content or applies the duplicate strategy."""
        if record.content_hash is None:
            return record
        original = self.duplicates.register(
            record.content_hash, self.resolver.canonical_path(record), pending=True
        )
        if original is None:
            return record
        return self._handle_duplicate(record, original)

    def _handle_duplicate(self, record: FileRecord, original: Path) -> Optional[FileRecord]:
        strategy = self.cfg.duplicate_strategy

        if strategy is DuplicateStrategy.SKIP:
            logging.info(f"Skipped (duplicate) {record.path} (same content as {original})")
            self.stats.increment("duplicates_skipped")
            self._advance()
            return None

        if strategy is DuplicateStrategy.DELETE:
            try:
                os.remove(record.path)
            except OSError as e:
                raise FileOperationError(f"Failed to delete duplicate file {record.path}: {e}", src=record.path) from e
            self.duplicates.hash_cache.discard(record.path)
            logging.info(f"Deleted (duplicate) {record.path} (same content as {original})")
            self.stats.increment("duplicates_deleted")
            self._advance()
            return None

        return replace(record, is_duplicate=True, duplicate_of=original)

    def _classify(self, path: Path) -> FileCategory:
        return classify(
            path,
            organize_photos=self.cfg.organize_photos,
            organize_videos=self.cfg.organize_videos,
            allowed_exts=self.cfg.extensions,
        )

    def _creation_time(self, path: Path, mtime: float) -> Tuple[datetime, bool]:
        """Metadata time if present, otherwise the filesystem mtime. Never raises for missing data."""
        try:
            dt = self.metadata.read_creation_time(path)
        except Exception as e:
            logging.debug(f"Creation time lookup failed for {path}: {e}")
            dt = None
        if dt is not None:
            return dt, True
        return datetime.fromtimestamp(mtime), False

    def _country(self, path: Path) -> str:
        try:
            coords = self.metadata.read_coordinates(path)
        except Exception as e:
            logging.debug(f"Coordinate lookup failed for {path}: {e}")
            coords = None

        if coords is None:
            self.sink.warning(f"no location metadata for file: {path}", path)
            return ""

        lat, lon = coords
        country = self.geo.country_for(lat, lon) if self.geo else ""
        if not country:
            self.sink.warning(f"no country found for file: {path} ({lat:.5f}, {lon:.5f})", path)
        return country


class _InOrder:
    """
    Reorder buffer: results completed in any order are released in
    sequence order. Every sequence number must be completed exactly once,
    with None for files that produced nothing.
    """

    def __init__(self, release: Callable[[Optional[FileRecord]], None]):
        self._release = release
        self._ready: Dict[int, Optional[FileRecord]] = {}
        self._next = 0
        self._lock = threading.Lock()

    def complete(self, seq: int, item: Optional[FileRecord]) -> None:
        with self._lock:
            self._ready[seq] = item
            while self._next in self._ready:
                self._release(self._ready.pop(self._next))
                self._next += 1
