import logging
import os
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from .. import config
from ..exceptions import DestinationResolutionError, FileOperationError
from ..models import FileCategory, FileRecord
from ..reporting import EventSink, RunStats
from ..scanning.filesystem import END_OF_QUEUE
from ..scanning.hash_cache import HashCache
from .duplicates import DuplicateResolver
from .rules import DestinationResolver


class FileMover:
    """
    Consumer side of the pipeline: drains the record queue with a fixed pool,
    resolves a free destination and renames the file into place.
    """

    def __init__(self,
                 resolver: DestinationResolver,
                 hash_cache: Optional[HashCache] = None,
                 sink: Optional[EventSink] = None,
                 stats: Optional[RunStats] = None,
                 on_progress: Optional[Callable[[int], None]] = None,
                 max_retries: int = config.MAX_PLACEMENT_RETRIES,
                 duplicates: Optional[DuplicateResolver] = None):
        self.resolver = resolver
        self.hash_cache = hash_cache
        self.sink = sink or EventSink()
        self.stats = stats or RunStats()
        self.on_progress = on_progress
        self.max_retries = max_retries
        self.duplicates = duplicates

    def consume(self, records: "queue.Queue", workers: int, done: Optional[threading.Event] = None) -> None:
        """Blocks until the queue is closed and every worker has drained it, then sets `done`."""
        def worker():
            while True:
                record = records.get()
                if record is END_OF_QUEUE:
                    records.put(END_OF_QUEUE)
                    return
                self._process(record)

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="move") as pool:
                futures = [pool.submit(worker) for _ in range(workers)]
            for future in futures:
                future.result()
        finally:
            if done is not None:
                done.set()

    def _process(self, record: FileRecord) -> None:
        dest = None
        try:
            if record.is_duplicate:
                record = self._with_final_anchor(record)
            dest = self.place(record)
        except Exception as e:
            self.stats.increment("failed")
            self.sink.error(record.path, e)
        else:
            if record.is_duplicate:
                self.stats.increment("duplicates_moved")
            elif record.category is FileCategory.UNKNOWN:
                self.stats.increment("unknown_moved")
            else:
                self.stats.increment("moved")
            if self.hash_cache is not None:
                self.hash_cache.relocate(record.path, dest)
        finally:
            # Duplicates of this content may be waiting for where it landed
            if self.duplicates is not None and record.content_hash and not record.is_duplicate:
                self.duplicates.settle(record.content_hash, dest)
            if self.on_progress:
                self.on_progress(1)

    def _with_final_anchor(self, record: FileRecord) -> FileRecord:
        if self.duplicates is None or not record.content_hash:
            return record
        anchor = self.duplicates.final_anchor(record.content_hash)
        if anchor is None or anchor == record.duplicate_of:
            return record
        return replace(record, duplicate_of=anchor)

    def place(self, record: FileRecord) -> Path:
        """
        Resolves a free slot and moves the record there.

        Resolving and renaming are not atomic. On POSIX os.rename silently
        replaces a file that appeared at the slot in between, so that race is
        not detected here; only a platform that refuses to overwrite
        (FileExistsError) triggers a fresh resolve, bounded by max_retries.
        """
        for _ in range(self.max_retries):
            dest = self.resolver.resolve(record)
            try:
                self.move(record, dest)
            except FileOperationError as e:
                if isinstance(e.__cause__, FileExistsError):
                    logging.debug(f"Slot {dest} was taken before the move, resolving again")
                    continue
                raise
            return dest

        raise DestinationResolutionError(
            f"Destination for {record.path} kept being taken by concurrent moves",
            src=record.path,
            dest=self.resolver.target_path(record),
        )

    def move(self, record: FileRecord, dest: Path) -> None:
        """
        Ensures the parent directory exists, then renames source -> dest.
        Failures raise FileOperationError carrying both paths; no retry.
        """
        src = record.path
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.rename(src, dest)
        except OSError as e:
            raise FileOperationError(f"Failed to move {src} to {dest}: {e}", src=src, dest=dest) from e

        action = "Moved (duplicate)" if record.is_duplicate else "Moved (original)"
        size_mb = record.size_bytes / 1024.0 / 1024.0
        logging.debug(f"[{size_mb:.2f}Mb] {action} {src.name}\n └─ from {src.parent}\n └─── to {dest.parent}")
