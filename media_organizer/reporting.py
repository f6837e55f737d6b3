"""
Per-file error/warning reporting and run statistics.
"""
import logging
import queue
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from . import config

_CLOSE = object()


class EventSink:
    """
    Error and warning channel for the pipeline.

    Workers only enqueue; a single thread drains the queue and writes the
    log lines, so a slow log handler never stalls one worker on another's
    failure.

    Usage:
        sink = EventSink()
        sink.start()
        sink.error(path, exc)
        sink.warning("no country found for file: ...")
        sink.close()   # drains and joins
    """

    def __init__(self, maxsize: int = config.SINK_QUEUE_SIZE):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self.error_count = 0
        self.warning_count = 0

    def start(self) -> "EventSink":
        if self._thread is None:
            self._thread = threading.Thread(target=self._drain, name="event-sink", daemon=True)
            self._thread.start()
        return self

    def error(self, path: Optional[Path], exc: Union[BaseException, str]) -> None:
        self._put((logging.ERROR, path, exc))

    def warning(self, message: str, path: Optional[Path] = None) -> None:
        self._put((logging.WARNING, path, message))

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(_CLOSE)
        self._thread.join()
        self._thread = None

    def __enter__(self) -> "EventSink":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _put(self, event: Tuple[int, Optional[Path], Union[BaseException, str]]) -> None:
        if self._thread is None:
            # Not started: log inline rather than block on a queue nobody drains
            self._emit(event)
        else:
            self._queue.put(event)

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            if event is _CLOSE:
                return
            self._emit(event)

    def _emit(self, event) -> None:
        level, path, payload = event
        if level >= logging.ERROR:
            self.error_count += 1
            prefix = f"{path}: " if path is not None and str(path) not in str(payload) else ""
            logging.error(f"{prefix}{payload}")
        else:
            self.warning_count += 1
            logging.warning(str(payload))


@dataclass
class RunStats:
    """Counters shared by scanner and mover workers."""
    scanned: int = 0
    moved: int = 0
    duplicates_moved: int = 0
    duplicates_skipped: int = 0
    duplicates_deleted: int = 0
    unknown_moved: int = 0
    failed: int = 0
    errors: int = 0
    warnings: int = 0
    elapsed_sec: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    @property
    def processed(self) -> int:
        """Files that reached a final state this run (placed, skipped or deleted)."""
        return (self.moved + self.duplicates_moved + self.unknown_moved
                + self.duplicates_skipped + self.duplicates_deleted)

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    if minutes == 1:
        return f"{minutes} minute and {secs} seconds"
    if minutes > 1:
        return f"{minutes} minutes and {secs} seconds"
    return f"{seconds:.2f} seconds"


def log_summary(stats: RunStats) -> None:
    logging.info(f"{stats.processed} files processed.")
    logging.info(
        f"Moved: {stats.moved}, unknown: {stats.unknown_moved}, "
        f"duplicates moved/skipped/deleted: "
        f"{stats.duplicates_moved}/{stats.duplicates_skipped}/{stats.duplicates_deleted}"
    )
    if stats.errors or stats.warnings:
        logging.info(f"Errors: {stats.errors}, warnings: {stats.warnings}")
    logging.info(f"Processing completed in {format_elapsed(stats.elapsed_sec)}.")
