import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from tqdm import tqdm

from . import config
from .config import OrganizerConfig
from .exceptions import ConfigurationError
from .geo.resolver import GeoResolver
from .metadata.extract import MetadataExtractor, MetadataReader
from .models import CountryFeature
from .organization.duplicates import DuplicateResolver
from .organization.mover import FileMover
from .organization.rules import DestinationResolver
from .reporting import EventSink, RunStats
from .scanning.filesystem import DiskScanner, iter_files
from .scanning.hash_cache import HashCache
from .scanning.hasher import FileHasher


class MediaOrganizerApp:
    def __init__(self,
                 cfg: OrganizerConfig,
                 metadata: Optional[MetadataReader] = None,
                 countries: Optional[Iterable[CountryFeature]] = None,
                 hasher: Optional[FileHasher] = None):
        self.cfg = cfg
        self.metadata = metadata or MetadataExtractor()
        self.countries = tuple(countries) if countries is not None else ()
        self.hasher = hasher

    def organize(self) -> RunStats:
        """
        Executes one organization run.
        1. Validate configuration (fatal errors raise before anything moves)
        2. Load hash cache & index the destination
        3. Scan (producer pool) -> bounded queue -> Move (consumer pool)
        4. Save hash cache
        """
        started = time.perf_counter()
        cfg = self.cfg
        cfg.validate()
        if cfg.geo_mode and not self.countries:
            raise ConfigurationError("Geo-location mode needs a loaded country polygon set")

        stats = RunStats()
        geo = GeoResolver(self.countries) if cfg.geo_mode else None
        cache = HashCache.load(cfg.cache_path, self.hasher)
        duplicates = DuplicateResolver(cache)
        resolver = DestinationResolver(cfg.destination, geo_mode=cfg.geo_mode, month_format=cfg.month_format)

        with EventSink() as sink:
            scanner = DiskScanner(cfg, duplicates, resolver, self.metadata, geo=geo, sink=sink, stats=stats)

            logging.info("Counting files in path.")
            total = scanner.count_candidates()
            if total == 0:
                logging.info("No files in path, exiting.")
                stats.elapsed_sec = time.perf_counter() - started
                return stats
            logging.info(f"{total} files to be processed.")

            # --- Step 1: Destination index ---
            index_started = time.perf_counter()
            indexed = duplicates.build_index(
                cfg.destination,
                iter_files,
                skip=cfg.reserved_paths,
                max_workers=cfg.index_workers,
                on_error=sink.error,
                show_progress=cfg.show_progress,
            )
            logging.info(f"File hash-map of {indexed} files created in {time.perf_counter() - index_started:.2f} seconds.")

            # --- Step 2: Pipeline ---
            with tqdm(total=total, desc="Organizing", disable=not cfg.show_progress) as bar:
                progress = _locked(bar.update)
                # Files dropped by the scanner (skipped, deleted, failed) advance the bar too
                scanner.on_progress = progress
                mover = FileMover(resolver, cache, sink=sink, stats=stats, on_progress=progress, duplicates=duplicates)
                self._run_pipeline(scanner, mover)

        stats.errors = sink.error_count
        stats.warnings = sink.warning_count

        # --- Step 3: Persist cache (pipeline has joined; safe to iterate) ---
        pruned = cache.prune()
        if pruned:
            logging.debug(f"Pruned {pruned} hash cache entries for vanished files.")
        try:
            cache.save()
            logging.info("Hash cache saved successfully.")
        except OSError as e:
            logging.warning(f"Failed to save hash cache: {e}")

        stats.elapsed_sec = time.perf_counter() - started
        return stats

    def _run_pipeline(self, scanner: DiskScanner, mover: FileMover) -> None:
        records: "queue.Queue" = queue.Queue(maxsize=config.QUEUE_SIZE)
        done = threading.Event()

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="pipeline") as pool:
            producer = pool.submit(scanner.scan, records, self.cfg.scan_workers)
            consumer = pool.submit(mover.consume, records, self.cfg.move_workers, done)
            done.wait()
            # Re-raise anything fatal from either side
            producer.result()
            consumer.result()


def _locked(fn: Callable[[int], object]) -> Callable[[int], None]:
    lock = threading.Lock()

    def call(n: int) -> None:
        with lock:
            fn(n)
    return call
