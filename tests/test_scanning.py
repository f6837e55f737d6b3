import logging
import queue
import time
import pytest
from pathlib import Path
from datetime import datetime

from media_organizer.config import OrganizerConfig
from media_organizer.geo.resolver import GeoResolver
from media_organizer.models import CountryFeature, DuplicateStrategy, FileCategory
from media_organizer.organization.duplicates import DuplicateResolver
from media_organizer.organization.rules import DestinationResolver
from media_organizer.reporting import EventSink, RunStats
from media_organizer.scanning.classifier import classify
from media_organizer.scanning.filesystem import END_OF_QUEUE, DiskScanner, iter_files
from media_organizer.scanning.hash_cache import HashCache
from media_organizer.scanning.hasher import FileHasher

from conftest import FakeMetadata, write_file


def make_scanner(cfg, metadata, geo=None, sink=None, cache=None):
    duplicates = DuplicateResolver(cache if cache is not None else HashCache())
    resolver = DestinationResolver(cfg.destination, geo_mode=cfg.geo_mode, month_format=cfg.month_format)
    return DiskScanner(cfg, duplicates, resolver, metadata, geo=geo, sink=sink or EventSink(), stats=RunStats())


@pytest.mark.parametrize("name, expected", [
    ("a.JPG", FileCategory.IMAGE),
    ("b.cr2", FileCategory.IMAGE),
    ("c.heic", FileCategory.IMAGE),
    ("d.MOV", FileCategory.VIDEO),
    ("e.mkv", FileCategory.VIDEO),
    ("notes.txt", FileCategory.UNKNOWN),
    ("no_extension", FileCategory.UNKNOWN),
])
def test_classify_extension(name, expected):
    assert classify(Path(name)) is expected


def test_classify_switches_and_allow_list():
    assert classify(Path("a.jpg"), organize_photos=False) is FileCategory.UNKNOWN
    assert classify(Path("a.mp4"), organize_videos=False) is FileCategory.UNKNOWN
    assert classify(Path("a.mp4"), allowed_exts={".jpg"}) is FileCategory.EXCLUDED
    assert classify(Path("a.txt"), allowed_exts={".jpg"}) is FileCategory.EXCLUDED
    assert classify(Path("a.jpg"), allowed_exts={".jpg"}) is FileCategory.IMAGE
    assert classify(Path("photos"), is_dir=True) is FileCategory.FOLDER


def test_iter_files_orders_and_skips(tmp_path):
    root = tmp_path
    skip_dir = root / "skip"
    write_file(skip_dir / "skip.jpg", b"skip")
    write_file(root / "b" / "inner.jpg", b"inner")
    write_file(root / "a" / "z.jpg", b"z")
    write_file(root / "c.jpg", b"c")
    write_file(root / "A.jpg", b"A")

    files = list(iter_files(root, skip_dirs={skip_dir}))
    rel = [str(p.relative_to(root)) for p in files]

    assert "skip/skip.jpg" not in rel
    # Files of a directory come before its subdirectories; siblings in name order
    assert rel == ["A.jpg", "c.jpg", "a/z.jpg", "b/inner.jpg"]


def test_process_file_uses_metadata_time(make_config, src):
    dt = datetime(2020, 1, 2, 3, 4, 5)
    path = write_file(src / "img.dng", b"rawdata")

    scanner = make_scanner(make_config(), FakeMetadata(times={"img.dng": dt}))
    record = scanner.process_file(path)

    assert record.category is FileCategory.IMAGE
    assert record.created_at == dt
    assert record.has_reliable_timestamp
    assert record.size_bytes == len(b"rawdata")
    assert not record.is_duplicate
    assert scanner.stats.scanned == 1


def test_process_file_falls_back_to_mtime(make_config, src):
    mtime = datetime(2018, 3, 4, 5, 6, 7)
    path = write_file(src / "clip.mp4", b"video", mtime=mtime)

    record = make_scanner(make_config(), FakeMetadata()).process_file(path)

    assert record.category is FileCategory.VIDEO
    assert record.created_at == mtime
    assert not record.has_reliable_timestamp


def test_process_file_survives_metadata_errors(make_config, src):
    class Exploding(FakeMetadata):
        def read_creation_time(self, path):
            raise RuntimeError("corrupt header")

    mtime = datetime(2017, 1, 1, 0, 0, 0)
    path = write_file(src / "bad.jpg", b"x", mtime=mtime)
    record = make_scanner(make_config(), Exploding()).process_file(path)
    assert record.created_at == mtime


def test_unknown_files_follow_move_unknown(make_config, src):
    path = write_file(src / "notes.txt", b"text")

    kept = make_scanner(make_config(move_unknown=True), FakeMetadata()).process_file(path)
    assert kept.category is FileCategory.UNKNOWN

    dropped = make_scanner(make_config(move_unknown=False), FakeMetadata()).process_file(path)
    assert dropped is None


def test_excluded_files_are_not_counted(make_config, src):
    path = write_file(src / "clip.mp4", b"video")
    scanner = make_scanner(make_config(extensions=".jpg"), FakeMetadata())

    assert scanner.process_file(path) is None
    assert scanner.stats.scanned == 0


def test_second_copy_is_marked_duplicate(make_config, src, dest):
    dt = datetime(2023, 6, 1, 10, 0, 0)
    a = write_file(src / "a.jpg", b"same bytes")
    b = write_file(src / "b.jpg", b"same bytes")
    scanner = make_scanner(make_config(), FakeMetadata(times={"a.jpg": dt, "b.jpg": dt}))

    first = scanner.process_file(a)
    second = scanner.process_file(b)

    assert not first.is_duplicate
    assert second.is_duplicate
    assert second.duplicate_of == dest / "2023" / "June" / "images" / "a.jpg"


def test_skip_strategy_leaves_duplicate_in_place(make_config, src):
    a = write_file(src / "a.jpg", b"same bytes")
    b = write_file(src / "b.jpg", b"same bytes")
    scanner = make_scanner(make_config(duplicate_strategy=DuplicateStrategy.SKIP), FakeMetadata())

    assert scanner.process_file(a) is not None
    assert scanner.process_file(b) is None
    assert b.exists()
    assert scanner.stats.duplicates_skipped == 1


def test_delete_strategy_removes_duplicate(make_config, src):
    a = write_file(src / "a.jpg", b"same bytes")
    b = write_file(src / "b.jpg", b"same bytes")
    scanner = make_scanner(make_config(duplicate_strategy="delete"), FakeMetadata())

    scanner.process_file(a)
    assert scanner.process_file(b) is None
    assert not b.exists()
    assert scanner.stats.duplicates_deleted == 1
    assert scanner.duplicates.hash_cache.get(b) is None


def test_geo_mode_sets_country(make_config, src):
    land = CountryFeature("Squareland", ((((0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0), (0.0, 0.0)),),))
    path = write_file(src / "trip.jpg", b"trip")
    scanner = make_scanner(
        make_config(geo_mode=True),
        FakeMetadata(coords={"trip.jpg": (5.0, 5.0)}),
        geo=GeoResolver([land]),
    )

    assert scanner.process_file(path).country == "Squareland"
    assert scanner.sink.warning_count == 0


def test_geo_mode_skips_creation_time_lookup(make_config, src):
    class Counting(FakeMetadata):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.time_reads = 0

        def read_creation_time(self, path):
            self.time_reads += 1
            return super().read_creation_time(path)

    mtime = datetime(2019, 5, 6, 7, 8, 9)
    path = write_file(src / "trip.mp4", b"trip", mtime=mtime)
    metadata = Counting(times={"trip.mp4": datetime(2023, 6, 1)}, coords={"trip.mp4": (5.0, 5.0)})
    scanner = make_scanner(make_config(geo_mode=True), metadata, geo=GeoResolver([]))

    record = scanner.process_file(path)

    assert metadata.time_reads == 0
    assert record.created_at == mtime
    assert not record.has_reliable_timestamp


def test_geo_mode_warns_without_location(make_config, src, caplog):
    path = write_file(src / "indoor.jpg", b"indoor")
    scanner = make_scanner(make_config(geo_mode=True), FakeMetadata(), geo=GeoResolver([]))

    with caplog.at_level(logging.WARNING):
        record = scanner.process_file(path)

    assert record.country == ""
    assert scanner.sink.warning_count == 1
    assert "no location metadata for file" in caplog.text


def test_geo_mode_warns_when_no_country_matches(make_config, src, caplog):
    path = write_file(src / "sea.jpg", b"sea")
    scanner = make_scanner(
        make_config(geo_mode=True),
        FakeMetadata(coords={"sea.jpg": (-40.0, -30.0)}),
        geo=GeoResolver([]),
    )

    with caplog.at_level(logging.WARNING):
        record = scanner.process_file(path)

    assert record.country == ""
    assert "no country found for file" in caplog.text


def test_scan_feeds_queue_and_closes_it(make_config, src):
    for name in ("a.jpg", "b.mp4", "c.txt", "d.png"):
        write_file(src / name, name.encode())
    scanner = make_scanner(make_config(move_unknown=False), FakeMetadata())

    out = queue.Queue()
    scanner.scan(out, workers=3)

    items = []
    while True:
        item = out.get_nowait()
        if item is END_OF_QUEUE:
            break
        items.append(item)

    assert sorted(r.path.name for r in items) == ["a.jpg", "b.mp4", "d.png"]
    assert out.empty()
    assert scanner.count_candidates() == 3


def test_scan_reports_per_file_failures(make_config, src, monkeypatch):
    write_file(src / "a.jpg", b"a")
    write_file(src / "b.jpg", b"b")
    scanner = make_scanner(make_config(), FakeMetadata())
    progress = []
    scanner.on_progress = progress.append

    cache = scanner.duplicates.hash_cache
    real = cache.get_or_compute

    def flaky(path):
        if path.name == "a.jpg":
            raise OSError("read error")
        return real(path)

    monkeypatch.setattr(cache, "get_or_compute", flaky)

    out = queue.Queue()
    scanner.scan(out, workers=1)

    assert out.get_nowait().path.name == "b.jpg"
    assert out.get_nowait() is END_OF_QUEUE
    assert scanner.stats.failed == 1
    assert scanner.sink.error_count == 1
    # The failed file never reaches the mover, so the scanner accounts for it
    assert progress == [1]


def test_scan_picks_originals_in_traversal_order(make_config, src):
    class SlowFirst(FileHasher):
        def hash_file(self, path):
            if Path(path).name == "a.jpg":
                time.sleep(0.2)
            return super().hash_file(path)

    for name in ("a.jpg", "b.jpg", "c.jpg", "d.jpg"):
        write_file(src / name, b"same bytes")
    write_file(src / "e.jpg", b"other bytes")
    dt = datetime(2023, 6, 1, 10, 0, 0)
    cfg = make_config()
    scanner = make_scanner(cfg, FakeMetadata(times={"a.jpg": dt}), cache=HashCache(hasher=SlowFirst()))

    out = queue.Queue()
    scanner.scan(out, workers=4)

    items = []
    while True:
        item = out.get_nowait()
        if item is END_OF_QUEUE:
            break
        items.append(item)

    # a.jpg finishes hashing last but still comes first
    assert [r.path.name for r in items] == ["a.jpg", "b.jpg", "c.jpg", "d.jpg", "e.jpg"]
    assert [r.is_duplicate for r in items] == [False, True, True, True, False]
    anchor = cfg.destination / "2023" / "June" / "images" / "a.jpg"
    assert all(r.duplicate_of == anchor for r in items[1:4])


@pytest.mark.parametrize("strategy", [DuplicateStrategy.SKIP, DuplicateStrategy.DELETE])
def test_dropped_duplicates_advance_progress(make_config, src, strategy):
    a = write_file(src / "a.jpg", b"same bytes")
    b = write_file(src / "b.jpg", b"same bytes")
    scanner = make_scanner(make_config(duplicate_strategy=strategy), FakeMetadata())
    progress = []
    scanner.on_progress = progress.append

    assert scanner.process_file(a) is not None
    assert progress == []
    assert scanner.process_file(b) is None
    assert progress == [1]


def test_unknown_files_without_move_unknown_are_not_opened(make_config, src):
    path = src / "vanished.txt"
    scanner = make_scanner(make_config(move_unknown=False), FakeMetadata())

    # Never stat()ed, so a file that disappears cannot fail the run
    assert scanner.process_file(path) is None
    assert scanner.stats.scanned == 1
    assert scanner.stats.failed == 0


def test_destination_inside_source_is_skipped(tmp_path, src):
    inner_dest = src / "library"
    write_file(inner_dest / "already.jpg", b"old")
    write_file(src / "new.jpg", b"new")
    cfg = OrganizerConfig(source=src, destination=inner_dest, cache_path=tmp_path / "c.json")

    scanner = make_scanner(cfg, FakeMetadata())
    assert [p.name for p in scanner.iter_candidates()] == ["new.jpg"]
