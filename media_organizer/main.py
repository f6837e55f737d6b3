import argparse
import logging
import sys
from pathlib import Path

from . import config
from .config import OrganizerConfig, default_workers, parse_extension_list
from .core import MediaOrganizerApp
from .exceptions import ConfigurationError, GeoDataError
from .geo.resolver import load_country_features
from .models import DuplicateStrategy, MonthFormat
from .reporting import log_summary


def setup_logging(log_file: Path, verbose: bool):
    """Sets up logging to both console and a file in the destination."""
    log_level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ],
        force=True,
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Media Organizer: sort photos and videos by date or location")

    p.add_argument("src", type=Path, help="Source directory to scan")
    p.add_argument("dest", type=Path, help="Destination library root (must exist)")

    p.add_argument("--duplicate", default=DuplicateStrategy.MOVE.value,
                   choices=[s.value for s in DuplicateStrategy],
                   help="Duplicate handling (default: move)")
    p.add_argument("--unknown", action=argparse.BooleanOptionalAction, default=True,
                   help="Move files without usable metadata to the 'unknown' folder")
    p.add_argument("--location", action="store_true", help="Organize by country instead of date")
    p.add_argument("--countries", type=Path, default=None,
                   help="GeoJSON file with country polygons (required with --location)")
    p.add_argument("--types", default=None,
                   help="Comma separated file extensions to organize (e.g. .jpg,.png,.mp4)")
    p.add_argument("--no-photo", action="store_true", help="Do not organize photos")
    p.add_argument("--no-video", action="store_true", help="Do not organize videos")
    p.add_argument("--format", default=MonthFormat.WORD.value, choices=[m.value for m in MonthFormat],
                   help="Month folder naming: word (June), number (06), combined (06_June)")
    p.add_argument("--cache", type=Path, default=None,
                   help=f"Hash cache file (default: dest/{config.DEFAULT_CACHE_FILENAME})")
    p.add_argument("--workers", type=int, default=default_workers(),
                   help="Worker threads per pipeline stage (default: half the CPUs)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--version", action="version", version=f"%(prog)s {config.VERSION}")

    return p.parse_args(argv)


def build_config(args) -> OrganizerConfig:
    """Turns CLI arguments into a validated OrganizerConfig. Raises ConfigurationError."""
    cfg = OrganizerConfig(
        source=args.src,
        destination=args.dest,
        organize_photos=not args.no_photo,
        organize_videos=not args.no_video,
        extensions=parse_extension_list(args.types) if args.types else None,
        month_format=MonthFormat.parse(args.format),
        geo_mode=args.location,
        duplicate_strategy=DuplicateStrategy.parse(args.duplicate),
        move_unknown=args.unknown,
        cache_path=args.cache,
        log_path=Path(args.dest).resolve() / config.DEFAULT_LOG_FILENAME,
        scan_workers=args.workers,
        move_workers=args.workers,
        show_progress=True,
    )
    cfg.validate()
    if cfg.geo_mode and args.countries is None:
        raise ConfigurationError("--location requires --countries <GeoJSON file>")
    return cfg


def main(argv=None):
    args = parse_args(argv)

    try:
        cfg = build_config(args)
    except ConfigurationError as e:
        # Destination may not exist yet, so console only
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
        logging.error(str(e))
        sys.exit(1)

    setup_logging(cfg.log_path, args.verbose)

    logging.info("=== Media Organizer Started ===")
    logging.info(f"Source: {cfg.source}")
    logging.info(f"Dest:   {cfg.destination}")

    try:
        countries = load_country_features(args.countries) if cfg.geo_mode else None
    except GeoDataError as e:
        logging.error(str(e))
        sys.exit(1)

    app = MediaOrganizerApp(cfg, countries=countries)

    try:
        stats = app.organize()
    except ConfigurationError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        sys.exit(1)
    except Exception:
        logging.exception("Fatal error during organization.")
        sys.exit(1)

    log_summary(stats)


if __name__ == "__main__":
    main()
