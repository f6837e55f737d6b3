import json
import logging
import re
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import exifread
from PIL import Image
from pymediainfo import MediaInfo

from .. import config
from ..exceptions import MetadataExtractionError

Coordinates = Tuple[float, float]  # (lat, lon)

# ISO 6709 as written by phones into QuickTime/MP4 ("+37.7858-122.4064+012.000/")
ISO6709_PATTERN = re.compile(r'([+-]\d+(?:\.\d+)?)([+-]\d+(?:\.\d+)?)')


class MetadataReader(Protocol):
    """What the scanner needs from a metadata backend. Missing data is None, never an error."""

    def read_creation_time(self, path: Path) -> Optional[datetime]:
        ...

    def read_coordinates(self, path: Path) -> Optional[Coordinates]:
        ...


class MetadataExtractor:
    """
    Unified interface for extracting capture time and location.

    Strategies:
      - Images: 'exifread' (fast, Python-native) -> falls back to Pillow (PNG/WebP/HEIF containers).
      - Video: 'pymediainfo' (fast wrapper) -> falls back to 'exiftool' (robust).
    """

    def read_creation_time(self, path: Path) -> Optional[datetime]:
        if path.suffix.lower() in config.VIDEO_EXTS:
            return self._video_metadata(path)[0]

        dt = self._parse_exif_date(self._exifread_tags(path))
        if dt is None:
            dt = self._pillow_date(path)
        return dt

    def read_coordinates(self, path: Path) -> Optional[Coordinates]:
        if path.suffix.lower() in config.VIDEO_EXTS:
            return self._video_metadata(path)[1]

        coords = self._parse_exif_gps(self._exifread_tags(path))
        if coords is None:
            coords = self._pillow_gps(path)
        return coords

    # --- Images ---

    def _exifread_tags(self, path: Path) -> Dict[str, Any]:
        try:
            with path.open('rb') as f:
                # details=False speeds up processing significantly
                return exifread.process_file(f, details=False)
        except Exception as e:
            logging.warning(f"ExifRead failed for {path}: {e}")
            return {}

    def _parse_exif_date(self, tags) -> Optional[datetime]:
        """Helper to parse standard EXIF date strings from exifread."""
        for tag in config.DATE_TAGS:
            if tag in tags:
                dt = self._parse_flexible_date(str(tags[tag]))
                if dt:
                    return dt
        return None

    def _parse_exif_gps(self, tags) -> Optional[Coordinates]:
        lat = tags.get('GPS GPSLatitude')
        lat_ref = tags.get('GPS GPSLatitudeRef')
        lon = tags.get('GPS GPSLongitude')
        lon_ref = tags.get('GPS GPSLongitudeRef')
        if not (lat and lon):
            return None

        try:
            latitude = self._dms_to_degrees(lat.values)
            longitude = self._dms_to_degrees(lon.values)
        except (TypeError, ValueError, ZeroDivisionError) as e:
            logging.debug(f"Unparseable GPS values: {e}")
            return None

        if lat_ref and str(lat_ref).strip().upper().startswith('S'):
            latitude = -latitude
        if lon_ref and str(lon_ref).strip().upper().startswith('W'):
            longitude = -longitude
        return self._validated(latitude, longitude)

    def _pillow_date(self, path: Path) -> Optional[datetime]:
        try:
            with Image.open(path) as img:
                exif = img.getexif()
                for ifd, tag in config.PIL_DATE_TAGS:
                    source = exif.get_ifd(ifd) if ifd is not None else exif
                    value = source.get(tag)
                    if value:
                        dt = self._parse_flexible_date(str(value))
                        if dt:
                            return dt
        except Exception as e:
            logging.debug(f"Pillow EXIF read failed for {path}: {e}")
        return None

    def _pillow_gps(self, path: Path) -> Optional[Coordinates]:
        try:
            with Image.open(path) as img:
                gps = img.getexif().get_ifd(config.PIL_GPS_IFD)
        except Exception as e:
            logging.debug(f"Pillow GPS read failed for {path}: {e}")
            return None

        # 1: LatitudeRef, 2: Latitude, 3: LongitudeRef, 4: Longitude
        if not gps or 2 not in gps or 4 not in gps:
            return None
        try:
            latitude = self._dms_to_degrees(gps[2])
            longitude = self._dms_to_degrees(gps[4])
        except (TypeError, ValueError, ZeroDivisionError):
            return None
        if str(gps.get(1, 'N')).upper().startswith('S'):
            latitude = -latitude
        if str(gps.get(3, 'E')).upper().startswith('W'):
            longitude = -longitude
        return self._validated(latitude, longitude)

    # --- Video ---

    def _video_metadata(self, path: Path) -> Tuple[Optional[datetime], Optional[Coordinates]]:
        # Strategy 1: Try MediaInfo (Fastest, usually sufficient)
        try:
            mi_data = self._extract_mediainfo(path)
            if mi_data['dt'] or mi_data['coords']:
                return mi_data['dt'], mi_data['coords']
        except Exception as e:
            logging.debug(f"MediaInfo failed for {path}: {e}")

        # Strategy 2: Try ExifTool (Robust fallback, requires system install)
        try:
            et_data = self._extract_exiftool(path)
            return et_data['dt'], et_data['coords']
        except MetadataExtractionError as e:
            # Only log at debug level to avoid spamming console if tool is missing
            logging.debug(f"ExifTool failed for {path}: {e}")

        return None, None

    def _extract_mediainfo(self, path: Path) -> Dict[str, Any]:
        """Parses video using pymediainfo."""
        mi = MediaInfo.parse(str(path))
        data: Dict[str, Any] = {'dt': None, 'coords': None}

        for track in mi.tracks:
            if track.track_type != "General":
                continue

            for field in config.VIDEO_DATE_FIELDS:
                val = getattr(track, field, None)
                if val:
                    dt = self._parse_flexible_date(str(val))
                    if dt:
                        data['dt'] = dt
                        break

            location = (getattr(track, "xyz", None) or
                        getattr(track, "comapplequicktimelocationiso6709", None))
            if location:
                data['coords'] = self._parse_iso6709(str(location))
        return data

    def _extract_exiftool(self, path: Path) -> Dict[str, Any]:
        """
        Wraps the 'exiftool' command line utility.
        Must be installed and on the system PATH.
        """
        # -j = JSON output
        # -n = No formatting (decimal GPS degrees, clean dates)
        cmd = ["exiftool", "-j", "-n", str(path)]
        try:
            out = subprocess.check_output(cmd, stderr=subprocess.DEVNULL, text=True)
            data_list = json.loads(out)
        except (OSError, subprocess.CalledProcessError, ValueError) as e:
            raise MetadataExtractionError(f"exiftool failed for {path}: {e}") from e

        data: Dict[str, Any] = {'dt': None, 'coords': None}
        if not data_list:
            return data

        tags = data_list[0]
        for field in config.EXIFTOOL_DATE_FIELDS:
            if tags.get(field):
                dt = self._parse_flexible_date(str(tags[field]))
                if dt:
                    data['dt'] = dt
                    break

        if tags.get("GPSLatitude") is not None and tags.get("GPSLongitude") is not None:
            try:
                data['coords'] = self._validated(float(tags["GPSLatitude"]), float(tags["GPSLongitude"]))
            except ValueError:
                pass
        return data

    # --- Parsing Helpers ---

    def _parse_flexible_date(self, dt_str: str) -> Optional[datetime]:
        """
        Handles various date formats (ISO, UTC suffixes, Exiftool quirks).
        Returns a naive datetime object.
        """
        if not dt_str:
            return None

        # Clean up common suffixes/prefixes
        clean = dt_str.replace("UTC", "").strip().rstrip("\x00")
        if not clean or clean.startswith("0000"):
            return None

        # 1. Try ISO format (e.g. 2020-01-01T12:00:00)
        try:
            return datetime.fromisoformat(clean).replace(tzinfo=None)
        except ValueError:
            pass

        # 2. Try Standard EXIF style "YYYY:MM:DD HH:MM:SS"
        try:
            clean_exif = clean.replace(":", "-", 2)
            # Handle potential sub-second precision which strptime hates
            if "." in clean_exif:
                clean_exif = clean_exif.split(".")[0]
            return datetime.strptime(clean_exif[:19], "%Y-%m-%d %H:%M:%S")
        except ValueError:
            pass

        return None

    @staticmethod
    def _dms_to_degrees(values) -> float:
        parts = [float(v) for v in values]
        while len(parts) < 3:
            parts.append(0.0)
        deg, minutes, seconds = parts[:3]
        return deg + minutes / 60.0 + seconds / 3600.0

    def _parse_iso6709(self, value: str) -> Optional[Coordinates]:
        m = ISO6709_PATTERN.match(value.strip())
        if not m:
            return None
        return self._validated(float(m.group(1)), float(m.group(2)))

    @staticmethod
    def _validated(lat: float, lon: float) -> Optional[Coordinates]:
        # (0, 0) is what many cameras write when they had no fix
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0) or (lat == 0.0 and lon == 0.0):
            return None
        return lat, lon
