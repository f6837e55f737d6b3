"""
Country lookup by point-in-polygon.

Ray casting uses the half-open crossing rule: an edge is counted when
exactly one of its endpoints lies strictly above the horizontal ray through
the point, and the crossing lies strictly to the right of the point.

Points exactly on an edge or vertex are decided before ray casting by an
explicit boundary test, so the outcome does not depend on which edge the ray
happens to graze: the polygon boundary (outer ring and hole rings alike) is
inclusive. A point on a shared border between two countries resolves to the
feature that comes first in load order.
"""
import json
import logging
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from ..exceptions import GeoDataError
from ..models import CountryFeature, Polygon, Ring

# Tolerance for the collinearity test, in squared degrees.
_EPSILON = 1e-12

BBox = Tuple[float, float, float, float]


def _on_segment(x: float, y: float, x1: float, y1: float, x2: float, y2: float) -> bool:
    cross = (x2 - x1) * (y - y1) - (y2 - y1) * (x - x1)
    if abs(cross) > _EPSILON:
        return False
    return min(x1, x2) <= x <= max(x1, x2) and min(y1, y2) <= y <= max(y1, y2)


def point_in_ring(lon: float, lat: float, ring: Sequence[Tuple[float, float]], include_boundary: bool = True) -> bool:
    n = len(ring)
    if n < 3:
        return False

    for i in range(n):
        x1, y1 = ring[i - 1]
        x2, y2 = ring[i]
        if _on_segment(lon, lat, x1, y1, x2, y2):
            return include_boundary

    inside = False
    j = n - 1
    for i in range(n):
        xi, yi = ring[i]
        xj, yj = ring[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lon < x_cross:
                inside = not inside
        j = i
    return inside


def point_in_polygon(lon: float, lat: float, polygon: Polygon) -> bool:
    """Inside the outer ring and not strictly inside any hole."""
    if not polygon:
        return False
    outer, holes = polygon[0], polygon[1:]
    if not point_in_ring(lon, lat, outer):
        return False
    return not any(point_in_ring(lon, lat, hole, include_boundary=False) for hole in holes)


def _bbox(ring: Ring) -> BBox:
    xs = [p[0] for p in ring]
    ys = [p[1] for p in ring]
    return min(xs), min(ys), max(xs), max(ys)


class GeoResolver:
    """Maps (lat, lon) to a country name. Read-only after construction."""

    def __init__(self, features: Iterable[CountryFeature]):
        self.features: Tuple[CountryFeature, ...] = tuple(features)
        self._index: List[Tuple[str, BBox, Polygon]] = [
            (feature.name, _bbox(polygon[0]), polygon)
            for feature in self.features
            for polygon in feature.polygons
            if polygon and len(polygon[0]) >= 3
        ]

    def country_for(self, lat: float, lon: float) -> str:
        """Name of the first feature containing the point, or '' if none does."""
        for name, (min_x, min_y, max_x, max_y), polygon in self._index:
            if not (min_x <= lon <= max_x and min_y <= lat <= max_y):
                continue
            if point_in_polygon(lon, lat, polygon):
                return name
        return ""

    def __len__(self) -> int:
        return len(self.features)


# --- GeoJSON Loading ---

def _parse_ring(raw) -> Ring:
    return tuple((float(point[0]), float(point[1])) for point in raw)


def _parse_polygon(raw) -> Polygon:
    return tuple(_parse_ring(ring) for ring in raw)


def _feature_name(properties: dict) -> str:
    for key in ("name", "ADMIN", "NAME", "admin"):
        value = properties.get(key)
        if value:
            return str(value)
    return ""


def load_country_features(path: Path) -> Tuple[CountryFeature, ...]:
    """
    Parses a GeoJSON FeatureCollection of countries.
    Polygon and MultiPolygon geometries are supported; anything else, and
    features without a name, are skipped.
    Raises GeoDataError if the file cannot be read or is not a FeatureCollection.
    """
    try:
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        raw_features = data["features"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise GeoDataError(f"Failed to load country polygons from {path}: {e}") from e

    features = []
    skipped = 0
    for raw in raw_features:
        try:
            name = _feature_name(raw.get("properties") or {})
            geometry = raw.get("geometry") or {}
            gtype = geometry.get("type")
            coords = geometry.get("coordinates")

            if not name or coords is None:
                skipped += 1
                continue
            if gtype == "Polygon":
                polygons = (_parse_polygon(coords),)
            elif gtype == "MultiPolygon":
                polygons = tuple(_parse_polygon(p) for p in coords)
            else:
                skipped += 1
                continue
        except (AttributeError, TypeError, ValueError, IndexError) as e:
            logging.debug(f"Skipping malformed feature in {path}: {e}")
            skipped += 1
            continue

        features.append(CountryFeature(name=name, polygons=polygons))

    if skipped:
        logging.debug(f"Skipped {skipped} features without usable geometry in {path}")
    logging.info(f"Loaded {len(features)} country features from {path}")
    return tuple(features)
