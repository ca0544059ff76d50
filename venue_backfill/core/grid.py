"""Tile a region into overlapping circular search areas."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Mapping

from venue_backfill.core.regions import KM_PER_DEGREE_LAT, InvalidRegionError, resolve_region
from venue_backfill.models import BoundingBox, SearchTile

logger = logging.getLogger(__name__)

_COORD_PRECISION = 4
_EPSILON = 1e-9
# cos(lat) floor, keeps the longitude step finite at the poles
_MIN_COS = 0.01
PREVIEW_TILE_COUNT = 10


def _validate_spacing(step_km: float, radius_km: float) -> None:
    if step_km <= 0 or radius_km <= 0:
        raise InvalidRegionError("step_km and radius_km must be positive")
    if step_km > radius_km * math.sqrt(2):
        raise InvalidRegionError(
            f"step_km={step_km:g} is too large for radius_km={radius_km:g}; "
            "tiles would leave gaps between grid points"
        )


def _axis(start: float, end: float, step: float) -> List[float]:
    """Points from ``start`` every ``step`` up to ``end``, closing on ``end``."""
    count = int(math.floor((end - start) / step + _EPSILON))
    points = [start + i * step for i in range(count + 1)]
    if end - points[-1] > _EPSILON:
        points.append(end)
    return points


def _lng_step(step_km: float, lat: float) -> float:
    return step_km / (KM_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), _MIN_COS))


def generate_for_box(box: BoundingBox, step_km: float, radius_km: float) -> List[SearchTile]:
    _validate_spacing(step_km, radius_km)
    radius_m = int(round(radius_km * 1000))

    if box.is_degenerate():
        lat, lng = box.center
        return [SearchTile(round(lat, _COORD_PRECISION), round(lng, _COORD_PRECISION), radius_m)]

    tiles: List[SearchTile] = []
    seen = set()
    for lat in _axis(box.south, box.north, step_km / KM_PER_DEGREE_LAT):
        for lng in _axis(box.west, box.east, _lng_step(step_km, lat)):
            key = (round(lat, _COORD_PRECISION), round(lng, _COORD_PRECISION))
            if key in seen:
                continue
            seen.add(key)
            tiles.append(SearchTile(key[0], key[1], radius_m))
    return tiles


def generate(region: Mapping[str, Any], step_km: float, radius_km: float) -> List[SearchTile]:
    """Resolve ``region`` and return its ordered, deduplicated tile list."""
    label, box = resolve_region(region)
    tiles = generate_for_box(box, step_km, radius_km)
    logger.info("Grid for %s: %d tiles (step=%gkm radius=%gkm)", label, len(tiles), step_km, radius_km)
    return tiles


def preview(region: Mapping[str, Any], step_km: float, radius_km: float) -> Dict[str, Any]:
    label, box = resolve_region(region)
    tiles = generate_for_box(box, step_km, radius_km)
    return {
        "region_label": label,
        "bounding_box": {"south": box.south, "west": box.west, "north": box.north, "east": box.east},
        "total_tiles": len(tiles),
        "sample_tiles": [
            {"center_lat": t.center_lat, "center_lng": t.center_lng, "search_radius": t.search_radius}
            for t in tiles[:PREVIEW_TILE_COUNT]
        ],
    }
