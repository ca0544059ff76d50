"""Lookup tables and resolution of region descriptors into bounding boxes."""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Tuple

from venue_backfill.models import BoundingBox

KM_PER_DEGREE_LAT = 111.0
DEFAULT_CITY_RADIUS_KM = 15.0


class InvalidRegionError(ValueError):
    """Raised when a region descriptor cannot be resolved to a bounding box."""


REGION_BOUNDS: Dict[str, BoundingBox] = {
    "west-midlands": BoundingBox(south=52.2, west=-2.3, north=52.9, east=-1.3),
    "east-midlands": BoundingBox(south=52.4, west=-1.8, north=53.2, east=-0.7),
    "greater-london": BoundingBox(south=51.28, west=-0.51, north=51.69, east=0.33),
    "greater-manchester": BoundingBox(south=53.3, west=-2.7, north=53.7, east=-1.9),
    "south-east": BoundingBox(south=50.7, west=-1.9, north=51.9, east=1.5),
    "south-west": BoundingBox(south=50.0, west=-5.7, north=52.0, east=-1.7),
    "north-west": BoundingBox(south=53.0, west=-3.6, north=55.8, east=-2.0),
    "north-east": BoundingBox(south=54.4, west=-2.5, north=55.8, east=-1.0),
    "yorkshire": BoundingBox(south=53.3, west=-2.5, north=54.5, east=-0.5),
    "east-of-england": BoundingBox(south=51.5, west=-0.5, north=52.9, east=1.8),
    "wales": BoundingBox(south=51.3, west=-5.3, north=53.5, east=-2.6),
    "scotland": BoundingBox(south=54.6, west=-7.6, north=58.7, east=-0.7),
    "northern-ireland": BoundingBox(south=54.0, west=-8.2, north=55.4, east=-5.4),
}

FULL_UK_SLUG = "full-uk"
FULL_UK_LABEL = "Full UK"
# Smallest box enclosing every named region.
FULL_UK_BOUNDS = BoundingBox(
    south=min(box.south for box in REGION_BOUNDS.values()),
    west=min(box.west for box in REGION_BOUNDS.values()),
    north=max(box.north for box in REGION_BOUNDS.values()),
    east=max(box.east for box in REGION_BOUNDS.values()),
)

# slug -> (display name, lat, lng)
CITY_CENTERS: Dict[str, Tuple[str, float, float]] = {
    "london": ("London", 51.5074, -0.1278),
    "birmingham": ("Birmingham", 52.4862, -1.8904),
    "manchester": ("Manchester", 53.4808, -2.2426),
    "leeds": ("Leeds", 53.8008, -1.5491),
    "glasgow": ("Glasgow", 55.8642, -4.2518),
    "liverpool": ("Liverpool", 53.4084, -2.9916),
    "bristol": ("Bristol", 51.4545, -2.5879),
    "sheffield": ("Sheffield", 53.3811, -1.4701),
    "edinburgh": ("Edinburgh", 55.9533, -3.1883),
    "cardiff": ("Cardiff", 51.4816, -3.1791),
    "newcastle": ("Newcastle", 54.9783, -1.6178),
    "nottingham": ("Nottingham", 52.9548, -1.1581),
    "leicester": ("Leicester", 52.6369, -1.1398),
    "coventry": ("Coventry", 52.4068, -1.5197),
    "belfast": ("Belfast", 54.5973, -5.9301),
    "brighton": ("Brighton", 50.8225, -0.1372),
    "southampton": ("Southampton", 50.9097, -1.4044),
    "plymouth": ("Plymouth", 50.3755, -4.1427),
    "reading": ("Reading", 51.4543, -0.9781),
    "derby": ("Derby", 52.9225, -1.4746),
    "wolverhampton": ("Wolverhampton", 52.5870, -2.1288),
    "stoke-on-trent": ("Stoke-on-Trent", 53.0027, -2.1794),
    "swansea": ("Swansea", 51.6214, -3.9436),
    "milton-keynes": ("Milton Keynes", 52.0406, -0.7594),
    "aberdeen": ("Aberdeen", 57.1497, -2.0943),
    "norwich": ("Norwich", 52.6309, 1.2974),
    "oxford": ("Oxford", 51.7520, -1.2577),
    "cambridge": ("Cambridge", 52.2053, 0.1218),
    "york": ("York", 53.9591, -1.0815),
    "exeter": ("Exeter", 50.7184, -3.5339),
    "bath": ("Bath", 51.3811, -2.3590),
    "cheltenham": ("Cheltenham", 51.8994, -2.0783),
    "swindon": ("Swindon", 51.5558, -1.7797),
    "bournemouth": ("Bournemouth", 50.7192, -1.8808),
    "blackpool": ("Blackpool", 53.8175, -3.0357),
    "sunderland": ("Sunderland", 54.9069, -1.3838),
    "doncaster": ("Doncaster", 53.5228, -1.1285),
    "bolton": ("Bolton", 53.5785, -2.4299),
    "wigan": ("Wigan", 53.5448, -2.6318),
    "solihull": ("Solihull", 52.4120, -1.7780),
    "dudley": ("Dudley", 52.5086, -2.0872),
    "huddersfield": ("Huddersfield", 53.6450, -1.7798),
    "burnley": ("Burnley", 53.7893, -2.2479),
    "warrington": ("Warrington", 53.3900, -2.5970),
    "chester": ("Chester", 53.1930, -2.8931),
    "ipswich": ("Ipswich", 52.0567, 1.1482),
    "colchester": ("Colchester", 51.8959, 0.8919),
    "peterborough": ("Peterborough", 52.5695, -0.2405),
    "gloucester": ("Gloucester", 51.8642, -2.2382),
    "worcester": ("Worcester", 52.1936, -2.2216),
}


def _label_from_slug(slug: str) -> str:
    return " ".join(word.capitalize() for word in slug.split("-"))


def box_around(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """Square box enclosing a circle of ``radius_km`` around a point."""
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    lng_delta = radius_km / (KM_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 0.01))
    return BoundingBox(
        south=max(lat - lat_delta, -90.0),
        west=lng - lng_delta,
        north=min(lat + lat_delta, 90.0),
        east=lng + lng_delta,
    )


def _to_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRegionError(f"{name} must be numeric") from exc
    if math.isnan(number) or math.isinf(number):
        raise InvalidRegionError(f"{name} must be finite")
    return number


def _parse_bbox(raw: Any) -> BoundingBox:
    if not isinstance(raw, Mapping):
        raise InvalidRegionError("bbox must be an object with south, west, north, east")
    box = BoundingBox(
        south=_to_float(raw.get("south"), "bbox.south"),
        west=_to_float(raw.get("west"), "bbox.west"),
        north=_to_float(raw.get("north"), "bbox.north"),
        east=_to_float(raw.get("east"), "bbox.east"),
    )
    if box.north < box.south or box.east < box.west:
        raise InvalidRegionError("bbox north/east must not be below south/west")
    if not (-90.0 <= box.south <= 90.0 and -90.0 <= box.north <= 90.0):
        raise InvalidRegionError("bbox latitudes must be within [-90, 90]")
    return box


def resolve_region(descriptor: Mapping[str, Any]) -> Tuple[str, BoundingBox]:
    """Resolve a region descriptor into ``(label, bounding box)``.

    Accepted shapes, checked in this order:

    - ``{"bbox": {"south", "west", "north", "east"}, "label"?}``
    - ``{"region": "<slug>"}`` from :data:`REGION_BOUNDS`, or ``"full-uk"`` for all of them
    - ``{"city": "<slug>", "radius_km"?}`` from :data:`CITY_CENTERS`
    - ``{"lat", "lng", "radius_km"}``
    """
    if not isinstance(descriptor, Mapping) or not descriptor:
        raise InvalidRegionError("region descriptor is empty")

    if "bbox" in descriptor:
        box = _parse_bbox(descriptor["bbox"])
        label = str(descriptor.get("label") or "Custom area")
        return label, box

    if descriptor.get("region"):
        slug = str(descriptor["region"]).strip().lower()
        if slug == FULL_UK_SLUG:
            return FULL_UK_LABEL, FULL_UK_BOUNDS
        box = REGION_BOUNDS.get(slug)
        if box is None:
            raise InvalidRegionError(f"unknown region: {slug}")
        return _label_from_slug(slug), box

    if descriptor.get("city"):
        slug = str(descriptor["city"]).strip().lower()
        city = CITY_CENTERS.get(slug)
        if city is None:
            raise InvalidRegionError(f"unknown city: {slug}")
        name, lat, lng = city
        radius_km = _to_float(descriptor.get("radius_km", DEFAULT_CITY_RADIUS_KM), "radius_km")
        if radius_km <= 0:
            raise InvalidRegionError("radius_km must be positive")
        return name, box_around(lat, lng, radius_km)

    if "lat" in descriptor and "lng" in descriptor:
        lat = _to_float(descriptor["lat"], "lat")
        lng = _to_float(descriptor["lng"], "lng")
        radius_km = _to_float(descriptor.get("radius_km"), "radius_km")
        if not -90.0 <= lat <= 90.0:
            raise InvalidRegionError("lat must be within [-90, 90]")
        if radius_km <= 0:
            raise InvalidRegionError("radius_km must be positive")
        label = str(descriptor.get("label") or f"{lat:.4f},{lng:.4f} ({radius_km:g} km)")
        return label, box_around(lat, lng, radius_km)

    raise InvalidRegionError("region descriptor needs one of bbox, region, city or lat/lng/radius_km")
