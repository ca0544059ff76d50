"""Utilities for transforming Google Places responses into candidates and database rows."""

from __future__ import annotations

import logging
import re
from dataclasses import fields, replace
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlencode

from venue_backfill.models import DiscoveredCandidate, OpeningPeriod, PhotoRef, VenueDetails

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}
_HHMM = re.compile(r"^(\d{2})(\d{2})$")

PHOTO_URL = "https://maps.googleapis.com/maps/api/place/photo"
PHOTO_MAX_WIDTH = 800
MAX_SEARCH_PHOTOS = 5
MAX_DETAIL_PHOTOS = 10

CONFIDENCE_POSTCODE_AND_PHONE = 0.9
CONFIDENCE_POSTCODE = 0.7
CONFIDENCE_BASIC = 0.5

# Venue columns the engine owns; merged with coalesce-preserve semantics on update.
VENUE_FIELDS = (
    "name",
    "address_line1",
    "city",
    "county",
    "postcode",
    "lat",
    "lng",
    "phone",
    "website",
    "description",
    "category",
    "google_rating",
    "google_review_count",
    "price_level",
)


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def is_present(value: Any) -> bool:
    """True for values that may overwrite stored data (non-null, non-blank)."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return bool(value)
    return True


def _location(result: Dict[str, Any]) -> Dict[str, Any]:
    geometry = result.get("geometry")
    if not isinstance(geometry, dict):
        return {}
    location = geometry.get("location")
    return location if isinstance(location, dict) else {}


def _types(result: Dict[str, Any]) -> List[str]:
    types = result.get("types")
    if not isinstance(types, list):
        return []
    return [str(t) for t in types if t]


def extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def photo_url(reference: str) -> str:
    """Photo endpoint URL for ``reference`` without the API key.

    The Places photo endpoint rejects keyless requests, so stored URLs only
    resolve behind a proxy that appends the key server-side; ``reference``
    is stored alongside so clients can build their own request instead.
    """
    return f"{PHOTO_URL}?{urlencode({'maxwidth': PHOTO_MAX_WIDTH, 'photo_reference': reference})}"


def parse_photos(photos: Any, limit: int) -> List[PhotoRef]:
    refs: List[PhotoRef] = []
    if not isinstance(photos, list):
        return refs
    for photo in photos:
        if not isinstance(photo, dict):
            continue
        reference = _strip_or_none(photo.get("photo_reference"))
        if not reference:
            continue
        attributions = photo.get("html_attributions") or []
        attribution = _strip_or_none(attributions[0]) if isinstance(attributions, list) and attributions else None
        refs.append(PhotoRef(reference=reference, url=photo_url(reference), attribution=attribution or "Google"))
        if len(refs) >= limit:
            break
    return refs


def _format_time(raw: Any) -> Optional[str]:
    match = _HHMM.match(str(raw or ""))
    if not match:
        return None
    return f"{match.group(1)}:{match.group(2)}"


def parse_opening_hours(opening_hours: Any) -> Optional[List[OpeningPeriod]]:
    """Convert ``opening_hours.periods`` into periods; ``None`` when nothing usable is present."""
    if not isinstance(opening_hours, dict):
        return None
    periods: List[OpeningPeriod] = []
    for period in opening_hours.get("periods") or []:
        if not isinstance(period, dict):
            continue
        open_part = period.get("open")
        close_part = period.get("close")
        if not isinstance(open_part, dict) or not isinstance(close_part, dict):
            continue
        day = _safe_int(open_part.get("day"))
        open_time = _format_time(open_part.get("time"))
        close_time = _format_time(close_part.get("time"))
        if day is None or not 0 <= day <= 6 or not open_time or not close_time:
            continue
        periods.append(OpeningPeriod(day_of_week=day, open_time=open_time, close_time=close_time))
    return periods or None


def parse_address_components(address_components: Any) -> Dict[str, Optional[str]]:
    parts: Dict[str, Optional[str]] = {
        "street_number": None,
        "route": None,
        "city": None,
        "county": None,
        "postcode": None,
    }
    if not isinstance(address_components, list):
        return parts
    locality = None
    for component in address_components:
        if not isinstance(component, dict):
            continue
        types = set(component.get("types") or [])
        long_name = _strip_or_none(component.get("long_name"))
        if not long_name:
            continue
        if "street_number" in types:
            parts["street_number"] = long_name
        if "route" in types:
            parts["route"] = long_name
        if "postal_town" in types:
            parts["city"] = long_name
        if "locality" in types and locality is None:
            locality = long_name
        if "administrative_area_level_2" in types:
            parts["county"] = long_name
        if "postal_code" in types:
            parts["postcode"] = long_name
    if not parts["city"]:
        parts["city"] = locality
    return parts


def _city_from_vicinity(vicinity: Optional[str]) -> Optional[str]:
    if not vicinity or "," not in vicinity:
        return None
    return _strip_or_none(vicinity.split(",")[-1])


def parse_nearby_result(place: Dict[str, Any]) -> Optional[DiscoveredCandidate]:
    """Map a Nearby Search result; ``None`` when it lacks an id or a name."""
    if not isinstance(place, dict):
        return None
    external_id = _strip_or_none(place.get("place_id"))
    name = _strip_or_none(place.get("name"))
    if not external_id or not name:
        logger.debug("Skipping search result without place_id/name: %s", place)
        return None

    location = _location(place)
    address = _strip_or_none(place.get("vicinity") or place.get("formatted_address"))
    return DiscoveredCandidate(
        external_id=external_id,
        name=name,
        lat=_safe_float(location.get("lat")),
        lng=_safe_float(location.get("lng")),
        address=address,
        city=_city_from_vicinity(address),
        rating=_safe_float(place.get("rating")),
        rating_count=_safe_int(place.get("user_ratings_total")),
        category_hints=_types(place),
        photo_refs=parse_photos(place.get("photos"), MAX_SEARCH_PHOTOS),
        price_level=_safe_int(place.get("price_level")),
        raw_snapshot=place,
    )


def parse_details_result(result: Dict[str, Any]) -> VenueDetails:
    location = _location(result)
    address_parts = parse_address_components(result.get("address_components"))
    street = " ".join(p for p in (address_parts["street_number"], address_parts["route"]) if p)
    summary = result.get("editorial_summary")

    return VenueDetails(
        external_id=_strip_or_none(result.get("place_id")),
        name=_strip_or_none(result.get("name")),
        lat=_safe_float(location.get("lat")),
        lng=_safe_float(location.get("lng")),
        address=street or _strip_or_none(result.get("formatted_address")),
        city=address_parts["city"],
        county=address_parts["county"],
        postcode=address_parts["postcode"],
        rating=_safe_float(result.get("rating")),
        rating_count=_safe_int(result.get("user_ratings_total")),
        category_hints=_types(result),
        photo_refs=parse_photos(result.get("photos"), MAX_DETAIL_PHOTOS),
        phone=_strip_or_none(result.get("formatted_phone_number")),
        website=_strip_or_none(result.get("website")),
        opening_hours=parse_opening_hours(result.get("opening_hours")),
        description=_strip_or_none(summary.get("overview")) if isinstance(summary, dict) else None,
        price_level=_safe_int(result.get("price_level")),
        raw_snapshot=result,
    )


def apply_details(candidate: DiscoveredCandidate, details: VenueDetails) -> DiscoveredCandidate:
    """Overlay the present detail fields on a candidate; the external id never changes."""
    changes: Dict[str, Any] = {}
    for f in fields(VenueDetails):
        if f.name in ("external_id", "raw_snapshot"):
            continue
        value = getattr(details, f.name)
        if is_present(value):
            changes[f.name] = value
    if details.raw_snapshot:
        changes["raw_snapshot"] = {"search": candidate.raw_snapshot, "details": details.raw_snapshot}
    return replace(candidate, **changes)


def to_venue_row(candidate: DiscoveredCandidate) -> Dict[str, Any]:
    """Flatten a candidate into venue columns; blanks become ``None``."""
    row = {
        "name": candidate.name,
        "address_line1": candidate.address,
        "city": candidate.city,
        "county": candidate.county,
        "postcode": candidate.postcode,
        "lat": candidate.lat,
        "lng": candidate.lng,
        "phone": candidate.phone,
        "website": candidate.website,
        "description": candidate.description,
        "category": extract_primary_type(candidate.category_hints),
        "google_rating": candidate.rating,
        "google_review_count": candidate.rating_count,
        "price_level": candidate.price_level,
    }
    return {key: (value if is_present(value) else None) for key, value in row.items()}


def confidence_score(row: Dict[str, Any]) -> float:
    """Score how verifiable a venue row is from the contact fields it carries."""
    if not is_present(row.get("postcode")):
        return CONFIDENCE_BASIC
    if is_present(row.get("phone")):
        return CONFIDENCE_POSTCODE_AND_PHONE
    return CONFIDENCE_POSTCODE


def merge_venue_row(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Coalesce-preserve merge: take the incoming value only where it is present."""
    return {
        key: incoming.get(key) if is_present(incoming.get(key)) else existing.get(key)
        for key in VENUE_FIELDS
    }
