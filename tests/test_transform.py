from venue_backfill.etl import transform
from venue_backfill.models import DiscoveredCandidate, OpeningPeriod, VenueDetails


def test_parse_nearby_result_maps_fields():
    place = {
        "place_id": "abc",
        "name": "  Jungle Jims  ",
        "vicinity": "12 High Street, Walsall",
        "geometry": {"location": {"lat": 52.58, "lng": -1.98}},
        "rating": "4.6",
        "user_ratings_total": 120,
        "types": ["point_of_interest", "amusement_center", "establishment"],
        "price_level": 2,
        "photos": [{"photo_reference": f"ref{i}", "html_attributions": ["A"]} for i in range(8)],
    }

    candidate = transform.parse_nearby_result(place)

    assert candidate.external_id == "abc"
    assert candidate.name == "Jungle Jims"
    assert candidate.city == "Walsall"
    assert (candidate.lat, candidate.lng) == (52.58, -1.98)
    assert candidate.rating == 4.6
    assert candidate.rating_count == 120
    assert len(candidate.photo_refs) == transform.MAX_SEARCH_PHOTOS
    assert candidate.photo_refs[0].attribution == "A"
    assert "key=" not in candidate.photo_refs[0].url
    assert candidate.raw_snapshot is place


def test_parse_nearby_result_requires_id_and_name():
    assert transform.parse_nearby_result({"name": "No id"}) is None
    assert transform.parse_nearby_result({"place_id": "x", "name": "  "}) is None


def test_parse_details_result_reads_address_components_and_hours():
    result = {
        "place_id": "abc",
        "name": "Jungle Jims",
        "formatted_address": "12 High St, Walsall WS1 1AA, UK",
        "formatted_phone_number": "01922 000000",
        "website": "https://jungle.example",
        "editorial_summary": {"overview": "Indoor fun"},
        "address_components": [
            {"long_name": "12", "types": ["street_number"]},
            {"long_name": "High Street", "types": ["route"]},
            {"long_name": "Bloxwich", "types": ["locality", "political"]},
            {"long_name": "Walsall", "types": ["postal_town"]},
            {"long_name": "West Midlands", "types": ["administrative_area_level_2", "political"]},
            {"long_name": "WS1 1AA", "types": ["postal_code"]},
        ],
        "opening_hours": {
            "periods": [
                {"open": {"day": 1, "time": "0930"}, "close": {"day": 1, "time": "1800"}},
                {"open": {"day": 0, "time": "0000"}},
                {"open": {"day": 2, "time": "9am"}, "close": {"day": 2, "time": "1700"}},
            ]
        },
    }

    details = transform.parse_details_result(result)

    assert details.address == "12 High Street"
    assert details.city == "Walsall"
    assert details.county == "West Midlands"
    assert details.postcode == "WS1 1AA"
    assert details.description == "Indoor fun"
    assert details.opening_hours == [OpeningPeriod(1, "09:30", "18:00")]


def test_parse_address_components_falls_back_to_locality():
    parts = transform.parse_address_components([{"long_name": "Solihull", "types": ["locality"]}])

    assert parts["city"] == "Solihull"
    assert parts["postcode"] is None


def test_parse_opening_hours_returns_none_without_usable_periods():
    assert transform.parse_opening_hours(None) is None
    assert transform.parse_opening_hours({"periods": [{"open": {"day": 0, "time": "0000"}}]}) is None


def test_apply_details_overlays_present_fields_only():
    candidate = DiscoveredCandidate(
        external_id="abc",
        name="Jungle Jims",
        city="Walsall",
        phone="0123",
        raw_snapshot={"from": "search"},
    )
    details = VenueDetails(external_id="other", name="", phone=None, website="https://j.example", raw_snapshot={"x": 1})

    merged = transform.apply_details(candidate, details)

    assert merged.external_id == "abc"
    assert merged.name == "Jungle Jims"
    assert merged.phone == "0123"
    assert merged.website == "https://j.example"
    assert merged.raw_snapshot == {"search": {"from": "search"}, "details": {"x": 1}}


def test_to_venue_row_blanks_become_none_and_category_skips_generic_types():
    candidate = DiscoveredCandidate(
        external_id="abc",
        name="Jungle Jims",
        phone="   ",
        category_hints=["establishment", "point_of_interest", "amusement_center"],
    )

    row = transform.to_venue_row(candidate)

    assert set(row) == set(transform.VENUE_FIELDS)
    assert row["phone"] is None
    assert row["category"] == "amusement_center"


def test_merge_venue_row_never_clears_stored_values():
    existing = {"name": "Old", "phone": "0123", "website": "https://old.example", "google_rating": 4.0}
    incoming = {"name": "New", "phone": None, "website": "", "google_rating": 4.5}

    merged = transform.merge_venue_row(existing, incoming)

    assert merged["name"] == "New"
    assert merged["phone"] == "0123"
    assert merged["website"] == "https://old.example"
    assert merged["google_rating"] == 4.5
    assert merged["postcode"] is None


def test_safe_helpers_tolerate_bad_input():
    assert transform._safe_float("n/a") is None
    assert transform._safe_int(True) is None
    assert transform._safe_int(" 42 ") == 42
    assert transform._strip_or_none("  ") is None


def test_photo_url_carries_reference_but_no_key():
    url = transform.photo_url("ref 1")

    assert url.startswith(transform.PHOTO_URL + "?")
    assert "photo_reference=ref+1" in url
    assert f"maxwidth={transform.PHOTO_MAX_WIDTH}" in url
    assert "key" not in url.split("?", 1)[1].replace("photo_reference", "")
    refs = transform.parse_photos([{"photo_reference": "ref 1"}], limit=1)
    assert refs[0].reference == "ref 1"


def test_confidence_score_rewards_postcode_and_phone():
    assert transform.confidence_score({"postcode": "WS1 1AA", "phone": "01922 000000"}) == 0.9
    assert transform.confidence_score({"postcode": "WS1 1AA", "phone": "  "}) == 0.7
    assert transform.confidence_score({"postcode": None, "phone": "01922 000000"}) == 0.5
    assert transform.confidence_score({}) == 0.5
