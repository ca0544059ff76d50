import pytest
import requests

from venue_backfill.vendors import google_places
from venue_backfill.vendors.base import BackfillSetupError, MissingCredentialsError
from venue_backfill.models import SearchStatus


class DummyResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def place(place_id):
    return {"place_id": place_id, "name": f"Place {place_id}", "geometry": {"location": {"lat": 1, "lng": 2}}}


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(google_places.time, "sleep", lambda seconds: calls.append(seconds))
    return calls


def make_provider(responses, keywords=("soft play",), **kwargs):
    session = DummySession(responses)
    provider = google_places.GooglePlacesProvider(
        "key", list(keywords), session=session, page_token_delay=2.2, rate_limit_backoff=60, **kwargs
    )
    return provider, session


def test_provider_requires_api_key_and_keywords():
    with pytest.raises(MissingCredentialsError):
        google_places.GooglePlacesProvider("", ["soft play"], session=DummySession([]))
    with pytest.raises(BackfillSetupError):
        google_places.GooglePlacesProvider("key", [], session=DummySession([]))


def test_search_area_follows_page_tokens_and_dedupes(sleeps):
    provider, session = make_provider(
        [
            DummyResponse({"status": "OK", "results": [place("1"), place("2")], "next_page_token": "t1"}),
            DummyResponse({"status": "OK", "results": [place("2"), place("3")]}),
            DummyResponse({"status": "OK", "results": [place("3"), place("4")]}),
        ],
        keywords=("soft play", "play centre"),
    )

    candidates = provider.search_area(52.4, -1.9, 60000)

    assert [c.external_id for c in candidates] == ["1", "2", "3", "4"]
    assert sleeps == [2.2]
    assert session.calls[0]["params"]["radius"] == google_places.MAX_RADIUS_METRES
    assert session.calls[0]["params"]["location"] == "52.4,-1.9"
    assert session.calls[1]["params"]["pagetoken"] == "t1"
    assert session.calls[2]["params"]["keyword"] == "play centre"
    assert all(call["timeout"] == 10.0 for call in session.calls)


def test_search_area_stops_at_max_pages(sleeps):
    pages = [DummyResponse({"status": "OK", "results": [place(str(i))], "next_page_token": f"t{i}"}) for i in range(5)]
    provider, session = make_provider(pages, max_pages=2)

    candidates = provider.search_area(0, 0, 1000)

    assert len(candidates) == 2
    assert len(session.calls) == 2


def test_search_area_treats_zero_results_as_empty(sleeps):
    provider, _ = make_provider([DummyResponse({"status": "ZERO_RESULTS", "results": []})])

    assert provider.search_area(0, 0, 1000) == []


def test_search_area_backs_off_once_on_rate_limit(sleeps):
    provider, session = make_provider(
        [
            DummyResponse({"status": "OVER_QUERY_LIMIT"}),
            DummyResponse({"status": "OK", "results": [place("1")]}),
        ]
    )

    candidates = provider.search_area(0, 0, 1000)

    assert [c.external_id for c in candidates] == ["1"]
    assert sleeps == [60]
    assert len(session.calls) == 2


def test_search_area_raises_when_still_rate_limited(sleeps):
    provider, _ = make_provider([DummyResponse({}, status_code=429), DummyResponse({"status": "OVER_QUERY_LIMIT"})])

    with pytest.raises(google_places.ProviderRateLimitError):
        provider.search_area(0, 0, 1000)


@pytest.mark.parametrize(
    "response",
    [
        DummyResponse({"status": "REQUEST_DENIED", "error_message": "bad key"}),
        DummyResponse({}, status_code=500),
        DummyResponse(ValueError("no json")),
        requests.ConnectionError("down"),
    ],
)
def test_search_area_raises_on_tile_failure(sleeps, response):
    provider, _ = make_provider([response])

    with pytest.raises(google_places.GooglePlacesError):
        provider.search_area(0, 0, 1000)


def test_get_details_parses_result(sleeps):
    provider, session = make_provider(
        [
            DummyResponse(
                {
                    "status": "OK",
                    "result": {
                        "place_id": "abc",
                        "formatted_phone_number": "0121 000 0000",
                        "address_components": [{"long_name": "B1 1AA", "types": ["postal_code"]}],
                    },
                }
            )
        ]
    )

    details = provider.get_details("abc")

    assert details.phone == "0121 000 0000"
    assert details.postcode == "B1 1AA"
    assert session.calls[0]["params"]["fields"] == google_places.DETAIL_FIELDS


@pytest.mark.parametrize(
    "response",
    [
        DummyResponse({"status": "NOT_FOUND"}),
        DummyResponse({}, status_code=404),
        DummyResponse(ValueError("no json")),
        requests.Timeout("slow"),
    ],
)
def test_get_details_returns_none_on_failure(sleeps, response):
    provider, _ = make_provider([response])

    assert provider.get_details("abc") is None
    assert sleeps == []


def test_get_details_backs_off_when_rate_limited(sleeps):
    provider, _ = make_provider([DummyResponse({"status": "OVER_QUERY_LIMIT"})])

    assert provider.get_details("abc") is None
    assert sleeps == [60]


def test_probe_reports_status_without_raising(sleeps):
    provider, _ = make_provider([DummyResponse({"status": "REQUEST_DENIED", "error_message": "bad key"})])

    result = provider.probe()

    assert result["ok"] is False
    assert result["status"] == SearchStatus.ERROR.value
    assert result["error_message"] == "bad key"
    assert result["results_count"] == 0
