"""Client for the Google Places API (legacy Nearby Search + Place Details)."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from venue_backfill.core.config import Settings
from venue_backfill.etl.transform import parse_details_result, parse_nearby_result
from venue_backfill.models import DiscoveredCandidate, SearchPage, SearchStatus, VenueDetails
from venue_backfill.vendors.base import BackfillSetupError, DiscoveryProvider, MissingCredentialsError

logger = logging.getLogger(__name__)
_BASE_URL = "https://maps.googleapis.com/maps/api/place"

MAX_RADIUS_METRES = 50000
DETAIL_FIELDS = (
    "place_id,name,formatted_address,geometry,formatted_phone_number,website,rating,"
    "user_ratings_total,price_level,opening_hours,photos,types,address_components,editorial_summary"
)
_RATE_LIMIT_STATUSES = {"OVER_QUERY_LIMIT"}


class GooglePlacesError(RuntimeError):
    """Raised when the Places API returns a non-successful response."""


class ProviderRateLimitError(GooglePlacesError):
    """Raised when a request is still rate limited after the backoff retry."""


def build_session() -> requests.Session:
    """Session that retries transient 5xx responses at the transport level."""
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
    )
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


class GooglePlacesProvider(DiscoveryProvider):
    name = "google_places"

    def __init__(
        self,
        api_key: str,
        keywords: Sequence[str],
        *,
        session: Optional[requests.Session] = None,
        max_pages: int = 3,
        page_token_delay: float = 2.2,
        rate_limit_backoff: float = 60.0,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise MissingCredentialsError("GOOGLE_PLACES_API_KEY is required")
        if not keywords:
            raise BackfillSetupError("at least one search keyword is required")
        self.api_key = api_key
        self.keywords = list(keywords)
        self.session = session or build_session()
        self.max_pages = max_pages
        self.page_token_delay = page_token_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, keywords: Optional[Sequence[str]] = None) -> "GooglePlacesProvider":
        return cls(
            settings.google_places_api_key,
            keywords or settings.keywords,
            max_pages=settings.max_pages,
            page_token_delay=settings.page_token_delay_seconds,
            rate_limit_backoff=settings.rate_limit_backoff_seconds,
            timeout=settings.request_timeout_seconds,
        )

    # ---------- Nearby search ----------

    def nearby_search_page(
        self,
        lat: float,
        lng: float,
        radius: int,
        keyword: str,
        page_token: Optional[str] = None,
    ) -> SearchPage:
        """Fetch one page of results and classify the outcome."""
        params: Dict[str, Any] = {
            "location": f"{lat},{lng}",
            "radius": min(int(radius), MAX_RADIUS_METRES),
            "keyword": keyword,
            "type": "establishment",
            "key": self.api_key,
        }
        if page_token:
            params["pagetoken"] = page_token

        try:
            response = self.session.get(f"{_BASE_URL}/nearbysearch/json", params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            return SearchPage(SearchStatus.ERROR, error_message=f"request failed: {exc}")

        if response.status_code == 429:
            return SearchPage(SearchStatus.RATE_LIMITED, error_message="HTTP 429")
        if response.status_code >= 400:
            return SearchPage(SearchStatus.ERROR, error_message=f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return SearchPage(SearchStatus.ERROR, error_message="response was not JSON")
        if not isinstance(payload, dict):
            return SearchPage(SearchStatus.ERROR, error_message="unexpected response shape")

        status = payload.get("status")
        if status in _RATE_LIMIT_STATUSES:
            return SearchPage(SearchStatus.RATE_LIMITED, error_message=payload.get("error_message") or status)
        if status == "ZERO_RESULTS":
            return SearchPage(SearchStatus.EMPTY)
        if status != "OK":
            logger.error("nearby_search failed: status=%s, error_message=%s", status, payload.get("error_message"))
            return SearchPage(SearchStatus.ERROR, error_message=payload.get("error_message") or str(status))

        results: List[DiscoveredCandidate] = []
        for place in payload.get("results") or []:
            candidate = parse_nearby_result(place)
            if candidate is not None:
                results.append(candidate)
        return SearchPage(
            SearchStatus.OK,
            results=results,
            next_page_token=payload.get("next_page_token") or None,
        )

    def _fetch_page(self, lat: float, lng: float, radius: int, keyword: str, page_token: Optional[str]) -> SearchPage:
        page = self.nearby_search_page(lat, lng, radius, keyword, page_token)
        if page.status is SearchStatus.RATE_LIMITED:
            logger.warning(
                "Rate limited searching %r at %s,%s; waiting %.0fs before retrying",
                keyword,
                lat,
                lng,
                self.rate_limit_backoff,
            )
            time.sleep(self.rate_limit_backoff)
            page = self.nearby_search_page(lat, lng, radius, keyword, page_token)

        if page.status is SearchStatus.RATE_LIMITED:
            raise ProviderRateLimitError(f"still rate limited after backoff: {page.error_message}")
        if page.status is SearchStatus.ERROR:
            raise GooglePlacesError(page.error_message or "nearby search failed")
        return page

    def search_area(self, lat: float, lng: float, radius: int) -> List[DiscoveredCandidate]:
        found: Dict[str, DiscoveredCandidate] = {}
        for keyword in self.keywords:
            page_token = None
            for page_number in range(self.max_pages):
                if page_token:
                    # Tokens are rejected until Google has finished preparing the next page.
                    time.sleep(self.page_token_delay)
                page = self._fetch_page(lat, lng, radius, keyword, page_token)
                for candidate in page.results:
                    found.setdefault(candidate.external_id, candidate)
                logger.debug(
                    "keyword=%r page=%d returned %d results", keyword, page_number + 1, len(page.results)
                )
                page_token = page.next_page_token
                if not page_token:
                    break
        return list(found.values())

    # ---------- Place details ----------

    def get_details(self, external_id: str) -> Optional[VenueDetails]:
        params = {"place_id": external_id, "fields": DETAIL_FIELDS, "key": self.api_key}
        try:
            response = self.session.get(f"{_BASE_URL}/details/json", params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("place_details request failed for %s: %s", external_id, exc)
            return None

        if response.status_code == 429:
            logger.warning("place_details rate limited for %s; waiting %.0fs", external_id, self.rate_limit_backoff)
            time.sleep(self.rate_limit_backoff)
            return None
        if response.status_code >= 400:
            logger.warning("place_details HTTP %s for %s", response.status_code, external_id)
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("place_details returned non-JSON for %s", external_id)
            return None

        status = payload.get("status") if isinstance(payload, dict) else None
        if status in _RATE_LIMIT_STATUSES:
            logger.warning("place_details rate limited for %s; waiting %.0fs", external_id, self.rate_limit_backoff)
            time.sleep(self.rate_limit_backoff)
            return None
        result = payload.get("result") if status == "OK" else None
        if not isinstance(result, dict) or not result:
            logger.info("place_details status=%s for %s", status, external_id)
            return None
        return parse_details_result(result)

    # ---------- Diagnostics ----------

    def probe(self, lat: float = 52.4862, lng: float = -1.8904, radius: int = 10000) -> Dict[str, Any]:
        """Single-page search used to check the key and quota without starting a run."""
        started = time.monotonic()
        page = self.nearby_search_page(lat, lng, radius, self.keywords[0])
        return {
            "ok": page.status in (SearchStatus.OK, SearchStatus.EMPTY),
            "status": page.status.value,
            "error_message": page.error_message,
            "results_count": len(page.results),
            "sample_results": [
                {"external_id": c.external_id, "name": c.name, "address": c.address, "rating": c.rating}
                for c in page.results[:3]
            ],
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
