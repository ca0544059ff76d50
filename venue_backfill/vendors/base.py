"""Discovery provider interface.

Any place-search backend (Google Places, OSM, a CSV import) implements
:class:`DiscoveryProvider`; the run coordinator only talks to this interface.
"""

from __future__ import annotations

import abc
from typing import List, Optional

from venue_backfill.models import DiscoveredCandidate, VenueDetails


class BackfillSetupError(RuntimeError):
    """Raised when a run cannot start: missing credentials, unknown provider, bad config."""


class MissingCredentialsError(BackfillSetupError):
    """Raised when the provider's API key is not configured."""


class DiscoveryProvider(abc.ABC):
    name: str = ""

    @abc.abstractmethod
    def search_area(self, lat: float, lng: float, radius: int) -> List[DiscoveredCandidate]:
        """Return candidates inside the circle, deduplicated by external id.

        ``radius`` is in metres. Raises on tile-level failure.
        """

    @abc.abstractmethod
    def get_details(self, external_id: str) -> Optional[VenueDetails]:
        """Return extended attributes, or ``None`` when they cannot be fetched."""
