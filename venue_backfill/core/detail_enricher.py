"""Best-effort enrichment of discovered candidates with provider details."""

from __future__ import annotations

import logging
import time
from typing import Tuple

from venue_backfill.etl.transform import apply_details
from venue_backfill.models import DiscoveredCandidate
from venue_backfill.vendors.base import DiscoveryProvider

logger = logging.getLogger(__name__)


class DetailEnricher:
    """Wraps ``provider.get_details`` so failures fall back to the basic candidate."""

    def __init__(self, provider: DiscoveryProvider, delay_seconds: float = 0.2) -> None:
        self.provider = provider
        self.delay_seconds = delay_seconds

    def enrich(self, candidate: DiscoveredCandidate) -> Tuple[DiscoveredCandidate, bool]:
        """Return ``(candidate, enriched)``; ``enriched`` is False whenever details were unavailable."""
        try:
            details = self.provider.get_details(candidate.external_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Details lookup failed for %s: %s", candidate.external_id, exc)
            return candidate, False
        finally:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)

        if details is None:
            return candidate, False
        return apply_details(candidate, details), True
