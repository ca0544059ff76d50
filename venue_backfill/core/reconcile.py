"""Insert-or-update of discovered candidates against the venue store."""

from __future__ import annotations

import logging
import random
import re
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from venue_backfill.core.db import DuplicateVenueError
from venue_backfill.etl.transform import confidence_score, merge_venue_row, to_venue_row
from venue_backfill.models import DiscoveredCandidate, EnrichmentStatus, UpsertAction

logger = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_SLUG_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SLUG_MAX_LENGTH = 120


@dataclass(frozen=True)
class UpsertResult:
    action: UpsertAction
    venue_id: Optional[int] = None
    error: Optional[str] = None


def make_slug(name: str, locality: Optional[str]) -> str:
    """``name-locality`` slug with a short random suffix, e.g. ``jungle-gym-leeds-4f2k``."""
    base = _SLUG_STRIP.sub("-", f"{name}-{locality or ''}".lower()).strip("-")[:SLUG_MAX_LENGTH].rstrip("-")
    suffix = "".join(random.choices(_SLUG_SUFFIX_ALPHABET, k=4))
    return f"{base or 'venue'}-{suffix}"


def _with_quality(row: Dict[str, Any], status: EnrichmentStatus) -> Dict[str, Any]:
    return {**row, "confidence_score": confidence_score(row), "enrichment_status": status.value}


class VenueReconciler:
    """Writes one candidate per call: venue, hours, images, source and audit row in one transaction."""

    def __init__(self, store, source_type: str = "google_places", fallback_city: Optional[str] = None) -> None:
        self.store = store
        self.source_type = source_type
        self.fallback_city = fallback_city

    def upsert(self, run_id: int, candidate: DiscoveredCandidate, enriched: bool = False) -> UpsertResult:
        """Write ``candidate``; ``enriched`` marks that a details lookup was merged into it."""
        if not candidate.external_id or not candidate.name:
            error = f"Candidate without external id or name skipped: {candidate.external_id!r}"
            self.store.record_run_venue(run_id, None, candidate.external_id or None, UpsertAction.SKIPPED, error)
            return UpsertResult(UpsertAction.SKIPPED, error=error)

        try:
            try:
                action, venue_id = self._write(run_id, candidate, enriched)
            except DuplicateVenueError:
                # Another run inserted the same place (or slug) first; the retry takes the update path.
                logger.info("Insert conflict for %s; retrying as update", candidate.external_id)
                action, venue_id = self._write(run_id, candidate, enriched)
        except Exception as exc:  # noqa: BLE001
            error = f"Upsert failed for {candidate.external_id} ({candidate.name}): {exc}"
            logger.warning("Upsert failed for %s: %s", candidate.external_id, exc)
            self.store.record_run_venue(run_id, None, candidate.external_id, UpsertAction.SKIPPED, str(exc))
            return UpsertResult(UpsertAction.SKIPPED, error=error)

        logger.debug("%s %s as venue %s", action.value, candidate.external_id, venue_id)
        return UpsertResult(action, venue_id)

    def _write(self, run_id: int, candidate: DiscoveredCandidate, enriched: bool) -> Tuple[UpsertAction, int]:
        row = to_venue_row(candidate)
        with self.store.transaction() as writer:
            existing = writer.find_venue(candidate.external_id)
            if existing is None:
                status = EnrichmentStatus.ENRICHED if enriched else EnrichmentStatus.BASIC
                row = _with_quality(row, status)
                slug = make_slug(candidate.name, candidate.city or self.fallback_city)
                venue_id = writer.insert_venue(slug, candidate.external_id, row)
                action = UpsertAction.INSERTED
            else:
                # An enriched venue stays enriched when a later appearance is not looked up again.
                was_enriched = existing.get("enrichment_status") == EnrichmentStatus.ENRICHED.value
                status = EnrichmentStatus.ENRICHED if enriched or was_enriched else EnrichmentStatus.BASIC
                row = _with_quality(merge_venue_row(existing, row), status)
                venue_id = int(existing["id"])
                writer.update_venue(venue_id, row)
                action = UpsertAction.UPDATED

            if candidate.opening_hours:
                writer.replace_opening_hours(venue_id, candidate.opening_hours)
            if candidate.photo_refs:
                writer.replace_images(venue_id, row["name"] or candidate.name, candidate.photo_refs)
            writer.upsert_source(venue_id, self.source_type, candidate.external_id, candidate.raw_snapshot)
            writer.record_run_venue(
                run_id, venue_id, candidate.external_id, action, None, status, row["confidence_score"]
            )
        return action, venue_id
