import copy
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure `venue_backfill` is importable when running pytest from the repo root without installing.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from venue_backfill.core.config import Settings  # noqa: E402
from venue_backfill.core.db import DuplicateVenueError, RunNotFoundError  # noqa: E402
from venue_backfill.models import Run, RunProgress, RunStatus  # noqa: E402
from venue_backfill.vendors.base import DiscoveryProvider  # noqa: E402


class FakeWriter:
    def __init__(self, store):
        self.store = store

    def find_venue(self, external_id):
        venue_id = self.store.venue_ids_by_external.get(external_id)
        if venue_id is None:
            return None
        return dict(self.store.venues[venue_id], id=venue_id)

    def insert_venue(self, slug, external_id, row):
        if self.store.pending_conflicts:
            # Simulates a concurrent insert that committed between find and insert.
            self.store.pending_conflicts -= 1
            other = self.store._next("venue")
            self.store.venues[other] = dict(row, slug=f"{slug}-other")
            self.store.venue_ids_by_external[external_id] = other
            self.store.committed_external[external_id] = (other, dict(row, slug=f"{slug}-other"))
            raise DuplicateVenueError(f"venue for {external_id} already exists")
        venue_id = self.store._next("venue")
        self.store.venues[venue_id] = dict(row, slug=slug)
        self.store.venue_ids_by_external[external_id] = venue_id
        return venue_id

    def update_venue(self, venue_id, row):
        self.store.venues[venue_id].update(row)

    def replace_opening_hours(self, venue_id, periods):
        self.store.hours[venue_id] = list(periods)

    def replace_images(self, venue_id, venue_name, photos):
        self.store.images[venue_id] = list(photos)

    def upsert_source(self, venue_id, source_type, source_id, raw):
        if self.store.fail_source_for == source_id:
            raise RuntimeError("source write failed")
        self.store.sources[(venue_id, source_type)] = {"source_id": source_id, "raw": raw}

    def record_run_venue(
        self, run_id, venue_id, external_id, action, error=None, enrichment_status=None, confidence_score=None
    ):
        self.store.audit.append(
            {
                "run_id": run_id,
                "venue_id": venue_id,
                "external_id": external_id,
                "action": action.value,
                "error": error,
                "enrichment_status": enrichment_status.value if enrichment_status else None,
                "confidence_score": confidence_score,
            }
        )


class FakeStore:
    """In-memory stand-in for PostgresStore with transactional rollback of venue writes."""

    def __init__(self):
        self.counters = {"venue": 0, "run": 0}
        self.venues = {}
        self.venue_ids_by_external = {}
        self.committed_external = {}
        self.hours = {}
        self.images = {}
        self.sources = {}
        self.audit = []
        self.runs = {}
        self.claims = {}
        self.progress_snapshots = []
        self.rejected_writes = []
        self.pending_conflicts = 0
        self.fail_source_for = None
        self.on_save_progress = None

    def _next(self, kind):
        self.counters[kind] += 1
        return self.counters[kind]

    @contextmanager
    def transaction(self):
        saved = copy.deepcopy(
            (self.venues, self.venue_ids_by_external, self.hours, self.images, self.sources, self.audit)
        )
        try:
            yield FakeWriter(self)
        except DuplicateVenueError:
            self.venues, self.venue_ids_by_external, self.hours, self.images, self.sources, self.audit = saved
            # Rows committed by the "other" writer survive the rollback.
            for external_id, (venue_id, row) in self.committed_external.items():
                self.venue_ids_by_external[external_id] = venue_id
                self.venues.setdefault(venue_id, dict(row))
            raise
        except Exception:
            self.venues, self.venue_ids_by_external, self.hours, self.images, self.sources, self.audit = saved
            raise

    def record_run_venue(
        self, run_id, venue_id, external_id, action, error=None, enrichment_status=None, confidence_score=None
    ):
        FakeWriter(self).record_run_venue(
            run_id, venue_id, external_id, action, error, enrichment_status, confidence_score
        )

    # ---------- Runs ----------

    def create_run(self, provider, region_label, total_tiles, config):
        run_id = self._next("run")
        self.runs[run_id] = Run(
            id=run_id,
            provider=provider,
            region_label=region_label,
            status=RunStatus.PENDING,
            total_tiles=total_tiles,
            progress=RunProgress(),
            config=copy.deepcopy(config),
        )
        return run_id

    def get_run(self, run_id):
        if run_id not in self.runs:
            raise RunNotFoundError(f"run {run_id} not found")
        return copy.deepcopy(self.runs[run_id])

    def list_runs(self, limit):
        return [copy.deepcopy(self.runs[k]) for k in sorted(self.runs, reverse=True)][:limit]

    def claim_run(self, run_id, token):
        run = self.runs.get(run_id)
        if run is None or run.status is not RunStatus.PENDING:
            return False
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or datetime.now(timezone.utc)
        self.claims[run_id] = token
        return True

    def is_claimed(self, run_id, token):
        return self.runs[run_id].status is RunStatus.RUNNING and self.claims.get(run_id) == token

    def transition_run(self, run_id, from_status, to_status):
        run = self.runs[run_id]
        if run.status is not from_status:
            return False
        run.status = to_status
        return True

    def requeue_run(self, run_id):
        if not self.transition_run(run_id, RunStatus.PAUSED, RunStatus.PENDING):
            return False
        self.claims.pop(run_id, None)
        return True

    def save_progress(self, run_id, progress, claim_token):
        if self.claims.get(run_id) != claim_token:
            self.rejected_writes.append(("save_progress", run_id, copy.deepcopy(progress)))
            return False
        self.runs[run_id].progress = copy.deepcopy(progress)
        self.progress_snapshots.append(copy.deepcopy(progress))
        if self.on_save_progress is not None:
            self.on_save_progress(run_id, progress)
        return True

    def finish_run(self, run_id, status, progress, claim_token):
        if self.claims.get(run_id) != claim_token:
            self.rejected_writes.append(("finish_run", run_id, copy.deepcopy(progress)))
            return False
        run = self.runs[run_id]
        run.status = status
        run.progress = copy.deepcopy(progress)
        run.completed_at = datetime.now(timezone.utc)
        run.duration_ms = int((run.completed_at - run.started_at).total_seconds() * 1000)
        self.claims.pop(run_id, None)
        return True

    def list_run_venues(self, run_id, limit):
        rows = [dict(row) for row in reversed(self.audit) if row["run_id"] == run_id]
        for row in rows:
            venue = self.venues.get(row["venue_id"]) or {}
            row.update(name=venue.get("name"), city=venue.get("city"), created_at=None)
        return len(rows), rows[:limit]


class FakeProvider(DiscoveryProvider):
    """Returns scripted candidates per tile index; ``errors`` maps tile index to an exception."""

    name = "google_places"

    def __init__(self, tiles=None, errors=None, details=None):
        self.tiles = tiles or {}
        self.errors = errors or {}
        self.details = details or {}
        self.search_calls = []
        self.detail_calls = []

    def search_area(self, lat, lng, radius):
        index = len(self.search_calls)
        self.search_calls.append((lat, lng, radius))
        if index in self.errors:
            raise self.errors[index]
        return [copy.deepcopy(c) for c in self.tiles.get(index, [])]

    def get_details(self, external_id):
        self.detail_calls.append(external_id)
        detail = self.details.get(external_id)
        if isinstance(detail, Exception):
            raise detail
        return detail


def make_settings(**overrides):
    values = dict(
        google_places_api_key="test-key",
        database_url="postgres://",
        admin_secret="s3cret",
        enrich_delay_seconds=0,
        page_token_delay_seconds=0,
        rate_limit_backoff_seconds=0,
        error_log_limit=100,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def settings():
    return make_settings()
