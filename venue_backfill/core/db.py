"""PostgreSQL store for venues and backfill runs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from psycopg2 import errors, extras, pool

from venue_backfill.models import (
    EnrichmentStatus,
    OpeningPeriod,
    PhotoRef,
    Run,
    RunProgress,
    RunStatus,
    UpsertAction,
)

logger = logging.getLogger(__name__)


class DuplicateVenueError(RuntimeError):
    """Raised when an insert hits a uniqueness constraint (external id or slug)."""


class RunNotFoundError(LookupError):
    """Raised when a run id does not exist."""


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS venues (
    id SERIAL PRIMARY KEY,
    slug TEXT UNIQUE NOT NULL,
    external_id TEXT,
    name TEXT NOT NULL,
    description TEXT,
    address_line1 TEXT,
    city TEXT,
    county TEXT,
    postcode TEXT,
    country TEXT DEFAULT 'United Kingdom',
    lat DOUBLE PRECISION,
    lng DOUBLE PRECISION,
    phone TEXT,
    website TEXT,
    category TEXT,
    google_rating NUMERIC(2,1),
    google_review_count INTEGER,
    price_level INTEGER,
    first_party_rating NUMERIC(2,1),
    first_party_review_count INTEGER DEFAULT 0,
    image_url TEXT,
    confidence_score REAL DEFAULT 0,
    enrichment_status TEXT DEFAULT 'pending',
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','pending','closed','flagged')),
    last_synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_venues_external_id ON venues(external_id) WHERE external_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS venue_opening_hours (
    id SERIAL PRIMARY KEY,
    venue_id INTEGER NOT NULL REFERENCES venues(id) ON DELETE CASCADE,
    day_of_week INTEGER NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
    open_time TEXT,
    close_time TEXT
);
CREATE INDEX IF NOT EXISTS idx_venue_opening_hours_venue ON venue_opening_hours(venue_id);

CREATE TABLE IF NOT EXISTS venue_images (
    id SERIAL PRIMARY KEY,
    venue_id INTEGER NOT NULL REFERENCES venues(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    photo_reference TEXT,
    alt TEXT,
    source TEXT NOT NULL DEFAULT 'manual' CHECK (source IN ('google','manual','owner')),
    is_primary BOOLEAN DEFAULT false,
    attribution TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_venue_images_venue ON venue_images(venue_id);

CREATE TABLE IF NOT EXISTS venue_sources (
    id SERIAL PRIMARY KEY,
    venue_id INTEGER NOT NULL REFERENCES venues(id) ON DELETE CASCADE,
    source_type TEXT NOT NULL,
    source_id TEXT,
    last_fetched_at TIMESTAMPTZ,
    raw_data JSONB,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (venue_id, source_type)
);

CREATE TABLE IF NOT EXISTS backfill_runs (
    id SERIAL PRIMARY KEY,
    provider TEXT NOT NULL,
    region_label TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending','running','paused','completed','failed')),
    claim_token TEXT,
    total_tiles INTEGER NOT NULL DEFAULT 0,
    completed_tiles INTEGER NOT NULL DEFAULT 0,
    discovered_count INTEGER NOT NULL DEFAULT 0,
    inserted_count INTEGER NOT NULL DEFAULT 0,
    updated_count INTEGER NOT NULL DEFAULT 0,
    skipped_count INTEGER NOT NULL DEFAULT 0,
    enriched_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    error_log JSONB NOT NULL DEFAULT '[]'::jsonb,
    config JSONB NOT NULL DEFAULT '{}'::jsonb,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    duration_ms BIGINT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_backfill_runs_created ON backfill_runs(created_at DESC);

CREATE TABLE IF NOT EXISTS backfill_run_venues (
    id SERIAL PRIMARY KEY,
    run_id INTEGER NOT NULL REFERENCES backfill_runs(id) ON DELETE CASCADE,
    venue_id INTEGER REFERENCES venues(id) ON DELETE SET NULL,
    external_id TEXT,
    action TEXT NOT NULL CHECK (action IN ('inserted','updated','skipped')),
    error TEXT,
    enrichment_status TEXT,
    confidence_score REAL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_backfill_run_venues_run ON backfill_run_venues(run_id);

-- Upgrades tables created before these columns existed.
ALTER TABLE venues ADD COLUMN IF NOT EXISTS confidence_score REAL DEFAULT 0;
ALTER TABLE venues ADD COLUMN IF NOT EXISTS enrichment_status TEXT DEFAULT 'pending';
ALTER TABLE backfill_runs ADD COLUMN IF NOT EXISTS failed_count INTEGER NOT NULL DEFAULT 0;
ALTER TABLE backfill_runs ADD COLUMN IF NOT EXISTS duration_ms BIGINT;
ALTER TABLE backfill_run_venues ADD COLUMN IF NOT EXISTS enrichment_status TEXT;
ALTER TABLE backfill_run_venues ADD COLUMN IF NOT EXISTS confidence_score REAL;
CREATE INDEX IF NOT EXISTS idx_venues_confidence ON venues(confidence_score);
CREATE INDEX IF NOT EXISTS idx_venues_enrichment ON venues(enrichment_status);
"""

_VENUE_COLUMNS = (
    "name, address_line1, city, county, postcode, lat, lng, phone, website, "
    "description, category, google_rating, google_review_count, price_level"
)

_SELECT_VENUE = f"""
SELECT id, slug, {_VENUE_COLUMNS}, confidence_score, enrichment_status
FROM venues
WHERE external_id = %(external_id)s
FOR UPDATE
"""

_INSERT_VENUE = f"""
INSERT INTO venues (
    slug, external_id, {_VENUE_COLUMNS}, confidence_score, enrichment_status,
    status, last_synced_at, updated_at
) VALUES (
    %(slug)s,
    %(external_id)s,
    %(name)s,
    %(address_line1)s,
    %(city)s,
    %(county)s,
    %(postcode)s,
    %(lat)s,
    %(lng)s,
    %(phone)s,
    %(website)s,
    %(description)s,
    %(category)s,
    %(google_rating)s,
    %(google_review_count)s,
    %(price_level)s,
    %(confidence_score)s,
    %(enrichment_status)s,
    'active',
    NOW(),
    NOW()
)
RETURNING id
"""

# Null parameters leave the stored column untouched; confidence and enrichment are always recomputed.
_UPDATE_VENUE = """
UPDATE venues SET
    name = COALESCE(%(name)s, name),
    address_line1 = COALESCE(%(address_line1)s, address_line1),
    city = COALESCE(%(city)s, city),
    county = COALESCE(%(county)s, county),
    postcode = COALESCE(%(postcode)s, postcode),
    lat = COALESCE(%(lat)s, lat),
    lng = COALESCE(%(lng)s, lng),
    phone = COALESCE(%(phone)s, phone),
    website = COALESCE(%(website)s, website),
    description = COALESCE(%(description)s, description),
    category = COALESCE(%(category)s, category),
    google_rating = COALESCE(%(google_rating)s, google_rating),
    google_review_count = COALESCE(%(google_review_count)s, google_review_count),
    price_level = COALESCE(%(price_level)s, price_level),
    confidence_score = %(confidence_score)s,
    enrichment_status = %(enrichment_status)s,
    last_synced_at = NOW(),
    updated_at = NOW()
WHERE id = %(venue_id)s
"""

_UPSERT_SOURCE = """
INSERT INTO venue_sources (venue_id, source_type, source_id, last_fetched_at, raw_data)
VALUES (%(venue_id)s, %(source_type)s, %(source_id)s, NOW(), %(raw_data)s)
ON CONFLICT (venue_id, source_type) DO UPDATE SET
    source_id = EXCLUDED.source_id,
    last_fetched_at = EXCLUDED.last_fetched_at,
    raw_data = COALESCE(EXCLUDED.raw_data, venue_sources.raw_data)
"""

_INSERT_RUN_VENUE = """
INSERT INTO backfill_run_venues (run_id, venue_id, external_id, action, error, enrichment_status, confidence_score)
VALUES (
    %(run_id)s, %(venue_id)s, %(external_id)s, %(action)s, %(error)s, %(enrichment_status)s, %(confidence_score)s
)
"""

_RUN_COLUMNS = """
id, provider, region_label, status, total_tiles, completed_tiles, discovered_count,
inserted_count, updated_count, skipped_count, enriched_count, failed_count, error_log, config,
started_at, completed_at, duration_ms, created_at
"""

_SAVE_PROGRESS = """
UPDATE backfill_runs SET
    completed_tiles = %(completed_tiles)s,
    discovered_count = %(discovered_count)s,
    inserted_count = %(inserted_count)s,
    updated_count = %(updated_count)s,
    skipped_count = %(skipped_count)s,
    enriched_count = %(enriched_count)s,
    failed_count = %(failed_count)s,
    error_log = %(error_log)s,
    updated_at = NOW()
WHERE id = %(run_id)s AND claim_token = %(claim_token)s
RETURNING id
"""

_FINISH_RUN = """
UPDATE backfill_runs SET
    status = %(status)s,
    claim_token = NULL,
    completed_at = NOW(),
    duration_ms = (EXTRACT(EPOCH FROM (NOW() - COALESCE(started_at, NOW()))) * 1000)::BIGINT,
    completed_tiles = %(completed_tiles)s,
    discovered_count = %(discovered_count)s,
    inserted_count = %(inserted_count)s,
    updated_count = %(updated_count)s,
    skipped_count = %(skipped_count)s,
    enriched_count = %(enriched_count)s,
    failed_count = %(failed_count)s,
    error_log = %(error_log)s,
    updated_at = NOW()
WHERE id = %(run_id)s AND claim_token = %(claim_token)s
RETURNING id
"""


def _progress_params(run_id: int, progress: RunProgress, claim_token: str) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "claim_token": claim_token,
        "completed_tiles": progress.completed_tiles,
        "discovered_count": progress.discovered_count,
        "inserted_count": progress.inserted_count,
        "updated_count": progress.updated_count,
        "skipped_count": progress.skipped_count,
        "enriched_count": progress.enriched_count,
        "failed_count": progress.failed_count,
        "error_log": extras.Json(list(progress.error_log)),
    }


def _row_to_run(row: Dict[str, Any]) -> Run:
    return Run(
        id=int(row["id"]),
        provider=row["provider"],
        region_label=row["region_label"],
        status=RunStatus(row["status"]),
        total_tiles=int(row["total_tiles"] or 0),
        progress=RunProgress(
            completed_tiles=int(row["completed_tiles"] or 0),
            discovered_count=int(row["discovered_count"] or 0),
            inserted_count=int(row["inserted_count"] or 0),
            updated_count=int(row["updated_count"] or 0),
            skipped_count=int(row["skipped_count"] or 0),
            enriched_count=int(row["enriched_count"] or 0),
            failed_count=int(row.get("failed_count") or 0),
            error_log=list(row.get("error_log") or []),
        ),
        config=dict(row.get("config") or {}),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        created_at=row.get("created_at"),
        duration_ms=int(row["duration_ms"]) if row.get("duration_ms") is not None else None,
    )


class VenueWriter:
    """Venue writes bound to one open transaction."""

    def __init__(self, cursor) -> None:
        self.cursor = cursor

    def find_venue(self, external_id: str) -> Optional[Dict[str, Any]]:
        self.cursor.execute(_SELECT_VENUE, {"external_id": external_id})
        row = self.cursor.fetchone()
        return dict(row) if row else None

    def insert_venue(self, slug: str, external_id: str, row: Dict[str, Any]) -> int:
        params = {**row, "slug": slug, "external_id": external_id}
        try:
            self.cursor.execute(_INSERT_VENUE, params)
        except errors.UniqueViolation as exc:
            raise DuplicateVenueError(str(exc)) from exc
        return int(self.cursor.fetchone()["id"])

    def update_venue(self, venue_id: int, row: Dict[str, Any]) -> None:
        self.cursor.execute(_UPDATE_VENUE, {**row, "venue_id": venue_id})

    def replace_opening_hours(self, venue_id: int, periods: Sequence[OpeningPeriod]) -> None:
        self.cursor.execute("DELETE FROM venue_opening_hours WHERE venue_id = %s", (venue_id,))
        for period in periods:
            self.cursor.execute(
                "INSERT INTO venue_opening_hours (venue_id, day_of_week, open_time, close_time) "
                "VALUES (%s, %s, %s, %s)",
                (venue_id, period.day_of_week, period.open_time, period.close_time),
            )

    def replace_images(self, venue_id: int, venue_name: str, photos: Sequence[PhotoRef]) -> None:
        self.cursor.execute("DELETE FROM venue_images WHERE venue_id = %s AND source = 'google'", (venue_id,))
        for index, photo in enumerate(photos):
            self.cursor.execute(
                "INSERT INTO venue_images (venue_id, url, photo_reference, alt, source, is_primary, attribution) "
                "VALUES (%s, %s, %s, %s, 'google', %s, %s)",
                (
                    venue_id,
                    photo.url,
                    photo.reference,
                    f"{venue_name} - photo {index + 1}",
                    index == 0,
                    photo.attribution,
                ),
            )
        if photos:
            self.cursor.execute("UPDATE venues SET image_url = %s WHERE id = %s", (photos[0].url, venue_id))

    def upsert_source(self, venue_id: int, source_type: str, source_id: str, raw: Optional[Dict[str, Any]]) -> None:
        self.cursor.execute(
            _UPSERT_SOURCE,
            {
                "venue_id": venue_id,
                "source_type": source_type,
                "source_id": source_id,
                "raw_data": extras.Json(raw) if raw else None,
            },
        )

    def record_run_venue(
        self,
        run_id: int,
        venue_id: Optional[int],
        external_id: Optional[str],
        action: UpsertAction,
        error: Optional[str] = None,
        enrichment_status: Optional[EnrichmentStatus] = None,
        confidence_score: Optional[float] = None,
    ) -> None:
        self.cursor.execute(
            _INSERT_RUN_VENUE,
            {
                "run_id": run_id,
                "venue_id": venue_id,
                "external_id": external_id,
                "action": action.value,
                "error": error,
                "enrichment_status": enrichment_status.value if enrichment_status else None,
                "confidence_score": confidence_score,
            },
        )


class PostgresStore:
    """Explicitly constructed store handle; open at process start and close on shutdown."""

    def __init__(self, connection_pool) -> None:
        self._pool = connection_pool

    @classmethod
    def open(cls, database_url: str, minconn: int = 1, maxconn: int = 5) -> "PostgresStore":
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
        return cls(connection_pool)

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self):
        """Context manager yielding a pooled connection."""
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        """Cursor inside a transaction that commits on success and rolls back on error."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def transaction(self) -> Iterator[VenueWriter]:
        with self.cursor() as cur:
            yield VenueWriter(cur)

    def ensure_schema(self) -> None:
        with self.cursor() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Schema ensured")

    # ---------- Runs ----------

    def create_run(self, provider: str, region_label: str, total_tiles: int, config: Dict[str, Any]) -> int:
        with self.cursor() as cur:
            cur.execute(
                "INSERT INTO backfill_runs (provider, region_label, status, total_tiles, config) "
                "VALUES (%s, %s, 'pending', %s, %s) RETURNING id",
                (provider, region_label, total_tiles, extras.Json(config)),
            )
            return int(cur.fetchone()["id"])

    def get_run(self, run_id: int) -> Run:
        with self.cursor() as cur:
            cur.execute(f"SELECT {_RUN_COLUMNS} FROM backfill_runs WHERE id = %s", (run_id,))
            row = cur.fetchone()
        if row is None:
            raise RunNotFoundError(f"run {run_id} not found")
        return _row_to_run(row)

    def list_runs(self, limit: int) -> List[Run]:
        with self.cursor() as cur:
            cur.execute(
                f"SELECT {_RUN_COLUMNS} FROM backfill_runs ORDER BY created_at DESC, id DESC LIMIT %s",
                (limit,),
            )
            rows = cur.fetchall()
        return [_row_to_run(row) for row in rows]

    def claim_run(self, run_id: int, token: str) -> bool:
        """Atomically move a pending run to running; False if another state or worker owns it."""
        with self.cursor() as cur:
            cur.execute(
                "UPDATE backfill_runs SET status = 'running', claim_token = %s, "
                "started_at = COALESCE(started_at, NOW()), updated_at = NOW() "
                "WHERE id = %s AND status = 'pending' RETURNING id",
                (token, run_id),
            )
            return cur.fetchone() is not None

    def is_claimed(self, run_id: int, token: str) -> bool:
        """True while the run is still running under ``token``."""
        with self.cursor() as cur:
            cur.execute("SELECT status, claim_token FROM backfill_runs WHERE id = %s", (run_id,))
            row = cur.fetchone()
        return bool(row) and row["status"] == RunStatus.RUNNING.value and row["claim_token"] == token

    def transition_run(self, run_id: int, from_status: RunStatus, to_status: RunStatus) -> bool:
        with self.cursor() as cur:
            cur.execute(
                "UPDATE backfill_runs SET status = %s, updated_at = NOW() WHERE id = %s AND status = %s RETURNING id",
                (to_status.value, run_id, from_status.value),
            )
            return cur.fetchone() is not None

    def requeue_run(self, run_id: int) -> bool:
        """Move a paused run back to pending and drop its claim so only a fresh execution can write to it."""
        with self.cursor() as cur:
            cur.execute(
                "UPDATE backfill_runs SET status = 'pending', claim_token = NULL, updated_at = NOW() "
                "WHERE id = %s AND status = 'paused' RETURNING id",
                (run_id,),
            )
            return cur.fetchone() is not None

    def save_progress(self, run_id: int, progress: RunProgress, claim_token: str) -> bool:
        """Flush counters; False when ``claim_token`` no longer owns the run."""
        with self.cursor() as cur:
            cur.execute(_SAVE_PROGRESS, _progress_params(run_id, progress, claim_token))
            return cur.fetchone() is not None

    def finish_run(self, run_id: int, status: RunStatus, progress: RunProgress, claim_token: str) -> bool:
        params = _progress_params(run_id, progress, claim_token)
        params["status"] = status.value
        with self.cursor() as cur:
            cur.execute(_FINISH_RUN, params)
            return cur.fetchone() is not None

    # ---------- Audit trail ----------

    def record_run_venue(
        self,
        run_id: int,
        venue_id: Optional[int],
        external_id: Optional[str],
        action: UpsertAction,
        error: Optional[str] = None,
        enrichment_status: Optional[EnrichmentStatus] = None,
        confidence_score: Optional[float] = None,
    ) -> None:
        with self.transaction() as writer:
            writer.record_run_venue(run_id, venue_id, external_id, action, error, enrichment_status, confidence_score)

    def list_run_venues(self, run_id: int, limit: int) -> Tuple[int, List[Dict[str, Any]]]:
        with self.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM backfill_run_venues WHERE run_id = %s", (run_id,))
            total = int(cur.fetchone()["total"])
            cur.execute(
                "SELECT rv.venue_id, rv.external_id, rv.action, rv.error, rv.enrichment_status, rv.confidence_score, "
                "rv.created_at, v.name, v.city "
                "FROM backfill_run_venues rv LEFT JOIN venues v ON v.id = rv.venue_id "
                "WHERE rv.run_id = %s ORDER BY rv.created_at DESC, rv.id DESC LIMIT %s",
                (run_id, limit),
            )
            rows = [dict(row) for row in cur.fetchall()]
        return total, rows
