"""Backfill run lifecycle: create, execute tile by tile, inspect, pause and resume."""

from __future__ import annotations

import argparse
import logging
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from venue_backfill.core import grid
from venue_backfill.core.config import Settings, get_settings
from venue_backfill.core.db import PostgresStore
from venue_backfill.core.detail_enricher import DetailEnricher
from venue_backfill.core.reconcile import UpsertResult, VenueReconciler
from venue_backfill.core.regions import InvalidRegionError, resolve_region
from venue_backfill.models import (
    DiscoveredCandidate,
    Run,
    RunConfig,
    RunProgress,
    RunStatus,
    SearchTile,
    UpsertAction,
)
from venue_backfill.vendors.base import BackfillSetupError, DiscoveryProvider
from venue_backfill.vendors.registry import get_provider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "google_places"
DEFAULT_STEP_KM = 20.0
DEFAULT_RADIUS_KM = 16.0
DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100
DEFAULT_VENUE_LOG_LIMIT = 200

ProviderFactory = Callable[[str, Settings, Optional[Sequence[str]]], DiscoveryProvider]
Submit = Callable[[int], Any]


class RunStateError(RuntimeError):
    """Raised when a pause/resume is requested from a state that does not allow it."""


# ---------- Configuration ----------


def _positive_float(payload: Mapping[str, Any], key: str, default: float) -> float:
    raw = payload.get(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{key} must be numeric") from exc
    if value <= 0:
        raise ValueError(f"{key} must be positive")
    return value


def _region_descriptor(payload: Mapping[str, Any]) -> Dict[str, Any]:
    present = [key for key in ("region", "city", "bbox", "point") if payload.get(key)]
    if len(present) != 1:
        raise ValueError("exactly one of region, city, bbox or point is required")
    key = present[0]
    value = payload[key]
    if key in ("region", "city"):
        return {key: str(value).strip()}
    if key == "bbox":
        return {"bbox": value, "label": payload.get("label")} if payload.get("label") else {"bbox": value}
    if not isinstance(value, Mapping):
        raise ValueError("point must be an object with lat, lng and radius_km")
    return dict(value)


def build_run_config(payload: Mapping[str, Any], settings: Settings) -> RunConfig:
    """Validate a trigger payload; raises ``ValueError`` (incl. ``InvalidRegionError``)."""
    keywords_raw = payload.get("keywords")
    if keywords_raw is None:
        keywords = list(settings.keywords)
    elif isinstance(keywords_raw, list) and all(isinstance(k, str) for k in keywords_raw):
        keywords = [k.strip() for k in keywords_raw if k.strip()]
    else:
        raise ValueError("keywords must be a list of strings")
    if not keywords:
        raise ValueError("at least one keyword is required")

    config = RunConfig(
        provider=str(payload.get("provider") or DEFAULT_PROVIDER),
        region=_region_descriptor(payload),
        step_km=_positive_float(payload, "step_km", DEFAULT_STEP_KM),
        radius_km=_positive_float(payload, "radius_km", DEFAULT_RADIUS_KM),
        keywords=keywords,
        enrich=payload.get("enrich") is not False,
    )
    # Fails fast on unknown regions and uncoverable step/radius combinations.
    grid.generate(config.region, config.step_km, config.radius_km)
    return config


def _config_from_row(raw: Mapping[str, Any]) -> RunConfig:
    try:
        return RunConfig(**raw)
    except TypeError as exc:
        raise BackfillSetupError(f"stored run config is invalid: {exc}") from exc


# ---------- Lifecycle ----------


def create_run(store, config: RunConfig) -> int:
    """Insert the pending run row; no provider calls are made."""
    label, box = resolve_region(config.region)
    tiles = grid.generate_for_box(box, config.step_km, config.radius_km)
    run_id = store.create_run(config.provider, label, len(tiles), asdict(config))
    logger.info("Created run %s for %s with %d tiles", run_id, label, len(tiles))
    return run_id


def start_run(
    store,
    config: RunConfig,
    submit: Submit,
    *,
    settings: Optional[Settings] = None,
    provider_factory: ProviderFactory = get_provider,
) -> int:
    """Validate setup, create the run row and hand execution to ``submit``.

    Setup errors (missing credentials, unknown provider, invalid region) are
    raised here, before any run row exists.
    """
    settings = settings or get_settings()
    provider_factory(config.provider, settings, config.keywords)
    run_id = create_run(store, config)
    submit(run_id)
    return run_id


class BackfillRunner:
    """Sequential tile loop for one run; counters are flushed to the store after every tile."""

    def __init__(
        self,
        store,
        run: Run,
        config: RunConfig,
        provider: DiscoveryProvider,
        settings: Settings,
        claim_token: str,
    ) -> None:
        self.store = store
        self.run = run
        self.claim_token = claim_token
        self.config = config
        self.provider = provider
        self.settings = settings
        self.progress: RunProgress = run.progress
        self.reconciler = VenueReconciler(store, source_type=provider.name, fallback_city=run.region_label)
        self.enricher = DetailEnricher(provider, settings.enrich_delay_seconds) if config.enrich else None
        self._enriched_ids: set = set()

    def _add_error(self, message: str) -> None:
        self.progress.failed_count += 1
        self.progress.add_error(message, self.settings.error_log_limit)

    def process_tile(self, index: int, total: int, tile: SearchTile) -> None:
        try:
            candidates = self.provider.search_area(tile.center_lat, tile.center_lng, tile.search_radius)
        except Exception as exc:  # noqa: BLE001
            message = f"Tile {index + 1}/{total} ({tile.center_lat}, {tile.center_lng}) search failed: {exc}"
            logger.warning("Run %s: %s", self.run.id, message)
            self._add_error(message)
            return

        logger.info(
            "Run %s tile %d/%d (%s, %s): %d candidates",
            self.run.id,
            index + 1,
            total,
            tile.center_lat,
            tile.center_lng,
            len(candidates),
        )
        for candidate in candidates:
            self.progress.discovered_count += 1
            result = self._process_candidate(candidate)
            self.progress.record(result.action)
            if result.error:
                self._add_error(result.error)

    def _process_candidate(self, candidate: DiscoveredCandidate) -> UpsertResult:
        enriched = False
        try:
            if self.enricher is not None and candidate.external_id not in self._enriched_ids:
                candidate, enriched = self.enricher.enrich(candidate)
                if enriched:
                    self.progress.enriched_count += 1
                    self._enriched_ids.add(candidate.external_id)
            return self.reconciler.upsert(self.run.id, candidate, enriched)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Run %s: candidate %s failed: %s", self.run.id, candidate.external_id, exc)
            return UpsertResult(UpsertAction.SKIPPED, error=f"Candidate {candidate.external_id} failed: {exc}")

    def execute(self, tiles: List[SearchTile]) -> None:
        """Process tiles from ``completed_tiles`` on; stops without finishing once the claim is lost."""
        total = len(tiles)
        for index in range(self.progress.completed_tiles, total):
            if not self.store.is_claimed(self.run.id, self.claim_token):
                logger.info("Run %s stopped before tile %d/%d (paused)", self.run.id, index + 1, total)
                return
            self.process_tile(index, total, tiles[index])
            self.progress.completed_tiles = index + 1
            if not self.store.save_progress(self.run.id, self.progress, self.claim_token):
                logger.warning(
                    "Run %s was claimed by another execution during tile %d/%d; discarding its progress",
                    self.run.id,
                    index + 1,
                    total,
                )
                return

        if not self.store.finish_run(self.run.id, RunStatus.COMPLETED, self.progress, self.claim_token):
            logger.warning("Run %s was claimed by another execution; not marking it completed", self.run.id)
            return
        logger.info(
            "Run %s completed: discovered=%d inserted=%d updated=%d skipped=%d failed=%d",
            self.run.id,
            self.progress.discovered_count,
            self.progress.inserted_count,
            self.progress.updated_count,
            self.progress.skipped_count,
            self.progress.failed_count,
        )

    def fail(self, message: str) -> None:
        self.progress.add_error(message, self.settings.error_log_limit)
        if not self.store.finish_run(self.run.id, RunStatus.FAILED, self.progress, self.claim_token):
            logger.warning("Run %s was claimed by another execution; not marking it failed", self.run.id)


def execute_run(
    store,
    run_id: int,
    *,
    settings: Optional[Settings] = None,
    provider: Optional[DiscoveryProvider] = None,
) -> Run:
    """Claim a pending run and process its tiles; returns the run as stored afterwards."""
    settings = settings or get_settings()
    claim_token = uuid.uuid4().hex
    if not store.claim_run(run_id, claim_token):
        run = store.get_run(run_id)
        logger.warning("Run %s is %s, not pending; nothing to execute", run_id, run.status.value)
        return run

    # Read after claiming so a resumed run continues from the latest flushed counters.
    run = store.get_run(run_id)
    progress = run.progress
    try:
        config = _config_from_row(run.config)
        tiles = grid.generate(config.region, config.step_km, config.radius_km)
        provider = provider or get_provider(config.provider, settings, config.keywords)
    except (BackfillSetupError, InvalidRegionError) as exc:
        logger.error("Run %s setup failed: %s", run_id, exc)
        progress.add_error(f"Setup failed: {exc}", settings.error_log_limit)
        store.finish_run(run_id, RunStatus.FAILED, progress, claim_token)
        return store.get_run(run_id)

    runner = BackfillRunner(store, run, config, provider, settings, claim_token)
    try:
        runner.execute(tiles)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Run %s failed: %s", run_id, exc)
        runner.fail(f"Run failed: {exc}")
    return store.get_run(run_id)


# ---------- Inspection & control ----------


def get_run(store, run_id: int) -> Run:
    return store.get_run(run_id)


def list_runs(store, limit: int = DEFAULT_LIST_LIMIT) -> List[Run]:
    return store.list_runs(max(1, min(int(limit), MAX_LIST_LIMIT)))


def get_run_venues(store, run_id: int, limit: int = DEFAULT_VENUE_LOG_LIMIT) -> Dict[str, Any]:
    store.get_run(run_id)
    total, rows = store.list_run_venues(run_id, max(1, min(int(limit), DEFAULT_VENUE_LOG_LIMIT)))
    venues = []
    for row in rows:
        created_at = row.get("created_at")
        venues.append(
            {
                "venue_id": row.get("venue_id"),
                "external_id": row.get("external_id"),
                "action": row.get("action"),
                "name": row.get("name"),
                "city": row.get("city"),
                "error": row.get("error"),
                "enrichment_status": row.get("enrichment_status"),
                "confidence_score": row.get("confidence_score"),
                "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
            }
        )
    return {"total": total, "venues": venues}


def pause_run(store, run_id: int) -> Run:
    """Ask a running run to stop before its next tile."""
    run = store.get_run(run_id)
    if not store.transition_run(run_id, RunStatus.RUNNING, RunStatus.PAUSED):
        raise RunStateError(f"run {run_id} is {run.status.value}; only running runs can be paused")
    logger.info("Run %s paused", run_id)
    return store.get_run(run_id)


def resume_run(store, run_id: int, submit: Submit) -> Run:
    """Re-queue a paused run; it continues from its last completed tile."""
    run = store.get_run(run_id)
    if not store.requeue_run(run_id):
        raise RunStateError(f"run {run_id} is {run.status.value}; only paused runs can be resumed")
    logger.info("Run %s resumed from tile %d/%d", run_id, run.progress.completed_tiles, run.total_tiles)
    submit(run_id)
    return store.get_run(run_id)


# ---------- CLI ----------


def _floats(raw: str, count: int, name: str) -> List[float]:
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != count:
        raise argparse.ArgumentTypeError(f"{name} needs {count} comma-separated numbers")
    try:
        return [float(p) for p in parts]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{name} must be numeric") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a geographic venue backfill")
    target = parser.add_mutually_exclusive_group()
    target.add_argument("--region", help="Named region slug, e.g. west-midlands, or full-uk")
    target.add_argument("--city", help="Named city slug, e.g. birmingham")
    target.add_argument("--bbox", type=lambda v: _floats(v, 4, "--bbox"), help="south,west,north,east")
    target.add_argument("--point", type=lambda v: _floats(v, 3, "--point"), help="lat,lng,radius_km")
    target.add_argument("--resume", type=int, dest="resume_run_id", help="Resume a paused run by id")
    parser.add_argument("--provider", default=DEFAULT_PROVIDER, help="Discovery provider name")
    parser.add_argument("--step-km", dest="step_km", type=float, default=DEFAULT_STEP_KM)
    parser.add_argument("--radius-km", dest="radius_km", type=float, default=DEFAULT_RADIUS_KM)
    parser.add_argument("--keyword", dest="keywords", action="append", help="Search keyword (repeatable)")
    parser.add_argument("--no-enrich", dest="enrich", action="store_false", help="Skip place details lookups")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Only print the grid")
    parser.add_argument("--init-schema", dest="init_schema", action="store_true", help="Create tables first")
    return parser


def _payload_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "provider": args.provider,
        "step_km": args.step_km,
        "radius_km": args.radius_km,
        "keywords": args.keywords,
        "enrich": args.enrich,
    }
    if args.region:
        payload["region"] = args.region
    elif args.city:
        payload["city"] = args.city
    elif args.bbox:
        south, west, north, east = args.bbox
        payload["bbox"] = {"south": south, "west": west, "north": north, "east": east}
    elif args.point:
        lat, lng, radius_km = args.point
        payload["point"] = {"lat": lat, "lng": lng, "radius_km": radius_km}
    return payload


def main(argv: Optional[Sequence[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    has_target = any((args.region, args.city, args.bbox, args.point))
    if not has_target and args.resume_run_id is None and not args.init_schema:
        parser.error("one of --region, --city, --bbox, --point or --resume is required")

    config = None
    if has_target:
        try:
            config = build_run_config(_payload_from_args(args), settings)
        except ValueError as exc:
            parser.error(str(exc))
        if args.dry_run:
            preview = grid.preview(config.region, config.step_km, config.radius_km)
            logger.info("Dry run for %s: %d tiles", preview["region_label"], preview["total_tiles"])
            for tile in preview["sample_tiles"]:
                logger.info("  %s", tile)
            return

    store = PostgresStore.open(settings.database_url)

    def _execute(run_id: int) -> None:
        execute_run(store, run_id, settings=settings)

    try:
        if args.init_schema:
            store.ensure_schema()
        if args.resume_run_id is not None:
            resume_run(store, args.resume_run_id, _execute)
        elif config is not None:
            start_run(store, config, _execute, settings=settings)
    finally:
        store.close()


if __name__ == "__main__":
    main()
