"""HTTP entrypoint for triggering and supervising backfill runs."""

from __future__ import annotations

import functools
import hmac
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from venue_backfill.core import grid
from venue_backfill.core.config import Settings, get_settings
from venue_backfill.core.db import PostgresStore, RunNotFoundError
from venue_backfill.jobs import backfill_run
from venue_backfill.jobs.backfill_run import ProviderFactory, RunStateError
from venue_backfill.vendors.base import BackfillSetupError, MissingCredentialsError
from venue_backfill.vendors.registry import get_provider

logger = logging.getLogger(__name__)

_ADMIN_COOKIE = "admin_token"


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def create_app(
    store,
    settings: Optional[Settings] = None,
    executor=None,
    provider_factory: ProviderFactory = get_provider,
) -> Flask:
    """Build the Flask app around an opened store.

    Runs execute on ``executor`` in the background; the request that starts
    one returns as soon as the run row exists.
    """
    settings = settings or get_settings()
    executor = executor or ThreadPoolExecutor(max_workers=settings.max_concurrent_runs)
    app = Flask(__name__)

    def _run_job_safe(run_id: int) -> None:
        try:
            backfill_run.execute_run(store, run_id, settings=settings)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Backfill run %s failed: %s", run_id, exc)

    def _submit(run_id: int) -> None:
        logger.info("Queueing backfill run %s", run_id)
        executor.submit(_run_job_safe, run_id)

    def require_admin(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            if not settings.admin_secret:
                return _error("admin access is not configured", 503)
            header = request.headers.get("Authorization", "")
            token = header[len("Bearer "):] if header.startswith("Bearer ") else request.cookies.get(_ADMIN_COOKIE, "")
            if not token or not hmac.compare_digest(token, settings.admin_secret):
                return _error("unauthorized", 401)
            return view(*args, **kwargs)

        return wrapper

    # ---------- Error mapping ----------

    @app.errorhandler(RunNotFoundError)
    def _not_found(exc):
        return _error(str(exc), 404)

    @app.errorhandler(RunStateError)
    def _conflict(exc):
        return _error(str(exc), 409)

    @app.errorhandler(MissingCredentialsError)
    def _unavailable(exc):
        return _error(str(exc), 503)

    @app.errorhandler(BackfillSetupError)
    def _setup_failed(exc):
        return _error(str(exc), 400)

    @app.errorhandler(ValueError)
    def _bad_request(exc):
        return _error(str(exc), 400)

    # ---------- Routes ----------

    @app.get("/healthz")
    def healthcheck() -> Any:
        return (
            jsonify(
                {
                    "status": "ok",
                    "worker_port_config": settings.worker_port,
                    "provider_configured": bool(settings.google_places_api_key),
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    @app.post("/backfill/runs")
    @require_admin
    def start_backfill() -> Any:
        """
        Start a run. JSON body: exactly one of region, city, bbox, point.
        Optional: provider, step_km, radius_km, keywords, enrich, dry_run.
        """
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        config = backfill_run.build_run_config(payload, settings)

        if payload.get("dry_run"):
            return jsonify({"data": grid.preview(config.region, config.step_km, config.radius_km)}), 200

        run_id = backfill_run.start_run(
            store,
            config,
            _submit,
            settings=settings,
            provider_factory=provider_factory,
        )
        return jsonify({"data": {"run_id": run_id, "status": "pending"}}), 202

    @app.get("/backfill/runs")
    @require_admin
    def list_backfill_runs() -> Any:
        runs = backfill_run.list_runs(store, _int_arg("limit", backfill_run.DEFAULT_LIST_LIMIT))
        return jsonify({"data": [run.to_dict() for run in runs]}), 200

    @app.get("/backfill/runs/<int:run_id>")
    @require_admin
    def get_backfill_run(run_id: int) -> Any:
        return jsonify({"data": backfill_run.get_run(store, run_id).to_dict()}), 200

    @app.get("/backfill/runs/<int:run_id>/venues")
    @require_admin
    def get_backfill_run_venues(run_id: int) -> Any:
        limit = _int_arg("limit", backfill_run.DEFAULT_VENUE_LOG_LIMIT)
        return jsonify({"data": backfill_run.get_run_venues(store, run_id, limit)}), 200

    @app.post("/backfill/runs/<int:run_id>/pause")
    @require_admin
    def pause_backfill_run(run_id: int) -> Any:
        return jsonify({"data": backfill_run.pause_run(store, run_id).to_dict()}), 200

    @app.post("/backfill/runs/<int:run_id>/resume")
    @require_admin
    def resume_backfill_run(run_id: int) -> Any:
        return jsonify({"data": backfill_run.resume_run(store, run_id, _submit).to_dict()}), 202

    @app.get("/backfill/provider-check")
    @require_admin
    def provider_check() -> Any:
        """Single search page against the configured provider, no run is created."""
        provider = provider_factory(request.args.get("provider", backfill_run.DEFAULT_PROVIDER), settings, None)
        if not hasattr(provider, "probe"):
            return _error(f"provider {provider.name} has no connectivity check", 400)
        result = provider.probe()
        return jsonify({"data": result}), 200 if result["ok"] else 502

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    settings = get_settings()
    store = PostgresStore.open(settings.database_url, maxconn=settings.max_concurrent_runs + 2)
    app = create_app(store, settings)

    env_port = os.getenv("PORT")
    port = int(env_port or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    try:
        app.run(host="0.0.0.0", port=port)
    finally:
        store.close()


if __name__ == "__main__":
    main()
