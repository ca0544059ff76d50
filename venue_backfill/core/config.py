"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_KEYWORDS = ("soft play", "indoor play centre", "childrens play centre")


@dataclass(frozen=True)
class Settings:
    google_places_api_key: str
    database_url: str
    admin_secret: str = ""
    worker_port: int = 9000
    max_pages: int = 3
    rate_limit_backoff_seconds: float = 60.0
    page_token_delay_seconds: float = 2.2
    enrich_delay_seconds: float = 0.2
    request_timeout_seconds: float = 10.0
    error_log_limit: int = 100
    max_concurrent_runs: int = 4
    keywords: Tuple[str, ...] = field(default=DEFAULT_KEYWORDS)


def _parse_keywords(raw: str) -> Tuple[str, ...]:
    keywords = tuple(part.strip() for part in raw.split(",") if part.strip())
    return keywords or DEFAULT_KEYWORDS


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_places_api_key = os.getenv("GOOGLE_PLACES_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    admin_secret = os.getenv("ADMIN_SECRET", "")
    worker_port = int(os.getenv("WORKER_PORT", "9000"))
    max_pages = int(os.getenv("BACKFILL_MAX_PAGES", "3"))
    rate_limit_backoff_seconds = float(os.getenv("BACKFILL_RATE_LIMIT_BACKOFF_SECONDS", "60"))
    page_token_delay_seconds = float(os.getenv("BACKFILL_PAGE_TOKEN_DELAY_SECONDS", "2.2"))
    enrich_delay_seconds = float(os.getenv("BACKFILL_ENRICH_DELAY_SECONDS", "0.2"))
    request_timeout_seconds = float(os.getenv("BACKFILL_REQUEST_TIMEOUT_SECONDS", "10"))
    error_log_limit = int(os.getenv("BACKFILL_ERROR_LOG_LIMIT", "100"))
    max_concurrent_runs = int(os.getenv("BACKFILL_MAX_CONCURRENT_RUNS", "4"))
    keywords = _parse_keywords(os.getenv("BACKFILL_KEYWORDS", ""))

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_places_api_key:
        logger.warning("GOOGLE_PLACES_API_KEY is not configured; backfill runs cannot start.")
    if not admin_secret:
        logger.warning("ADMIN_SECRET is not configured; admin endpoints will reject every request.")

    return Settings(
        google_places_api_key=google_places_api_key,
        database_url=database_url,
        admin_secret=admin_secret,
        worker_port=worker_port,
        max_pages=max_pages,
        rate_limit_backoff_seconds=rate_limit_backoff_seconds,
        page_token_delay_seconds=page_token_delay_seconds,
        enrich_delay_seconds=enrich_delay_seconds,
        request_timeout_seconds=request_timeout_seconds,
        error_log_limit=error_log_limit,
        max_concurrent_runs=max_concurrent_runs,
        keywords=keywords,
    )
