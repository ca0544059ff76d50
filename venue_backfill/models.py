"""Core data models shared by the backfill engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class UpsertAction(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


class EnrichmentStatus(str, Enum):
    """How complete a venue's stored attributes are; ``pending`` until a backfill writes it."""

    PENDING = "pending"
    BASIC = "basic"
    ENRICHED = "enriched"


class SearchStatus(str, Enum):
    """Outcome of a single provider search page."""

    OK = "ok"
    EMPTY = "empty"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class BoundingBox:
    south: float
    west: float
    north: float
    east: float

    @property
    def center(self) -> tuple:
        return ((self.south + self.north) / 2, (self.west + self.east) / 2)

    def is_degenerate(self) -> bool:
        return self.north <= self.south or self.east <= self.west


@dataclass(frozen=True, slots=True)
class SearchTile:
    """A circular search area; ``search_radius`` is in metres."""

    center_lat: float
    center_lng: float
    search_radius: int


@dataclass(frozen=True, slots=True)
class OpeningPeriod:
    day_of_week: int  # 0 = Sunday
    open_time: str
    close_time: str


@dataclass(frozen=True, slots=True)
class PhotoRef:
    reference: str
    url: str
    attribution: str = "Google"


@dataclass(slots=True)
class DiscoveredCandidate:
    """Normalized snapshot of a place returned by a discovery provider."""

    external_id: str
    name: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    category_hints: List[str] = field(default_factory=list)
    photo_refs: List[PhotoRef] = field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    opening_hours: Optional[List[OpeningPeriod]] = None
    description: Optional[str] = None
    price_level: Optional[int] = None
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)


@dataclass(slots=True)
class VenueDetails:
    """Partial attribute set from a provider details lookup; every field is optional."""

    external_id: Optional[str] = None
    name: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    postcode: Optional[str] = None
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    category_hints: List[str] = field(default_factory=list)
    photo_refs: List[PhotoRef] = field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    opening_hours: Optional[List[OpeningPeriod]] = None
    description: Optional[str] = None
    price_level: Optional[int] = None
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)


@dataclass(slots=True)
class SearchPage:
    status: SearchStatus
    results: List[DiscoveredCandidate] = field(default_factory=list)
    next_page_token: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(slots=True)
class RunConfig:
    """Parameters a run was started with; persisted as JSON on the run row."""

    provider: str
    region: Dict[str, Any]
    step_km: float = 20.0
    radius_km: float = 16.0
    keywords: List[str] = field(default_factory=list)
    enrich: bool = True


@dataclass(slots=True)
class RunProgress:
    """Cumulative counters of a run, flushed to the store after every tile."""

    completed_tiles: int = 0
    discovered_count: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    enriched_count: int = 0
    failed_count: int = 0
    error_log: List[str] = field(default_factory=list)

    def record(self, action: UpsertAction) -> None:
        if action is UpsertAction.INSERTED:
            self.inserted_count += 1
        elif action is UpsertAction.UPDATED:
            self.updated_count += 1
        else:
            self.skipped_count += 1

    def add_error(self, message: str, limit: int) -> None:
        self.error_log.append(message)
        if len(self.error_log) > limit:
            del self.error_log[: len(self.error_log) - limit]


@dataclass(slots=True)
class Run:
    id: int
    provider: str
    region_label: str
    status: RunStatus
    total_tiles: int
    progress: RunProgress
    config: Dict[str, Any]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "region_label": self.region_label,
            "status": self.status.value,
            "total_tiles": self.total_tiles,
            "completed_tiles": self.progress.completed_tiles,
            "discovered_count": self.progress.discovered_count,
            "inserted_count": self.progress.inserted_count,
            "updated_count": self.progress.updated_count,
            "skipped_count": self.progress.skipped_count,
            "enriched_count": self.progress.enriched_count,
            "failed_count": self.progress.failed_count,
            "error_log": list(self.progress.error_log),
            "config": self.config,
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "created_at": _isoformat(self.created_at),
            "duration_ms": self.duration_ms,
        }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
