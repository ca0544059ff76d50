"""Lookup of discovery providers by the name stored on a run."""

from __future__ import annotations

from typing import Callable, Dict, Optional, Sequence

from venue_backfill.core.config import Settings
from venue_backfill.vendors.base import BackfillSetupError, DiscoveryProvider
from venue_backfill.vendors.google_places import GooglePlacesProvider

ProviderFactory = Callable[[Settings, Optional[Sequence[str]]], DiscoveryProvider]

PROVIDERS: Dict[str, ProviderFactory] = {
    GooglePlacesProvider.name: GooglePlacesProvider.from_settings,
}


def get_provider(name: str, settings: Settings, keywords: Optional[Sequence[str]] = None) -> DiscoveryProvider:
    factory = PROVIDERS.get(name)
    if factory is None:
        raise BackfillSetupError(f"unknown provider: {name}")
    return factory(settings, keywords)
