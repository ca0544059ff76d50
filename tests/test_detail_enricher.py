from conftest import FakeProvider
from venue_backfill.core import detail_enricher
from venue_backfill.core.detail_enricher import DetailEnricher
from venue_backfill.models import DiscoveredCandidate, VenueDetails


def test_enrich_applies_details(monkeypatch):
    sleeps = []
    monkeypatch.setattr(detail_enricher.time, "sleep", lambda seconds: sleeps.append(seconds))
    provider = FakeProvider(details={"abc": VenueDetails(phone="0123", website="https://x.example")})
    enricher = DetailEnricher(provider, delay_seconds=0.2)

    enriched, ok = enricher.enrich(DiscoveredCandidate(external_id="abc", name="Jungle", city="Leeds"))

    assert ok is True
    assert enriched.phone == "0123"
    assert enriched.city == "Leeds"
    assert sleeps == [0.2]


def test_enrich_falls_back_when_details_missing_or_failing(monkeypatch, caplog):
    monkeypatch.setattr(detail_enricher.time, "sleep", lambda seconds: None)
    provider = FakeProvider(details={"boom": RuntimeError("timeout")})
    enricher = DetailEnricher(provider)
    basic = DiscoveredCandidate(external_id="boom", name="Jungle", phone="999")

    with caplog.at_level("WARNING"):
        result, ok = enricher.enrich(basic)

    assert ok is False
    assert result is basic
    assert "Details lookup failed for boom" in caplog.text

    missing = DiscoveredCandidate(external_id="missing", name="Other")
    assert enricher.enrich(missing) == (missing, False)
