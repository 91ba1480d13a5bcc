import asyncio
from datetime import date, datetime, timedelta

import pytest

from rentcrawl.config import MatchConfig, MatchPenalties
from rentcrawl.errors import ConfigurationError
from rentcrawl.matching import MatchEngine, MatchStats, score, score_band
from rentcrawl.matching.scoring import (
    amenity_score,
    availability_score,
    distance_km,
    location_score,
    price_score,
    size_score,
)
from rentcrawl.models import Availability, Coordinates, Costs, Location, MatchRecord
from rentcrawl.storage import MemoryStore

from .fakes import make_listing, make_profile

PENALTIES = MatchPenalties()
BERLIN = Coordinates(lat=52.52, lng=13.405)


def test_perfect_listing_scores_100():
    result = score(make_listing(), make_profile())
    assert result.score == 100
    assert "Perfect price match" in result.matched
    assert "Perfect location" in result.matched
    assert "Preferred property type" in result.matched
    assert result.missed == []


def test_unknown_size_and_type_round_half_up():
    listing = make_listing(size=None, property_type=None)
    result = score(listing, make_profile())
    # 100 - 30 * 0.15 - 20 * 0.05 = 94.5
    assert result.score == 95


def test_over_budget_listing():
    listing = make_listing(costs=Costs(base_rent=1100, utilities=100))
    result = score(listing, make_profile())
    assert price_score(1200, make_profile(), PENALTIES) == pytest.approx(40)
    assert result.score == 79
    assert "Price outside preferred range" in result.missed


def test_price_within_range_and_below_minimum():
    prefs = make_profile(min_rent=500, max_rent=1000)
    assert price_score(750, prefs, PENALTIES) == pytest.approx(90)
    assert price_score(1000, prefs, PENALTIES) == pytest.approx(80)
    assert price_score(300, prefs, PENALTIES) == pytest.approx(80)
    assert price_score(100, prefs, PENALTIES) == pytest.approx(70)
    assert price_score(999, make_profile(), PENALTIES) == 100


@pytest.mark.parametrize("min_rent", [None, 0])
def test_zero_minimum_rent_means_no_lower_bound(min_rent):
    prefs = make_profile(min_rent=min_rent, max_rent=1000)
    assert price_score(1000, prefs, PENALTIES) == 100
    assert score(make_listing(costs=Costs(base_rent=1000)), prefs).score == 100


def test_scoring_is_deterministic():
    listing = make_listing(costs=Costs(base_rent=870), size=33.5)
    prefs = make_profile(move_in_date=date(2026, 11, 1))
    first = score(listing, prefs, reference_date=date(2026, 10, 1))
    second = score(listing, prefs, reference_date=date(2026, 10, 1))
    assert first == second


def test_location_sub_scores():
    prefs = make_profile()
    assert location_score(make_listing(), prefs, PENALTIES) == 100
    assert location_score(make_listing(location=Location(district="Mitte-Nord")), prefs, PENALTIES) == 100
    assert location_score(make_listing(location=Location(district="Spandau")), prefs, PENALTIES) == 70
    assert location_score(make_listing(location=Location()), prefs, PENALTIES) == 50
    assert location_score(make_listing(), make_profile(districts=[]), PENALTIES) == 80


def test_location_distance_from_center():
    prefs = make_profile(districts=[], max_distance_from_center=10, city_center=BERLIN)
    near = make_listing(location=Location(district="Mitte", coordinates=BERLIN))
    mid = make_listing(location=Location(district="Mitte", coordinates=Coordinates(lat=52.565, lng=13.405)))
    far = make_listing(location=Location(district="Mitte", coordinates=Coordinates(lat=53.0, lng=13.405)))

    assert location_score(near, prefs, PENALTIES) == 100
    assert distance_km(mid.location.coordinates, BERLIN) == pytest.approx(5.0, abs=0.05)
    assert location_score(mid, prefs, PENALTIES) == pytest.approx(85, abs=0.2)
    assert location_score(far, prefs, PENALTIES) == 50


def test_size_sub_scores():
    prefs = make_profile(min_size=40, max_size=60)
    assert size_score(make_listing(size=None), prefs) == 70
    assert size_score(make_listing(size=30), prefs) == pytest.approx(75)
    assert size_score(make_listing(size=50), prefs) == 100
    assert size_score(make_listing(size=90), prefs) == pytest.approx(75)
    assert size_score(make_listing(size=200), prefs) == 50


def test_amenity_sub_scores():
    prefs = make_profile(required_amenities={"balcony": True, "elevator": True, "garden": False})
    listing = make_listing(amenities={"balcony": True, "elevator": False})
    assert amenity_score(listing, prefs, PENALTIES) == pytest.approx(45)
    assert amenity_score(listing, make_profile(), PENALTIES) == 100


def test_amenity_score_never_goes_negative():
    prefs = make_profile(required_amenities={"balcony": True, "elevator": True, "garden": True})
    listing = make_listing(amenities={})
    assert amenity_score(listing, prefs, PENALTIES) == 0
    # 100 - 100 * 0.10
    assert score(listing, prefs).score == 90


def test_availability_sub_scores():
    move_in = date(2026, 11, 1)
    flexible = make_profile(move_in_date=move_in)
    strict = make_profile(move_in_date=move_in, flexible_dates=False)

    def available(days):
        return make_listing(availability=Availability(available_from=move_in + timedelta(days=days)))

    assert availability_score(available(19), flexible) == 100
    assert availability_score(available(-45), flexible) == 80
    assert availability_score(available(90), flexible) == 60
    assert availability_score(available(5), strict) == 100
    assert availability_score(available(10), strict) == 80
    assert availability_score(available(19), strict) == 60
    assert availability_score(available(40), strict) == 40
    assert availability_score(make_listing(), strict) == 70
    assert availability_score(make_listing(availability=Availability(immediately=True)), strict) == 100
    assert availability_score(available(40), make_profile()) == 100


def test_immediate_availability_bonus_depends_on_reference_date():
    listing = make_listing(
        costs=Costs(base_rent=1200),
        availability=Availability(immediately=True),
    )
    prefs = make_profile(move_in_date=date(2026, 11, 1))

    soon = score(listing, prefs, reference_date=date(2026, 10, 20))
    later = score(listing, prefs, reference_date=date(2026, 8, 1))

    assert soon.score == 89
    assert "Available immediately" in soon.matched
    assert later.score == 79
    assert "Available immediately" not in later.matched


def test_under_budget_and_amenity_bonuses():
    amenities = {name: True for name in ("balcony", "elevator", "kitchen", "cellar", "garden")}
    listing = make_listing(costs=Costs(base_rent=1200), amenities=amenities)
    assert score(listing, make_profile()).score == 84
    assert "Many amenities" in score(listing, make_profile()).matched

    cheap = make_listing(costs=Costs(base_rent=700), size=None, property_type=None)
    result = score(cheap, make_profile())
    assert result.score == 100
    assert "Great price" in result.matched


def test_score_band():
    assert score_band(95) == "excellent"
    assert score_band(90) == "excellent"
    assert score_band(75) == "good"
    assert score_band(60) == "fair"


def test_invalid_weights_are_rejected():
    config = MatchConfig()
    config.weights.price = 0.5
    with pytest.raises(ConfigurationError):
        MatchEngine(MemoryStore(), MemoryStore(), config)


def test_create_matches_filters_dedups_and_reports():
    async def scenario():
        store = MemoryStore([
            make_profile(user_id="u1"),
            make_profile(user_id="u2", sources=["beta"]),
            make_profile(user_id="u3", min_match_score=100, property_types=[]),
            make_profile(user_id="u4", is_active=False),
        ])
        engine = MatchEngine(store, store)
        listing_id, _ = await store.upsert_listing(make_listing())
        listing = await store.get_listing(listing_id)
        unsaved = make_listing(external_id="2", url="https://alpha.example/listing/2")
        stats = await engine.create_matches([listing, listing, unsaved])
        return stats, store, listing_id

    stats, store, listing_id = asyncio.run(scenario())
    assert stats.total_matches == 1
    assert stats.by_source == {"alpha": 1}
    assert stats.by_score == {"excellent": 1, "good": 0, "fair": 0}
    assert stats.average_score == 100
    assert list(store.matches) == [("u1", listing_id)]
    assert store.matches[("u1", listing_id)].matched_criteria


def test_create_matches_without_profiles():
    async def scenario():
        store = MemoryStore()
        return await MatchEngine(store, store).create_matches([make_listing(id=1)])

    stats = asyncio.run(scenario())
    assert stats.total_matches == 0
    assert stats.average_score == 0


def test_stored_match_keeps_higher_score():
    async def scenario():
        store = MemoryStore()
        high = MatchRecord(user_id="u1", listing_id=1, source="alpha", score=90)
        low = MatchRecord(user_id="u1", listing_id=1, source="alpha", score=70)
        written = [await store.upsert_matches([high]), await store.upsert_matches([low])]
        return written, store

    written, store = asyncio.run(scenario())
    assert written == [1, 0]
    assert store.matches[("u1", 1)].score == 90


def test_match_stats_by_timeframe():
    async def scenario():
        store = MemoryStore()
        engine = MatchEngine(store, store)
        await store.upsert_matches([
            MatchRecord(user_id="u1", listing_id=1, source="alpha", score=92),
            MatchRecord(user_id="u2", listing_id=1, source="alpha", score=65),
            MatchRecord(
                user_id="u3",
                listing_id=2,
                source="beta",
                score=80,
                created_at=datetime(2020, 1, 1),
            ),
        ])
        return await engine.get_match_stats("day"), await engine.get_match_stats("week")

    day, week = asyncio.run(scenario())
    assert isinstance(day, MatchStats)
    assert day.total_matches == 2
    assert day.by_score == {"excellent": 1, "good": 0, "fair": 1}
    assert day.average_score == pytest.approx(78.5)
    assert week.by_source == {"alpha": 2}


def test_match_stats_rejects_unknown_timeframe():
    async def scenario():
        store = MemoryStore()
        await MatchEngine(store, store).get_match_stats("month")

    with pytest.raises(ValueError):
        asyncio.run(scenario())
