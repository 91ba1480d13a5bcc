"""Listing-to-preference scoring.

Six sub-scores in ``[0, 100]`` are folded into one composite::

    score = 100 - sum((100 - sub_i) * weight_i) + bonuses

then clamped to ``[0, 100]`` and rounded half-up. Everything here is pure:
the only notion of "today" is the ``reference_date`` argument.
"""
from __future__ import annotations

import math
from datetime import date
from typing import List, Optional

from ..config import MatchConfig, MatchPenalties
from ..models import Coordinates, MatchResult, NormalizedListing, UserPreferenceProfile

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def price_score(total_rent: float, prefs: UserPreferenceProfile, penalties: MatchPenalties) -> float:
    if total_rent > prefs.max_rent:
        over_pct = (total_rent - prefs.max_rent) / prefs.max_rent * 100
        return max(0.0, 100 - penalties.over_budget - over_pct)

    min_rent = prefs.min_rent
    if min_rent and total_rent < min_rent:
        # Suspiciously cheap, but never scored below 70.
        under_pct = (min_rent - total_rent) / min_rent * 100
        return max(70.0, 100 - under_pct / 2)

    if not min_rent or prefs.max_rent <= min_rent:
        return 100.0

    position = (total_rent - min_rent) / (prefs.max_rent - min_rent)
    return 100 - position * 20


def location_score(listing: NormalizedListing, prefs: UserPreferenceProfile, penalties: MatchPenalties) -> float:
    district = (listing.location.district or "").strip().lower()
    if not district:
        return 50.0

    if prefs.districts:
        for wanted in prefs.districts:
            wanted = wanted.strip().lower()
            if wanted and (wanted in district or district in wanted):
                return 100.0
        return 100 - penalties.wrong_district

    coordinates = listing.location.coordinates
    if prefs.max_distance_from_center and prefs.city_center and coordinates:
        distance = distance_km(coordinates, prefs.city_center)
        if distance <= prefs.max_distance_from_center:
            return 100 - distance / prefs.max_distance_from_center * 30
        return 50.0

    return 80.0


def size_score(listing: NormalizedListing, prefs: UserPreferenceProfile) -> float:
    size = listing.size
    if not size:
        return 70.0
    if prefs.min_size and size < prefs.min_size:
        deficit = (prefs.min_size - size) / prefs.min_size * 100
        return max(0.0, 100 - deficit)
    if prefs.max_size and size > prefs.max_size:
        excess = (size - prefs.max_size) / prefs.max_size * 100
        return max(50.0, 100 - excess / 2)
    return 100.0


def amenity_score(listing: NormalizedListing, prefs: UserPreferenceProfile, penalties: MatchPenalties) -> float:
    required = [name for name, wanted in prefs.required_amenities.items() if wanted]
    if not required:
        return 100.0
    matched = sum(1 for name in required if listing.amenities.get(name))
    missing = len(required) - matched
    return max(0.0, matched / len(required) * 100 - missing * penalties.missing_amenity)


def availability_score(listing: NormalizedListing, prefs: UserPreferenceProfile) -> float:
    if prefs.move_in_date is None:
        return 100.0
    available = listing.availability.available_from
    if available is None:
        return 100.0 if listing.availability.immediately else 70.0

    days = abs((available - prefs.move_in_date).days)
    if prefs.flexible_dates:
        if days <= 30:
            return 100.0
        if days <= 60:
            return 80.0
        return 60.0
    if days <= 7:
        return 100.0
    if days <= 14:
        return 80.0
    if days <= 30:
        return 60.0
    return 40.0


def property_type_score(listing: NormalizedListing, prefs: UserPreferenceProfile, penalties: MatchPenalties) -> float:
    if listing.property_type is None or not prefs.property_types:
        return 80.0
    if listing.property_type in prefs.property_types:
        return 100.0
    return 100 - penalties.wrong_property_type


def score(
    listing: NormalizedListing,
    prefs: UserPreferenceProfile,
    config: Optional[MatchConfig] = None,
    reference_date: Optional[date] = None,
) -> MatchResult:
    """Score ``listing`` against one user's preferences.

    Parameters
    ----------
    listing : NormalizedListing
        Listing to evaluate
    prefs : UserPreferenceProfile
        Preferences of one user
    config : MatchConfig, optional
        Weights, penalties and bonuses; defaults when omitted
    reference_date : date, optional
        "Today" for the move-in-soon bonus; defaults to the day the listing
        was scraped

    Returns
    -------
    MatchResult
        Integer score in ``[0, 100]`` with matched and missed criteria
    """
    config = config or MatchConfig()
    weights, penalties, bonuses = config.weights, config.penalties, config.bonuses
    today = reference_date or listing.scraped_at.date()
    matched: List[str] = []
    missed: List[str] = []
    total = 100.0

    price = price_score(listing.total_rent, prefs, penalties)
    total -= (100 - price) * weights.price
    if price == 100:
        matched.append("Perfect price match")
    elif price >= 70:
        matched.append("Good price match")
    else:
        missed.append("Price outside preferred range")

    location = location_score(listing, prefs, penalties)
    total -= (100 - location) * weights.location
    if location == 100:
        matched.append("Perfect location")
    elif location >= 70:
        matched.append("Good location")
    else:
        missed.append("Location not in preferred areas")

    size = size_score(listing, prefs)
    total -= (100 - size) * weights.size
    if size >= 80:
        matched.append("Size matches preferences")
    elif size < 50:
        missed.append("Size mismatch")

    amenities = amenity_score(listing, prefs, penalties)
    total -= (100 - amenities) * weights.amenities
    if amenities == 100:
        matched.append("All required amenities")
    elif amenities < 70:
        missed.append("Missing required amenities")

    availability = availability_score(listing, prefs)
    total -= (100 - availability) * weights.availability
    if availability == 100:
        matched.append("Available when needed")
    elif availability < 50:
        missed.append("Availability mismatch")

    property_type = property_type_score(listing, prefs, penalties)
    total -= (100 - property_type) * weights.property_type
    if property_type == 100:
        matched.append("Preferred property type")
    elif property_type < 80:
        missed.append("Wrong property type")

    # Bonuses are flat and applied after weighting.
    if listing.total_rent < prefs.max_rent * 0.8:
        total += bonuses.under_budget
        matched.append("Great price")

    provided = sum(1 for value in listing.amenities.values() if value is True)
    required = sum(1 for value in prefs.required_amenities.values() if value)
    if provided > required + 3:
        total += bonuses.extra_amenities
        matched.append("Many amenities")

    if listing.availability.immediately and prefs.move_in_date is not None:
        if (prefs.move_in_date - today).days <= 30:
            total += bonuses.immediate_availability
            matched.append("Available immediately")

    final = max(0, min(100, math.floor(total + 0.5)))
    return MatchResult(score=final, matched=matched, missed=missed)
