"""
Everyday amenities around an address from OpenStreetMap.

Data source:
  - OpenStreetMap via the Overpass API (through overpass_http, which owns
    rate limiting, retries and the response cache)

Six categories are counted within the search radius: schools,
supermarkets, parks, healthcare (hospital, clinic, doctors, pharmacy),
transit stops (bus stops, railway stations) and EV charging stations.
Diversity is the share of those six categories with at least one hit.

Limitations:
  - OSM completeness varies by municipality; a zero count can mean
    "not mapped" rather than "not there".
  - Large parks are counted once, at their centroid, regardless of size.
"""

import logging
import threading
from typing import Any, Dict, Iterable, Optional, Tuple

from overpass_http import overpass_query
from source_http import check_cancelled, haversine_m, utc_now
from sources import AmenityStats, Location

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_M = 1000

AMENITY_CATEGORIES = (
    "school", "supermarket", "park", "healthcare", "transit", "charging_station",
)

_HEALTHCARE = {"hospital", "clinic", "doctors", "pharmacy"}

# Overpass tag filters, one nwr(around:...) clause each.
_TAG_FILTERS = (
    "[amenity=school]",
    "[shop=supermarket]",
    "[leisure=park]",
    '[amenity~"hospital|clinic|doctors|pharmacy"]',
    "[highway=bus_stop]",
    "[railway=station]",
    "[amenity=charging_station]",
)


def build_amenity_query(lat: float, lon: float, radius_m: int) -> str:
    """Overpass QL for all amenity categories around a point.

    ``out center tags`` returns a centroid for ways and relations instead of
    their full geometry.
    """
    clauses = "".join(
        f"nwr(around:{radius_m},{lat},{lon}){tag_filter};" for tag_filter in _TAG_FILTERS
    )
    return f"[out:json][timeout:25];({clauses});out center tags;"


def categorize(tags: Dict[str, str]) -> Optional[str]:
    amenity = tags.get("amenity")
    if amenity == "school":
        return "school"
    if amenity in _HEALTHCARE:
        return "healthcare"
    if amenity == "charging_station":
        return "charging_station"
    if tags.get("shop") == "supermarket":
        return "supermarket"
    if tags.get("leisure") == "park":
        return "park"
    if tags.get("highway") == "bus_stop" or tags.get("railway") == "station":
        return "transit"
    return None


def _coordinates(element: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    if element.get("lat") is not None and element.get("lon") is not None:
        return float(element["lat"]), float(element["lon"])
    center = element.get("center") or {}
    if center.get("lat") is not None and center.get("lon") is not None:
        return float(center["lat"]), float(center["lon"])
    return None


def summarize_elements(elements: Iterable[Dict[str, Any]], lat: float, lon: float) -> AmenityStats:
    counts = {category: 0 for category in AMENITY_CATEGORIES}
    nearest: Optional[float] = None

    for element in elements:
        coords = _coordinates(element)
        if coords is None:
            continue
        distance = haversine_m(lat, lon, coords[0], coords[1])
        if nearest is None or distance < nearest:
            nearest = distance
        category = categorize(element.get("tags") or {})
        if category:
            counts[category] += 1

    populated = sum(1 for c in counts.values() if c > 0)
    return AmenityStats(
        retrieved_at=utc_now(),
        school_count=counts["school"],
        supermarket_count=counts["supermarket"],
        park_count=counts["park"],
        healthcare_count=counts["healthcare"],
        transit_stop_count=counts["transit"],
        charging_station_count=counts["charging_station"],
        nearest_amenity_distance_m=round(nearest) if nearest is not None else None,
        diversity_score=populated / len(AMENITY_CATEGORIES) * 100,
    )


class OverpassAmenityClient:
    """Amenity counts within *radius_m* of the location."""

    def __init__(self, radius_m: int = DEFAULT_RADIUS_M, timeout: Optional[int] = None):
        self.radius_m = radius_m
        self.timeout = timeout

    def fetch(self, location: Location, cancel_event: threading.Event) -> AmenityStats:
        check_cancelled(cancel_event, "overpass")
        query = build_amenity_query(location.latitude, location.longitude, self.radius_m)
        data = overpass_query(
            query,
            caller="amenities",
            timeout=self.timeout,
            cancel_event=cancel_event,
        )
        if data.get("_stale"):
            logger.info("Amenities for %s served from stale Overpass cache", location.display_address)
        return summarize_elements(data.get("elements") or [], location.latitude, location.longitude)
