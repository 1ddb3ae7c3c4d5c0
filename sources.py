"""
Source data model and registry for the context report.

Every external data provider contributes one frozen payload dataclass.
Payloads are all-or-nothing: a source either returns a complete payload
(with its own retrieved_at timestamp) or nothing at all.

SOURCE_REGISTRY fixes the registration order of the providers.  Every
ordered output of a report (warnings, attributions) follows this order,
never the order in which fetches happened to complete.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol, Tuple


# =============================================================================
# LOCATION
# =============================================================================

@dataclass(frozen=True)
class Location:
    """A resolved Dutch address.

    rd_x / rd_y are Rijksdriehoek (EPSG:28992) coordinates, required by the
    PDOK WFS lookups.  Region codes feed the CBS OData filters.
    """
    query: str
    display_address: str
    latitude: float
    longitude: float
    rd_x: Optional[float] = None
    rd_y: Optional[float] = None
    municipality_code: Optional[str] = None
    municipality_name: Optional[str] = None
    district_code: Optional[str] = None
    district_name: Optional[str] = None
    neighborhood_code: Optional[str] = None
    neighborhood_name: Optional[str] = None
    postal_code: Optional[str] = None


# =============================================================================
# PROVIDER PAYLOADS
# =============================================================================

@dataclass(frozen=True)
class NeighborhoodStats:
    """CBS Kerncijfers wijken en buurten (table 85618NED)."""
    region_code: str
    region_type: str
    retrieved_at: datetime
    residents: Optional[int] = None
    population_density: Optional[int] = None
    average_woz_keur: Optional[float] = None
    low_income_households_pct: Optional[float] = None
    urbanity: Optional[str] = None
    average_income_per_inhabitant: Optional[float] = None  # x1000 EUR
    education_low: Optional[int] = None
    education_medium: Optional[int] = None
    education_high: Optional[int] = None
    # Housing
    pct_owner_occupied: Optional[int] = None
    pct_rental: Optional[int] = None
    pct_social_housing: Optional[int] = None
    pct_private_rental: Optional[int] = None
    pct_pre_2000: Optional[int] = None
    pct_post_2000: Optional[int] = None
    pct_multi_family: Optional[int] = None
    # Mobility
    cars_per_household: Optional[float] = None
    car_density: Optional[int] = None
    total_cars: Optional[int] = None
    # Proximity (km)
    distance_to_gp: Optional[float] = None
    distance_to_supermarket: Optional[float] = None
    distance_to_daycare: Optional[float] = None
    distance_to_school: Optional[float] = None
    schools_within_3km: Optional[float] = None


@dataclass(frozen=True)
class CrimeStats:
    """CBS registered crime (table 47018NED), rates per 1000 residents."""
    retrieved_at: datetime
    total_per_1000: Optional[int] = None
    burglary_per_1000: Optional[int] = None
    violent_per_1000: Optional[int] = None
    theft_per_1000: Optional[int] = None
    vandalism_per_1000: Optional[int] = None


@dataclass(frozen=True)
class Demographics:
    """CBS population composition (table 83765NED), percentages 0-100."""
    retrieved_at: datetime
    pct_age_0_14: Optional[int] = None
    pct_age_15_24: Optional[int] = None
    pct_age_25_44: Optional[int] = None
    pct_age_45_64: Optional[int] = None
    pct_age_65_plus: Optional[int] = None
    average_household_size: Optional[float] = None
    pct_owner_occupied: Optional[int] = None
    pct_single_households: Optional[int] = None
    pct_family_households: Optional[int] = None


@dataclass(frozen=True)
class AmenityStats:
    """OpenStreetMap amenity counts within the search radius."""
    retrieved_at: datetime
    school_count: int = 0
    supermarket_count: int = 0
    park_count: int = 0
    healthcare_count: int = 0
    transit_stop_count: int = 0
    charging_station_count: int = 0
    nearest_amenity_distance_m: Optional[float] = None
    diversity_score: float = 0.0


@dataclass(frozen=True)
class AirQualitySnapshot:
    """Latest Luchtmeetnet measurements at the nearest station (µg/m³)."""
    station_id: str
    station_name: str
    station_distance_m: float
    retrieved_at: datetime
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    no2: Optional[float] = None
    o3: Optional[float] = None
    measured_at: Optional[datetime] = None


@dataclass(frozen=True)
class FoundationRisk:
    """Soil-derived foundation risk from the BRO Bodemkaart."""
    risk_level: str      # "Low" | "Medium" | "High" | "Unknown"
    soil_type: str
    retrieved_at: datetime
    description: Optional[str] = None


@dataclass(frozen=True)
class SolarPotential:
    """Rooftop solar estimate from the BAG building footprint."""
    potential: str       # "Low" | "Medium" | "High"
    retrieved_at: datetime
    roof_area_m2: Optional[float] = None
    installable_panels: Optional[int] = None
    estimated_generation_kwh: Optional[float] = None


# =============================================================================
# SOURCE CLIENT CAPABILITY
# =============================================================================

class SourceClient(Protocol):
    """One external data provider.

    fetch() returns the provider payload, or None when the provider has no
    data for the location.  It may raise at any time; the caller isolates
    failures.  cancel_event is set when the report no longer wants the result.
    """

    def fetch(self, location: Location, cancel_event: threading.Event) -> Optional[Any]:
        ...


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass(frozen=True)
class SourceSpec:
    """Static description of a registered source."""
    key: str
    label: str              # user-facing name used in warnings
    attribution_name: str
    url: str
    license: str


CBS = "cbs"
CRIME = "crime"
DEMOGRAPHICS = "demographics"
AMENITIES = "amenities"
AIR_QUALITY = "air_quality"
SOIL = "soil"
SOLAR = "solar"

SOURCE_REGISTRY: Tuple[SourceSpec, ...] = (
    SourceSpec(CBS, "CBS neighborhood statistics", "CBS StatLine 85618NED",
               "https://opendata.cbs.nl", "Publiek"),
    SourceSpec(CRIME, "CBS crime statistics", "CBS StatLine 47018NED",
               "https://opendata.cbs.nl", "Publiek"),
    SourceSpec(DEMOGRAPHICS, "CBS demographics", "CBS StatLine 83765NED",
               "https://opendata.cbs.nl", "Publiek"),
    SourceSpec(AMENITIES, "OpenStreetMap amenities", "OpenStreetMap Overpass",
               "https://overpass-api.de", "ODbL"),
    SourceSpec(AIR_QUALITY, "Air quality", "Luchtmeetnet",
               "https://api.luchtmeetnet.nl", "Publiek"),
    SourceSpec(SOIL, "Soil", "PDOK BRO Bodemkaart",
               "https://service.pdok.nl", "CC-BY"),
    SourceSpec(SOLAR, "Building", "PDOK BAG",
               "https://service.pdok.nl", "CC-BY"),
)

SOURCES_BY_KEY: Dict[str, SourceSpec] = {s.key: s for s in SOURCE_REGISTRY}

# Fail fast on a duplicated key; ordering downstream assumes uniqueness.
if len(SOURCES_BY_KEY) != len(SOURCE_REGISTRY):
    raise ValueError("SOURCE_REGISTRY contains duplicate source keys")


# =============================================================================
# RESOLVED RESULTS
# =============================================================================

class SourceResults(Mapping[str, Optional[Any]]):
    """Read-only view of one build's resolved source payloads.

    Every registered source has an entry; absent sources map to None.
    """

    def __init__(self, payloads: Mapping[str, Optional[Any]]):
        unknown = set(payloads) - set(SOURCES_BY_KEY)
        if unknown:
            raise KeyError(f"Unregistered sources: {sorted(unknown)}")
        self._payloads = {s.key: payloads.get(s.key) for s in SOURCE_REGISTRY}

    def __getitem__(self, key: str) -> Optional[Any]:
        return self._payloads[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._payloads)

    def __len__(self) -> int:
        return len(self._payloads)

    def present_keys(self) -> Tuple[str, ...]:
        return tuple(k for k, v in self._payloads.items() if v is not None)

    def absent_keys(self) -> Tuple[str, ...]:
        return tuple(k for k, v in self._payloads.items() if v is None)
