"""
Metric builders: resolved source payloads -> scored report metrics.

Each builder is a pure function of (SourceResults, WarningSink) returning
a list of ContextMetric for one report category.  Builders never call each
other and never raise for a missing source: an absent source is reported
once through the warning sink and its metrics are simply left out.

Builders that merge two unrelated sources (housing + soil, air quality +
solar, ...) treat each source as an independent branch, so one absent
source never removes the other's metrics.

Metric order inside a category is fixed by the code below.  Labels and
units live here; every number that influences a score lives in
scoring_config.py.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from scoring_config import (
    CATEGORY_AMENITIES,
    CATEGORY_DEMOGRAPHICS,
    CATEGORY_ENVIRONMENT,
    CATEGORY_HOUSING,
    CATEGORY_MOBILITY,
    CATEGORY_SAFETY,
    CATEGORY_SOCIAL,
    PROXIMITY_RADII,
    SCORING_MODEL,
    apply_bands,
    education_high_share,
    parse_urbanity_level,
    score_amenity_volume,
    score_build_mix,
    score_education,
    score_family_friendly,
    score_foundation_risk,
    score_income,
    score_low_income,
    score_owner_occupied,
    score_proximity,
    score_solar_potential,
    score_urbanity,
    score_woz,
)
from report_warnings import WarningSink
from sources import (
    AIR_QUALITY,
    AMENITIES,
    CBS,
    CRIME,
    DEMOGRAPHICS,
    SOIL,
    SOLAR,
    SOURCES_BY_KEY,
    SourceResults,
)

COMPOSITE_SOURCE = "buurtcheck composite"


@dataclass(frozen=True)
class ContextMetric:
    """One data point in the report.

    value is None only for descriptive metrics, which then carry a note.
    score is None when the metric is informational or unscoreable.
    """
    key: str
    label: str
    value: Optional[float]
    unit: Optional[str]
    score: Optional[float]
    source: str
    note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "value": self.value,
            "unit": self.unit,
            "score": self.score,
            "source": self.source,
            "note": self.note,
        }


def _source_name(key: str) -> str:
    return SOURCES_BY_KEY[key].attribution_name


def _collect(*metrics: Optional[ContextMetric]) -> List[ContextMetric]:
    """Drop metrics that have neither a value nor a note (suppressed data)."""
    return [
        m for m in metrics
        if m is not None and (m.value is not None or m.note is not None)
    ]


def _require(results: SourceResults, key: str, warnings: WarningSink):
    payload = results[key]
    if payload is None:
        warnings.source_unavailable(key)
    return payload


# =============================================================================
# SOCIAL
# =============================================================================

def build_social_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    cbs = _require(results, CBS, warnings)
    if cbs is None:
        return []
    src = _source_name(CBS)
    return _collect(
        ContextMetric("residents", "Residents", cbs.residents, "people", None, src),
        ContextMetric(
            "population_density", "Population Density", cbs.population_density, "people/km²",
            apply_bands(SCORING_MODEL.population_density, cbs.population_density), src,
        ),
        ContextMetric(
            "low_income_households", "Low Income Households", cbs.low_income_households_pct, "%",
            score_low_income(cbs.low_income_households_pct), src,
        ),
        ContextMetric(
            "average_woz", "Average WOZ Value", cbs.average_woz_keur, "k€",
            score_woz(cbs.average_woz_keur), src,
        ),
    )


# =============================================================================
# SAFETY
# =============================================================================

def build_crime_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    crime = _require(results, CRIME, warnings)
    if crime is None:
        return []
    src = _source_name(CRIME)
    return _collect(
        ContextMetric(
            "total_crimes", "Total Crimes", crime.total_per_1000, "per 1000",
            apply_bands(SCORING_MODEL.total_crime, crime.total_per_1000), src,
        ),
        ContextMetric(
            "burglary", "Burglary Rate", crime.burglary_per_1000, "per 1000",
            apply_bands(SCORING_MODEL.burglary, crime.burglary_per_1000), src,
        ),
        ContextMetric(
            "violent_crime", "Violent Crime", crime.violent_per_1000, "per 1000",
            apply_bands(SCORING_MODEL.violent_crime, crime.violent_per_1000), src,
        ),
        ContextMetric("theft", "Theft Rate", crime.theft_per_1000, "per 1000", None, src),
        ContextMetric("vandalism", "Vandalism Rate", crime.vandalism_per_1000, "per 1000", None, src),
    )


# =============================================================================
# DEMOGRAPHICS
# =============================================================================

def build_demographics_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    metrics: List[ContextMetric] = []

    demo = _require(results, DEMOGRAPHICS, warnings)
    if demo is not None:
        src = _source_name(DEMOGRAPHICS)
        family = score_family_friendly(
            demo.pct_family_households, demo.pct_age_0_14, demo.average_household_size,
        )
        metrics += _collect(
            ContextMetric("age_0_14", "Age 0-14", demo.pct_age_0_14, "%", None, src),
            ContextMetric("age_15_24", "Age 15-24", demo.pct_age_15_24, "%", None, src),
            ContextMetric("age_25_44", "Age 25-44", demo.pct_age_25_44, "%", None, src),
            ContextMetric("age_45_64", "Age 45-64", demo.pct_age_45_64, "%", None, src),
            ContextMetric("age_65_plus", "Age 65+", demo.pct_age_65_plus, "%", None, src),
            ContextMetric(
                "avg_household_size", "Avg Household Size", demo.average_household_size,
                "people", None, src,
            ),
            ContextMetric("owner_occupied", "Owner-Occupied", demo.pct_owner_occupied, "%", None, src),
            ContextMetric(
                "single_households", "Single Households", demo.pct_single_households, "%", None, src,
            ),
            ContextMetric("family_friendly", "Family-Friendly Score", family, "score", family, COMPOSITE_SOURCE),
        )

    cbs = _require(results, CBS, warnings)
    if cbs is not None:
        src = _source_name(CBS)
        education_share = education_high_share(
            cbs.education_low, cbs.education_medium, cbs.education_high,
        )
        urbanity_level = parse_urbanity_level(cbs.urbanity)
        metrics += _collect(
            ContextMetric(
                "income_per_inhabitant", "Avg Income per Resident",
                cbs.average_income_per_inhabitant, "k€",
                score_income(cbs.average_income_per_inhabitant), src,
            ),
            ContextMetric(
                "education_level", "Higher Educated", education_share, "%",
                score_education(education_share), src,
            ),
            ContextMetric(
                "urbanity", "Urbanity",
                urbanity_level.value if urbanity_level else None, "level",
                score_urbanity(cbs.urbanity), src,
                note=cbs.urbanity,
            ),
        )
    return metrics


# =============================================================================
# HOUSING
# =============================================================================

def build_housing_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    metrics: List[ContextMetric] = []

    cbs = _require(results, CBS, warnings)
    if cbs is not None:
        src = _source_name(CBS)
        build_mix_note = None
        if cbs.pct_post_2000 is None and cbs.pct_pre_2000 is not None:
            build_mix_note = "Only the pre-2000 share is published for this area."
        metrics += _collect(
            ContextMetric(
                "housing_owner", "Owner-Occupied", cbs.pct_owner_occupied, "%",
                score_owner_occupied(cbs.pct_owner_occupied), src,
            ),
            ContextMetric("housing_rental", "Rental Properties", cbs.pct_rental, "%", None, src),
            ContextMetric("housing_social", "Social Housing", cbs.pct_social_housing, "%", None, src),
            ContextMetric(
                "housing_private_rental", "Private Rental", cbs.pct_private_rental, "%",
                apply_bands(SCORING_MODEL.private_rental, cbs.pct_private_rental), src,
            ),
            ContextMetric("housing_pre2000", "Built Pre-2000", cbs.pct_pre_2000, "%", None, src),
            ContextMetric("housing_post2000", "Built Post-2000", cbs.pct_post_2000, "%", None, src),
            ContextMetric(
                "housing_build_mix", "Build-Year Mix", cbs.pct_post_2000, "%",
                score_build_mix(cbs.pct_pre_2000, cbs.pct_post_2000), COMPOSITE_SOURCE,
                note=build_mix_note,
            ),
            ContextMetric("housing_multifamily", "Multi-Family Homes", cbs.pct_multi_family, "%", None, src),
        )

    soil = _require(results, SOIL, warnings)
    if soil is not None:
        src = _source_name(SOIL)
        metrics += _collect(
            ContextMetric(
                "foundation_risk", "Foundation Risk", None, soil.risk_level,
                score_foundation_risk(soil.risk_level), src,
                note=soil.description or f"{soil.risk_level} risk",
            ),
            ContextMetric("soil_type", "Soil Type", None, None, None, src, note=soil.soil_type),
        )
    return metrics


# =============================================================================
# MOBILITY
# =============================================================================

def build_mobility_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    cbs = _require(results, CBS, warnings)
    if cbs is None:
        return []
    src = _source_name(CBS)
    return _collect(
        ContextMetric(
            "mobility_cars_household", "Cars per Household", cbs.cars_per_household,
            "cars/hh", None, src,
        ),
        ContextMetric("mobility_car_density", "Car Density", cbs.car_density, "cars/km²", None, src),
        ContextMetric("mobility_total_cars", "Total Cars", cbs.total_cars, "cars", None, src),
    )


# =============================================================================
# AMENITIES
# =============================================================================

def build_amenity_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    metrics: List[ContextMetric] = []

    amenities = _require(results, AMENITIES, warnings)
    if amenities is not None:
        src = _source_name(AMENITIES)
        total = (
            amenities.school_count + amenities.supermarket_count + amenities.park_count
            + amenities.healthcare_count + amenities.transit_stop_count
            + amenities.charging_station_count
        )
        volume = score_amenity_volume(total)
        diversity = round(amenities.diversity_score, 1)
        metrics += _collect(
            ContextMetric("schools", "Schools in Radius", amenities.school_count, "count", None, src),
            ContextMetric("supermarkets", "Supermarkets in Radius", amenities.supermarket_count, "count", None, src),
            ContextMetric("parks", "Parks in Radius", amenities.park_count, "count", None, src),
            ContextMetric("healthcare", "Healthcare in Radius", amenities.healthcare_count, "count", None, src),
            ContextMetric("transit_stops", "Transit Stops in Radius", amenities.transit_stop_count, "count", None, src),
            ContextMetric(
                "charging_stations", "Charging Stations in Radius",
                amenities.charging_station_count, "count", None, src,
            ),
            ContextMetric("amenity_diversity", "Amenity Diversity", diversity, "score", diversity, src),
            ContextMetric(
                "amenity_proximity", "Nearest Amenity Distance",
                amenities.nearest_amenity_distance_m, "m",
                apply_bands(SCORING_MODEL.amenity_proximity_m, amenities.nearest_amenity_distance_m),
                src,
            ),
            ContextMetric("amenity_count_score", "Amenity Volume Score", volume, "score", volume, src),
        )

    cbs = _require(results, CBS, warnings)
    if cbs is not None:
        src = _source_name(CBS)
        metrics += _collect(
            ContextMetric(
                "dist_supermarket", "Dist. to Supermarket", cbs.distance_to_supermarket, "km",
                score_proximity(cbs.distance_to_supermarket, *PROXIMITY_RADII["supermarket"]), src,
            ),
            ContextMetric(
                "dist_gp", "Dist. to GP", cbs.distance_to_gp, "km",
                score_proximity(cbs.distance_to_gp, *PROXIMITY_RADII["gp"]), src,
            ),
            ContextMetric(
                "dist_school", "Dist. to School", cbs.distance_to_school, "km",
                score_proximity(cbs.distance_to_school, *PROXIMITY_RADII["school"]), src,
            ),
            ContextMetric("dist_daycare", "Dist. to Daycare", cbs.distance_to_daycare, "km", None, src),
            ContextMetric("schools_3km", "Schools within 3km", cbs.schools_within_3km, "count", None, src),
        )
    return metrics


# =============================================================================
# ENVIRONMENT
# =============================================================================

def build_environment_metrics(results: SourceResults, warnings: WarningSink) -> List[ContextMetric]:
    metrics: List[ContextMetric] = []

    air = _require(results, AIR_QUALITY, warnings)
    if air is not None:
        src = _source_name(AIR_QUALITY)
        metrics += _collect(
            ContextMetric("pm25", "PM2.5", air.pm25, "µg/m³", apply_bands(SCORING_MODEL.pm25, air.pm25), src),
            ContextMetric("pm10", "PM10", air.pm10, "µg/m³", apply_bands(SCORING_MODEL.pm10, air.pm10), src),
            ContextMetric("no2", "NO2", air.no2, "µg/m³", apply_bands(SCORING_MODEL.no2, air.no2), src),
            ContextMetric("o3", "O3", air.o3, "µg/m³", apply_bands(SCORING_MODEL.o3, air.o3), src),
            ContextMetric("air_station", "Nearest Station", None, None, None, src, note=air.station_name),
            ContextMetric(
                "air_station_distance", "Distance to Station", air.station_distance_m, "m", None, src,
            ),
        )

    solar = _require(results, SOLAR, warnings)
    if solar is not None:
        src = _source_name(SOLAR)
        note = None
        if solar.roof_area_m2 is not None:
            note = f"Based on {solar.roof_area_m2:g}m² roof area"
        metrics += _collect(
            ContextMetric(
                "solar_potential", "Solar Potential", solar.estimated_generation_kwh, "kWh/yr",
                score_solar_potential(solar.potential), src, note=note,
            ),
            ContextMetric("solar_panels", "Est. Panels", solar.installable_panels, "count", None, src),
        )
    return metrics


# =============================================================================
# REGISTRY
# =============================================================================

MetricBuilder = Callable[[SourceResults, WarningSink], List[ContextMetric]]

METRIC_BUILDERS: Tuple[Tuple[str, MetricBuilder], ...] = (
    (CATEGORY_SOCIAL, build_social_metrics),
    (CATEGORY_SAFETY, build_crime_metrics),
    (CATEGORY_DEMOGRAPHICS, build_demographics_metrics),
    (CATEGORY_HOUSING, build_housing_metrics),
    (CATEGORY_MOBILITY, build_mobility_metrics),
    (CATEGORY_AMENITIES, build_amenity_metrics),
    (CATEGORY_ENVIRONMENT, build_environment_metrics),
)
