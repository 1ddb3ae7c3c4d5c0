"""
Scoring model configuration for buurtcheck.

Owns every numeric constant that affects a metric score or the composite
score: threshold bands, categorical score tables, linear-curve parameters
and category weights.  Metric labels and units remain in metric_builders.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.  Tables are validated at
import time so a missing entry fails the process on startup, not a
report at runtime.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Tuple, Type

logger = logging.getLogger(__name__)


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class ThresholdBand:
    """Score awarded when the input is <= upper."""
    upper: float
    score: float


@dataclass(frozen=True)
class BandTable:
    """Step function over ascending threshold bands.

    The first band whose upper bound is >= the input wins.  Inputs beyond
    the last band receive `default`.
    """
    bands: Tuple[ThresholdBand, ...]
    default: float


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    pm25: BandTable
    pm10: BandTable
    no2: BandTable
    o3: BandTable
    total_crime: BandTable
    burglary: BandTable
    violent_crime: BandTable
    population_density: BandTable
    private_rental: BandTable
    amenity_proximity_m: BandTable


# =============================================================================
# Categorical domains
# =============================================================================

class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SolarTier(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class UrbanityLevel(Enum):
    """CBS 'mate van stedelijkheid', 1 = very strongly urban."""
    VERY_STRONG = 1
    STRONG = 2
    MODERATE = 3
    LITTLE = 4
    NONE = 5


URBANITY_NAMES: Dict[str, UrbanityLevel] = {
    "zeer sterk stedelijk": UrbanityLevel.VERY_STRONG,
    "sterk stedelijk": UrbanityLevel.STRONG,
    "matig stedelijk": UrbanityLevel.MODERATE,
    "weinig stedelijk": UrbanityLevel.LITTLE,
    "niet stedelijk": UrbanityLevel.NONE,
}

FOUNDATION_RISK_SCORES: Dict[RiskLevel, float] = {
    RiskLevel.LOW: 100,
    RiskLevel.MEDIUM: 60,
    RiskLevel.HIGH: 30,
}

SOLAR_POTENTIAL_SCORES: Dict[SolarTier, float] = {
    SolarTier.HIGH: 100,
    SolarTier.MEDIUM: 75,
    SolarTier.LOW: 50,
}

# Mid-urban neighborhoods balance calm and access.
URBANITY_SCORES: Dict[UrbanityLevel, float] = {
    UrbanityLevel.VERY_STRONG: 65,
    UrbanityLevel.STRONG: 85,
    UrbanityLevel.MODERATE: 100,
    UrbanityLevel.LITTLE: 85,
    UrbanityLevel.NONE: 70,
}


# =============================================================================
# Proximity tiers (CBS distances, km)
# =============================================================================

PROXIMITY_OPTIMAL_SCORE = 100
PROXIMITY_ACCEPTABLE_SCORE = 70
PROXIMITY_FAR_SCORE = 40

# key -> (optimal_km, acceptable_km)
PROXIMITY_RADII: Dict[str, Tuple[float, float]] = {
    "supermarket": (1.0, 2.5),
    "gp": (1.5, 3.0),
    "school": (1.0, 3.0),
}


# =============================================================================
# Category weights for the composite score
# =============================================================================

CATEGORY_SOCIAL = "social"
CATEGORY_SAFETY = "safety"
CATEGORY_DEMOGRAPHICS = "demographics"
CATEGORY_HOUSING = "housing"
CATEGORY_MOBILITY = "mobility"
CATEGORY_AMENITIES = "amenities"
CATEGORY_ENVIRONMENT = "environment"

CATEGORY_ORDER: Tuple[str, ...] = (
    CATEGORY_SOCIAL,
    CATEGORY_SAFETY,
    CATEGORY_DEMOGRAPHICS,
    CATEGORY_HOUSING,
    CATEGORY_MOBILITY,
    CATEGORY_AMENITIES,
    CATEGORY_ENVIRONMENT,
)

# Amenities drive day-to-day convenience; safety and social are deal-breakers
# when low.  Mobility needs vary by household, so it carries the least weight.
CATEGORY_WEIGHTS: Dict[str, float] = {
    CATEGORY_SOCIAL: 0.20,
    CATEGORY_SAFETY: 0.20,
    CATEGORY_DEMOGRAPHICS: 0.10,
    CATEGORY_HOUSING: 0.10,
    CATEGORY_MOBILITY: 0.05,
    CATEGORY_AMENITIES: 0.25,
    CATEGORY_ENVIRONMENT: 0.10,
}


# =============================================================================
# Pure scoring functions
# =============================================================================

def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def apply_bands(table: BandTable, value: Optional[float]) -> Optional[float]:
    """Evaluate a step-function band table at *value*.

    None in, None out.
    """
    if value is None:
        return None
    for band in table.bands:
        if value <= band.upper:
            return band.score
    return table.default


def _lookup(enum_cls: Type[Enum], table: Mapping[Enum, float], raw: Optional[str]) -> Optional[float]:
    """Case-insensitive lookup of a categorical provider value.

    Unrecognized values score None; they are logged so new provider
    vocabularies show up without failing the report.
    """
    if raw is None:
        return None
    normalized = str(raw).strip().lower()
    for member in enum_cls:
        if member.value == normalized:
            return table[member]
    logger.debug("Unscoreable %s value %r", enum_cls.__name__, raw)
    return None


def score_foundation_risk(risk_level: Optional[str]) -> Optional[float]:
    """low -> 100, medium -> 60, high -> 30, anything else -> None."""
    return _lookup(RiskLevel, FOUNDATION_RISK_SCORES, risk_level)


def score_solar_potential(potential: Optional[str]) -> Optional[float]:
    """high -> 100, medium -> 75, low -> 50, anything else -> None."""
    return _lookup(SolarTier, SOLAR_POTENTIAL_SCORES, potential)


def parse_urbanity_level(urbanity: Optional[str]) -> Optional[UrbanityLevel]:
    """CBS reports urbanity either as a digit (1-5) or as a Dutch label."""
    if urbanity is None or not str(urbanity).strip():
        return None
    text = str(urbanity).strip().lower()
    if text.isdigit():
        try:
            return UrbanityLevel(int(text))
        except ValueError:
            return None
    return URBANITY_NAMES.get(text)


def score_urbanity(urbanity: Optional[str]) -> Optional[float]:
    level = parse_urbanity_level(urbanity)
    if level is None:
        return None
    return URBANITY_SCORES[level]


def score_proximity(
    distance_km: Optional[float],
    optimal_km: float,
    acceptable_km: float,
) -> Optional[float]:
    """Three-tier proximity score.

    Within the optimal radius -> 100, within the acceptable radius -> 70,
    otherwise 40.
    """
    if distance_km is None:
        return None
    if distance_km <= optimal_km:
        return PROXIMITY_OPTIMAL_SCORE
    if distance_km <= acceptable_km:
        return PROXIMITY_ACCEPTABLE_SCORE
    return PROXIMITY_FAR_SCORE


def score_low_income(low_income_pct: Optional[float]) -> Optional[float]:
    """0% low-income households -> 100, 12.5% or more -> 0."""
    if low_income_pct is None:
        return None
    return _clamp(100 - low_income_pct * 8)


def score_woz(woz_keur: Optional[float]) -> Optional[float]:
    """150k EUR -> 0, 450k EUR -> 100, linear in between."""
    if woz_keur is None:
        return None
    return _clamp((woz_keur - 150) / 3)


def score_owner_occupied(pct: Optional[float]) -> Optional[float]:
    if pct is None:
        return None
    return _clamp(pct * 1.25)


def score_build_mix(pre_2000: Optional[float], post_2000: Optional[float]) -> Optional[float]:
    """Balanced build-year mix scores highest; one-sided data scores 70."""
    if pre_2000 is None and post_2000 is None:
        return None
    if pre_2000 is None or post_2000 is None:
        return 70
    delta = abs(pre_2000 - post_2000)
    return _clamp(100 - delta * 1.2, 40, 100)


def score_income(income_per_inhabitant_k: Optional[float]) -> Optional[float]:
    if income_per_inhabitant_k is None:
        return None
    return _clamp((income_per_inhabitant_k - 18) * 6.5)


def education_high_share(
    low: Optional[int],
    medium: Optional[int],
    high: Optional[int],
) -> Optional[float]:
    """Percentage (1 dp) of residents with higher education."""
    if low is None or medium is None or high is None:
        return None
    total = low + medium + high
    if total <= 0:
        return None
    return round(high / total * 100, 1)


def score_education(share_high_pct: Optional[float]) -> Optional[float]:
    if share_high_pct is None:
        return None
    return _clamp(share_high_pct * 1.4)


def score_family_friendly(
    pct_family_households: Optional[float],
    pct_age_0_14: Optional[float],
    average_household_size: Optional[float],
) -> Optional[float]:
    """Neutral 50 baseline nudged by families, children and household size.

    None when none of the three inputs is present.
    """
    if pct_family_households is None and pct_age_0_14 is None and average_household_size is None:
        return None
    score = 50.0
    if pct_family_households is not None:
        score += (pct_family_households - 20) * 1.5
    if pct_age_0_14 is not None:
        score += (pct_age_0_14 - 15) * 2
    if average_household_size is not None:
        score += (average_household_size - 2) * 15
    return _clamp(score)


def score_amenity_volume(total_amenities: int) -> float:
    """20 amenities of any kind within the radius -> 100."""
    return _clamp(total_amenities * 4)


def compute_category_scores(
    metrics_by_category: Mapping[str, Iterable["object"]],
) -> Dict[str, float]:
    """Mean of the non-null metric scores per category, rounded to 1 dp.

    Categories without a single scored metric are omitted.  Output keys
    follow CATEGORY_ORDER.
    """
    scores: Dict[str, float] = {}
    for category in CATEGORY_ORDER:
        values = [
            m.score for m in metrics_by_category.get(category, ())
            if m.score is not None
        ]
        if values:
            scores[category] = round(sum(values) / len(values), 1)
    return scores


def compute_composite_score(category_scores: Mapping[str, float]) -> float:
    """Weighted mean over the categories present, rounded to 1 dp."""
    total_weight = 0.0
    weighted_sum = 0.0
    for category, score in category_scores.items():
        weight = CATEGORY_WEIGHTS.get(category)
        if weight is None:
            continue
        weighted_sum += score * weight
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return round(weighted_sum / total_weight, 1)


# =============================================================================
# SCORING_MODEL: current production values
# =============================================================================

def _bands(*pairs: Tuple[float, float], default: float) -> BandTable:
    return BandTable(
        bands=tuple(ThresholdBand(upper, score) for upper, score in pairs),
        default=default,
    )


SCORING_MODEL = ScoringModel(
    version="3.0.0",

    # WHO guideline 5 µg/m³, EU limit 25 µg/m³.
    pm25=_bands((5, 100), (10, 85), (15, 70), (25, 50), (35, 25), default=10),
    pm10=_bands((15, 100), (25, 85), (35, 70), (45, 50), (60, 30), default=15),
    no2=_bands((20, 100), (30, 85), (40, 70), (60, 50), (80, 30), default=15),
    o3=_bands((60, 100), (90, 85), (120, 70), (150, 50), (180, 30), default=15),

    # National average is roughly 45-50 registered crimes per 1000 residents.
    total_crime=_bands((20, 100), (35, 85), (50, 70), (75, 50), (100, 30), default=15),
    burglary=_bands((2, 100), (5, 80), (10, 60), (15, 40), default=20),
    violent_crime=_bands((2, 100), (5, 75), (10, 50), default=25),

    # ~3500 people/km² is walkable without being overcrowded.
    population_density=_bands((500, 65), (1500, 85), (3500, 100), (7000, 70), default=50),

    private_rental=_bands((10, 70), (20, 85), (35, 100), (50, 80), default=60),

    # Walking at ~5 km/h: 250 m is three minutes, 1000 m is twelve.
    amenity_proximity_m=_bands(
        (250, 100), (500, 85), (1000, 70), (1500, 55), (2000, 40), default=25,
    ),
)


# =============================================================================
# Import-time validation (ValueError, not assert, so python -O keeps it)
# =============================================================================

def _validate_table(name: str, enum_cls: Type[Enum], table: Mapping[Enum, float]) -> None:
    missing = [m for m in enum_cls if m not in table]
    if missing:
        raise ValueError(f"{name} is missing scores for {missing}")
    for member, score in table.items():
        if not 0 <= score <= 100:
            raise ValueError(f"{name}[{member}] = {score} is outside 0-100")


_validate_table("FOUNDATION_RISK_SCORES", RiskLevel, FOUNDATION_RISK_SCORES)
_validate_table("SOLAR_POTENTIAL_SCORES", SolarTier, SOLAR_POTENTIAL_SCORES)
_validate_table("URBANITY_SCORES", UrbanityLevel, URBANITY_SCORES)

for _field in SCORING_MODEL.__dataclass_fields__:
    _table = getattr(SCORING_MODEL, _field)
    if not isinstance(_table, BandTable):
        continue
    _uppers = [b.upper for b in _table.bands]
    if _uppers != sorted(_uppers):
        raise ValueError(f"Band table {_field!r} thresholds are not ascending")

if set(CATEGORY_WEIGHTS) != set(CATEGORY_ORDER):
    raise ValueError("CATEGORY_WEIGHTS must cover exactly the report categories")
if abs(sum(CATEGORY_WEIGHTS.values()) - 1.0) >= 0.001:
    raise ValueError(f"Category weights sum to {sum(CATEGORY_WEIGHTS.values())}, expected 1.0")
