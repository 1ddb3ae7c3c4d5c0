"""
CBS Open Data (StatLine OData v3) clients.

Data source:
  - CBS "Kerncijfers wijken en buurten" via opendata.cbs.nl/ODataApi
  - Tables are queried per region code with
    $filter=WijkenEnBuurten eq '<code>' and $top=1

Region codes are tried from most to least specific: neighborhood (BU...),
district (WK...), municipality (GM...).  CBS pads region codes to ten
characters, so the filter value is padded the same way.

Limitations:
  - Figures are annual; the most recent year lags by one to two years.
  - CBS suppresses values for small neighborhoods (privacy); those fields
    come back as null and the corresponding metrics are omitted.
  - Crime counts are converted to rates per 1000 residents.  Without a
    resident count the raw count is reported as the rate.
"""

import json
import logging
import os
import threading
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterator, Optional, Tuple

from models import get_source_cache, set_source_cache
from source_http import (
    check_cancelled,
    get_json,
    safe_float,
    safe_int,
    safe_str,
    utc_now,
)
from sources import CrimeStats, Demographics, Location, NeighborhoodStats

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_API_BASE = os.environ.get(
    "CBS_BASE_URL", "https://opendata.cbs.nl/ODataApi/odata",
).rstrip("/")
_API_TIMEOUT = 10  # seconds
_CACHE_MINUTES = int(os.environ.get("SOURCE_CACHE_MINUTES", "1440"))
_REGION_CODE_WIDTH = 10


# =============================================================================
# HELPERS
# =============================================================================

def region_candidates(location: Location) -> Iterator[str]:
    """Padded region codes, most specific first."""
    for code in (
        location.neighborhood_code,
        location.district_code,
        location.municipality_code,
    ):
        if code and code.strip():
            yield code.strip().ljust(_REGION_CODE_WIDTH)


def rate_per_1000(count: Optional[int], residents: Optional[int]) -> Optional[int]:
    """Count per 1000 residents, rounded half-up to a whole number."""
    if count is None:
        return None
    if residents is None or residents <= 0:
        return count
    rate = Decimal(count) * 1000 / Decimal(residents)
    return int(rate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# =============================================================================
# BASE CLIENT
# =============================================================================

class CbsTableClient:
    """One CBS OData table, looked up by region code.

    Subclasses set TABLE_ID / FIELDS and implement _parse().  Rows are
    cached in the source cache per (namespace, region code); an empty result
    is cached too so neighborhoods without data are not re-queried.
    """

    TABLE_ID = ""
    CACHE_NAMESPACE = ""
    FIELDS: Tuple[str, ...] = ()
    SERVICE = "cbs"

    def __init__(self, base_url: Optional[str] = None, timeout: float = _API_TIMEOUT):
        self.base_url = (base_url or _API_BASE).rstrip("/")
        self.timeout = timeout

    def fetch(self, location: Location, cancel_event: threading.Event):
        for code in region_candidates(location):
            check_cancelled(cancel_event, self.SERVICE)
            row = self._get_row(code, cancel_event)
            if row:
                return self._parse(row, code)
        return None

    def _get_row(self, region_code: str, cancel_event: threading.Event) -> Optional[Dict[str, Any]]:
        namespace = self.CACHE_NAMESPACE
        cache_key = region_code.strip()
        cached = get_source_cache(namespace, cache_key, _CACHE_MINUTES)
        if cached is not None:
            try:
                return json.loads(cached)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Corrupted CBS cache entry %s/%s", namespace, cache_key)

        params = {
            "$filter": f"WijkenEnBuurten eq '{region_code}'",
            "$top": 1,
            "$select": ",".join(("WijkenEnBuurten",) + self.FIELDS),
        }
        data = get_json(
            self.SERVICE,
            self.TABLE_ID,
            f"{self.base_url}/{self.TABLE_ID}/TypedDataSet",
            params=params,
            timeout=self.timeout,
            cancel_event=cancel_event,
        )
        values = data.get("value") if isinstance(data, dict) else None
        row = values[0] if isinstance(values, list) and values else {}
        if not row:
            logger.info("CBS %s has no row for region %s", self.TABLE_ID, cache_key)
        set_source_cache(namespace, cache_key, json.dumps(row))
        return row

    def _parse(self, row: Dict[str, Any], region_code: str):
        raise NotImplementedError


# =============================================================================
# TABLE CLIENTS
# =============================================================================

class CbsNeighborhoodClient(CbsTableClient):
    """Kerncijfers wijken en buurten: population, income, housing, proximity."""

    TABLE_ID = "85618NED"
    CACHE_NAMESPACE = "cbs:neighborhood"
    FIELDS = (
        "SoortRegio_2", "AantalInwoners_5", "Bevolkingsdichtheid_34",
        "GemiddeldeWOZWaardeVanWoningen_36", "HuishoudensMetEenLaagInkomen_73",
        "MateVanStedelijkheid_125", "GemiddeldInkomenPerInwoner_81",
        "BasisonderwijsVmboMbo1_70", "HavoVwoMbo24_71", "HboWo_72",
        # Housing
        "Koopwoningen_41", "HuurwoningenTotaal_42", "InBezitWoningcorporatie_43",
        "InBezitOverigeVerhuurders_44", "BouwjaarVoor2000_46", "BouwjaarVanaf2000_47",
        "PercentageMeergezinswoning_38",
        # Mobility
        "PersonenautoSPerHuishouden_112", "PersonenautoSNaarOppervlakte_113",
        "PersonenautoSTotaal_109",
        # Proximity (km)
        "AfstandTotHuisartsenpraktijk_115", "AfstandTotGroteSupermarkt_116",
        "AfstandTotKinderdagverblijf_117", "AfstandTotSchool_118", "ScholenBinnen3Km_119",
    )

    def _parse(self, row: Dict[str, Any], region_code: str) -> NeighborhoodStats:
        return NeighborhoodStats(
            region_code=safe_str(row.get("WijkenEnBuurten")) or region_code.strip(),
            region_type=safe_str(row.get("SoortRegio_2")) or "Onbekend",
            retrieved_at=utc_now(),
            residents=safe_int(row.get("AantalInwoners_5")),
            population_density=safe_int(row.get("Bevolkingsdichtheid_34")),
            average_woz_keur=safe_float(row.get("GemiddeldeWOZWaardeVanWoningen_36")),
            low_income_households_pct=safe_float(row.get("HuishoudensMetEenLaagInkomen_73")),
            urbanity=safe_str(row.get("MateVanStedelijkheid_125")),
            average_income_per_inhabitant=safe_float(row.get("GemiddeldInkomenPerInwoner_81")),
            education_low=safe_int(row.get("BasisonderwijsVmboMbo1_70")),
            education_medium=safe_int(row.get("HavoVwoMbo24_71")),
            education_high=safe_int(row.get("HboWo_72")),
            pct_owner_occupied=safe_int(row.get("Koopwoningen_41")),
            pct_rental=safe_int(row.get("HuurwoningenTotaal_42")),
            pct_social_housing=safe_int(row.get("InBezitWoningcorporatie_43")),
            pct_private_rental=safe_int(row.get("InBezitOverigeVerhuurders_44")),
            pct_pre_2000=safe_int(row.get("BouwjaarVoor2000_46")),
            pct_post_2000=safe_int(row.get("BouwjaarVanaf2000_47")),
            pct_multi_family=safe_int(row.get("PercentageMeergezinswoning_38")),
            cars_per_household=safe_float(row.get("PersonenautoSPerHuishouden_112")),
            car_density=safe_int(row.get("PersonenautoSNaarOppervlakte_113")),
            total_cars=safe_int(row.get("PersonenautoSTotaal_109")),
            distance_to_gp=safe_float(row.get("AfstandTotHuisartsenpraktijk_115")),
            distance_to_supermarket=safe_float(row.get("AfstandTotGroteSupermarkt_116")),
            distance_to_daycare=safe_float(row.get("AfstandTotKinderdagverblijf_117")),
            distance_to_school=safe_float(row.get("AfstandTotSchool_118")),
            schools_within_3km=safe_float(row.get("ScholenBinnen3Km_119")),
        )


class CbsCrimeClient(CbsTableClient):
    """Registered crime counts, converted to rates per 1000 residents.

    Burglary is reported from the theft-from-dwelling count, the closest
    series the neighborhood table publishes.
    """

    TABLE_ID = "83765NED"
    CACHE_NAMESPACE = "cbs:crime"
    FIELDS = (
        "AantalInwoners_5",
        "TotaalDiefstalUitWoningSchuurED_106",
        "VernielingMisdrijfTegenOpenbareOrde_107",
        "GeweldsEnSeksueleMisdrijven_108",
    )

    def _parse(self, row: Dict[str, Any], region_code: str) -> CrimeStats:
        residents = safe_int(row.get("AantalInwoners_5"))
        theft = rate_per_1000(safe_int(row.get("TotaalDiefstalUitWoningSchuurED_106")), residents)
        vandalism = rate_per_1000(safe_int(row.get("VernielingMisdrijfTegenOpenbareOrde_107")), residents)
        violent = rate_per_1000(safe_int(row.get("GeweldsEnSeksueleMisdrijven_108")), residents)

        present = [r for r in (theft, vandalism, violent) if r is not None]
        total = sum(present) if present else None

        return CrimeStats(
            retrieved_at=utc_now(),
            total_per_1000=total,
            burglary_per_1000=theft,
            violent_per_1000=violent,
            theft_per_1000=theft,
            vandalism_per_1000=vandalism,
        )


class CbsDemographicsClient(CbsTableClient):
    """Age bands and household composition (percentages)."""

    TABLE_ID = "83765NED"
    CACHE_NAMESPACE = "cbs:demographics"
    FIELDS = (
        "k_0Tot15Jaar_8", "k_15Tot25Jaar_9", "k_25Tot45Jaar_10",
        "k_45Tot65Jaar_11", "k_65JaarOfOuder_12",
        "GemiddeldeHuishoudensgrootte_32", "Koopwoningen_40",
        "Eenpersoonshuishoudens_29", "HuishoudensMetKinderen_31",
    )

    def _parse(self, row: Dict[str, Any], region_code: str) -> Demographics:
        return Demographics(
            retrieved_at=utc_now(),
            pct_age_0_14=safe_int(row.get("k_0Tot15Jaar_8")),
            pct_age_15_24=safe_int(row.get("k_15Tot25Jaar_9")),
            pct_age_25_44=safe_int(row.get("k_25Tot45Jaar_10")),
            pct_age_45_64=safe_int(row.get("k_45Tot65Jaar_11")),
            pct_age_65_plus=safe_int(row.get("k_65JaarOfOuder_12")),
            average_household_size=safe_float(row.get("GemiddeldeHuishoudensgrootte_32")),
            pct_owner_occupied=safe_int(row.get("Koopwoningen_40")),
            pct_single_households=safe_int(row.get("Eenpersoonshuishoudens_29")),
            pct_family_households=safe_int(row.get("HuishoudensMetKinderen_31")),
        )
