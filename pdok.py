"""
PDOK clients: address resolution, soil (foundation risk) and buildings (solar).

Data sources:
  - PDOK Locatieserver v3.1 ("free" search, restricted to type:adres)
  - BRO Bodemkaart WFS (soil map, layer "bodemkaart")
  - BAG WFS (building footprints, layer "bag:pand")

The WFS services are queried with a point-in-polygon CQL filter on the
address's Rijksdriehoek (EPSG:28992) coordinates, so both WFS clients
return None for a location without RD coordinates.

Limitations:
  - The soil map is a 1:50.000 survey; the dominant soil group of a map
    unit is not necessarily what lies under one particular building.
  - Solar potential is a footprint heuristic (40% usable roof, 2 m² per
    panel, 300 kWh per panel per year), not a roof-orientation model.
"""

import json
import logging
import os
import re
import threading
from dataclasses import asdict
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, unquote, urlparse

import requests

from models import get_source_cache, set_source_cache
from source_http import (
    check_cancelled,
    get_json,
    safe_float,
    safe_int,
    safe_str,
    utc_now,
)
from sources import FoundationRisk, Location, SolarPotential

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_API_BASE = os.environ.get("PDOK_BASE_URL", "https://api.pdok.nl").rstrip("/")
_SOIL_WFS = "https://service.pdok.nl/bzk/bro-bodemkaart/wfs/v1_0"
_BAG_WFS = "https://service.pdok.nl/lv/bag/wfs/v2_0"
_API_TIMEOUT = 10  # seconds
_RESOLVER_CACHE_MINUTES = int(os.environ.get("SOURCE_CACHE_MINUTES", "1440"))

# Solar heuristic
_USABLE_ROOF_FRACTION = 0.4
_M2_PER_PANEL = 2.0
_KWH_PER_PANEL = 300.0
_HIGH_KWH = 3500
_MEDIUM_KWH = 2000
_OLD_BUILDING_YEAR = 1930   # monument status / weak roofs: never "High"

# Soil group -> (risk level, description)
SOIL_RISK = {
    "veen": ("High", "Peat soil carries a high risk of subsidence and foundation issues."),
    "klei": ("Medium", "Clay soil can be stable but may compress over time."),
    "zand": ("Low", "Sand is generally stable and good for foundations."),
    "leem": ("Low", "Loam is generally stable."),
}

_ADDRESS_QUERY_KEYS = {"q", "query", "address", "location", "loc"}
_WKT_POINT = re.compile(
    r"POINT\s*\(\s*(-?\d+(?:\.\d+)?)\s+(-?\d+(?:\.\d+)?)\s*\)", re.IGNORECASE,
)


# =============================================================================
# INPUT NORMALIZATION
# =============================================================================

def normalize_input(raw: str) -> str:
    """Turn a listing URL into a searchable address; plain text passes through.

    An address-like query parameter (q, query, address, location, loc) wins;
    otherwise the last path segment is used with '-' and '_' as spaces.
    Funda slugs are always used.  Other slugs only when they contain letters.
    """
    text = raw.strip()
    parsed = urlparse(text)
    if not (parsed.scheme in ("http", "https") and parsed.netloc):
        return text

    for key, value in parse_qsl(parsed.query):
        if key.lower() in _ADDRESS_QUERY_KEYS:
            value = value.strip()
            if any(ch.isalnum() for ch in value):
                return value

    segments = [s for s in parsed.path.split("/") if s.strip()]
    if segments:
        slug = unquote(segments[-1]).replace("-", " ").replace("_", " ").strip()
        if slug and ("funda.nl" in parsed.netloc.lower() or any(ch.isalpha() for ch in slug)):
            return slug
    return text


def parse_wkt_point(wkt: Optional[str]) -> Optional[Tuple[float, float]]:
    """'POINT(x y)' -> (x, y); anything else -> None."""
    if not wkt:
        return None
    match = _WKT_POINT.search(wkt)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


def _prefix_code(code: Optional[str], prefix: str) -> Optional[str]:
    if not code or not code.strip():
        return None
    code = code.strip()
    if code.upper().startswith(prefix):
        return code.upper()
    return f"{prefix}{code}"


# =============================================================================
# LOCATION RESOLVER
# =============================================================================

class PdokLocationResolver:
    """Resolve free-form Dutch address input (or a listing URL) to a Location."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = _API_TIMEOUT):
        self.base_url = (base_url or _API_BASE).rstrip("/")
        self.timeout = timeout

    def resolve(self, raw_input: str) -> Optional[Location]:
        """Returns None when the input is empty, unknown, or PDOK is unreachable."""
        if not raw_input or not raw_input.strip():
            return None

        query = normalize_input(raw_input)
        cached = get_source_cache("pdok:resolve", query.lower(), _RESOLVER_CACHE_MINUTES)
        if cached is not None:
            data = json.loads(cached)
            if data is None:
                return None
            data["query"] = raw_input
            return Location(**data)

        try:
            payload = get_json(
                "pdok",
                "locatieserver",
                f"{self.base_url}/bzk/locatieserver/search/v3_1/free",
                params={"q": query, "fq": "type:adres", "rows": 1},
                timeout=self.timeout,
            )
        except (requests.RequestException, ValueError):
            logger.warning("PDOK resolve failed for %r", query, exc_info=True)
            return None

        docs = (payload.get("response") or {}).get("docs") if isinstance(payload, dict) else None
        if not docs:
            set_source_cache("pdok:resolve", query.lower(), "null")
            return None

        location = self._parse_doc(docs[0], raw_input, query)
        if location is None:
            logger.warning("PDOK response for %r did not include valid coordinates", query)
            return None
        set_source_cache("pdok:resolve", query.lower(), json.dumps(asdict(location)))
        return location

    @staticmethod
    def _parse_doc(doc: Dict[str, Any], raw_input: str, query: str) -> Optional[Location]:
        point_ll = parse_wkt_point(doc.get("centroide_ll"))
        if point_ll is None:
            return None
        point_rd = parse_wkt_point(doc.get("centroide_rd"))
        return Location(
            query=raw_input,
            display_address=safe_str(doc.get("weergavenaam")) or query,
            latitude=point_ll[1],
            longitude=point_ll[0],
            rd_x=point_rd[0] if point_rd else None,
            rd_y=point_rd[1] if point_rd else None,
            municipality_code=_prefix_code(doc.get("gemeentecode"), "GM"),
            municipality_name=safe_str(doc.get("gemeentenaam")),
            district_code=safe_str(doc.get("wijkcode")),
            district_name=safe_str(doc.get("wijknaam")),
            neighborhood_code=safe_str(doc.get("buurtcode")),
            neighborhood_name=safe_str(doc.get("buurtnaam")),
            postal_code=safe_str(doc.get("postcode")),
        )


# =============================================================================
# WFS CLIENTS
# =============================================================================

def _wfs_first_feature_properties(
    url: str,
    type_name: str,
    location: Location,
    timeout: float,
    cancel_event: threading.Event,
) -> Optional[Dict[str, Any]]:
    """Properties of the first feature containing the location, or None."""
    params = {
        "service": "WFS",
        "version": "2.0.0",
        "request": "GetFeature",
        "typeName": type_name,
        "outputFormat": "application/json",
        "cql_filter": f"INTERSECTS(geometrie,POINT({location.rd_x} {location.rd_y}))",
    }
    data = get_json("pdok", type_name, url, params=params,
                    timeout=timeout, cancel_event=cancel_event)
    features = data.get("features") if isinstance(data, dict) else None
    if not features:
        return None
    return features[0].get("properties") or {}


class PdokSoilClient:
    """Foundation risk from the dominant soil group (bodemhoofdgroep)."""

    def __init__(self, url: str = _SOIL_WFS, timeout: float = _API_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch(self, location: Location, cancel_event: threading.Event) -> Optional[FoundationRisk]:
        if location.rd_x is None or location.rd_y is None:
            return None
        check_cancelled(cancel_event, "pdok")
        props = _wfs_first_feature_properties(
            self.url, "bodemkaart", location, self.timeout, cancel_event,
        )
        soil_group = safe_str((props or {}).get("bodemhoofdgroep"))
        if not soil_group:
            return None
        risk, description = SOIL_RISK.get(
            soil_group.lower(), ("Unknown", f"Soil type: {soil_group}"),
        )
        return FoundationRisk(
            risk_level=risk,
            soil_type=soil_group,
            description=description,
            retrieved_at=utc_now(),
        )


def estimate_solar(roof_area_m2: float, build_year: Optional[int]) -> Tuple[str, int, float]:
    """(potential, installable panels, kWh/yr) for a building footprint."""
    panels = int(roof_area_m2 * _USABLE_ROOF_FRACTION / _M2_PER_PANEL)
    kwh = panels * _KWH_PER_PANEL
    if kwh > _HIGH_KWH:
        potential = "High"
    elif kwh > _MEDIUM_KWH:
        potential = "Medium"
    else:
        potential = "Low"
    if build_year is not None and build_year < _OLD_BUILDING_YEAR and potential == "High":
        potential = "Medium"
    return potential, panels, round(kwh)


class PdokBuildingClient:
    """Rooftop solar potential of the building at the address."""

    def __init__(self, url: str = _BAG_WFS, timeout: float = _API_TIMEOUT):
        self.url = url
        self.timeout = timeout

    def fetch(self, location: Location, cancel_event: threading.Event) -> Optional[SolarPotential]:
        if location.rd_x is None or location.rd_y is None:
            return None
        check_cancelled(cancel_event, "pdok")
        props = _wfs_first_feature_properties(
            self.url, "bag:pand", location, self.timeout, cancel_event,
        )
        if props is None:
            return None
        area = safe_float(props.get("oppervlakte"))
        if area is None or area <= 0:
            return None
        potential, panels, kwh = estimate_solar(area, safe_int(props.get("bouwjaar")))
        return SolarPotential(
            potential=potential,
            retrieved_at=utc_now(),
            roof_area_m2=area,
            installable_panels=panels,
            estimated_generation_kwh=kwh,
        )
