"""
Air quality at the nearest Luchtmeetnet monitoring station.

Data source:
  - Luchtmeetnet open API (api.luchtmeetnet.nl/open_api), RIVM and the
    regional environmental services
  - Station list (paged), station detail (coordinates) and the most recent
    hourly measurements per station

The station list rarely changes and discovering coordinates costs one
request per station, so the discovered list is cached for 24 hours in the
source cache.  Only one thread per process runs discovery at a time.

Limitations:
  - The nearest station may be many kilometres away in rural areas;
    station distance is reported alongside the values.
  - Not every station measures every pollutant.  Missing formulas are
    reported as None; a station measuring none of PM2.5, PM10, NO2 or O3
    yields no snapshot.
"""

import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests

from cr_trace import get_trace, set_trace
from models import get_source_cache, set_source_cache
from source_http import check_cancelled, get_json, haversine_m, safe_float, utc_now
from sources import AirQualitySnapshot, Location

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

_API_BASE = os.environ.get(
    "LUCHTMEETNET_BASE_URL", "https://api.luchtmeetnet.nl",
).rstrip("/")
_API_TIMEOUT = 10  # seconds
_MAX_STATION_PAGES = 15
_DISCOVERY_WORKERS = 5
_STATION_CACHE_MINUTES = 24 * 60
_SUPPORTED_FORMULAS = ("PM25", "PM10", "NO2", "O3")

_discovery_lock = threading.Lock()


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class LuchtmeetnetClient:
    """Latest PM2.5 / PM10 / NO2 / O3 at the station nearest to a location."""

    SERVICE = "luchtmeetnet"

    def __init__(self, base_url: Optional[str] = None, timeout: float = _API_TIMEOUT):
        self.base_url = (base_url or _API_BASE).rstrip("/")
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def fetch(self, location: Location, cancel_event: threading.Event) -> Optional[AirQualitySnapshot]:
        stations = self.get_stations(cancel_event)
        if not stations:
            logger.warning("Luchtmeetnet station discovery returned no stations")
            return None

        nearest = min(
            stations,
            key=lambda s: haversine_m(location.latitude, location.longitude, s["lat"], s["lon"]),
        )
        distance = haversine_m(location.latitude, location.longitude, nearest["lat"], nearest["lon"])

        check_cancelled(cancel_event, self.SERVICE)
        latest = self._latest_measurements(nearest["id"], cancel_event)
        if not latest:
            logger.warning(
                "Luchtmeetnet station %s reported none of %s",
                nearest["id"], ", ".join(_SUPPORTED_FORMULAS),
            )
            return None

        first = next(latest[f] for f in _SUPPORTED_FORMULAS if f in latest)
        return AirQualitySnapshot(
            station_id=nearest["id"],
            station_name=nearest["name"],
            station_distance_m=round(distance),
            retrieved_at=utc_now(),
            pm25=safe_float(latest.get("PM25", {}).get("value")),
            pm10=safe_float(latest.get("PM10", {}).get("value")),
            no2=safe_float(latest.get("NO2", {}).get("value")),
            o3=safe_float(latest.get("O3", {}).get("value")),
            measured_at=_parse_timestamp(first.get("timestamp_measured")),
        )

    def get_stations(self, cancel_event: threading.Event) -> List[Dict[str, Any]]:
        """[{id, name, lat, lon}, ...] from cache, discovering on a miss."""
        cached = get_source_cache("luchtmeetnet:stations", "all", _STATION_CACHE_MINUTES)
        if cached is not None:
            return json.loads(cached)

        with _discovery_lock:
            # Another thread may have finished discovery while we waited.
            cached = get_source_cache("luchtmeetnet:stations", "all", _STATION_CACHE_MINUTES)
            if cached is not None:
                return json.loads(cached)
            stations, failed = self._discover_stations(cancel_event)
            # A partial list would move the nearest station until it expires.
            if stations and not failed:
                set_source_cache("luchtmeetnet:stations", "all", json.dumps(stations))
            return stations

    # ------------------------------------------------------------------
    # Station discovery
    # ------------------------------------------------------------------

    def _discover_stations(self, cancel_event: threading.Event) -> Tuple[List[Dict[str, Any]], int]:
        """Stations with coordinates, plus the number of detail requests that failed."""
        logger.info("Starting Luchtmeetnet station discovery")
        station_ids = self._station_ids(cancel_event)

        parent_trace = get_trace()

        def _detail(station_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
            set_trace(parent_trace)
            try:
                return self._station_detail(station_id, cancel_event), False
            except (requests.RequestException, ValueError):
                logger.warning("Failed to fetch details for station %s", station_id, exc_info=True)
                return None, True
            finally:
                set_trace(None)

        with ThreadPoolExecutor(max_workers=_DISCOVERY_WORKERS) as executor:
            details = list(executor.map(_detail, station_ids))

        check_cancelled(cancel_event, self.SERVICE)
        stations = [d for d, _ in details if d is not None]
        failed = sum(1 for _, err in details if err)
        logger.info(
            "Discovered %d Luchtmeetnet stations with coordinates (%d detail requests failed)",
            len(stations), failed,
        )
        return stations, failed

    def _station_ids(self, cancel_event: threading.Event) -> List[str]:
        ids: List[str] = []
        for page in range(1, _MAX_STATION_PAGES + 1):
            check_cancelled(cancel_event, self.SERVICE)
            data = get_json(
                self.SERVICE, "stations",
                f"{self.base_url}/open_api/stations",
                params={"page": page},
                timeout=self.timeout,
                cancel_event=cancel_event,
            )
            rows = data.get("data") or []
            for row in rows:
                station_id = str(row.get("number") or row.get("id") or "").strip()
                if station_id and station_id not in ids:
                    ids.append(station_id)
            pagination = data.get("pagination") or {}
            last_page = pagination.get("last_page")
            if not rows or (last_page is not None and page >= int(last_page)):
                break
        return ids

    def _station_detail(self, station_id: str, cancel_event: threading.Event) -> Optional[Dict[str, Any]]:
        if cancel_event.is_set():
            return None
        data = get_json(
            self.SERVICE, "station",
            f"{self.base_url}/open_api/stations/{station_id}",
            timeout=self.timeout,
            cancel_event=cancel_event,
        )

        detail = data.get("data") or {}
        coords = (detail.get("geometry") or {}).get("coordinates") or []
        if len(coords) < 2:
            return None
        return {
            "id": station_id,
            "name": (detail.get("location") or detail.get("name") or station_id).strip(),
            "lat": float(coords[1]),
            "lon": float(coords[0]),
        }

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    def _latest_measurements(self, station_id: str, cancel_event: threading.Event) -> Dict[str, Dict[str, Any]]:
        """Most recent measurement per supported formula."""
        data = get_json(
            self.SERVICE, "measurements",
            f"{self.base_url}/open_api/stations/{station_id}/measurements",
            params={"order_by": "timestamp_measured", "order_direction": "desc", "page": 1},
            timeout=self.timeout,
            cancel_event=cancel_event,
        )
        latest: Dict[str, Dict[str, Any]] = {}
        for row in data.get("data") or []:
            formula = str(row.get("formula") or "").upper()
            if formula in _SUPPORTED_FORMULAS and formula not in latest:
                latest[formula] = row
        return latest
