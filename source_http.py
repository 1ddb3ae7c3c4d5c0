"""
Shared plumbing for the source clients.

Every outbound provider request goes through get_json(): it refuses to
start once the build is cancelled, applies an explicit timeout, records the
call on the current trace and raises on HTTP errors.  The guarded fetch in
context_report.py turns any exception into a report warning.
"""

import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from cr_trace import get_trace

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10  # seconds
_USER_AGENT = "buurtcheck/1.0 (+https://github.com/buurtcheck)"


class SourceCancelledError(Exception):
    """The build was cancelled before a provider request could start."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def check_cancelled(cancel_event: Optional[threading.Event], service: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SourceCancelledError(f"{service} request cancelled")


def _record_api(service: str, endpoint: str, t0: float, status_code: int, note: str = "") -> None:
    trace = get_trace()
    if trace:
        trace.record_call(service, endpoint, int((time.time() - t0) * 1000), status_code, note)


def get_json(
    service: str,
    endpoint: str,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = _DEFAULT_TIMEOUT,
    cancel_event: Optional[threading.Event] = None,
) -> Any:
    """GET *url* and decode the JSON body.

    Raises SourceCancelledError, requests.RequestException (transport and
    HTTP status errors) or ValueError (non-JSON body).
    """
    check_cancelled(cancel_event, service)
    t0 = time.time()
    try:
        resp = requests.get(
            url,
            params=params,
            timeout=timeout,
            headers={"Accept": "application/json", "User-Agent": _USER_AGENT},
        )
    except requests.RequestException as e:
        _record_api(service, endpoint, t0, 0, type(e).__name__)
        raise
    _record_api(service, endpoint, t0, resp.status_code, "" if resp.ok else f"HTTP {resp.status_code}")
    resp.raise_for_status()
    return resp.json()


# =============================================================================
# VALUE PARSING
# =============================================================================

def safe_float(val: Any) -> Optional[float]:
    """Numbers, or numeric strings ("12,5" included); anything else is None."""
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        return float(val) if math.isfinite(val) else None
    text = str(val).strip().replace(",", ".")
    if not text:
        return None
    try:
        parsed = float(text)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def safe_int(val: Any) -> Optional[int]:
    parsed = safe_float(val)
    return None if parsed is None else int(round(parsed))


def safe_str(val: Any) -> Optional[str]:
    if val is None:
        return None
    text = str(val).strip()
    return text or None


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points, returned in metres."""
    R_METRES = 6371000.0
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)

    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r

    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2)
    c = 2 * math.asin(math.sqrt(a))

    return R_METRES * c
