"""
Source health for GET /healthz.

Every guarded source fetch reports its outcome through record_fetch().  A
source's passive status is the success rate over its last
_PASSIVE_WINDOW_SIZE outcomes:

    >= 95%  healthy
    >= 70%  degraded
    else    down          (no outcomes yet: unknown)

Two providers also expose a free endpoint that is cheap to poll, so a
daemon thread probes them every HEALTH_CHECK_INTERVAL seconds.  When a
probe result exists for a source it takes precedence over the passive
window.

One HealthMonitor per process, shared through the module-level helpers.
"""

import logging
import os
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, NamedTuple, Optional

import requests

from sources import AIR_QUALITY, AMENITIES, SOURCE_REGISTRY

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = int(os.environ.get("HEALTH_CHECK_INTERVAL", "300"))

_PROBE_TIMEOUT = 10
_PASSIVE_WINDOW_SIZE = 50
_HEALTHY_THRESHOLD = 0.95
_DEGRADED_THRESHOLD = 0.70


class Probe(NamedTuple):
    source: str
    url: str
    params: Optional[Dict[str, Any]] = None


ACTIVE_PROBES: List[Probe] = [
    Probe(
        AMENITIES,
        os.environ.get("OVERPASS_STATUS_URL", "https://overpass-api.de/api/status"),
    ),
    Probe(
        AIR_QUALITY,
        os.environ.get("LUCHTMEETNET_BASE_URL", "https://api.luchtmeetnet.nl").rstrip("/")
        + "/open_api/stations",
        {"page": 1},
    ),
]


@dataclass
class SourceHealth:
    source: str
    status: str                 # healthy | degraded | down | unknown
    mode: str                   # passive | active
    latency_ms: int = 0
    checked_at: Optional[str] = None
    error: Optional[str] = None
    success_rate: Optional[float] = None
    sample_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None and k != "source"}


@dataclass
class FetchOutcome:
    at: float
    ok: bool
    elapsed_ms: int
    error_class: Optional[str] = None


def _iso(ts: Optional[float] = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def classify_success_rate(rate: float) -> str:
    if rate >= _HEALTHY_THRESHOLD:
        return "healthy"
    if rate >= _DEGRADED_THRESHOLD:
        return "degraded"
    return "down"


def run_probe(probe: Probe) -> SourceHealth:
    """One GET: HTTP 200 is healthy, any other status degraded, no answer down."""
    started = time.monotonic()
    status, error = "down", None
    try:
        resp = requests.get(probe.url, params=probe.params, timeout=_PROBE_TIMEOUT)
    except requests.Timeout:
        error = "timeout"
    except requests.RequestException as e:
        error = str(e)
    else:
        if resp.status_code == 200:
            status = "healthy"
        else:
            status, error = "degraded", f"HTTP {resp.status_code}"
    return SourceHealth(
        source=probe.source,
        status=status,
        mode="active",
        latency_ms=int((time.monotonic() - started) * 1000),
        checked_at=_iso(),
        error=error,
    )


class HealthMonitor:

    def __init__(self, probes: Optional[List[Probe]] = None) -> None:
        self.probes = list(ACTIVE_PROBES if probes is None else probes)
        self._lock = threading.Lock()
        self._outcomes: Dict[str, Deque[FetchOutcome]] = {}
        self._probed: Dict[str, SourceHealth] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # Passive ---------------------------------------------------------

    def record_fetch(
        self,
        source_key: str,
        ok: bool,
        elapsed_ms: int,
        error_class: Optional[str] = None,
    ) -> None:
        outcome = FetchOutcome(time.time(), ok, elapsed_ms, error_class)
        with self._lock:
            window = self._outcomes.setdefault(source_key, deque(maxlen=_PASSIVE_WINDOW_SIZE))
            window.append(outcome)

    def passive_status(self, source_key: str) -> SourceHealth:
        with self._lock:
            window = list(self._outcomes.get(source_key, ()))
        if not window:
            return SourceHealth(source_key, "unknown", "passive", sample_size=0)

        rate = sum(o.ok for o in window) / len(window)
        failures = [o.error_class for o in window if not o.ok and o.error_class]
        return SourceHealth(
            source=source_key,
            status=classify_success_rate(rate),
            mode="passive",
            latency_ms=int(sum(o.elapsed_ms for o in window) / len(window)),
            checked_at=_iso(window[-1].at),
            error=failures[-1] if failures else None,
            success_rate=round(rate, 3),
            sample_size=len(window),
        )

    # Active ----------------------------------------------------------

    def run_probes(self) -> None:
        for probe in self.probes:
            result = run_probe(probe)
            with self._lock:
                previous = self._probed.get(probe.source)
                self._probed[probe.source] = result
            if previous is not None and previous.status != result.status:
                logger.warning(
                    "[health] %s changed %s -> %s (error=%s)",
                    probe.source, previous.status, result.status, result.error,
                )
            else:
                logger.info("[health] %s: %s (%dms)", probe.source, result.status, result.latency_ms)

    def probed_status(self, source_key: str) -> Optional[SourceHealth]:
        with self._lock:
            return self._probed.get(source_key)

    # Combined --------------------------------------------------------

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Health per registered source, in registry order."""
        out: Dict[str, Dict[str, Any]] = {}
        for spec in SOURCE_REGISTRY:
            health = self.probed_status(spec.key) or self.passive_status(spec.key)
            out[spec.key] = {"label": spec.label, **health.to_dict()}
        return out

    # Background thread -----------------------------------------------

    def _run(self) -> None:
        logger.info("[health] probe thread started (interval=%ds)", HEALTH_CHECK_INTERVAL)
        while not self._stop.is_set():
            try:
                self.run_probes()
            except Exception:
                logger.exception("[health] probe round failed")
            self._stop.wait(HEALTH_CHECK_INTERVAL)
        logger.info("[health] probe thread stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-probes", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()


_monitor = HealthMonitor()


def record_fetch(
    source_key: str,
    ok: bool,
    elapsed_ms: int,
    error_class: Optional[str] = None,
) -> None:
    _monitor.record_fetch(source_key, ok, elapsed_ms, error_class)


def get_status() -> Dict[str, Dict[str, Any]]:
    return _monitor.snapshot()


def start_monitor() -> None:
    _monitor.start()


def stop_monitor() -> None:
    _monitor.stop()
