#!/usr/bin/env python3
"""
Neighborhood context report: concurrent fan-out over public Dutch data
sources, merged into one scored, categorized report.

Flow for one build:
  1. Every registered source is fetched concurrently through try_fetch(),
     which isolates failures and turns them into warnings.
  2. Once all fetches finished (or the deadline / cancel signal hit),
     every metric builder runs over the resolved SourceResults.
  3. Category scores, the composite score and source attributions are
     computed and frozen into a ContextReport.

A report is always produced, even with every source absent.  The only
errors that escape build_report() are ReportCancelledError (cancelled
before any work began) and genuine programming errors in the builders.

Usage:
    python context_report.py "Damrak 1, Amsterdam" --radius 1000 --json
"""

import argparse
import json
import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

import health_monitor
from cr_trace import STAGE_CANCELLED, STAGE_EMPTY, STAGE_ERROR, STAGE_OK, get_trace, set_trace
from metric_builders import METRIC_BUILDERS, ContextMetric
from models import get_report_cache, init_db, set_report_cache
from report_warnings import (
    WarningSink,
    cancelled_message,
    no_data_message,
    timed_out_message,
)
from scoring_config import (
    CATEGORY_ORDER,
    SCORING_MODEL,
    compute_category_scores,
    compute_composite_score,
)
from sources import SOURCE_REGISTRY, SOURCES_BY_KEY, Location, SourceClient, SourceResults, SourceSpec

load_dotenv()

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

REPORT_CACHE_MINUTES = int(os.environ.get("REPORT_CACHE_MINUTES", "60"))
REPORT_TIMEOUT_SECONDS = float(os.environ.get("REPORT_TIMEOUT_SECONDS", "20"))

DEFAULT_RADIUS_METERS = 1000
MIN_RADIUS_METERS = 200
MAX_RADIUS_METERS = 5000

REPORT_CACHE_VERSION = "v3"

_POLL_INTERVAL = 0.05  # seconds between deadline / cancel checks


# =============================================================================
# ERRORS
# =============================================================================

class ReportCancelledError(Exception):
    """The build was cancelled before any source was contacted."""


class InvalidReportRequest(ValueError):
    """The caller's input cannot produce a report (maps to HTTP 400)."""


# =============================================================================
# REPORT TYPES
# =============================================================================

@dataclass(frozen=True)
class SourceAttribution:
    name: str
    url: str
    license: str
    retrieved_at: datetime

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "license": self.license,
            "retrieved_at": self.retrieved_at.isoformat(),
        }


@dataclass(frozen=True)
class ContextReport:
    """Immutable result of one build.

    categories maps every category in CATEGORY_ORDER to its metrics (possibly
    empty).  warnings and sources follow source registration order.
    """
    location: Location
    radius_meters: int
    categories: Mapping[str, Tuple[ContextMetric, ...]]
    category_scores: Mapping[str, float]
    composite_score: float
    warnings: Tuple[str, ...]
    sources: Tuple[SourceAttribution, ...]
    model_version: str = SCORING_MODEL.version
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def metrics(self, category: str) -> Tuple[ContextMetric, ...]:
        return self.categories.get(category, ())

    def metric(self, key: str) -> Optional[ContextMetric]:
        for category in CATEGORY_ORDER:
            for m in self.metrics(category):
                if m.key == key:
                    return m
        return None


def report_to_dict(report: ContextReport) -> Dict[str, Any]:
    loc = report.location
    return {
        "location": {
            "query": loc.query,
            "display_address": loc.display_address,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "rd_x": loc.rd_x,
            "rd_y": loc.rd_y,
            "municipality_code": loc.municipality_code,
            "municipality_name": loc.municipality_name,
            "district_code": loc.district_code,
            "district_name": loc.district_name,
            "neighborhood_code": loc.neighborhood_code,
            "neighborhood_name": loc.neighborhood_name,
            "postal_code": loc.postal_code,
        },
        "radius_meters": report.radius_meters,
        "categories": {
            category: [m.to_dict() for m in report.metrics(category)]
            for category in CATEGORY_ORDER
        },
        "category_scores": dict(report.category_scores),
        "composite_score": report.composite_score,
        "warnings": list(report.warnings),
        "sources": [s.to_dict() for s in report.sources],
        "model_version": report.model_version,
        "generated_at": report.generated_at.isoformat(),
    }


def report_from_dict(data: Dict[str, Any]) -> ContextReport:
    """Inverse of report_to_dict(); used for the report cache."""
    categories = {
        category: tuple(ContextMetric(**m) for m in data["categories"].get(category, []))
        for category in CATEGORY_ORDER
    }
    return ContextReport(
        location=Location(**data["location"]),
        radius_meters=data["radius_meters"],
        categories=MappingProxyType(categories),
        category_scores=MappingProxyType(dict(data["category_scores"])),
        composite_score=data["composite_score"],
        warnings=tuple(data["warnings"]),
        sources=tuple(
            SourceAttribution(
                name=s["name"],
                url=s["url"],
                license=s["license"],
                retrieved_at=datetime.fromisoformat(s["retrieved_at"]),
            )
            for s in data["sources"]
        ),
        model_version=data.get("model_version", SCORING_MODEL.version),
        generated_at=datetime.fromisoformat(data["generated_at"]),
    )


# =============================================================================
# GUARDED FETCH
# =============================================================================

def try_fetch(
    spec: SourceSpec,
    client: SourceClient,
    location: Location,
    cancel_event: threading.Event,
    warnings: WarningSink,
) -> Optional[Any]:
    """Call client.fetch() exactly once; never raises.

    Returns the payload, or None (absent) after recording one warning for
    the source.  A result that arrives after cancellation is discarded.
    """
    trace = get_trace()
    if trace:
        trace.open_stage(spec.key)
    t0 = time.monotonic()
    try:
        payload = client.fetch(location, cancel_event)
    except Exception as exc:
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        cancelled = cancel_event.is_set()
        if trace:
            trace.close_stage(
                STAGE_CANCELLED if cancelled else STAGE_ERROR,
                error=f"{type(exc).__name__}: {str(exc)[:200]}",
            )
        if cancelled:
            logger.info("[report] %s stopped after cancellation (%s)", spec.key, type(exc).__name__)
            warnings.add_source_warning(spec.key, cancelled_message(spec.key))
            return None
        logger.warning("[report] %s fetch failed after %dms", spec.key, elapsed_ms, exc_info=True)
        health_monitor.record_fetch(spec.key, False, elapsed_ms, type(exc).__name__)
        warnings.source_unavailable(spec.key)
        return None

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    health_monitor.record_fetch(spec.key, True, elapsed_ms)

    if cancel_event.is_set():
        if trace:
            trace.close_stage(STAGE_CANCELLED)
        warnings.add_source_warning(spec.key, cancelled_message(spec.key))
        return None
    if payload is None:
        if trace:
            trace.close_stage(STAGE_EMPTY)
        logger.info("[report] %s returned no data", spec.key)
        warnings.add_source_warning(spec.key, no_data_message(spec.key))
        return None
    if trace:
        trace.close_stage(STAGE_OK)
    return payload


# =============================================================================
# ATTRIBUTION
# =============================================================================

def build_attributions(results: SourceResults) -> Tuple[SourceAttribution, ...]:
    """One attribution per present source, in registration order."""
    attributions = []
    for spec in SOURCE_REGISTRY:
        payload = results[spec.key]
        if payload is None:
            continue
        attributions.append(SourceAttribution(
            name=spec.attribution_name,
            url=spec.url,
            license=spec.license,
            retrieved_at=payload.retrieved_at,
        ))
    return tuple(attributions)


# =============================================================================
# ASSEMBLER
# =============================================================================

def _gather(
    location: Location,
    clients: Mapping[str, SourceClient],
    cancel_event: threading.Event,
    timeout: float,
    warnings: WarningSink,
) -> SourceResults:
    """Fan out one guarded fetch per registered source and fan back in."""
    unknown = set(clients) - set(SOURCES_BY_KEY)
    if unknown:
        raise KeyError(f"Clients for unregistered sources: {sorted(unknown)}")

    payloads: Dict[str, Optional[Any]] = {}
    for spec in SOURCE_REGISTRY:
        if spec.key not in clients:
            logger.warning("[report] no client configured for %s", spec.key)
            warnings.source_unavailable(spec.key)

    # Clients see this event, not the caller's: it is also set on deadline.
    fetch_cancel = threading.Event()
    parent_trace = get_trace()

    def _run(spec: SourceSpec, client: SourceClient) -> Optional[Any]:
        set_trace(parent_trace)
        try:
            return try_fetch(spec, client, location, fetch_cancel, warnings)
        finally:
            set_trace(None)

    specs = [s for s in SOURCE_REGISTRY if s.key in clients]
    if not specs:
        return SourceResults(payloads)

    executor = ThreadPoolExecutor(max_workers=len(specs), thread_name_prefix="source")
    try:
        futures = {executor.submit(_run, s, clients[s.key]): s for s in specs}
        deadline = time.monotonic() + timeout
        pending = set(futures)
        reason = None
        while pending:
            remaining = deadline - time.monotonic()
            if cancel_event.is_set():
                reason = "cancelled"
                break
            if remaining <= 0:
                reason = "timed_out"
                break
            _, pending = wait(pending, timeout=min(_POLL_INTERVAL, remaining))

        for future, spec in futures.items():
            if future in pending:
                continue
            payloads[spec.key] = future.result()

        if pending:
            logger.warning(
                "[report] %s: %d source(s) still pending: %s",
                reason, len(pending), ", ".join(futures[f].key for f in pending),
            )
            message = cancelled_message if reason == "cancelled" else timed_out_message
            for future in pending:
                spec = futures[future]
                warnings.add_source_warning(spec.key, message(spec.key))
            fetch_cancel.set()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return SourceResults(payloads)


def build_report(
    location: Location,
    clients: Mapping[str, SourceClient],
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    radius_meters: int = DEFAULT_RADIUS_METERS,
) -> ContextReport:
    """Build one context report for an already resolved location.

    Raises ReportCancelledError if *cancel_event* is set on entry.  A
    cancellation or deadline hit during the fan-out yields a partial report.
    """
    cancel_event = cancel_event or threading.Event()
    if cancel_event.is_set():
        raise ReportCancelledError("Report build cancelled before it started")

    timeout = REPORT_TIMEOUT_SECONDS if timeout is None else timeout
    warnings = WarningSink()

    t0 = time.time()
    results = _gather(location, clients, cancel_event, timeout, warnings)
    logger.info(
        "[report] fan-out done in %.2fs: present=%s absent=%s",
        time.time() - t0, ",".join(results.present_keys()) or "-",
        ",".join(results.absent_keys()) or "-",
    )

    categories = {
        category: tuple(builder(results, warnings))
        for category, builder in METRIC_BUILDERS
    }
    category_scores = compute_category_scores(categories)
    composite = compute_composite_score(category_scores)

    return ContextReport(
        location=location,
        radius_meters=radius_meters,
        categories=MappingProxyType(categories),
        category_scores=MappingProxyType(dict(category_scores)),
        composite_score=composite,
        warnings=warnings.snapshot(),
        sources=build_attributions(results),
    )


# =============================================================================
# SERVICE ENTRY POINT
# =============================================================================

def default_clients(radius_meters: int = DEFAULT_RADIUS_METERS) -> Dict[str, SourceClient]:
    """Production client set, keyed by source key."""
    from air_quality import LuchtmeetnetClient
    from amenities import OverpassAmenityClient
    from cbs_client import CbsCrimeClient, CbsDemographicsClient, CbsNeighborhoodClient
    from pdok import PdokBuildingClient, PdokSoilClient

    return {
        "cbs": CbsNeighborhoodClient(),
        "crime": CbsCrimeClient(),
        "demographics": CbsDemographicsClient(),
        "amenities": OverpassAmenityClient(radius_meters),
        "air_quality": LuchtmeetnetClient(),
        "soil": PdokSoilClient(),
        "solar": PdokBuildingClient(),
    }


def clamp_radius(radius_meters: int) -> int:
    return max(MIN_RADIUS_METERS, min(MAX_RADIUS_METERS, radius_meters))


def report_cache_key(location: Location, radius_meters: int) -> str:
    return (
        f"context-report:{REPORT_CACHE_VERSION}:"
        f"{location.latitude:.5f}_{location.longitude:.5f}:{radius_meters}"
    )


def get_context_report(
    raw_input: str,
    radius_meters: int = DEFAULT_RADIUS_METERS,
    resolver=None,
    clients: Optional[Mapping[str, SourceClient]] = None,
    cancel_event: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    use_cache: bool = True,
) -> ContextReport:
    """Validate, resolve, consult the cache, build and cache a report.

    The cached report holds only source warnings.  Request-specific
    warnings (radius clamping) and the caller's own query string are applied
    to every response, cached or fresh.
    """
    if not raw_input or not raw_input.strip():
        raise InvalidReportRequest("Input is required.")

    normalized_radius = clamp_radius(radius_meters)
    request_warnings: Tuple[str, ...] = ()
    if normalized_radius != radius_meters:
        request_warnings = (
            f"Radius clamped from {radius_meters}m to {normalized_radius}m "
            f"to respect system limits.",
        )

    if resolver is None:
        from pdok import PdokLocationResolver
        resolver = PdokLocationResolver()
    location = resolver.resolve(raw_input)
    if location is None:
        raise InvalidReportRequest("Could not resolve input to a Dutch address.")

    cache_key = report_cache_key(location, normalized_radius)
    report = None
    if use_cache:
        cached = get_report_cache(cache_key, REPORT_CACHE_MINUTES)
        if cached is not None:
            try:
                report = report_from_dict(json.loads(cached))
                logger.info("[report] cache hit %s", cache_key)
            except (ValueError, KeyError, TypeError):
                logger.warning("[report] unreadable cache entry %s; rebuilding", cache_key, exc_info=True)

    if report is None:
        report = build_report(
            location,
            clients if clients is not None else default_clients(normalized_radius),
            cancel_event=cancel_event,
            timeout=timeout,
            radius_meters=normalized_radius,
        )
        if use_cache:
            set_report_cache(cache_key, json.dumps(report_to_dict(report)))

    return replace(
        report,
        location=replace(report.location, query=raw_input),
        warnings=report.warnings + request_warnings,
    )


# =============================================================================
# OUTPUT FORMATTING
# =============================================================================

def format_report(report: ContextReport) -> str:
    lines = []
    lines.append("=" * 70)
    lines.append(f"NEIGHBORHOOD CONTEXT: {report.location.display_address}")
    lines.append(f"Radius: {report.radius_meters}m")
    lines.append("=" * 70)
    lines.append("")
    lines.append(f"COMPOSITE SCORE: {report.composite_score:.1f}/100")
    lines.append("")

    for category in CATEGORY_ORDER:
        metrics = report.metrics(category)
        score = report.category_scores.get(category)
        header = category.upper()
        if score is not None:
            header += f" ({score:.1f})"
        lines.append(header)
        lines.append("-" * 70)
        if not metrics:
            lines.append("  (no data)")
        for m in metrics:
            value = "-" if m.value is None else f"{m.value:g}"
            unit = f" {m.unit}" if m.unit else ""
            score_text = f"  [{m.score:.0f}]" if m.score is not None else ""
            note = f"  {m.note}" if m.note else ""
            lines.append(f"  {m.label:<28} {value}{unit}{score_text}{note}")
        lines.append("")

    if report.warnings:
        lines.append("WARNINGS")
        lines.append("-" * 70)
        for w in report.warnings:
            lines.append(f"  ! {w}")
        lines.append("")

    lines.append("SOURCES")
    lines.append("-" * 70)
    for s in report.sources:
        lines.append(f"  {s.name} ({s.license}) {s.url}")
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(
        description="Build a neighborhood context report for a Dutch address"
    )
    parser.add_argument(
        "address",
        nargs="?",
        help="Address or listing URL to report on"
    )
    parser.add_argument(
        "--radius",
        type=int,
        default=DEFAULT_RADIUS_METERS,
        help=f"Amenity search radius in metres ({MIN_RADIUS_METERS}-{MAX_RADIUS_METERS})"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for slow sources before reporting without them"
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Skip the report cache"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()

    if not args.address:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=logging.INFO)
    init_db()

    try:
        report = get_context_report(
            args.address,
            radius_meters=args.radius,
            timeout=args.timeout,
            use_cache=not args.no_cache,
        )
    except InvalidReportRequest as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(report_to_dict(report), indent=2, ensure_ascii=False))
    else:
        print(format_report(report))


if __name__ == "__main__":
    main()
