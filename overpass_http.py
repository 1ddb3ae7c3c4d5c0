"""
Shared Overpass API access.

Every Overpass query in the process goes through overpass_query() so that
requests share one cache, one spacing clock and one retry policy:

  1. Fresh cache entry in overpass_cache (models.py)?  Return it.
  2. POST the query, at most one request per MIN_SPACING seconds.
  3. Retryable failures (429, 5xx, transport errors, runtime errors
     reported in the body) are retried after RETRY_BACKOFF seconds.  The
     wait is on the caller's cancel event, so cancelling ends it at once.
  4. Still failing after the last retry: serve the newest stale cache
     entry (marked "_stale") or raise.

Non-retryable failures (other 4xx, non-JSON bodies) raise immediately and
never fall back to stale data.

Point OVERPASS_BASE_URL at a self-hosted instance to lift the public
server's rate limits.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import requests

from cr_trace import get_trace
from models import (
    get_overpass_cache,
    get_overpass_cache_stale,
    overpass_cache_key,
    set_overpass_cache,
)

logger = logging.getLogger(__name__)

_BODY_FAILURES = ("runtime error", "timed out", "out of memory")


class OverpassError(Exception):
    """Base class; *reason* is the short tag written to the trace."""

    retryable = False
    reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason
        if retryable is not None:
            self.retryable = retryable


class OverpassRateLimitError(OverpassError):
    retryable = True
    reason = "rate_limit"


class OverpassQueryError(OverpassError):
    pass


class OverpassCancelledError(OverpassError):
    reason = "cancelled"


def _trace_call(caller: str, started: float, status_code: int, note: str = "") -> None:
    trace = get_trace()
    if trace:
        elapsed_ms = int((time.monotonic() - started) * 1000) if started else 0
        trace.record_call("overpass", caller, elapsed_ms, status_code, note)


def _remark(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    osm3s = data.get("osm3s") or {}
    return str(osm3s.get("remark") or data.get("remark") or "")


class OverpassClient:
    DEFAULT_TIMEOUT = 30
    MIN_SPACING = 1.0
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = base_url or os.environ.get(
            "OVERPASS_BASE_URL", "https://overpass-api.de/api/interpreter",
        )
        self._spacing_lock = threading.Lock()
        self._last_sent = 0.0

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
        ttl_days: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """Run *overpass_ql* and return the decoded JSON response.

        Raises OverpassCancelledError when *cancel_event* is set before an
        attempt or during a backoff wait, and the last OverpassError when
        every attempt failed and no stale entry is available.
        """
        timeout = timeout or self.DEFAULT_TIMEOUT
        cancel_event = cancel_event or threading.Event()
        key = overpass_cache_key(overpass_ql)

        cached = self._from_cache(key, caller, ttl_days)
        if cached is not None:
            return cached

        attempts = 1 + self.MAX_RETRIES
        for attempt in range(attempts):
            if cancel_event.is_set():
                raise OverpassCancelledError(f"Overpass query cancelled [caller={caller}]")
            try:
                data = self._fetch(overpass_ql, caller, timeout)
            except OverpassError as e:
                if not e.retryable:
                    raise
                if attempt == attempts - 1:
                    return self._stale_or_raise(key, caller, e)
                delay = self.RETRY_BACKOFF[min(attempt, len(self.RETRY_BACKOFF) - 1)]
                logger.info(
                    "Overpass %s for %s (attempt %d/%d), retrying in %ss",
                    e.reason, caller, attempt + 1, attempts, delay,
                )
                if cancel_event.wait(delay):
                    raise OverpassCancelledError(f"Overpass query cancelled [caller={caller}]") from e
                continue
            set_overpass_cache(key, json.dumps(data))
            return data
        raise OverpassQueryError(f"Overpass query made no attempts [caller={caller}]")

    def _from_cache(self, key: str, caller: str, ttl_days: Optional[int]) -> Optional[Dict[str, Any]]:
        raw = get_overpass_cache(key, ttl_days=ttl_days)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unreadable Overpass cache entry %s; querying instead", key)
            return None
        _trace_call(caller, 0.0, 200, "cache_hit")
        return data

    def _wait_for_slot(self) -> None:
        with self._spacing_lock:
            gap = time.monotonic() - self._last_sent
            if gap < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - gap)
            self._last_sent = time.monotonic()

    def _fetch(self, overpass_ql: str, caller: str, timeout: int) -> Dict[str, Any]:
        self._wait_for_slot()
        started = time.monotonic()
        try:
            with requests.Session() as session:
                session.trust_env = False
                resp = session.post(self.base_url, data={"data": overpass_ql}, timeout=timeout)
        except requests.exceptions.Timeout as e:
            _trace_call(caller, started, 0, "timeout")
            raise OverpassQueryError(
                f"Overpass did not answer within {timeout}s [caller={caller}]",
                reason="timeout", retryable=True,
            ) from e
        except requests.exceptions.RequestException as e:
            _trace_call(caller, started, 0, type(e).__name__)
            raise OverpassQueryError(
                f"Overpass request failed: {e} [caller={caller}]",
                reason="transport", retryable=True,
            ) from e

        try:
            data = self._check_response(resp, caller)
        except OverpassError as e:
            _trace_call(caller, started, resp.status_code, e.reason)
            raise
        _trace_call(caller, started, resp.status_code)
        return data

    @staticmethod
    def _check_response(resp: requests.Response, caller: str) -> Dict[str, Any]:
        code = resp.status_code
        if code == 429:
            raise OverpassRateLimitError(f"Overpass HTTP 429 [caller={caller}]")
        if code >= 400:
            raise OverpassQueryError(
                f"Overpass HTTP {code} [caller={caller}]",
                reason="http_error", retryable=code >= 500,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise OverpassQueryError(
                f"Overpass returned non-JSON body (HTTP {code}) [caller={caller}]",
                reason="parse_error",
            ) from e

        remark = _remark(data).lower()
        if "too many requests" in remark:
            raise OverpassRateLimitError(f"Overpass rate limit remark [caller={caller}]")
        if any(marker in remark for marker in _BODY_FAILURES):
            raise OverpassQueryError(
                f"Overpass reported: {remark[:100]} [caller={caller}]",
                reason="body_error", retryable=True,
            )
        return data

    @staticmethod
    def _stale_or_raise(key: str, caller: str, error: OverpassError) -> Dict[str, Any]:
        stale = get_overpass_cache_stale(key)
        if stale is None:
            raise error
        raw, created_at = stale
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            raise error
        logger.warning("Overpass unavailable for %s; using cache entry from %s", caller, created_at)
        data["_stale"] = True
        data["_stale_created_at"] = created_at
        _trace_call(caller, 0.0, 0, "stale_cache")
        return data


_client = OverpassClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[int] = None,
    ttl_days: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    return _client.query(
        overpass_ql, caller=caller, timeout=timeout,
        ttl_days=ttl_days, cancel_event=cancel_event,
    )
