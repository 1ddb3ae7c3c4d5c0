"""Tests for overpass_http.py.

requests.Session.post and the cache accessors are patched; time.sleep is
patched wherever the spacing clock could make a test wait.
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from cr_trace import ReportTrace, clear_trace, set_trace
from overpass_http import (
    OverpassCancelledError,
    OverpassClient,
    OverpassError,
    OverpassQueryError,
    OverpassRateLimitError,
    overpass_query,
)

QL = "[out:json];node(around:500,52.37,4.89)[amenity=school];out center;"


def _resp(status_code=200, body=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def overpass():
    c = OverpassClient(base_url="https://overpass.example/api/interpreter")
    c.MIN_SPACING = 0
    c.MAX_RETRIES = 0
    return c


@pytest.fixture
def no_cache():
    with patch("overpass_http.get_overpass_cache", return_value=None), \
            patch("overpass_http.get_overpass_cache_stale", return_value=None) as stale, \
            patch("overpass_http.set_overpass_cache") as store:
        yield stale, store


# =========================================================================
# Cache
# =========================================================================

class TestCache:
    @patch("overpass_http.get_overpass_cache", return_value='{"elements": [{"id": 7}]}')
    def test_fresh_entry_skips_http(self, mock_cache, overpass):
        with patch.object(requests.Session, "post") as mock_post:
            assert overpass.query(QL, caller="amenities") == {"elements": [{"id": 7}]}
        mock_post.assert_not_called()

    @patch("overpass_http.get_overpass_cache", return_value=None)
    @patch("overpass_http.set_overpass_cache")
    def test_response_is_stored(self, mock_store, mock_cache, overpass):
        with patch.object(requests.Session, "post", return_value=_resp(200, {"elements": []})):
            overpass.query(QL, caller="amenities")

        key, stored = mock_store.call_args[0]
        assert stored == '{"elements": []}'
        assert len(key) == 64

    @patch("overpass_http.get_overpass_cache", return_value="{{broken")
    @patch("overpass_http.set_overpass_cache")
    def test_unreadable_entry_is_requeried(self, mock_store, mock_cache, overpass):
        with patch.object(requests.Session, "post", return_value=_resp(200, {"elements": []})) as mock_post:
            assert overpass.query(QL) == {"elements": []}
        mock_post.assert_called_once()

    def test_ttl_passed_through(self, overpass):
        with patch("overpass_http.get_overpass_cache", return_value="{}") as mock_cache:
            overpass.query(QL, ttl_days=2)
        assert mock_cache.call_args[1]["ttl_days"] == 2


# =========================================================================
# Response classification
# =========================================================================

class TestCheckResponse:
    def test_ok_body_returned(self):
        assert OverpassClient._check_response(_resp(200, {"elements": [1]}), "t") == {"elements": [1]}

    def test_429_is_retryable_rate_limit(self):
        with pytest.raises(OverpassRateLimitError) as info:
            OverpassClient._check_response(_resp(429), "t")
        assert info.value.retryable is True
        assert info.value.reason == "rate_limit"

    @pytest.mark.parametrize("code,retryable", [(500, True), (502, True), (504, True), (400, False), (404, False)])
    def test_http_errors(self, code, retryable):
        with pytest.raises(OverpassQueryError) as info:
            OverpassClient._check_response(_resp(code), "t")
        assert info.value.retryable is retryable
        assert str(code) in str(info.value)

    def test_non_json_is_not_retryable(self):
        with pytest.raises(OverpassQueryError) as info:
            OverpassClient._check_response(_resp(200), "t")
        assert info.value.reason == "parse_error"
        assert not info.value.retryable

    def test_rate_limit_remark(self):
        body = {"osm3s": {"remark": "Too many requests from your IP"}, "elements": []}
        with pytest.raises(OverpassRateLimitError):
            OverpassClient._check_response(_resp(200, body), "t")

    def test_runtime_error_remark_is_retryable(self):
        body = {"remark": "runtime error: Query timed out in \"query\"", "elements": []}
        with pytest.raises(OverpassQueryError) as info:
            OverpassClient._check_response(_resp(200, body), "t")
        assert info.value.retryable is True
        assert info.value.reason == "body_error"

    def test_harmless_remark_passes(self):
        body = {"remark": "note: results truncated", "elements": []}
        assert OverpassClient._check_response(_resp(200, body), "t")["elements"] == []


class TestOverpassError:
    def test_overrides(self):
        e = OverpassError("x", reason="custom", retryable=True)
        assert (e.reason, e.retryable) == ("custom", True)

    def test_subclasses_share_base(self):
        assert issubclass(OverpassRateLimitError, OverpassError)
        assert issubclass(OverpassCancelledError, OverpassError)


# =========================================================================
# Transport failures
# =========================================================================

class TestTransport:
    def test_timeout(self, overpass, no_cache):
        with patch.object(requests.Session, "post", side_effect=requests.exceptions.Timeout()):
            with pytest.raises(OverpassQueryError) as info:
                overpass.query(QL)
        assert info.value.reason == "timeout"

    def test_connection_error(self, overpass, no_cache):
        with patch.object(requests.Session, "post", side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(OverpassQueryError, match="refused"):
                overpass.query(QL)

    def test_proxy_env_ignored_and_timeout_forwarded(self, overpass, no_cache):
        sessions = []

        def fake_post(self, url, data=None, timeout=None):
            sessions.append((self.trust_env, url, data, timeout))
            return _resp(200, {"elements": []})

        with patch.object(requests.Session, "post", fake_post):
            overpass.query(QL, timeout=12)

        assert sessions == [(False, "https://overpass.example/api/interpreter", {"data": QL}, 12)]


# =========================================================================
# Retries and stale fallback
# =========================================================================

@patch("overpass_http.time.sleep")
class TestRetries:
    def test_recovers_after_rate_limits(self, mock_sleep, overpass, no_cache):
        overpass.MAX_RETRIES = 2
        overpass.RETRY_BACKOFF = [0, 0]
        replies = [_resp(429), _resp(503), _resp(200, {"elements": []})]

        with patch.object(requests.Session, "post", side_effect=replies) as mock_post:
            assert overpass.query(QL) == {"elements": []}
        assert mock_post.call_count == 3

    def test_non_retryable_fails_at_once(self, mock_sleep, overpass, no_cache):
        overpass.MAX_RETRIES = 2
        stale, _ = no_cache
        with patch.object(requests.Session, "post", return_value=_resp(400)) as mock_post:
            with pytest.raises(OverpassQueryError, match="400"):
                overpass.query(QL)
        assert mock_post.call_count == 1
        stale.assert_not_called()

    def test_exhausted_without_stale_raises_last_error(self, mock_sleep, overpass, no_cache):
        overpass.MAX_RETRIES = 1
        overpass.RETRY_BACKOFF = [0]
        with patch.object(requests.Session, "post", return_value=_resp(429)):
            with pytest.raises(OverpassRateLimitError):
                overpass.query(QL)

    def test_exhausted_serves_stale(self, mock_sleep, overpass, no_cache):
        stale, _ = no_cache
        stale.return_value = ('{"elements": [{"id": 3}]}', "2026-01-05T08:00:00+00:00")

        with patch.object(requests.Session, "post", return_value=_resp(504)):
            data = overpass.query(QL, caller="amenities")

        assert data["elements"] == [{"id": 3}]
        assert data["_stale"] is True
        assert data["_stale_created_at"] == "2026-01-05T08:00:00+00:00"

    def test_unreadable_stale_reraises(self, mock_sleep, overpass, no_cache):
        stale, _ = no_cache
        stale.return_value = ("not json", "2026-01-05T08:00:00+00:00")
        with patch.object(requests.Session, "post", return_value=_resp(502)):
            with pytest.raises(OverpassQueryError, match="502"):
                overpass.query(QL)


# =========================================================================
# Cancellation
# =========================================================================

class TestCancellation:
    def test_set_before_first_attempt(self, overpass, no_cache):
        cancel = threading.Event()
        cancel.set()
        with patch.object(requests.Session, "post") as mock_post:
            with pytest.raises(OverpassCancelledError):
                overpass.query(QL, cancel_event=cancel)
        mock_post.assert_not_called()

    def test_set_during_backoff(self, overpass, no_cache):
        overpass.MAX_RETRIES = 2
        overpass.RETRY_BACKOFF = [30, 30]
        cancel = threading.Event()

        def first_reply(*args, **kwargs):
            cancel.set()
            return _resp(429)

        with patch.object(requests.Session, "post", side_effect=first_reply) as mock_post:
            with pytest.raises(OverpassCancelledError):
                overpass.query(QL, cancel_event=cancel)
        assert mock_post.call_count == 1


# =========================================================================
# Tracing
# =========================================================================

class TestTracing:
    def _run(self, fn):
        trace = ReportTrace(trace_id="t-overpass")
        set_trace(trace)
        try:
            trace.open_stage("amenities")
            fn()
        finally:
            clear_trace()
        return trace

    def test_http_call(self, overpass, no_cache):
        with patch.object(requests.Session, "post", return_value=_resp(200, {"elements": []})):
            trace = self._run(lambda: overpass.query(QL, caller="amenities"))

        call = trace.calls[0]
        assert (call.provider, call.endpoint, call.status_code, call.note) == ("overpass", "amenities", 200, "")
        assert call.source == "amenities"

    def test_failure_reason_noted(self, overpass, no_cache):
        def run():
            with pytest.raises(OverpassQueryError):
                overpass.query(QL, caller="amenities")

        with patch.object(requests.Session, "post", return_value=_resp(404)):
            trace = self._run(run)
        assert trace.calls[0].note == "http_error"

    @patch("overpass_http.get_overpass_cache", return_value='{"elements": []}')
    def test_cache_hit(self, mock_cache, overpass):
        trace = self._run(lambda: overpass.query(QL, caller="amenities"))
        assert trace.calls[0].note == "cache_hit"
        assert trace.calls[0].elapsed_ms == 0


class TestModuleFunction:
    @patch("overpass_http._client")
    def test_delegates(self, mock_client):
        mock_client.query.return_value = {"elements": []}
        assert overpass_query(QL, caller="amenities", timeout=10) == {"elements": []}
        mock_client.query.assert_called_once_with(
            QL, caller="amenities", timeout=10, ttl_days=None, cancel_event=None,
        )
