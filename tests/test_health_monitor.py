"""
Tests for health_monitor.py.

Probe HTTP is mocked; the background thread is started only with
run_probes patched out, so nothing touches the network.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from health_monitor import (
    ACTIVE_PROBES,
    HealthMonitor,
    Probe,
    SourceHealth,
    classify_success_rate,
    run_probe,
)
from sources import AIR_QUALITY, AMENITIES, SOURCE_REGISTRY


@pytest.fixture
def monitor():
    return HealthMonitor()


def _status(code):
    resp = MagicMock()
    resp.status_code = code
    return resp


def _probe_for(source):
    return next(p for p in ACTIVE_PROBES if p.source == source)


# =============================================================================
# Passive window
# =============================================================================

class TestPassiveStatus:

    def test_unknown_without_outcomes(self, monitor):
        health = monitor.passive_status("cbs")
        assert health.status == "unknown"
        assert health.mode == "passive"
        assert health.sample_size == 0

    def test_all_ok_is_healthy(self, monitor):
        for _ in range(12):
            monitor.record_fetch("soil", True, 80)

        health = monitor.passive_status("soil")
        assert health.status == "healthy"
        assert health.success_rate == 1.0
        assert health.sample_size == 12

    def test_four_in_five_is_degraded(self, monitor):
        for i in range(10):
            monitor.record_fetch("crime", i % 5 != 0, 100, None if i % 5 else "HTTPError")

        health = monitor.passive_status("crime")
        assert health.status == "degraded"
        assert health.success_rate == 0.8

    def test_half_failing_is_down(self, monitor):
        for i in range(8):
            monitor.record_fetch("solar", i % 2 == 0, 100, "ConnectionError")
        assert monitor.passive_status("solar").status == "down"

    def test_window_keeps_most_recent_outcomes(self, monitor):
        for _ in range(30):
            monitor.record_fetch("cbs", False, 10, "ReadTimeout")
        for _ in range(50):
            monitor.record_fetch("cbs", True, 10)

        health = monitor.passive_status("cbs")
        assert health.sample_size == 50
        assert health.status == "healthy"
        assert health.error is None

    def test_average_latency(self, monitor):
        monitor.record_fetch("demographics", True, 120)
        monitor.record_fetch("demographics", True, 280)
        assert monitor.passive_status("demographics").latency_ms == 200

    def test_latest_error_class_surfaced(self, monitor):
        monitor.record_fetch("cbs", False, 10, "ConnectionError")
        monitor.record_fetch("cbs", True, 10)
        monitor.record_fetch("cbs", False, 10, "JSONDecodeError")
        assert monitor.passive_status("cbs").error == "JSONDecodeError"

    def test_sources_are_tracked_separately(self, monitor):
        monitor.record_fetch("cbs", False, 10, "HTTPError")
        assert monitor.passive_status("soil").status == "unknown"


class TestClassifySuccessRate:

    @pytest.mark.parametrize("rate,expected", [
        (1.0, "healthy"),
        (0.95, "healthy"),
        (0.94, "degraded"),
        (0.70, "degraded"),
        (0.69, "down"),
        (0.0, "down"),
    ])
    def test_bands(self, rate, expected):
        assert classify_success_rate(rate) == expected


class TestSourceHealthDict:

    def test_none_fields_dropped(self):
        d = SourceHealth("cbs", "unknown", "passive", sample_size=0).to_dict()
        assert d == {"status": "unknown", "mode": "passive", "latency_ms": 0, "sample_size": 0}


# =============================================================================
# Probes
# =============================================================================

class TestRunProbe:

    @patch("health_monitor.requests.get")
    def test_200_is_healthy(self, mock_get):
        mock_get.return_value = _status(200)

        health = run_probe(_probe_for(AMENITIES))
        assert health.status == "healthy"
        assert health.source == AMENITIES
        assert health.mode == "active"
        assert health.checked_at

    @patch("health_monitor.requests.get")
    def test_other_status_is_degraded(self, mock_get):
        mock_get.return_value = _status(503)

        health = run_probe(_probe_for(AMENITIES))
        assert health.status == "degraded"
        assert health.error == "HTTP 503"

    @patch("health_monitor.requests.get")
    def test_timeout_is_down(self, mock_get):
        mock_get.side_effect = requests.Timeout("slow")
        health = run_probe(_probe_for(AIR_QUALITY))
        assert (health.status, health.error) == ("down", "timeout")

    @patch("health_monitor.requests.get")
    def test_connection_error_is_down(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("name resolution failed")
        health = run_probe(Probe("amenities", "https://overpass.example/status"))
        assert health.status == "down"
        assert "resolution" in health.error

    @patch("health_monitor.requests.get")
    def test_luchtmeetnet_probe_requests_first_station_page(self, mock_get):
        mock_get.return_value = _status(200)

        run_probe(_probe_for(AIR_QUALITY))

        args, kwargs = mock_get.call_args
        assert args[0].endswith("/open_api/stations")
        assert kwargs["params"] == {"page": 1}


class TestRunProbes:

    @patch("health_monitor.requests.get")
    def test_results_stored_per_source(self, mock_get, monitor):
        mock_get.return_value = _status(200)

        monitor.run_probes()

        assert monitor.probed_status(AMENITIES).status == "healthy"
        assert monitor.probed_status(AIR_QUALITY).status == "healthy"
        assert monitor.probed_status("cbs") is None

    @patch("health_monitor.requests.get")
    def test_transition_is_logged_as_warning(self, mock_get, monitor, caplog):
        mock_get.return_value = _status(200)
        monitor.run_probes()

        mock_get.side_effect = requests.Timeout("slow")
        with caplog.at_level("WARNING", logger="health_monitor"):
            monitor.run_probes()

        assert monitor.probed_status(AMENITIES).status == "down"
        assert any("healthy -> down" in r.getMessage() for r in caplog.records)

    def test_custom_probe_list(self):
        assert HealthMonitor(probes=[]).probes == []


# =============================================================================
# Combined snapshot
# =============================================================================

class TestSnapshot:

    def test_every_source_in_registry_order(self, monitor):
        snap = monitor.snapshot()
        assert list(snap) == [spec.key for spec in SOURCE_REGISTRY]
        assert snap["air_quality"]["label"] == "Air quality"
        assert all(entry["status"] == "unknown" for entry in snap.values())

    @patch("health_monitor.requests.get")
    def test_probe_result_takes_precedence(self, mock_get, monitor):
        for _ in range(10):
            monitor.record_fetch(AMENITIES, True, 40)
        mock_get.side_effect = requests.Timeout("slow")
        monitor.run_probes()

        snap = monitor.snapshot()
        assert snap["amenities"]["status"] == "down"
        assert snap["amenities"]["mode"] == "active"

    def test_passive_used_without_probe(self, monitor):
        for _ in range(5):
            monitor.record_fetch("cbs", True, 150)

        snap = monitor.snapshot()
        assert snap["cbs"]["mode"] == "passive"
        assert snap["cbs"]["status"] == "healthy"
        assert snap["cbs"]["success_rate"] == 1.0


# =============================================================================
# /healthz
# =============================================================================

class TestHealthzEndpoint:

    @patch("health_monitor._monitor", new_callable=HealthMonitor)
    def test_lists_every_source(self, mock_monitor, client):
        resp = client.get("/healthz")
        data = resp.get_json()

        assert resp.status_code == 200
        assert data["status"] == "ok"
        assert data["down"] == []
        assert list(data["sources"]) == [spec.key for spec in SOURCE_REGISTRY]

    @patch("health_monitor._monitor")
    def test_503_when_a_source_is_down(self, mock_monitor, client):
        mock_monitor.snapshot.return_value = {
            "cbs": {"status": "healthy", "mode": "passive"},
            "amenities": {"status": "down", "mode": "active", "error": "timeout"},
        }

        resp = client.get("/healthz")

        assert resp.status_code == 503
        assert resp.get_json()["down"] == ["amenities"]


# =============================================================================
# Background thread
# =============================================================================

class TestProbeThread:

    @patch.object(HealthMonitor, "run_probes")
    def test_start_then_stop(self, mock_probes, monitor):
        monitor.start()
        assert monitor._thread.is_alive()

        monitor.stop()
        monitor._thread.join(timeout=2)
        assert not monitor._thread.is_alive()

    @patch.object(HealthMonitor, "run_probes")
    def test_start_is_idempotent(self, mock_probes, monitor):
        monitor.start()
        first = monitor._thread
        monitor.start()
        assert monitor._thread is first

        monitor.stop()
        first.join(timeout=2)
