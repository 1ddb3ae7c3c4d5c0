import os
import logging
import uuid
from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
from cr_trace import ReportTrace, set_trace, clear_trace
from context_report import (
    DEFAULT_RADIUS_METERS, InvalidReportRequest, ReportCancelledError,
    get_context_report, report_to_dict,
)
from health_monitor import get_status
from models import init_db

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry: enabled only when SENTRY_DSN is set
# ---------------------------------------------------------------------------

def _init_sentry(dsn):
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from requests import RequestException

    # Bad input and flaky providers are expected; record them as breadcrumbs.
    expected = (
        (InvalidReportRequest, "input"),
        (RequestException, "provider"),
    )

    def before_send(event, hint):
        exc_info = hint.get("exc_info")
        if not exc_info:
            return event
        exc_type, exc_value, _ = exc_info
        for cls, category in expected:
            if exc_type is not None and issubclass(exc_type, cls):
                sentry_sdk.add_breadcrumb(category=category, message=str(exc_value), level="warning")
                return None
        response = getattr(exc_value, "response", None)
        if getattr(response, "status_code", None) == 429:
            sentry_sdk.add_breadcrumb(category="rate_limit", message=str(exc_value) or "HTTP 429", level="warning")
            return None
        return event

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=before_send,
    )


if os.environ.get("SENTRY_DSN"):
    _init_sentry(os.environ["SENTRY_DSN"])


app = Flask(__name__)
app.json.ensure_ascii = False

# Proxy fix: most PaaS run behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: one report fans out to seven public providers.
# In-memory storage is per-process (with 2 gunicorn workers the effective
# limit is ~2x nominal).
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_REPORT = os.environ.get("RATE_LIMIT_REPORT", "20/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _new_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = request.headers.get("X-Request-ID") or _new_request_id()


@app.after_request
def _attach_request_id(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


# ---------------------------------------------------------------------------
# Context report API
# ---------------------------------------------------------------------------

def _parse_radius(data: dict):
    """radiusMeters from the body; None when it is not an integer."""
    raw = data.get("radiusMeters", data.get("radius_meters", DEFAULT_RADIUS_METERS))
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None


@app.route("/api/context-report", methods=["POST"])
@limiter.limit(RATE_LIMIT_REPORT)
def context_report():
    """Build (or serve from cache) the context report for one address.

    Accepts JSON: {"input": "Damrak 1, Amsterdam", "radiusMeters": 1000}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    raw_input = data.get("input")
    if not isinstance(raw_input, str) or not raw_input.strip():
        return jsonify({"error": "Input is required."}), 400

    radius = _parse_radius(data)
    if radius is None:
        return jsonify({"error": "radiusMeters must be an integer."}), 400

    request_id = getattr(g, "request_id", "unknown")
    trace_ctx = ReportTrace(trace_id=request_id)
    set_trace(trace_ctx)
    try:
        report = get_context_report(raw_input, radius_meters=radius)
        logger.info(
            "[%s] report for %r: composite=%.1f warnings=%d",
            request_id, report.location.display_address,
            report.composite_score, len(report.warnings),
        )
        return jsonify(report_to_dict(report))
    except InvalidReportRequest as e:
        logger.info("[%s] rejected report request: %s", request_id, e)
        return jsonify({"error": str(e)}), 400
    except ReportCancelledError:
        logger.warning("[%s] report cancelled", request_id)
        return jsonify({"error": "Report was cancelled."}), 503
    finally:
        trace_ctx.log_summary()
        clear_trace()


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Per-source health: passive outcomes of real fetches plus active probes."""
    sources = get_status()
    down = sorted(key for key, s in sources.items() if s.get("status") == "down")
    return jsonify({
        "status": "degraded" if down else "ok",
        "down": down,
        "sources": sources,
    }), 503 if down else 200


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(429)
def too_many_requests(e):
    return jsonify({
        "error": "Rate limit exceeded. Please slow down.",
    }), 429


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "Not found."}), 404


@app.errorhandler(500)
def server_error(e):
    return jsonify({"error": "Internal server error."}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Cache tables must exist before the first request; init_db is idempotent.
init_db()

if __name__ == "__main__":
    # Development: run the health probes in this process
    from health_monitor import start_monitor
    start_monitor()
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
