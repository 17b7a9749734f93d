# tradinta/main.py
import logging
import time

from flask import Flask, request, session, jsonify, g

from tradinta.config import Config
from tradinta.database import SessionLocal, get_db, close_db, init_database
from tradinta.models import User
from tradinta.blueprints.foundry import foundry_bp
from tradinta.observability import (
    configure_logging,
    increment_counter,
    observe_latency,
    get_metrics_snapshot,
    check_database_health,
)
from tradinta.observability.foundry_metrics import compute_foundry_summary
from tradinta.observability.logging_config import ensure_request_id
from tradinta.services.forging_event_service import ForgingEventService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(foundry_bp)

logger = logging.getLogger(__name__)

try:
    init_database()
    logger.info("Database tables initialized successfully")
except Exception as e:
    logger.exception("Error initializing database: %s", e)


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "")
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.route('/health', methods=['GET'])
def health():
    status = check_database_health()
    code = 200 if status.get("status") == "UP" else 503
    return jsonify(status), code


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if "user_id" not in session:
        return jsonify({"error": "Not authenticated"}), 401
    db = get_db()
    user = db.query(User).filter_by(userID=session["user_id"]).first()
    if not user or not user.is_admin:
        return jsonify({"error": "Forbidden"}), 403

    window = request.args.get("window_days", type=int)
    return jsonify(
        {
            "metrics": get_metrics_snapshot(),
            "foundry": compute_foundry_summary(db, window_days=window),
        }
    )


@app.cli.command("resolve-events")
def resolve_events_command():
    """Finish every active Forging Event whose window has closed."""
    db = SessionLocal()
    try:
        resolved = ForgingEventService(db).resolve_expired_events()
    finally:
        db.close()
    logger.info("Scheduled resolution finished %d forging events", resolved)
    print(f"Resolved {resolved} forging event(s).")
