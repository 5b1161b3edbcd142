# retail_ops/main.py
import logging
import time
from typing import Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from retail_ops.config import Config
from retail_ops.database import Base, close_db, engine, get_db
from retail_ops.errors import Forbidden, RetailOpsError
from retail_ops.blueprints.auth import auth_bp
from retail_ops.blueprints.orders import orders_bp
from retail_ops.blueprints.people import people_bp
from retail_ops.observability import (
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from retail_ops.observability.health import check_database_health
from retail_ops.observability.logging_config import ensure_request_id
from retail_ops.services.authorizer import Authorizer

# Register every table on Base.metadata before create_all
import retail_ops.models  # noqa: F401

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(auth_bp)
app.register_blueprint(orders_bp)
app.register_blueprint(people_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()


def _session_token() -> Optional[str]:
    token = request.cookies.get(Config.SESSION_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    g.person_context = None
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.before_request
def enforce_session():
    authorizer = Authorizer(get_db())
    if authorizer.policy.is_public(request.path):
        return None

    identity = authorizer.authenticate(_session_token())
    context = authorizer.resolve_identity(identity.subject_id)
    g.person_context = context

    if not authorizer.authorize_route(
        context.role, request.path, request.method, person_id=context.person_id
    ):
        capability = authorizer.required_capability(request.path, request.method)
        increment_counter("authz_denials_total", labels={"capability": capability or "unmapped"})
        raise Forbidden(capability)
    return None


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
    response.headers.setdefault(Config.REQUEST_ID_HEADER, getattr(g, "request_id", "") or "")
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(RetailOpsError)
def handle_domain_error(error: RetailOpsError):
    body = {"ok": False, "error": error.code, "message": error.message}
    if isinstance(error, Forbidden) and error.capability:
        body["capability"] = error.capability
    response = jsonify(body)
    response.status_code = error.http_status
    if getattr(error, "retryable", False):
        response.headers["Retry-After"] = "1"
        logger.warning("Answering %s: %s", error.http_status, error.code)
    return response


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    response = jsonify(
        {"ok": False, "error": (error.name or "error").lower().replace(" ", "_"), "message": error.description}
    )
    response.status_code = error.code or 500
    return response


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    return jsonify(get_metrics_snapshot())
