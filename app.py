import re
import time
import uuid

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from api.api_v1.common import InvalidRequestBody, bad_request_response, pipeline_error_response
from api.blueprint import create_api_blueprint
from api.jobs.manager import get_background_reconciler
from api.schemas.api_responses import fail
from config import Config, configure_logging
from db import init_db
from logging_utils import configure_app_logging, get_logger
from pipeline.errors import PipelineError

_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,64}")


def create_app() -> Flask:
    app = Flask(__name__)

    # Env-backed flags first, then the settings module (registry, matching, storage).
    app.config.from_object(Config)
    app.config.from_pyfile("settings.py")

    # Configure unified app logging (UTC timestamps, per-file logs, daily rotation)
    configure_app_logging(app.config.get("LOG_LEVEL", "INFO"))
    logger = get_logger(__name__)
    configure_logging(app.logger, app.config.get("LOG_LEVEL", "INFO"))

    # --- request ids: echoed in `meta.request_id` and the X-Request-ID header ---
    @app.before_request
    def _assign_request_id():
        incoming = (request.headers.get("X-Request-ID") or "").strip()
        g.request_id = incoming if _REQUEST_ID_RE.fullmatch(incoming) else uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(resp):
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return resp

    # --- slow request logging; SLOW_REQUEST_MS=0 disables ---
    slow_ms = int(app.config.get("SLOW_REQUEST_MS", 250))

    @app.before_request
    def _start_timer():
        if slow_ms > 0:
            request.environ["_req_start_ns"] = time.perf_counter_ns()

    @app.after_request
    def _log_slow_requests(resp):
        if slow_ms <= 0:
            return resp

        start_ns = request.environ.get("_req_start_ns")
        if not start_ns:
            return resp

        elapsed_ms = (time.perf_counter_ns() - int(start_ns)) / 1_000_000.0
        # SSE streams stay open until the run completes.
        if elapsed_ms >= slow_ms and resp.mimetype != "text/event-stream":
            logger.warning(
                "SLOW_REQUEST ms=%.1f status=%s method=%s path=%s query=%s request_id=%s",
                elapsed_ms,
                getattr(resp, "status_code", "?"),
                request.method,
                request.path,
                request.query_string.decode("utf-8", errors="replace"),
                getattr(g, "request_id", None),
            )
        return resp

    app.register_blueprint(create_api_blueprint(enable_admin=app.config.get("ENABLE_ADMIN", True)))

    # Error handlers: every error is a JSON envelope.
    app.register_error_handler(InvalidRequestBody, bad_request_response)
    app.register_error_handler(PipelineError, pipeline_error_response)

    @app.errorhandler(HTTPException)
    def http_error(err: HTTPException):
        code = (err.name or "error").lower().replace(" ", "_")
        return jsonify(fail(err.description or err.name, code=code)), err.code

    @app.errorhandler(Exception)
    def server_error(_err):
        logger.exception("Unhandled server error | method=%s path=%s", request.method, request.path)
        return jsonify(fail("Internal server error", code="internal_error")), 500

    # Optional: initialize tables on startup only when explicitly requested.
    if app.config.get("INIT_DB_ON_STARTUP"):
        logger.info("INIT_DB_ON_STARTUP=1; initializing database schema")
        init_db()

    if app.config.get("ENABLE_BACKGROUND_RECONCILER"):
        if get_background_reconciler().start():
            logger.info("ENABLE_BACKGROUND_RECONCILER=1; reconciler started")

    return app


# NOTE: Do not instantiate the Flask app at import time.
# Tests patch the DB engine/sessionmaker before calling create_app().
app: Flask | None = None


if __name__ == "__main__":
    app = create_app()
    get_logger(__name__).info("Starting Flask app")
    app.run(debug=True, use_reloader=False, threaded=True)
