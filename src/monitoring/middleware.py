"""
Flask middleware for request logging.

Provides:
- Request ID tracking (``X-Request-ID`` echoed on every response)
- Request timing
- One structured log line per request, and a stack trace for failures
"""

import logging
import time
import uuid

from flask import Flask, Response, g, request

from monitoring.logging import clear_request_context, set_request_context

logger = logging.getLogger("mycelix.request")

MAX_REQUEST_ID_LENGTH = 64


def _request_id() -> str:
    supplied = request.headers.get("X-Request-ID", "").strip()
    if supplied and len(supplied) <= MAX_REQUEST_ID_LENGTH and supplied.isprintable():
        return supplied
    return uuid.uuid4().hex[:12]


def setup_request_logging(app: Flask) -> None:
    """
    Set up request logging middleware for a Flask app.

    Args:
        app: Flask application instance
    """

    @app.before_request
    def before_request():
        g.request_id = _request_id()
        g.start_time = time.perf_counter()
        set_request_context(
            request_id=g.request_id,
            method=request.method,
            path=request.path,
        )

    @app.after_request
    def after_request(response: Response) -> Response:
        duration_ms = 0.0
        if hasattr(g, "start_time"):
            duration_ms = (time.perf_counter() - g.start_time) * 1000

        status_code = response.status_code
        if status_code >= 500:
            log = logger.error
        elif status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log(
            f"{request.method} {request.path} -> {status_code}",
            extra={"status_code": status_code, "duration_ms": round(duration_ms, 2)},
        )

        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={
                    "request_id": getattr(g, "request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )
        clear_request_context()
