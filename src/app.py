"""
Mycelix Music - Flask application factory.

Wires configuration, logging, the shared backends and all blueprints into
one Flask app, and maps domain errors to JSON responses in one place.
"""

import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from api import register_blueprints, state
from api.utils import check_rate_limit
from cache import Cache
from config import API_VERSION, AppConfig
from errors import MycelixError
from monitoring import configure_logging, setup_request_logging
from storage import CatalogStore
from storage.base import DuplicateRecordError, StorageError

logger = logging.getLogger(__name__)

# Paths that are never rate limited
RATE_LIMIT_EXEMPT = ("/health",)


def register_error_handlers(app: Flask) -> None:
    """Map domain and storage errors to JSON responses."""

    @app.errorhandler(MycelixError)
    def handle_domain_error(error: MycelixError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(DuplicateRecordError)
    def handle_duplicate(error: DuplicateRecordError):
        return jsonify({"error": "duplicate", "message": str(error)}), 409

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError):
        logger.error("Storage failure", exc_info=error, extra={"path": request.path})
        return jsonify({"error": "storage_unavailable", "message": "Storage backend failure"}), 503

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({"error": error.name.lower().replace(" ", "_"), "message": error.description}), error.code

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "not_found", "message": "Endpoint not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors."""
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def create_app(
    config: AppConfig | None = None,
    store: CatalogStore | None = None,
    cache: Cache | None = None,
) -> Flask:
    """
    Build the Flask app.

    Args:
        config: Configuration (loaded from the environment when omitted)
        store: Catalog backend to use instead of the configured one
        cache: Cache to use instead of the configured one

    Returns:
        Configured Flask application
    """
    config = config or AppConfig.from_env()
    configure_logging()

    for name in config.missing_critical():
        logger.warning("Critical setting missing", extra={"setting": name})

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024
    app.json.sort_keys = False

    state.init_state(config, catalog=store, shared_cache=cache)

    setup_request_logging(app)

    @app.before_request
    def enforce_rate_limit():
        if request.path in RATE_LIMIT_EXEMPT or request.path.startswith("/health/"):
            return None
        limited = check_rate_limit()
        if limited:
            response = jsonify(limited)
            response.status_code = 429
            response.headers["Retry-After"] = str(limited["retry_after"])
            return response
        return None

    register_blueprints(app)
    register_error_handlers(app)
    return app


def run_server():
    """Run the Flask development server."""
    config = AppConfig.from_env()
    app = create_app(config)

    logger.info(
        "Mycelix Music API starting",
        extra={
            "version": API_VERSION,
            "host": config.host,
            "port": config.port,
            "storage": config.storage_backend,
            "cache": config.cache_backend,
        },
    )
    app.run(host=config.host, port=config.port, debug=config.env == "development")


if __name__ == "__main__":
    run_server()
