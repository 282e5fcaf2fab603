"""Flask app - wiring, middleware and error handlers."""

import logging
import os
import sqlite3
from typing import Optional, Tuple, Union

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.wrappers import Response

from bookswap.config.env import (
    BUILD_VERSION,
    CLIENT_URL,
    CONFIG_DIR,
    DEBUG,
    FLASK_HOST,
    FLASK_PORT,
    RELEASE_VERSION,
    SECRET_KEY,
    SESSION_COOKIE_NAME,
    SESSION_COOKIE_SECURE_ENV,
    _is_config_dir_writable,
    get_market_db_path,
    string_to_bool,
)
from bookswap.core.logger import setup_logger
from bookswap.core.market_db import MarketDB

logger = setup_logger(__name__)

DEV_CLIENT_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]
SESSION_LIFETIME_SECONDS = 604800  # 7 days


class LogNoiseFilter(logging.Filter):
    """Filter out health-check polling from the request log."""

    def filter(self, record):
        message = record.getMessage() if hasattr(record, 'getMessage') else str(record.msg)
        if 'GET /api/health' in message:
            return False
        return True


def _configure_flask_logging(app: Flask) -> None:
    app.logger.handlers = logger.handlers
    app.logger.setLevel(logger.level)
    werkzeug_logger = logging.getLogger('werkzeug')
    werkzeug_logger.handlers = logger.handlers
    werkzeug_logger.setLevel(logger.level)
    if not any(isinstance(f, LogNoiseFilter) for f in werkzeug_logger.filters):
        werkzeug_logger.addFilter(LogNoiseFilter())


def _configure_cors(app: Flask) -> None:
    origins = []
    if CLIENT_URL:
        origins.append(CLIENT_URL)
    if DEBUG:
        origins.extend(DEV_CLIENT_ORIGINS)
    if not origins:
        return
    CORS(app, resources={
        r"/*": {
            "origins": origins,
            "supports_credentials": True,
            "allow_headers": ["Content-Type", "Authorization"],
            "methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
        }
    })
    logger.info(f"CORS enabled for origins: {origins}")


def set_security_headers(response: Response) -> Response:
    """Add baseline security headers to every response."""
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
    return response


def not_found_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    logger.warning(f"404 error: {request.url} : {error}")
    return jsonify({"error": "Resource not found"}), 404


def method_not_allowed_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    return jsonify({"error": "Method not allowed"}), 405


def internal_error(error: Exception) -> Union[Response, Tuple[Response, int]]:
    logger.error_trace(f"500 error: {error}")
    return jsonify({"error": "Internal server error"}), 500


def create_app(db_path: Optional[str] = None) -> Flask:
    """Build the Flask application backed by the marketplace database at db_path.

    If the database cannot be opened the app still starts, serving only the
    health endpoint with the marketplace reported as degraded.
    """
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app)  # type: ignore

    session_cookie_secure = string_to_bool(SESSION_COOKIE_SECURE_ENV)
    app.config.update(
        SECRET_KEY=SECRET_KEY or os.urandom(64),
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE='Lax',
        SESSION_COOKIE_SECURE=session_cookie_secure,
        SESSION_COOKIE_NAME=SESSION_COOKIE_NAME,
        PERMANENT_SESSION_LIFETIME=SESSION_LIFETIME_SECONDS,
    )
    if not SECRET_KEY:
        logger.warning("SECRET_KEY is not set; sessions will not survive a restart")
    logger.debug(f"Session cookie secure setting: {session_cookie_secure} (from env: {SESSION_COOKIE_SECURE_ENV})")

    _configure_flask_logging(app)

    db_path = db_path or get_market_db_path()
    market_db: Optional[MarketDB] = None
    try:
        market_db = MarketDB(db_path)
        market_db.initialize()
    except (sqlite3.OperationalError, OSError) as e:
        logger.warning(
            f"Marketplace database initialization failed: {e}. "
            f"Only the health endpoint will be served. "
            f"Ensure CONFIG_DIR ({CONFIG_DIR}) exists and is writable."
        )
        market_db = None

    if market_db is not None:
        from bookswap.core.auth_routes import register_auth_routes
        from bookswap.core.book_routes import register_book_routes
        from bookswap.core.request_routes import register_request_routes

        register_auth_routes(app, market_db)
        register_book_routes(app, market_db)
        register_request_routes(app, market_db)
        logger.info(f"Marketplace database ready at {db_path}")

    app.extensions["market_db"] = market_db

    @app.route('/api/health', methods=['GET'])
    def api_health() -> Union[Response, Tuple[Response, int]]:
        """Health check endpoint. No authentication required."""
        response = {"status": "ok", "version": RELEASE_VERSION, "build": BUILD_VERSION}
        if market_db is None:
            response["degraded"] = {"database": "Marketplace database unavailable"}
        return jsonify(response)

    app.after_request(set_security_headers)
    app.register_error_handler(404, not_found_error)
    app.register_error_handler(405, method_not_allowed_error)
    app.register_error_handler(500, internal_error)

    _configure_cors(app)
    return app


app = create_app()

# Warn if config directory is not writable (database won't persist)
if not _is_config_dir_writable():
    logger.warning(
        f"Config directory {CONFIG_DIR} is not writable. The marketplace database cannot be created. "
        "Mount a config volume or set CONFIG_DIR."
    )

if __name__ == '__main__':
    logger.info(f"Starting Flask application on {FLASK_HOST}:{FLASK_PORT} (debug={DEBUG})")
    app.run(host=FLASK_HOST, port=FLASK_PORT, debug=DEBUG)
