# originscore/__init__.py
"""
App factory for the scan API.

Configuration comes from environment variables (see originscore.config).
A shared RateLimiter is Redis-backed when REDIS_URL is set, so several
Gunicorn workers share the same per-host counters.
"""

from __future__ import annotations

import logging
import traceback
from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .config import Settings, load_settings
from .extensions import init_extensions
from .scan_api import scan_bp

error_logger = logging.getLogger("originscore.errors")

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.INFO)


def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.logger.setLevel(settings.log_level)
    app.config["ORIGINSCORE_SETTINGS"] = settings

    # ── Extensions ───────────────────────────────────────────────────
    init_extensions(app, settings)

    # ── Blueprints ───────────────────────────────────────────────────
    app.register_blueprint(scan_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # Clean JSON for every error; tracebacks stay in the server log.

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({
            "error": "Bad request",
            "message": str(e.description) if hasattr(e, "description") else "The request was malformed or invalid.",
        }), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "Not found",
            "message": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "Method not allowed",
            "message": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception. Never leak tracebacks."""
        if isinstance(e, HTTPException):
            return jsonify({"error": e.name, "message": e.description}), e.code
        error_logger.error(
            "Unhandled exception: %s\n%s", str(e), traceback.format_exc()
        )
        return jsonify({
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        }), 500

    # ─────────────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return jsonify(status="ok"), 200

    return app
