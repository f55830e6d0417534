# originscore/extensions.py
from __future__ import annotations

import logging

from flask import Flask

from originscore.config import Settings
from originscore.scanner.guard import OriginGuard
from originscore.scanner.orchestrator import ScanCoordinator
from originscore.scanner.rate_limit import RateLimiter, build_counter_store

logger = logging.getLogger(__name__)

EXTENSION_KEY = "originscore"


def init_extensions(app: Flask, settings: Settings):
    """Attach one shared coordinator (and its rate limiter) to the app."""
    limiter = RateLimiter(build_counter_store(settings.redis_url))
    coordinator = ScanCoordinator(settings=settings, limiter=limiter, guard=OriginGuard())
    app.extensions[EXTENSION_KEY] = coordinator
    return coordinator


def get_coordinator(app: Flask) -> ScanCoordinator:
    return app.extensions[EXTENSION_KEY]
