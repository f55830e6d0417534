# originscore/scan_api/routes.py
"""
Scan endpoint.

    POST /scan  {"origin_url": "https://example.com",
                 "email_mode": "expected" | "none",
                 "dkim_selector": "s1"}

    200  ScanSummary JSON
    400  missing/invalid input, or an origin the guard refuses
    422  every probe failed, so there is no score to report
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from originscore.extensions import get_coordinator
from originscore.scanner.base import ScanConfig

logger = logging.getLogger(__name__)

scan_bp = Blueprint("scan", __name__)


@scan_bp.post("/scan")
def scan():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify(error="request body must be a JSON object"), 400

    origin_url = body.get("origin_url")
    if not isinstance(origin_url, str) or not origin_url.strip():
        return jsonify(error="origin_url is required"), 400
    origin_url = origin_url.strip()

    try:
        config = ScanConfig.from_dict(body)
    except ValueError as e:
        return jsonify(error=str(e)), 400

    coordinator = get_coordinator(current_app)

    decision = coordinator.guard.validate(origin_url)
    if not decision.allowed:
        return jsonify(
            error=decision.reason,
            policy_violation=decision.policy_violation,
        ), 400

    summary = coordinator.run(origin_url, config)
    if not summary.succeeded:
        logger.warning(f"Scan of {origin_url} produced no score")
        return jsonify(error="no module produced a score", summary=summary.to_dict()), 422

    return jsonify(summary.to_dict()), 200
