#!/usr/bin/env python3
"""
scan.py

Scans one origin and prints the ScanSummary as JSON.

Usage:
    python scan.py https://example.com
    python scan.py https://example.com --email-mode none
    python scan.py https://example.com --dkim-selector s1

Exit status is 0 when a score was produced, 1 when every probe failed and
2 for invalid input. Run from backend/ (where originscore/ lives).
"""

import argparse
import json
import os
import sys

# Ensure the package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from originscore import configure_logging
from originscore.config import load_settings
from originscore.scanner import ScanCoordinator
from originscore.scanner.base import EMAIL_MODES, ScanConfig


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Score the security posture of an HTTPS origin.")
    parser.add_argument("origin_url", help="https:// URL of the origin")
    parser.add_argument("--email-mode", choices=EMAIL_MODES, default="expected")
    parser.add_argument("--dkim-selector", default=None)
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level)

    coordinator = ScanCoordinator(settings=settings)

    decision = coordinator.guard.validate(args.origin_url)
    if not decision.allowed:
        print(f"Refusing to scan {args.origin_url}: {decision.reason}", file=sys.stderr)
        return 2

    config = ScanConfig(email_mode=args.email_mode, dkim_selector=args.dkim_selector)
    summary = coordinator.run(args.origin_url, config)

    print(json.dumps(summary.to_dict(), indent=2, default=str))
    return 0 if summary.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
