# originscore/scanner/__init__.py
"""
Origin probing and scoring engine.

Usage:
    from originscore.scanner import run_scan

    summary = run_scan("https://example.com", {"email_mode": "expected"})
    summary.total_score, summary.grade

Architecture:
    ScanCoordinator
    ├── ProbeRunner (guard, rate limit, retries, deadline per probe)
    │   ├── TransportProbe  TLS handshake + certificate chain
    │   ├── HeaderProbe     HTTP security headers
    │   └── AuthProbe       DNS, SPF, DKIM, DMARC, CAA, DNSSEC
    │
    └── Analyzers (observation → score + findings)
        ├── ssl_analyzer
        ├── header_analyzer
        └── dns_analyzer
            ↓
        utils.scoring.combine → ScanSummary
"""

from originscore.scanner.orchestrator import ScanCoordinator, run_scan
