# originscore/scanner/analyzers/__init__.py
"""
Scoring analyzers.
Each analyzer reads one probe's raw observation and returns
(score, details) with issues, strengths and recommendations.
Analyzers do NOT touch the network.
"""
from originscore.scanner.analyzers.ssl_analyzer import analyze_transport
from originscore.scanner.analyzers.header_analyzer import analyze_headers
from originscore.scanner.analyzers.dns_analyzer import analyze_auth

__all__ = ["analyze_transport", "analyze_headers", "analyze_auth"]
