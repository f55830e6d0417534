# originscore/scanner/errors.py
"""
Probe error taxonomy.

    OriginDenied       policy violation (SSRF guard). Never retried.
    ProbeTimeout       attempt ran past its deadline. Retried.
    ProbeNetworkError  connection / resolution failure. Retried.
    ProbeError         anything else a probe gives up on deliberately
                       (e.g. TLS verification failure on the header fetch).
                       Terminal, not retried.

The runner converts these (and the equivalent library exceptions) into a
FailureKind; nothing here ever reaches the caller of run_scan().
"""

from __future__ import annotations


class ProbeError(Exception):
    """Base class for failures raised by probe code."""


class OriginDenied(ProbeError):
    """The target URL or one of its addresses is not allowed."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ProbeTimeout(ProbeError):
    """The probe ran out of time before finishing its I/O."""


class ProbeNetworkError(ProbeError):
    """Resolution or connection failure worth retrying."""
