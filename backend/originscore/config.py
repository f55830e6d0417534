# originscore/config.py
"""
Engine configuration from environment variables.

    ORIGINSCORE_RETRY_ATTEMPTS        attempts per probe (default 3)
    ORIGINSCORE_RETRY_BASE_DELAY      backoff base in seconds (default 1.0)
    ORIGINSCORE_TRANSPORT_TIMEOUT     per-attempt deadline, seconds (20)
    ORIGINSCORE_HEADERS_TIMEOUT       (15)
    ORIGINSCORE_AUTH_TIMEOUT          (30)
    ORIGINSCORE_TRANSPORT_RATE_LIMIT  requests per host per minute (5)
    ORIGINSCORE_HEADERS_RATE_LIMIT    (8)
    ORIGINSCORE_AUTH_RATE_LIMIT       (15)
    ORIGINSCORE_WEIGHTS               e.g. "transport=0.4,headers=0.3,auth=0.3"
    ORIGINSCORE_DNS_NAMESERVERS       comma separated (default 8.8.8.8,1.1.1.1)
    ORIGINSCORE_USER_AGENT            User-Agent for the header probe
    ORIGINSCORE_PROBE_LEGACY_TLS      "true" to test each TLS version separately
    REDIS_URL                         shared rate-limit counters (optional)
    LOG_LEVEL                         DEBUG / INFO / WARNING (default INFO)

Bad values raise ValueError naming the variable at startup, not mid-scan.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

MODULES = ("transport", "headers", "auth")

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_TIMEOUTS = {"transport": 20.0, "headers": 15.0, "auth": 30.0}
DEFAULT_RATE_LIMITS = {"transport": 5, "headers": 8, "auth": 15}
DEFAULT_WEIGHTS = {"transport": 0.4, "headers": 0.3, "auth": 0.3}
DEFAULT_NAMESERVERS = ["8.8.8.8", "1.1.1.1"]
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; originscore/1.0)"

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off", ""}


@dataclass
class Settings:
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_base_delay: float = DEFAULT_BASE_DELAY
    timeouts: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    rate_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    dns_nameservers: List[str] = field(default_factory=lambda: list(DEFAULT_NAMESERVERS))
    user_agent: str = DEFAULT_USER_AGENT
    probe_legacy_tls: bool = False
    redis_url: Optional[str] = None
    log_level: str = "INFO"


def validate_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Reject unknown module names, negative weights and an empty total."""
    unknown = set(weights) - set(MODULES)
    if unknown:
        raise ValueError(f"Unknown module(s) in weights: {', '.join(sorted(unknown))}")
    for name, weight in weights.items():
        if weight < 0:
            raise ValueError(f"Weight for {name} must not be negative (got {weight})")
    if sum(weights.values()) <= 0:
        raise ValueError("Weights must sum to more than zero")
    return {name: float(weight) for name, weight in weights.items()}


def _get(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum} (got {value})")
    return value


def _float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})")
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum} (got {value})")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in FALSY:
        return False
    raise ValueError(f"{name} must be true or false (got {raw!r})")


def parse_weights(raw: str, name: str = "ORIGINSCORE_WEIGHTS") -> Dict[str, float]:
    """Parse "transport=0.4,headers=0.3,auth=0.3". Unlisted modules keep their default."""
    weights = dict(DEFAULT_WEIGHTS)
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        module, sep, value = pair.partition("=")
        module = module.strip().lower()
        if not sep:
            raise ValueError(f"{name} entries must look like module=weight (got {pair!r})")
        try:
            weights[module] = float(value)
        except ValueError:
            raise ValueError(f"{name} weight for {module} must be a number (got {value.strip()!r})")
    try:
        return validate_weights(weights)
    except ValueError as e:
        raise ValueError(f"{name}: {e}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    settings = Settings()

    settings.retry_attempts = _int(env, "ORIGINSCORE_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS, minimum=1)
    settings.retry_base_delay = _float(env, "ORIGINSCORE_RETRY_BASE_DELAY", DEFAULT_BASE_DELAY)

    for module in MODULES:
        prefix = f"ORIGINSCORE_{module.upper()}"
        settings.timeouts[module] = _float(env, f"{prefix}_TIMEOUT", DEFAULT_TIMEOUTS[module], minimum=0.1)
        settings.rate_limits[module] = _int(env, f"{prefix}_RATE_LIMIT", DEFAULT_RATE_LIMITS[module])

    raw_weights = _get(env, "ORIGINSCORE_WEIGHTS")
    if raw_weights:
        settings.weights = parse_weights(raw_weights)

    raw_nameservers = _get(env, "ORIGINSCORE_DNS_NAMESERVERS")
    if raw_nameservers:
        settings.dns_nameservers = [ns.strip() for ns in raw_nameservers.split(",") if ns.strip()]

    settings.user_agent = _get(env, "ORIGINSCORE_USER_AGENT") or DEFAULT_USER_AGENT
    settings.probe_legacy_tls = _bool(env, "ORIGINSCORE_PROBE_LEGACY_TLS", False)
    settings.redis_url = _get(env, "REDIS_URL")

    log_level = (_get(env, "LOG_LEVEL") or "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValueError(f"LOG_LEVEL must be a standard logging level (got {log_level!r})")
    settings.log_level = log_level

    return settings
