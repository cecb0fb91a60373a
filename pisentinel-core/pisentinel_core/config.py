"""
PiSentinel Configuration
========================
Runtime settings for clients, session lifecycle and storage.

Defaults can be overridden through PISENTINEL_* environment variables.
"""

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class SentinelConfig:
    """Configuration for the session lifecycle subsystem."""

    # Transport
    request_timeout: float = _env_float("PISENTINEL_REQUEST_TIMEOUT", 10.0)
    verify_ssl: bool = os.getenv("PISENTINEL_VERIFY_SSL", "true").lower() in ("1", "true", "yes", "on")
    max_request_attempts: int = _env_int("PISENTINEL_MAX_REQUEST_ATTEMPTS", 4)
    retry_base_delay: float = _env_float("PISENTINEL_RETRY_BASE_DELAY", 1.0)
    retry_max_delay: float = _env_float("PISENTINEL_RETRY_MAX_DELAY", 10.0)

    # Session lifecycle (Pi-hole's default session validity is 300s)
    keepalive_interval: float = _env_float("PISENTINEL_KEEPALIVE_INTERVAL", 240.0)
    session_renewal_threshold: float = _env_float("PISENTINEL_SESSION_RENEWAL_THRESHOLD", 60.0)
    default_session_validity: int = _env_int("PISENTINEL_DEFAULT_SESSION_VALIDITY", 300)
    max_consecutive_auth_failures: int = _env_int("PISENTINEL_MAX_AUTH_FAILURES", 3)

    # Disconnect
    logout_attempts: int = _env_int("PISENTINEL_LOGOUT_ATTEMPTS", 3)
    logout_backoff: float = _env_float("PISENTINEL_LOGOUT_BACKOFF", 0.1)

    # Fan-out and refresh
    max_concurrency: int = _env_int("PISENTINEL_MAX_CONCURRENCY", 8)
    refresh_interval: float = _env_float("PISENTINEL_REFRESH_INTERVAL", 30.0)
    stats_cache_ttl: float = _env_float("PISENTINEL_STATS_CACHE_TTL", 30.0)

    # Crypto and storage
    kdf_iterations: int = _env_int("PISENTINEL_KDF_ITERATIONS", 100_000)
    storage_path: str = os.getenv("PISENTINEL_STORAGE_PATH", "~/.pisentinel/instances.json")

    @property
    def aggressive_renewal_threshold(self) -> float:
        """Renewal window: twice the safe threshold to absorb network jitter."""
        return self.session_renewal_threshold * 2
