"""
PiSentinel Core - Circuit Breaker
=================================
Per-instance authentication circuit breaker.

States:

1. CLOSED: automatic re-authentication may run
2. OPEN: consecutive auth rejections reached the threshold; automatic paths
   (keepalive renewal, 401 re-auth) skip the instance until a manual connect

Usage:
    from pisentinel_core.circuit_breaker import AuthCircuitBreaker

    breaker = AuthCircuitBreaker()
    if not breaker.is_open(instance_id):
        ...
"""

from .models import (
    CircuitState,
    CircuitBreakerConfig,
    CircuitBreakerState,
)

from .breaker import AuthCircuitBreaker

__all__ = [
    # Models
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    # Breaker
    "AuthCircuitBreaker",
]
