"""
Circuit Breaker Models
======================
Data models for the per-instance authentication circuit breaker.
"""

import time
from dataclasses import dataclass, field
from enum import Enum


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Automatic re-auth allowed
    OPEN = "open"      # Automatic re-auth suppressed until a manual connect


@dataclass
class CircuitBreakerConfig:
    """Configuration for the auth circuit breaker."""
    fail_threshold: int = 3  # Consecutive auth rejections before opening


@dataclass
class CircuitBreakerState:
    """Runtime state for one instance."""
    instance_id: str
    consecutive_failures: int = 0
    last_failure_time: float = 0
    last_state_change: float = field(default_factory=time.time)

    # Metrics
    total_failures: int = 0
    total_resets: int = 0
