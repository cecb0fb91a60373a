"""
Authentication Circuit Breaker
==============================
Counts consecutive authentication rejections per instance and suppresses
automatic re-authentication once the threshold is reached, so a wrong stored
password cannot turn into a retry storm (or a server-side lockout).

Only auth rejections count. Network errors, timeouts and 5xx never touch
the counter. A manual connect always resets it.
"""

import time
from typing import Optional, Dict, Any
import structlog

from .models import CircuitState, CircuitBreakerConfig, CircuitBreakerState

logger = structlog.get_logger(__name__)


class AuthCircuitBreaker:
    """
    Registry of per-instance failure counters.

    Example:
        breaker = AuthCircuitBreaker()

        if breaker.is_open(instance_id):
            return False  # skip automatic re-auth
        ...
        breaker.record_failure(instance_id)
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self._states: Dict[str, CircuitBreakerState] = {}

    def _get(self, instance_id: str) -> CircuitBreakerState:
        state = self._states.get(instance_id)
        if state is None:
            state = CircuitBreakerState(instance_id=instance_id)
            self._states[instance_id] = state
        return state

    def failures(self, instance_id: str) -> int:
        """Consecutive failures; 0 for unknown instances."""
        state = self._states.get(instance_id)
        return state.consecutive_failures if state else 0

    def state(self, instance_id: str) -> CircuitState:
        return CircuitState.OPEN if self.is_open(instance_id) else CircuitState.CLOSED

    def is_open(self, instance_id: str) -> bool:
        return self.failures(instance_id) >= self.config.fail_threshold

    def record_failure(self, instance_id: str) -> int:
        """Record an authentication rejection. Returns the new consecutive count."""
        state = self._get(instance_id)
        was_open = state.consecutive_failures >= self.config.fail_threshold
        state.consecutive_failures += 1
        state.total_failures += 1
        state.last_failure_time = time.time()

        if not was_open and state.consecutive_failures >= self.config.fail_threshold:
            state.last_state_change = state.last_failure_time
            logger.warning(
                "auth_circuit_opened",
                instance_id=instance_id,
                failures=state.consecutive_failures,
            )
        else:
            logger.debug("auth_failure_recorded", instance_id=instance_id, failures=state.consecutive_failures)
        return state.consecutive_failures

    def record_success(self, instance_id: str) -> None:
        """Successful authentication closes the circuit."""
        state = self._states.get(instance_id)
        if state is None or state.consecutive_failures == 0:
            return
        if state.consecutive_failures >= self.config.fail_threshold:
            state.last_state_change = time.time()
            logger.info("auth_circuit_closed", instance_id=instance_id)
        state.consecutive_failures = 0

    def reset(self, instance_id: str) -> None:
        """Manual reset (user-initiated connect)."""
        state = self._states.get(instance_id)
        if state is None:
            return
        if state.consecutive_failures:
            logger.info("auth_circuit_reset", instance_id=instance_id, failures=state.consecutive_failures)
            state.last_state_change = time.time()
        state.consecutive_failures = 0
        state.total_resets += 1

    def forget(self, instance_id: str) -> None:
        """Drop all state for a deleted instance."""
        self._states.pop(instance_id, None)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Metrics for every tracked instance."""
        return {
            instance_id: {
                "state": self.state(instance_id).value,
                "consecutive_failures": state.consecutive_failures,
                "total_failures": state.total_failures,
                "total_resets": state.total_resets,
                "last_failure": state.last_failure_time,
            }
            for instance_id, state in self._states.items()
        }
