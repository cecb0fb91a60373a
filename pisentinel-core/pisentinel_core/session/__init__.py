"""
PiSentinel Core - Session Lifecycle
===================================
Authentication, renewal and teardown of per-instance Pi-hole sessions.

Usage:
    from pisentinel_core.session import SessionLifecycleManager

    result = await manager.connect(instance_id, password="secret")
    if result.totp_required:
        result = await manager.submit_totp(instance_id, "secret", "123456")
"""

from .models import ConnectResult, SessionStateError
from .guard import TransitionGuard
from .token_store import SessionTokenStore
from .manager import SessionLifecycleManager
from .scheduler import SessionScheduler
from ..state import ConnectionPhase

__all__ = [
    "ConnectResult",
    "SessionStateError",
    "ConnectionPhase",
    "TransitionGuard",
    "SessionTokenStore",
    "SessionLifecycleManager",
    "SessionScheduler",
]
