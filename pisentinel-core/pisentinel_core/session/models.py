"""
Session Lifecycle Models
========================
"""

from dataclasses import dataclass
from typing import Optional

from ..errors import ErrorKind
from ..state import ConnectionPhase


class SessionStateError(Exception):
    """Raised when an operation is not valid in the instance's current phase."""

    def __init__(self, instance_id: str, phase: ConnectionPhase, message: str):
        self.instance_id = instance_id
        self.phase = phase
        super().__init__(f"[{instance_id}] {message} (phase: {phase.value})")


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of connect / submit_totp. ``error`` is the user-facing message."""
    success: bool
    totp_required: bool = False
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
