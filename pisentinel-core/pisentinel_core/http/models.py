"""
Instance Client Models
======================
Session and authentication results for the Pi-hole v6 auth contract.
"""

import time
from dataclasses import dataclass, field, replace, asdict
from typing import Optional, Dict, Any

from .exceptions import InstanceError


@dataclass(frozen=True)
class Session:
    """
    Server-issued session credentials.

    ``expires_at`` is None when the server issues no expiring session
    (password-less Pi-hole reports ``validity`` <= 0).
    """
    sid: Optional[str]
    csrf: Optional[str]
    validity: int
    expires_at: Optional[float]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], now: Optional[float] = None) -> "Session":
        now = time.time() if now is None else now
        validity = int(payload.get("validity") or 0)
        return cls(
            sid=payload.get("sid"),
            csrf=payload.get("csrf"),
            validity=validity,
            expires_at=now + validity if validity > 0 else None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            sid=data.get("sid"),
            csrf=data.get("csrf"),
            validity=int(data.get("validity") or 0),
            expires_at=data.get("expires_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def remaining(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until expiry, None for a never-expiring session."""
        if self.expires_at is None:
            return None
        now = time.time() if now is None else now
        return self.expires_at - now

    def is_expired(self, now: Optional[float] = None) -> bool:
        remaining = self.remaining(now)
        return remaining is not None and remaining <= 0

    def extended(self, now: Optional[float] = None) -> "Session":
        """Copy with the expiry pushed out by one validity period (server-side sliding window)."""
        if self.expires_at is None:
            return self
        now = time.time() if now is None else now
        return replace(self, expires_at=now + self.validity)


@dataclass
class AuthResult:
    """Outcome of an authenticate call. Transport failures land in ``error``."""
    success: bool
    totp_required: bool = False
    session: Optional[Session] = None
    error: Optional[InstanceError] = None
    details: Dict[str, Any] = field(default_factory=dict)
