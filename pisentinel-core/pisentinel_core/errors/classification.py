"""
User-Facing Error Messages
==========================
Maps typed instance errors to a small set of actionable messages.

Technical details go to the logs; only the short message reaches the user.
"""

from enum import Enum
from typing import Optional, Union

from ..crypto import DecryptionError
from ..http.exceptions import (
    InstanceError,
    NotConfiguredError,
    NetworkError,
    RequestTimeoutError,
    CertificateError,
    AuthFailedError,
    ServerError,
    ClientError,
    InvalidResponseError,
)


class ErrorKind(str, Enum):
    AUTH_FAILED = "auth_failed"
    TOTP_REQUIRED = "totp_required"
    TIMEOUT = "timeout"
    CERTIFICATE = "cert_error"
    NETWORK = "network_error"
    NOT_CONFIGURED = "not_configured"
    SERVER = "server_error"
    REJECTED = "client_error"
    INVALID_RESPONSE = "parse_error"
    SESSION_EXPIRED = "session_expired"
    PASSWORD_UNAVAILABLE = "password_unavailable"
    UNKNOWN = "unknown_error"


USER_MESSAGES = {
    ErrorKind.AUTH_FAILED: (
        "Login failed. Check the password, or leave it blank if this Pi-hole has no password."
    ),
    ErrorKind.TOTP_REQUIRED: "This one needs a 2FA code.",
    ErrorKind.TIMEOUT: "Timed out talking to the host. Is it online?",
    ErrorKind.CERTIFICATE: (
        "SSL cert issue. Open the Pi-hole URL in your browser, accept the cert, then try again."
    ),
    ErrorKind.NETWORK: "Can't reach the host. Check the URL and that the Pi-hole is online.",
    ErrorKind.NOT_CONFIGURED: "Missing host URL. Add it and try again.",
    ErrorKind.SERVER: (
        "The Pi-hole is responding, but it looks unhappy (server error). Try again in a bit."
    ),
    ErrorKind.REJECTED: "The host rejected the request. Double-check the URL and settings.",
    ErrorKind.INVALID_RESPONSE: (
        "The host answered, but the connection didn't work. Check the URL and try again."
    ),
    ErrorKind.SESSION_EXPIRED: "Session expired",
    ErrorKind.PASSWORD_UNAVAILABLE: (
        "No saved password for this one. Edit it to add one, or leave it blank if it doesn't need one."
    ),
    ErrorKind.UNKNOWN: "Couldn't connect. Try again?",
}


def classify(error: Optional[BaseException]) -> ErrorKind:
    """Bucket an exception into an ErrorKind. Order matters: timeouts are network errors too."""
    if error is None:
        return ErrorKind.UNKNOWN
    if isinstance(error, AuthFailedError):
        return ErrorKind.AUTH_FAILED
    if isinstance(error, RequestTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, CertificateError):
        return ErrorKind.CERTIFICATE
    if isinstance(error, NetworkError):
        return ErrorKind.NETWORK
    if isinstance(error, NotConfiguredError):
        return ErrorKind.NOT_CONFIGURED
    if isinstance(error, ServerError):
        return ErrorKind.SERVER
    if isinstance(error, InvalidResponseError):
        return ErrorKind.INVALID_RESPONSE
    if isinstance(error, ClientError):
        if error.status_code == 403:
            return ErrorKind.AUTH_FAILED
        return ErrorKind.REJECTED
    if isinstance(error, DecryptionError):
        return ErrorKind.PASSWORD_UNAVAILABLE
    if isinstance(error, InstanceError):
        return _classify_text(error.key, error.message)
    return ErrorKind.UNKNOWN


def _classify_text(key: Optional[str], message: Optional[str]) -> ErrorKind:
    lower = (message or "").lower()
    if key == "auth_failed" or "authentication" in lower or "password" in lower:
        return ErrorKind.AUTH_FAILED
    if key == "timeout" or "timed out" in lower:
        return ErrorKind.TIMEOUT
    if key == "cert_error" or "certificate" in lower or "ssl" in lower:
        return ErrorKind.CERTIFICATE
    if key == "network_error" or "network" in lower:
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


def user_message(error: Union[ErrorKind, BaseException, None]) -> str:
    """Short, actionable text for an ErrorKind or an exception."""
    kind = error if isinstance(error, ErrorKind) else classify(error)
    return USER_MESSAGES[kind]
