from .client import (
    InstanceClient,
    ClientPool,
    ReauthFn,
    normalize_url,
    is_totp_demand,
    validate_response,
)
from .models import Session, AuthResult
from .exceptions import (
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

__all__ = [
    "InstanceClient",
    "ClientPool",
    "ReauthFn",
    "normalize_url",
    "is_totp_demand",
    "validate_response",
    "Session",
    "AuthResult",
    "InstanceError",
    "NotConfiguredError",
    "NetworkError",
    "RequestTimeoutError",
    "CertificateError",
    "AuthFailedError",
    "ServerError",
    "ClientError",
    "InvalidResponseError",
]
