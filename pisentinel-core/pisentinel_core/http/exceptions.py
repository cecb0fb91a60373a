from typing import Optional, Any


class InstanceError(Exception):
    """Base exception for all Pi-hole instance communication errors."""
    def __init__(
        self,
        message: str,
        instance_id: Optional[str] = None,
        status_code: Optional[int] = None,
        key: Optional[str] = None,
        details: Any = None,
    ):
        self.message = message
        self.instance_id = instance_id
        self.status_code = status_code
        self.key = key
        self.details = details
        super().__init__(f"[{instance_id or 'unbound'}] {message} (Status: {status_code})")


class NotConfiguredError(InstanceError):
    """Raised when a request is attempted without a server URL."""
    pass


class NetworkError(InstanceError):
    """Raised when the server is unreachable."""
    pass


class RequestTimeoutError(NetworkError):
    """Raised specifically on timeouts."""
    pass


class CertificateError(InstanceError):
    """Raised when TLS verification of the server certificate fails."""
    pass


class AuthFailedError(InstanceError):
    """Raised when the server rejects the credentials or the session (401)."""
    pass


class ServerError(InstanceError):
    """Raised on 5xx responses."""
    pass


class ClientError(InstanceError):
    """Raised on 4xx responses other than 401."""
    pass


class InvalidResponseError(InstanceError):
    """Raised when a response body cannot be parsed."""
    pass
