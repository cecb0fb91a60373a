import logging
import ssl
from typing import Optional, Any, Dict, List, Callable, Awaitable
from urllib.parse import quote

import httpx
import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from ..config import SentinelConfig
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
from .models import Session, AuthResult

logger = structlog.get_logger(__name__)
# tenacity's before_sleep_log expects a stdlib logger
_retry_logger = logging.getLogger(__name__)

ReauthFn = Callable[[], Awaitable[bool]]

AUTH = "/api/auth"
STATS_SUMMARY = "/api/stats/summary"
DNS_BLOCKING = "/api/dns/blocking"
QUERIES = "/api/queries"
DOMAINS = "/api/domains"
SEARCH = "/api/search"

DOMAIN_LISTS = ("allow", "deny")
DOMAIN_KINDS = ("exact", "regex")

_CERT_MARKERS = ("CERTIFICATE_VERIFY_FAILED", "SSL", "certificate", "CERT_")


def normalize_url(url: Optional[str]) -> str:
    """Strip whitespace and trailing slashes."""
    return (url or "").strip().rstrip("/")


def _is_certificate_failure(exc: BaseException) -> bool:
    seen = set()
    cause: Optional[BaseException] = exc
    while cause is not None and id(cause) not in seen:
        if isinstance(cause, ssl.SSLCertVerificationError):
            return True
        seen.add(id(cause))
        cause = cause.__cause__ or cause.__context__
    text = str(exc)
    return any(marker in text for marker in _CERT_MARKERS)


def is_totp_demand(error_key: Optional[str], message: Optional[str]) -> bool:
    """Pi-hole answers a missing second factor with ``bad_request`` / "No 2FA token found"."""
    return error_key == "bad_request" and "2fa" in (message or "").lower()


class InstanceClient:
    """
    Async client for a single Pi-hole v6 server.

    Features:
    - Session headers (X-FTL-SID / X-FTL-CSRF) attached automatically.
    - Bounded retries with exponential backoff on network errors and 5xx.
    - One re-authentication attempt per request on 401, through the injected
      ``reauth`` strategy.
    - Standardized exception mapping.
    """

    def __init__(
        self,
        base_url: str = "",
        instance_id: Optional[str] = None,
        reauth: Optional[ReauthFn] = None,
        timeout: float = 10.0,
        verify_ssl: bool = True,
        max_attempts: int = 4,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = normalize_url(base_url)
        self.instance_id = instance_id
        self.session: Optional[Session] = None
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._reauth = reauth

        self.client = httpx.AsyncClient(
            timeout=timeout,
            verify=verify_ssl,
            transport=transport,
            headers={
                "User-Agent": "PiSentinel-Client",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_config(
        cls,
        config: SentinelConfig,
        base_url: str = "",
        instance_id: Optional[str] = None,
        reauth: Optional[ReauthFn] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "InstanceClient":
        return cls(
            base_url=base_url,
            instance_id=instance_id,
            reauth=reauth,
            timeout=config.request_timeout,
            verify_ssl=config.verify_ssl,
            max_attempts=config.max_request_attempts,
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            transport=transport,
        )

    async def aclose(self):
        """Close the underlying HTTP client."""
        await self.client.aclose()

    # ----- Session state -----

    def set_base_url(self, url: str) -> None:
        url = normalize_url(url)
        if url != self.base_url:
            # A session is bound to the server that issued it
            self.session = None
        self.base_url = url

    def set_session(self, session: Session) -> None:
        self.session = session

    def clear_session(self) -> None:
        self.session = None

    def has_session(self) -> bool:
        return self.session is not None

    # ----- Transport -----

    def _headers(self, session: Optional[Session]) -> Dict[str, str]:
        headers = {}
        if session is not None:
            if session.sid:
                headers["X-FTL-SID"] = session.sid
            if session.csrf:
                headers["X-FTL-CSRF"] = session.csrf
        return headers

    def _map_exception(self, exc: Exception) -> InstanceError:
        """Map httpx exceptions to instance exceptions."""
        if isinstance(exc, httpx.TimeoutException):
            return RequestTimeoutError("Request timed out", instance_id=self.instance_id, key="timeout")
        if isinstance(exc, httpx.TransportError):
            if _is_certificate_failure(exc):
                return CertificateError(
                    "TLS certificate verification failed",
                    instance_id=self.instance_id,
                    key="cert_error",
                    details=str(exc),
                )
            return NetworkError(
                f"Failed to connect: {exc}",
                instance_id=self.instance_id,
                key="network_error",
            )
        return InstanceError(f"Unexpected error: {exc}", instance_id=self.instance_id, key="internal_error")

    def _error_for_response(self, response: httpx.Response) -> InstanceError:
        """Build the typed error for a non-2xx response from its ``{"error": {...}}`` body."""
        status = response.status_code
        key, message, hint = None, None, None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            key = body["error"].get("key")
            message = body["error"].get("message")
            hint = body["error"].get("hint")

        message = message or f"HTTP {status}"
        if status == 401:
            return AuthFailedError(message, instance_id=self.instance_id, status_code=status,
                                   key=key or "unauthorized", details=hint)
        if status >= 500:
            return ServerError(message, instance_id=self.instance_id, status_code=status, key=key, details=hint)
        return ClientError(message, instance_id=self.instance_id, status_code=status, key=key, details=hint)

    def _require_configured(self) -> None:
        if not self.base_url:
            raise NotConfiguredError(
                "Pi-hole server URL not configured",
                instance_id=self.instance_id,
                key="not_configured",
            )

    async def _send(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> httpx.Response:
        """Single attempt. Maps transport failures, returns the response whatever its status."""
        try:
            return await self.client.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=self._headers(session),
            )
        except httpx.HTTPError as e:
            raise self._map_exception(e) from e

    async def _send_with_retry(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> httpx.Response:
        """Retry network errors and 5xx; certificate, auth and other 4xx pass straight through."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((ServerError, NetworkError)),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._send(method, path, json=json, params=params, session=session)
                if response.status_code >= 500:
                    raise self._error_for_response(response)
        return response

    def _parse(self, response: httpx.Response, path: str) -> Any:
        if not response.is_success:
            raise self._error_for_response(response)
        if response.status_code == 204 or not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                "Failed to parse server response",
                instance_id=self.instance_id,
                status_code=response.status_code,
                key="parse_error",
            ) from e

        problem = validate_response(path, data)
        if problem:
            # Advisory only: surfaces API drift without breaking callers
            logger.warning("response_validation_failed", path=path, problem=problem, instance_id=self.instance_id)
        return data

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        allow_reauth: bool = True,
    ) -> Any:
        """
        Execute an authenticated request.

        On 401 the ``reauth`` strategy is invoked at most once; the request is
        replayed only when it reports success.

        Raises:
            NotConfiguredError, NetworkError, RequestTimeoutError,
            CertificateError, AuthFailedError, ServerError, ClientError,
            InvalidResponseError
        """
        self._require_configured()
        response = await self._send_with_retry(method, path, json=json, params=params, session=self.session)

        if response.status_code == 401 and allow_reauth and self._reauth is not None:
            logger.debug("session_rejected_reauthenticating", instance_id=self.instance_id, path=path)
            if not await self._reauth():
                logger.warning("reauthentication_failed", instance_id=self.instance_id)
                raise AuthFailedError(
                    "Authentication required",
                    instance_id=self.instance_id,
                    status_code=401,
                    key="auth_failed",
                )
            logger.info("reauthenticated_retrying", instance_id=self.instance_id, path=path)
            response = await self._send_with_retry(method, path, json=json, params=params, session=self.session)

        return self._parse(response, path)

    # ----- Authentication -----

    async def authenticate(self, password: str, totp: Optional[str] = None) -> AuthResult:
        """
        POST /api/auth. On success the session is stored on the client.

        Never raises for transport or server failures; they are returned in
        ``AuthResult.error``.
        """
        body: Dict[str, Any] = {"password": password}
        if totp:
            body["totp"] = totp

        try:
            self._require_configured()
            response = await self._send_with_retry("POST", AUTH, json=body)
        except InstanceError as e:
            logger.warning("authenticate_transport_failed", instance_id=self.instance_id, error=str(e))
            return AuthResult(success=False, error=e)

        if 400 <= response.status_code < 500:
            error = self._error_for_response(response)
            if is_totp_demand(error.key, error.message):
                logger.info("totp_required", instance_id=self.instance_id)
                return AuthResult(success=False, totp_required=True, error=error)
            return AuthResult(success=False, error=error)

        try:
            data = self._parse(response, AUTH)
        except InstanceError as e:
            return AuthResult(success=False, error=e)

        session_payload = (data or {}).get("session") if isinstance(data, dict) else None
        if not isinstance(session_payload, dict) or not session_payload.get("valid"):
            message = (session_payload or {}).get("message") or "Invalid password"
            return AuthResult(
                success=False,
                error=AuthFailedError(
                    message,
                    instance_id=self.instance_id,
                    status_code=response.status_code,
                    key="auth_failed",
                ),
            )

        session = Session.from_payload(session_payload)
        self.session = session
        logger.info(
            "authenticated",
            instance_id=self.instance_id,
            validity=session.validity,
            passwordless=session.sid is None,
        )
        return AuthResult(success=True, session=session)

    async def invalidate_session(self, session: Session) -> None:
        """
        DELETE /api/auth for ``session``, single attempt.

        Does not touch local state. A 401/404 means the server already
        forgot the session and counts as success.

        Raises:
            InstanceError subclasses on transport or server failure
        """
        self._require_configured()
        response = await self._send("DELETE", AUTH, session=session)
        if response.is_success or response.status_code in (401, 404):
            return
        raise self._error_for_response(response)

    async def logout(self) -> bool:
        """Best-effort server logout. The local session is cleared regardless."""
        session = self.session
        self.session = None
        if session is None or not self.base_url:
            return True
        try:
            await self.invalidate_session(session)
            return True
        except InstanceError as e:
            logger.warning("logout_failed", instance_id=self.instance_id, error=str(e))
            return False

    async def test_connection(self, url: Optional[str] = None) -> bool:
        """
        Unauthenticated reachability probe: GET /api/auth.

        200 (valid session) and 401 (needs login) both mean the server is up.
        """
        target = normalize_url(url) or self.base_url
        if not target:
            raise NotConfiguredError("No URL provided", instance_id=self.instance_id, key="not_configured")
        try:
            response = await self.client.get(f"{target}{AUTH}")
        except httpx.HTTPError as e:
            raise self._map_exception(e) from e
        if response.status_code == 401 or response.is_success:
            return True
        raise self._error_for_response(response)

    # ----- Statistics / blocking -----

    async def get_stats(self, allow_reauth: bool = True) -> Dict[str, Any]:
        return await self.request("GET", STATS_SUMMARY, allow_reauth=allow_reauth)

    async def get_blocking_status(self) -> Dict[str, Any]:
        return await self.request("GET", DNS_BLOCKING)

    async def set_blocking(self, enabled: bool, timer: Optional[int] = None) -> Dict[str, Any]:
        """Enable or disable blocking; ``timer`` seconds, omitted or 0 means indefinitely."""
        body: Dict[str, Any] = {"blocking": enabled}
        if timer:
            body["timer"] = timer
        return await self.request("POST", DNS_BLOCKING, json=body)

    # ----- Query log -----

    async def get_queries(
        self,
        length: Optional[int] = None,
        from_ts: Optional[int] = None,
        until: Optional[int] = None,
        client: Optional[str] = None,
        domain: Optional[str] = None,
        query_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "length": length,
            "from": from_ts,
            "until": until,
            "client": client,
            "domain": domain,
            "type": query_type,
            "status": status,
        }
        params = {k: v for k, v in params.items() if v not in (None, "")}
        data = await self.request("GET", QUERIES, params=params or None)
        if isinstance(data, list):
            return data
        return (data or {}).get("queries") or []

    # ----- Domain lists -----

    @staticmethod
    def _domain_path(list_type: str, kind: str) -> str:
        if list_type not in DOMAIN_LISTS:
            raise ValueError(f"list_type must be one of {DOMAIN_LISTS}")
        if kind not in DOMAIN_KINDS:
            raise ValueError(f"kind must be one of {DOMAIN_KINDS}")
        return f"{DOMAINS}/{list_type}/{kind}"

    async def get_domains(self, list_type: str, kind: str = "exact") -> List[Dict[str, Any]]:
        data = await self.request("GET", self._domain_path(list_type, kind))
        if isinstance(data, list):
            return data
        return (data or {}).get("domains") or []

    async def add_domain(
        self,
        domain: str,
        list_type: str,
        kind: str = "exact",
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"domain": domain}
        if comment:
            body["comment"] = comment
        return await self.request("POST", self._domain_path(list_type, kind), json=body)

    async def remove_domain(self, domain: str, list_type: str, kind: str = "exact") -> None:
        path = f"{self._domain_path(list_type, kind)}/{quote(domain, safe='')}"
        await self.request("DELETE", path)

    async def search_domain(self, domain: str) -> Dict[str, Any]:
        return await self.request("GET", f"{SEARCH}/{quote(domain, safe='')}")


def validate_response(path: str, data: Any) -> Optional[str]:
    """
    Structural check of critical payloads.

    Returns a problem description, or None when the payload looks right.
    """
    if path == STATS_SUMMARY:
        if not isinstance(data, dict):
            return "Stats response is not an object"
        queries = data.get("queries")
        if not isinstance(queries, dict):
            return "Stats response missing 'queries' object"
        for field in ("total", "blocked"):
            if not isinstance(queries.get(field), (int, float)):
                return f"Stats response missing 'queries.{field}' number"

    elif path == DNS_BLOCKING:
        if not isinstance(data, dict):
            return "Blocking status response is not an object"
        if data.get("blocking") not in ("enabled", "disabled"):
            return "Blocking status 'blocking' must be 'enabled' or 'disabled'"

    elif path == AUTH:
        if not isinstance(data, dict):
            return "Auth response is not an object"
        session = data.get("session")
        if session is not None and not isinstance(session, dict):
            return "Auth response 'session' is not an object"
        if isinstance(session, dict) and session.get("valid"):
            for field in ("sid", "csrf"):
                if session.get(field) is not None and not isinstance(session.get(field), str):
                    return f"Auth response 'session.{field}' is not a string"

    elif path.startswith(QUERIES):
        if isinstance(data, list):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("queries"), list):
            return "Queries response missing 'queries' array"

    return None


class ClientPool:
    """
    One InstanceClient per configured instance.

    ``reauth_factory`` builds the re-authentication strategy handed to each
    client at construction.
    """

    def __init__(
        self,
        config: Optional[SentinelConfig] = None,
        reauth_factory: Optional[Callable[[str], ReauthFn]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or SentinelConfig()
        self._reauth_factory = reauth_factory
        self._transport = transport
        self._clients: Dict[str, InstanceClient] = {}

    def set_reauth_factory(self, factory: Callable[[str], ReauthFn]) -> None:
        """Install the factory before any client is created."""
        self._reauth_factory = factory

    def get(self, instance_id: str) -> InstanceClient:
        """Get or create the client for an instance."""
        client = self._clients.get(instance_id)
        if client is None:
            reauth = self._reauth_factory(instance_id) if self._reauth_factory else None
            client = InstanceClient.from_config(
                self.config,
                instance_id=instance_id,
                reauth=reauth,
                transport=self._transport,
            )
            self._clients[instance_id] = client
        return client

    def has(self, instance_id: str) -> bool:
        return instance_id in self._clients

    def configure(self, instance_id: str, url: str) -> InstanceClient:
        client = self.get(instance_id)
        client.set_base_url(url)
        return client

    def ids(self) -> List[str]:
        return list(self._clients)

    async def remove(self, instance_id: str) -> None:
        client = self._clients.pop(instance_id, None)
        if client is not None:
            client.clear_session()
            await client.aclose()

    async def aclose(self) -> None:
        for instance_id in list(self._clients):
            await self.remove(instance_id)
