"""
Instance Client Tests
=====================
Pi-hole v6 REST contract, retries and error mapping.
"""

import ssl

import httpx
import pytest


class TestAuthenticate:
    """Tests for POST /api/auth."""

    @pytest.mark.asyncio
    async def test_success_stores_session(self, make_client):
        """A valid login stores sid/csrf and an expiry one validity period out."""
        client = make_client()

        result = await client.authenticate("secret")

        assert result.success is True
        assert client.session is not None
        assert client.session.sid == "sid-1"
        assert client.session.csrf == "csrf-1"
        assert client.session.validity == 300
        assert 295 < client.session.remaining() <= 300

    @pytest.mark.asyncio
    async def test_wrong_password_is_auth_failure(self, make_client):
        """401 surfaces as AuthFailedError in the result, never raised."""
        from pisentinel_core.http import AuthFailedError

        client = make_client()
        result = await client.authenticate("wrong")

        assert result.success is False
        assert result.totp_required is False
        assert isinstance(result.error, AuthFailedError)
        assert client.session is None

    @pytest.mark.asyncio
    async def test_missing_2fa_token_means_totp_required(self, make_client, pihole):
        """bad_request + "No 2FA token found" is a TOTP demand, not a failure."""
        pihole.totp = "123456"
        client = make_client()

        result = await client.authenticate("secret")

        assert result.success is False
        assert result.totp_required is True
        assert result.error.key == "bad_request"

    @pytest.mark.asyncio
    async def test_totp_included_when_given(self, make_client, pihole):
        pihole.totp = "123456"
        client = make_client()

        result = await client.authenticate("secret", totp="123456")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_invalid_session_payload_is_auth_failure(self, make_client, pihole):
        """A 200 whose session is not valid counts as rejected credentials."""
        from pisentinel_core.http import AuthFailedError

        pihole.fail_next.append(httpx.Response(200, json={"session": {"valid": False, "message": "nope"}}))
        client = make_client()

        result = await client.authenticate("secret")

        assert result.success is False
        assert isinstance(result.error, AuthFailedError)

    @pytest.mark.asyncio
    async def test_passwordless_server(self, make_client, pihole):
        """No sid and no expiry for a server without a password."""
        pihole.password = ""
        client = make_client()

        result = await client.authenticate("")

        assert result.success is True
        assert result.session.sid is None
        assert result.session.expires_at is None
        assert result.session.is_expired() is False

    @pytest.mark.asyncio
    async def test_network_error_returned_not_raised(self, make_client, pihole):
        from pisentinel_core.http import NetworkError

        pihole.fail_next.extend([httpx.ConnectError] * 3)
        client = make_client()

        result = await client.authenticate("secret")

        assert result.success is False
        assert isinstance(result.error, NetworkError)

    @pytest.mark.asyncio
    async def test_not_configured(self, make_client):
        from pisentinel_core.http import NotConfiguredError

        client = make_client(base_url="")
        result = await client.authenticate("secret")

        assert isinstance(result.error, NotConfiguredError)


class TestRequest:
    """Tests for authenticated requests and the 401 re-auth path."""

    @pytest.mark.asyncio
    async def test_session_headers_attached(self, make_client):
        client = make_client()
        await client.authenticate("secret")

        stats = await client.get_stats()

        assert stats["queries"]["total"] == 1000

    @pytest.mark.asyncio
    async def test_reauth_once_then_retry(self, make_client, pihole):
        """On 401 the strategy runs once and the request is replayed."""
        calls = []

        async def reauth():
            calls.append(1)
            return (await client.authenticate("secret")).success

        client = make_client(reauth=reauth)
        await client.authenticate("secret")
        pihole.sessions.clear()  # server forgot the session

        stats = await client.get_stats()

        assert stats["queries"]["blocked"] == 250
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_reauth_refused_raises(self, make_client):
        from pisentinel_core.http import AuthFailedError

        async def reauth():
            return False

        client = make_client(reauth=reauth)

        with pytest.raises(AuthFailedError):
            await client.get_stats()

    @pytest.mark.asyncio
    async def test_reauth_not_used_when_disallowed(self, make_client):
        from pisentinel_core.http import AuthFailedError

        calls = []

        async def reauth():
            calls.append(1)
            return True

        client = make_client(reauth=reauth)

        with pytest.raises(AuthFailedError):
            await client.get_stats(allow_reauth=False)
        assert calls == []

    @pytest.mark.asyncio
    async def test_reauth_at_most_once_per_call(self, make_client, pihole):
        """A second 401 after re-auth raises instead of looping."""
        from pisentinel_core.http import AuthFailedError

        calls = []

        async def reauth():
            calls.append(1)
            return True  # claims success but never obtains a session

        client = make_client(reauth=reauth)

        with pytest.raises(AuthFailedError):
            await client.get_stats()
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_server_errors_retried(self, make_client, pihole):
        """5xx is retried with backoff and succeeds when the server recovers."""
        client = make_client()
        await client.authenticate("secret")
        pihole.fail_next.extend([httpx.Response(503), httpx.Response(502)])

        stats = await client.get_stats()

        assert stats["clients"]["active"] == 5

    @pytest.mark.asyncio
    async def test_server_errors_exhaust(self, make_client, pihole):
        from pisentinel_core.http import ServerError

        client = make_client()
        pihole.fail_next.extend([httpx.Response(500)] * 3)

        with pytest.raises(ServerError) as exc_info:
            await client.get_stats()
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_timeouts_never_reauth(self, make_client, pihole):
        """Timeouts map to RequestTimeoutError and leave the re-auth strategy alone."""
        from pisentinel_core.http import RequestTimeoutError, NetworkError

        calls = []

        async def reauth():
            calls.append(1)
            return True

        client = make_client(reauth=reauth)
        pihole.fail_next.extend([httpx.ReadTimeout] * 3)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await client.get_stats()
        assert isinstance(exc_info.value, NetworkError)
        assert calls == []

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, make_client, pihole):
        from pisentinel_core.http import ClientError

        client = make_client()
        await client.authenticate("secret")
        before = len(pihole.calls)

        with pytest.raises(ClientError) as exc_info:
            await client.request("GET", "/api/nowhere")
        assert exc_info.value.status_code == 404
        assert len(pihole.calls) - before == 1

    @pytest.mark.asyncio
    async def test_invalid_json(self, make_client, pihole):
        from pisentinel_core.http import InvalidResponseError

        client = make_client()
        pihole.fail_next.append(httpx.Response(200, content=b"<html>"))

        with pytest.raises(InvalidResponseError):
            await client.get_stats()


class TestErrorMapping:
    """Tests for transport exception mapping."""

    def test_certificate_failure_detected(self, make_client):
        from pisentinel_core.http import CertificateError

        client = make_client()
        cause = ssl.SSLCertVerificationError("certificate verify failed")
        exc = httpx.ConnectError("connect failed")
        exc.__cause__ = cause

        assert isinstance(client._map_exception(exc), CertificateError)

    def test_certificate_marker_in_message(self, make_client):
        from pisentinel_core.http import CertificateError

        client = make_client()
        exc = httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] self-signed certificate")

        assert isinstance(client._map_exception(exc), CertificateError)

    def test_plain_connect_error(self, make_client):
        from pisentinel_core.http import NetworkError, CertificateError

        client = make_client()
        mapped = client._map_exception(httpx.ConnectError("connection refused"))

        assert isinstance(mapped, NetworkError)
        assert not isinstance(mapped, CertificateError)

    @pytest.mark.asyncio
    async def test_certificate_errors_not_retried(self, make_client, pihole):
        from pisentinel_core.http import CertificateError

        class SelfSigned:
            calls = 0

            def handler(self, request):
                self.calls += 1
                raise httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED]", request=request)

        server = SelfSigned()
        client = make_client(server=server)

        with pytest.raises(CertificateError):
            await client.get_stats()
        assert server.calls == 1


class TestLogout:
    """Tests for session invalidation."""

    @pytest.mark.asyncio
    async def test_logout_clears_and_invalidates(self, make_client, pihole):
        client = make_client()
        await client.authenticate("secret")

        assert await client.logout() is True
        assert client.session is None
        assert pihole.sessions == {}

    @pytest.mark.asyncio
    async def test_logout_failure_still_clears(self, make_client, pihole):
        """Best-effort: a failed DELETE still drops the local session."""
        client = make_client()
        await client.authenticate("secret")
        pihole.fail_next.append(httpx.ConnectError)

        assert await client.logout() is False
        assert client.session is None

    @pytest.mark.asyncio
    async def test_invalidate_session_raises(self, make_client, pihole):
        from pisentinel_core.http import RequestTimeoutError

        client = make_client()
        await client.authenticate("secret")
        session = client.session
        pihole.fail_next.append(httpx.ReadTimeout)

        with pytest.raises(RequestTimeoutError):
            await client.invalidate_session(session)
        assert client.session is session

    @pytest.mark.asyncio
    async def test_changing_url_drops_session(self, make_client):
        client = make_client()
        await client.authenticate("secret")

        client.set_base_url("http://other.lan/")

        assert client.session is None
        assert client.base_url == "http://other.lan"


class TestEndpoints:
    """Tests for the typed endpoint helpers."""

    @pytest.mark.asyncio
    async def test_blocking(self, make_client, pihole):
        client = make_client()
        await client.authenticate("secret")

        status = await client.set_blocking(False, timer=300)

        assert status["blocking"] == "disabled"
        assert pihole.blocking is False
        assert (await client.get_blocking_status())["blocking"] == "disabled"

    @pytest.mark.asyncio
    async def test_queries_unwrapped(self, make_client):
        client = make_client()
        await client.authenticate("secret")

        queries = await client.get_queries(length=10, domain="example.com")

        assert queries == [{"id": 1, "domain": "example.com"}]

    @pytest.mark.asyncio
    async def test_domains(self, make_client, pihole):
        client = make_client()
        await client.authenticate("secret")

        domains = await client.get_domains("deny", "regex")
        await client.add_domain("ads.example.com", "deny", comment="ads")
        await client.remove_domain("ads.example.com", "deny")
        found = await client.search_domain("ads.example.com")

        assert domains[0]["domain"] == "ads.example.com"
        assert ("GET", "/api/domains/deny/regex") in pihole.calls
        assert ("DELETE", "/api/domains/deny/exact/ads.example.com") in pihole.calls
        assert found == {"search": {"domains": []}}

    def test_domain_list_validated(self, make_client):
        client = make_client()

        with pytest.raises(ValueError):
            client._domain_path("grey", "exact")

    @pytest.mark.asyncio
    async def test_test_connection(self, make_client):
        """401 from GET /api/auth still means the server is reachable."""
        client = make_client()

        assert await client.test_connection() is True

    @pytest.mark.asyncio
    async def test_test_connection_without_url(self, make_client):
        from pisentinel_core.http import NotConfiguredError

        client = make_client(base_url="")

        with pytest.raises(NotConfiguredError):
            await client.test_connection()


class TestResponseValidation:
    """Advisory payload checks."""

    def test_valid_stats(self):
        from pisentinel_core.http import validate_response

        assert validate_response("/api/stats/summary", {"queries": {"total": 1, "blocked": 0}}) is None

    def test_stats_missing_counts(self):
        from pisentinel_core.http import validate_response

        assert "queries.total" in validate_response("/api/stats/summary", {"queries": {}})

    def test_blocking_value(self):
        from pisentinel_core.http import validate_response

        assert validate_response("/api/dns/blocking", {"blocking": "maybe"}) is not None

    def test_queries_list_or_object(self):
        from pisentinel_core.http import validate_response

        assert validate_response("/api/queries", []) is None
        assert validate_response("/api/queries", {"queries": []}) is None
        assert validate_response("/api/queries", {"data": []}) is not None


class TestClientPool:
    """Tests for the per-instance client factory."""

    @pytest.mark.asyncio
    async def test_get_configure_remove(self, config, pihole):
        from pisentinel_core.http import ClientPool

        built = []

        def factory(instance_id):
            built.append(instance_id)

            async def reauth():
                return False

            return reauth

        pool = ClientPool(config, reauth_factory=factory, transport=httpx.MockTransport(pihole.handler))

        client = pool.configure("a", "http://a.lan/")
        assert pool.get("a") is client
        assert client.base_url == "http://a.lan"
        assert built == ["a"]

        await pool.remove("a")
        assert pool.has("a") is False
        await pool.aclose()
