"""
Shared fixtures: an in-process fake Pi-hole v6 server behind httpx.MockTransport.
"""

import asyncio
import itertools
import json

import httpx
import pytest


STATS = {
    "queries": {
        "total": 1000,
        "blocked": 250,
        "percent_blocked": 25.0,
        "unique_domains": 300,
        "forwarded": 600,
        "cached": 150,
    },
    "clients": {"active": 5, "total": 8},
    "gravity": {"domains_being_blocked": 120000, "last_update": 1700000000},
}


def _error(status, key, message):
    return httpx.Response(status, json={"error": {"key": key, "message": message, "hint": None}})


class FakePihole:
    """
    Minimal Pi-hole v6 auth + stats contract.

    ``fail_next`` holds scripted outcomes consumed one per request before normal
    handling: an httpx.Response is returned as-is, an exception class is raised.
    """

    def __init__(self, password="secret", totp=None, validity=300):
        self.password = password
        self.totp = totp
        self.validity = validity
        self.sessions = {}
        self.calls = []
        self.fail_next = []
        self.blocking = True
        self.auth_gate = False
        self.auth_entered = asyncio.Event()
        self.auth_release = asyncio.Event()
        self._ids = itertools.count(1)

    @property
    def logouts(self):
        return sum(1 for method, path in self.calls if method == "DELETE" and path == "/api/auth")

    @property
    def logins(self):
        return sum(1 for method, path in self.calls if method == "POST" and path == "/api/auth")

    def _authorized(self, request):
        sid = request.headers.get("X-FTL-SID")
        if self.password == "":
            return True
        return sid is not None and self.sessions.get(sid) == request.headers.get("X-FTL-CSRF")

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if self.fail_next:
            outcome = self.fail_next.pop(0)
            if isinstance(outcome, httpx.Response):
                return outcome
            raise outcome("simulated failure", request=request)

        if path == "/api/auth":
            return self._auth(request)

        if not self._authorized(request):
            return _error(401, "unauthorized", "Unauthorized")

        if path == "/api/stats/summary":
            return httpx.Response(200, json=STATS)
        if path == "/api/dns/blocking":
            if request.method == "POST":
                self.blocking = json.loads(request.content)["blocking"]
            return httpx.Response(200, json={"blocking": "enabled" if self.blocking else "disabled", "timer": None})
        if path == "/api/queries":
            return httpx.Response(200, json={"queries": [{"id": 1, "domain": "example.com"}]})
        if path.startswith("/api/domains/"):
            if request.method == "DELETE":
                return httpx.Response(204)
            if request.method == "POST":
                return httpx.Response(201, json={"domains": [json.loads(request.content)]})
            return httpx.Response(200, json={"domains": [{"id": 1, "domain": "ads.example.com"}]})
        if path.startswith("/api/search/"):
            return httpx.Response(200, json={"search": {"domains": []}})
        return _error(404, "not_found", "Not found")

    async def gated_handler(self, request: httpx.Request) -> httpx.Response:
        """Like ``handler`` but logins wait on ``auth_release`` once ``auth_gate`` is set."""
        if self.auth_gate and request.method == "POST" and request.url.path == "/api/auth":
            self.auth_entered.set()
            await self.auth_release.wait()
        return self.handler(request)

    def _auth(self, request):
        if request.method == "GET":
            return httpx.Response(200 if self._authorized(request) else 401, json={"session": {"valid": False}})

        if request.method == "DELETE":
            sid = request.headers.get("X-FTL-SID")
            if sid in self.sessions:
                del self.sessions[sid]
                return httpx.Response(204)
            return _error(401, "unauthorized", "Unauthorized")

        body = json.loads(request.content)
        if body.get("password") != self.password:
            return _error(401, "unauthorized", "Unauthorized")
        if self.totp:
            if "totp" not in body:
                return _error(400, "bad_request", "No 2FA token found in JSON payload")
            if body["totp"] != self.totp:
                return _error(401, "unauthorized", "Invalid 2FA token")

        if self.password == "":
            return httpx.Response(200, json={
                "session": {"valid": True, "totp": False, "sid": None, "csrf": None, "validity": -1},
            })

        n = next(self._ids)
        sid, csrf = f"sid-{n}", f"csrf-{n}"
        self.sessions[sid] = csrf
        return httpx.Response(200, json={
            "session": {
                "valid": True,
                "totp": bool(self.totp),
                "sid": sid,
                "csrf": csrf,
                "validity": self.validity,
                "message": "password correct",
            },
        })


@pytest.fixture
def pihole():
    return FakePihole()


@pytest.fixture
def config():
    from pisentinel_core.config import SentinelConfig

    return SentinelConfig(
        max_request_attempts=3,
        retry_base_delay=0,
        retry_max_delay=0,
        logout_backoff=0.001,
    )


@pytest.fixture
def make_client(pihole, config):
    from pisentinel_core.http import InstanceClient

    def factory(base_url="http://pi.hole", reauth=None, server=None):
        server = server or pihole
        return InstanceClient.from_config(
            config,
            base_url=base_url,
            instance_id="test",
            reauth=reauth,
            transport=httpx.MockTransport(server.handler),
        )

    return factory


@pytest.fixture
def context(pihole, config):
    from pisentinel_core.context import SentinelContext
    from pisentinel_core.instances import MemoryStore

    return SentinelContext.create(
        config=config,
        durable=MemoryStore(),
        volatile=MemoryStore(),
        transport=httpx.MockTransport(pihole.handler),
    )
