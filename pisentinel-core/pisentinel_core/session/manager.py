"""
Session Lifecycle Manager
=========================
Drives every instance through its session lifecycle:

    DISCONNECTED -> AUTHENTICATING -> CONNECTED -> RENEWING -> CONNECTED
                                 \\-> TOTP_PENDING (one retry with code)

Connect, renew and disconnect for one instance are serialized by that
instance's lock; different instances never wait on each other. The
re-authentication strategy handed to each client runs without the lock, since
it may fire beneath an operation that already holds it.
"""

import asyncio
import functools
import logging
import re
from typing import Optional, Dict, Iterable, Callable, Awaitable

import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type, before_sleep_log

from ..circuit_breaker import AuthCircuitBreaker
from ..config import SentinelConfig
from ..errors import ErrorKind, classify, user_message
from ..http import ClientPool, InstanceClient, InstanceError, AuthFailedError, Session
from ..instances import Instance, InstanceRegistry, InstanceUpdate, InstanceNotFoundError
from ..logging import bind_instance
from ..state import ConnectionStateStore, ConnectionPhase, InstanceState, AggregatedState
from .guard import TransitionGuard
from .models import ConnectResult, SessionStateError
from .token_store import SessionTokenStore

logger = structlog.get_logger(__name__)
_retry_logger = logging.getLogger(__name__)

TOTP_PATTERN = re.compile(r"^\d{6}$")


class SessionLifecycleManager:
    def __init__(
        self,
        registry: InstanceRegistry,
        clients: ClientPool,
        breaker: AuthCircuitBreaker,
        state: ConnectionStateStore,
        tokens: SessionTokenStore,
        config: Optional[SentinelConfig] = None,
        guard: Optional[TransitionGuard] = None,
    ):
        self.registry = registry
        self.clients = clients
        self.breaker = breaker
        self.state = state
        self.tokens = tokens
        self.config = config or SentinelConfig()
        self.guard = guard or TransitionGuard()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reauth_tasks: Dict[str, asyncio.Future] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)

        self.clients.set_reauth_factory(lambda instance_id: functools.partial(self._reauthenticate, instance_id))

    def _lock(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    async def _fan_out(self, instance_ids: Iterable[str], operation: Callable[[str], Awaitable]) -> None:
        """Run ``operation`` for every id with bounded concurrency. One failure never stops the others."""
        async def run(instance_id: str):
            async with self._semaphore:
                with bind_instance(instance_id):
                    try:
                        await operation(instance_id)
                    except Exception:
                        logger.exception("instance_operation_failed", operation=operation.__name__)

        await asyncio.gather(*(run(instance_id) for instance_id in instance_ids))

    async def _resolve_password(self, instance: Instance) -> Optional[str]:
        password = await self.registry.get_decrypted_password(instance.id)
        if password is None and instance.passwordless:
            return ""
        return password

    async def _require_instance(self, instance_id: str) -> Instance:
        instance = await self.registry.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    # ----- Startup -----

    async def initialize(self) -> None:
        """Configure clients, restore live sessions, auto-connect remembered instances."""
        await self.registry.initialize()
        instances = await self.registry.get_instances()
        self.state.set_active(await self.registry.get_active_instance_id())

        for instance in instances:
            self.clients.configure(instance.id, instance.url)
            self.state.update(instance.id, phase=ConnectionPhase.DISCONNECTED)

        await self._fan_out([i.id for i in instances], self._restore)
        logger.info("session_manager_initialized", instances=len(instances))

    async def _restore(self, instance_id: str) -> None:
        instance = await self._require_instance(instance_id)
        session = await self.tokens.load_live(instance_id)
        if session is not None:
            self.clients.get(instance_id).set_session(session)
            self.state.update(instance_id, phase=ConnectionPhase.CONNECTED, connection_error=None)
            logger.info("session_restored", instance_id=instance_id)
            await self._refresh(instance_id)
        elif instance.remember_password and instance.encrypted_master_key is not None:
            await self._auto_connect(instance_id)

    # ----- Connect -----

    async def connect(
        self,
        instance_id: str,
        password: Optional[str] = None,
        totp: Optional[str] = None,
    ) -> ConnectResult:
        """
        Authenticate an instance.

        Without new credentials an instance that is already connected with a
        live session is left alone. Otherwise any session the client still
        holds is logged out first so the server never accumulates orphans.

        Raises:
            InstanceNotFoundError: unknown instance id
        """
        instance = await self._require_instance(instance_id)
        self.breaker.reset(instance_id)

        with bind_instance(instance_id):
            async with self._lock(instance_id):
                return await self._connect_locked(instance, password, totp)

    async def _connect_locked(
        self,
        instance: Instance,
        password: Optional[str],
        totp: Optional[str],
    ) -> ConnectResult:
        instance_id = instance.id
        current = self.state.get(instance_id)
        client = self.clients.configure(instance_id, instance.url)

        if (
            password is None
            and totp is None
            and current.is_connected
            and client.session is not None
            and not client.session.is_expired()
        ):
            logger.debug("already_connected")
            return ConnectResult(success=True)

        if password is None:
            password = await self._resolve_password(instance)
        if password is None:
            message = user_message(ErrorKind.PASSWORD_UNAVAILABLE)
            self.state.update(
                instance_id,
                phase=ConnectionPhase.DISCONNECTED,
                connection_error=message,
                totp_required=False,
            )
            return ConnectResult(success=False, error=message, kind=ErrorKind.PASSWORD_UNAVAILABLE)

        totp_retry = current.phase == ConnectionPhase.TOTP_PENDING and totp is not None
        generation = self.guard.generation(instance_id)
        self.state.update(instance_id, phase=ConnectionPhase.AUTHENTICATING, connection_error=None)

        await self._await_reauth(instance_id)
        if client.has_session():
            await client.logout()

        result = await client.authenticate(password, totp)

        if not self.guard.is_current(instance_id, generation):
            await self._discard_stale(instance_id, client, result.success)
            return ConnectResult(success=False, error="Connection attempt superseded")

        if result.success:
            await self._on_authenticated(instance_id, result.session)
            await self._refresh(instance_id)
            return ConnectResult(success=True)

        if result.totp_required and not totp_retry:
            self.state.update(
                instance_id,
                phase=ConnectionPhase.TOTP_PENDING,
                totp_required=True,
                connection_error=None,
            )
            return ConnectResult(
                success=False,
                totp_required=True,
                error=user_message(ErrorKind.TOTP_REQUIRED),
                kind=ErrorKind.TOTP_REQUIRED,
            )

        kind = ErrorKind.TOTP_REQUIRED if result.totp_required else classify(result.error)
        if isinstance(result.error, AuthFailedError):
            failures = self.breaker.record_failure(instance_id)
            logger.warning("authentication_rejected", failures=failures)
        else:
            logger.warning("authentication_failed", kind=kind.value, error=str(result.error))

        message = user_message(kind)
        self.state.update(
            instance_id,
            phase=ConnectionPhase.DISCONNECTED,
            connection_error=message,
            totp_required=False,
        )
        return ConnectResult(success=False, error=message, kind=kind)

    async def submit_totp(self, instance_id: str, password: Optional[str], code: str) -> ConnectResult:
        """
        Answer a pending 2FA demand.

        Raises:
            ValueError: ``code`` is not six digits
            SessionStateError: no 2FA demand is pending
        """
        code = (code or "").strip()
        if not TOTP_PATTERN.match(code):
            raise ValueError("TOTP code must be exactly 6 digits")

        phase = self.state.get(instance_id).phase
        if phase != ConnectionPhase.TOTP_PENDING:
            raise SessionStateError(instance_id, phase, "No 2FA code was requested")

        return await self.connect(instance_id, password=password, totp=code)

    async def _auto_connect(self, instance_id: str) -> None:
        if self.state.get(instance_id).is_connected:
            return
        instance = await self._require_instance(instance_id)
        password = await self._resolve_password(instance)
        if password is None:
            logger.debug("auto_connect_skipped", instance_id=instance_id, reason="no_password")
            return
        result = await self.connect(instance_id, password=password)
        if not result.success:
            logger.debug("auto_connect_failed", instance_id=instance_id, kind=result.kind)

    async def _on_authenticated(self, instance_id: str, session: Session) -> None:
        await self.tokens.save(instance_id, session)
        self.breaker.record_success(instance_id)
        self.state.update(
            instance_id,
            phase=ConnectionPhase.CONNECTED,
            connection_error=None,
            totp_required=False,
        )

    async def _discard_stale(self, instance_id: str, client: InstanceClient, authenticated: bool) -> None:
        """An authenticate finished after its instance moved on; drop the result."""
        logger.info("stale_authentication_discarded", instance_id=instance_id)
        if authenticated and self.clients.has(instance_id) and self.clients.get(instance_id) is client:
            await client.logout()
        else:
            client.clear_session()

    async def _reauthenticate(self, instance_id: str) -> bool:
        """
        401 strategy installed on every client. Lock-free; honours the circuit breaker.

        Concurrent 401s for one instance share a single in-flight attempt, so
        the server only ever sees one login and the breaker one failure.
        """
        task = self._reauth_tasks.get(instance_id)
        if task is None:
            task = asyncio.ensure_future(self._reauthenticate_once(instance_id))
            self._reauth_tasks[instance_id] = task
            task.add_done_callback(functools.partial(self._reauth_finished, instance_id))
        else:
            logger.debug("reauth_joined_inflight", instance_id=instance_id)
        return await asyncio.shield(task)

    def _reauth_finished(self, instance_id: str, task: asyncio.Future) -> None:
        if self._reauth_tasks.get(instance_id) is task:
            del self._reauth_tasks[instance_id]

    async def _await_reauth(self, instance_id: str) -> None:
        """Let an in-flight re-auth settle before replacing the session under the lock."""
        task = self._reauth_tasks.get(instance_id)
        if task is not None:
            await asyncio.wait([task])

    async def _reauthenticate_once(self, instance_id: str) -> bool:
        if self.breaker.is_open(instance_id):
            logger.warning("auto_reauth_skipped_circuit_open", instance_id=instance_id)
            return False

        instance = await self.registry.get_instance(instance_id)
        if instance is None:
            return False
        password = await self._resolve_password(instance)
        if password is None:
            return False

        client = self.clients.get(instance_id)
        generation = self.guard.generation(instance_id)
        if client.has_session():
            await client.logout()

        result = await client.authenticate(password)
        if not self.guard.is_current(instance_id, generation):
            await self._discard_stale(instance_id, client, result.success)
            return False

        if result.success:
            await self._on_authenticated(instance_id, result.session)
            return True

        if isinstance(result.error, AuthFailedError):
            self.breaker.record_failure(instance_id)
        return False

    # ----- Keepalive -----

    async def keepalive(self) -> None:
        """Ping or renew every connected instance whose circuit is closed."""
        eligible = []
        for instance_id in self.state.connected_ids():
            if self.guard.in_transition(instance_id):
                logger.debug("keepalive_skipped_in_transition", instance_id=instance_id)
            elif self.breaker.is_open(instance_id):
                logger.debug("keepalive_skipped_circuit_open", instance_id=instance_id)
            elif self.clients.has(instance_id):
                eligible.append(instance_id)
        await self._fan_out(eligible, self._keepalive_one)

    async def _keepalive_one(self, instance_id: str) -> None:
        async with self._lock(instance_id):
            client = self.clients.get(instance_id)
            session = client.session
            if session is None:
                return
            generation = self.guard.generation(instance_id)

            remaining = session.remaining()
            if remaining is None or remaining > self.config.aggressive_renewal_threshold:
                try:
                    stats = await client.get_stats(allow_reauth=False)
                except AuthFailedError:
                    logger.debug("keepalive_ping_unauthorized")
                except InstanceError as e:
                    # Transient; next tick tries again
                    logger.warning("keepalive_ping_failed", error=str(e))
                    return
                else:
                    if not self.guard.is_current(instance_id, generation):
                        return
                    extended = session.extended()
                    client.set_session(extended)
                    await self.tokens.save(instance_id, extended)
                    self.breaker.record_success(instance_id)
                    self.state.update(instance_id, stats=stats)
                    return

            await self._renew_locked(instance_id, generation)

    async def _renew_locked(self, instance_id: str, generation: int) -> None:
        """Replace the session: logout (best-effort) then authenticate with the stored password."""
        instance = await self.registry.get_instance(instance_id)
        if instance is None:
            return
        client = self.clients.get(instance_id)
        old_session = client.session

        password = await self._resolve_password(instance)
        if password is None:
            if old_session is None or old_session.is_expired():
                await self._mark_expired(instance_id, client)
            return

        await self._await_reauth(instance_id)
        self.state.update(instance_id, phase=ConnectionPhase.RENEWING)
        logged_out = await client.logout()
        result = await client.authenticate(password)

        if not self.guard.is_current(instance_id, generation):
            await self._discard_stale(instance_id, client, result.success)
            return

        if result.success:
            await self._on_authenticated(instance_id, result.session)
            logger.info("session_renewed", validity=result.session.validity)
            return

        if isinstance(result.error, AuthFailedError):
            failures = self.breaker.record_failure(instance_id)
            logger.warning("session_renewal_rejected", failures=failures)
            await self._mark_expired(instance_id, client)
            return

        # Transport failure: the old session survives only if logout never reached the server
        if not logged_out and old_session is not None and not old_session.is_expired():
            client.set_session(old_session)
            self.state.update(instance_id, phase=ConnectionPhase.CONNECTED)
            logger.warning("session_renewal_deferred", error=str(result.error))
        else:
            await self._mark_expired(instance_id, client)

    async def _mark_expired(self, instance_id: str, client: InstanceClient) -> None:
        client.clear_session()
        await self.tokens.clear(instance_id)
        self.state.update(
            instance_id,
            phase=ConnectionPhase.DISCONNECTED,
            connection_error=user_message(ErrorKind.SESSION_EXPIRED),
        )

    # ----- Disconnect -----

    async def disconnect(self, instance_id: str) -> bool:
        """
        Log out and clear every trace of the session.

        The server logout is retried a few times; whatever its outcome the
        local session, stored token and public state are cleared. Always
        returns True.
        """
        self.guard.bump(instance_id)
        with bind_instance(instance_id):
            async with self._lock(instance_id):
                client = self.clients.get(instance_id) if self.clients.has(instance_id) else None
                session = client.session if client is not None else None
                if client is not None:
                    client.clear_session()

                if session is not None and client.base_url:
                    await self._invalidate_with_retry(client, session)

                await self.tokens.clear(instance_id)
                self.state.update(
                    instance_id,
                    phase=ConnectionPhase.DISCONNECTED,
                    connection_error=None,
                    totp_required=False,
                )
        logger.info("disconnected", instance_id=instance_id)
        return True

    async def _invalidate_with_retry(self, client: InstanceClient, session: Session) -> None:
        """Bounded server logout; giving up is logged, never raised."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(InstanceError),
            stop=stop_after_attempt(self.config.logout_attempts),
            wait=wait_exponential(multiplier=self.config.logout_backoff, max=self.config.logout_backoff * 8),
            before_sleep=before_sleep_log(_retry_logger, logging.DEBUG),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await client.invalidate_session(session)
        except InstanceError as e:
            logger.warning("server_logout_abandoned", attempts=self.config.logout_attempts, error=str(e))

    # ----- Active instance -----

    async def set_active_instance(self, instance_id: Optional[str]) -> None:
        """
        Switch the active instance (None = "All" mode), auto-connecting what
        becomes visible.

        Raises:
            InstanceNotFoundError: unknown instance id
        """
        if instance_id is None:
            affected = [i.id for i in await self.registry.get_instances()]
        else:
            affected = [instance_id]

        with self.guard.transition(affected):
            await self.registry.set_active_instance(instance_id)
            self.state.set_active(instance_id)

            if instance_id is None:
                await self._fan_out(affected, self._auto_connect)
            else:
                await self._auto_connect(instance_id)
                if self.state.get(instance_id).is_connected and not self.state.is_cache_valid(instance_id):
                    await self._refresh(instance_id)

    # ----- Stats -----

    async def refresh_stats(self, instance_id: str) -> bool:
        """Fetch stats and blocking status. Skipped while the instance is in transition."""
        if self.guard.in_transition(instance_id):
            logger.debug("refresh_skipped_in_transition", instance_id=instance_id)
            return False
        with bind_instance(instance_id):
            return await self._refresh_locked(instance_id)

    async def refresh_all(self) -> None:
        ids = [i for i in self.state.connected_ids() if not self.guard.in_transition(i)]
        await self._fan_out(ids, self._refresh_locked)

    async def _refresh_locked(self, instance_id: str) -> bool:
        async with self._lock(instance_id):
            return await self._refresh(instance_id)

    async def _refresh(self, instance_id: str) -> bool:
        """Caller holds the instance lock, or is startup/switch work fenced by the guard."""
        if not self.clients.has(instance_id):
            return False
        client = self.clients.get(instance_id)
        if not client.has_session():
            return False
        generation = self.guard.generation(instance_id)

        try:
            stats = await client.get_stats()
            blocking = await client.get_blocking_status()
        except AuthFailedError:
            if self.guard.is_current(instance_id, generation):
                await self._mark_expired(instance_id, client)
            return False
        except InstanceError as e:
            logger.warning("stats_refresh_failed", instance_id=instance_id, error=str(e))
            return False

        if not self.guard.is_current(instance_id, generation):
            return False
        self.state.update(
            instance_id,
            stats=stats,
            blocking_enabled=(blocking or {}).get("blocking") == "enabled",
            blocking_timer=(blocking or {}).get("timer"),
        )
        return True

    async def set_blocking(self, instance_id: str, enabled: bool, timer: Optional[int] = None) -> bool:
        """Toggle blocking on one connected instance and mirror the answer into state."""
        client = self.clients.get(instance_id)
        with bind_instance(instance_id):
            result = await client.set_blocking(enabled, timer)
        self.state.update(
            instance_id,
            blocking_enabled=(result or {}).get("blocking", "enabled" if enabled else "disabled") == "enabled",
            blocking_timer=(result or {}).get("timer"),
        )
        return True

    # ----- Instance CRUD -----

    async def add_instance(
        self,
        name: Optional[str],
        url: str,
        password: str,
        remember_password: bool = False,
        connect: bool = True,
    ) -> Instance:
        instance = await self.registry.add_instance(name, url, password, remember_password)
        self.clients.configure(instance.id, instance.url)
        self.state.reset(instance.id)
        if await self.registry.get_active_instance_id() == instance.id:
            self.state.set_active(instance.id)
        if connect:
            await self.connect(instance.id, password=password)
        return instance

    async def update_instance(self, instance_id: str, update: InstanceUpdate) -> Optional[Instance]:
        """Apply an update; a new URL or password ends the current session and reconnects."""
        before = await self.registry.get_instance(instance_id)
        if before is None:
            return None

        instance = await self.registry.update_instance(instance_id, update)
        credentials_changed = instance.url != before.url or update.is_set("password")
        if credentials_changed:
            if self.state.get(instance_id).is_connected:
                await self.disconnect(instance_id)
            self.clients.configure(instance_id, instance.url)
            await self.connect(instance_id, password=update.password if update.is_set("password") else None)
        return instance

    async def delete_instance(self, instance_id: str) -> bool:
        """Remove an instance; any in-flight work for it is invalidated."""
        if await self.registry.get_instance(instance_id) is None:
            return False
        self.guard.bump(instance_id)
        await self.disconnect(instance_id)

        deleted = await self.registry.delete_instance(instance_id)
        self.guard.bump(instance_id)
        self.guard.forget(instance_id)
        await self.clients.remove(instance_id)
        await self.tokens.clear(instance_id)
        self.breaker.forget(instance_id)
        self.state.remove(instance_id)
        self._locks.pop(instance_id, None)
        self.state.set_active(await self.registry.get_active_instance_id())
        return deleted

    # ----- Queries -----

    async def has_password(self, instance_id: str) -> bool:
        return await self.registry.has_password(instance_id)

    def get_state(self, instance_id: str) -> InstanceState:
        return self.state.get(instance_id)

    def get_aggregated_state(self) -> AggregatedState:
        return self.state.aggregated()

    async def aclose(self) -> None:
        await self.clients.aclose()
