"""
PiSentinel Context
==================
Builds every component once per process and wires them together.

Usage:
    context = SentinelContext.create()
    await context.start()
    ...
    await context.aclose()
"""

from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog

from .circuit_breaker import AuthCircuitBreaker, CircuitBreakerConfig
from .config import SentinelConfig
from .crypto import CredentialCipher
from .http import ClientPool
from .instances import InstanceRegistry, KeyValueStore, MemoryStore, JsonFileStore
from .session import SessionLifecycleManager, SessionTokenStore, SessionScheduler
from .state import ConnectionStateStore

logger = structlog.get_logger(__name__)


@dataclass
class SentinelContext:
    config: SentinelConfig
    registry: InstanceRegistry
    clients: ClientPool
    breaker: AuthCircuitBreaker
    state: ConnectionStateStore
    tokens: SessionTokenStore
    manager: SessionLifecycleManager
    scheduler: SessionScheduler
    volatile: KeyValueStore = field(default_factory=MemoryStore)

    @classmethod
    def create(
        cls,
        config: Optional[SentinelConfig] = None,
        durable: Optional[KeyValueStore] = None,
        volatile: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SentinelContext":
        config = config or SentinelConfig()
        durable = durable if durable is not None else JsonFileStore(config.storage_path)
        volatile = volatile if volatile is not None else MemoryStore()

        registry = InstanceRegistry(durable, volatile, CredentialCipher(config.kdf_iterations))
        clients = ClientPool(config, transport=transport)
        breaker = AuthCircuitBreaker(CircuitBreakerConfig(fail_threshold=config.max_consecutive_auth_failures))
        state = ConnectionStateStore(stats_cache_ttl=config.stats_cache_ttl)
        tokens = SessionTokenStore(volatile, default_validity=config.default_session_validity)
        manager = SessionLifecycleManager(registry, clients, breaker, state, tokens, config)
        scheduler = SessionScheduler(manager)

        return cls(
            config=config,
            registry=registry,
            clients=clients,
            breaker=breaker,
            state=state,
            tokens=tokens,
            manager=manager,
            scheduler=scheduler,
            volatile=volatile,
        )

    async def start(self, schedule: bool = True) -> None:
        """Initialize sessions and, optionally, start the background scheduler."""
        await self.manager.initialize()
        if schedule:
            self.scheduler.start()
        logger.info("sentinel_started", scheduled=schedule)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.manager.aclose()
