"""
PiSentinel Core
===============
Credential encryption and multi-instance session lifecycle for Pi-hole v6.

Usage:
    from pisentinel_core import SentinelContext, setup_logging

    setup_logging(service_name="pisentinel")
    context = SentinelContext.create()
    await context.start()

    instance = await context.manager.add_instance("Home", "http://pi.hole", "secret")
    print(context.state.get(instance.id))
"""

__version__ = "1.0.0"

from .config import SentinelConfig
from .context import SentinelContext
from .crypto import CredentialCipher, EncryptedBlob, DecryptionError, generate_master_password
from .http import InstanceClient, ClientPool, Session, AuthResult, InstanceError
from .instances import Instance, InstanceUpdate, InstanceRegistry, MemoryStore, JsonFileStore
from .circuit_breaker import AuthCircuitBreaker
from .session import SessionLifecycleManager, SessionScheduler, ConnectResult
from .state import ConnectionStateStore, ConnectionPhase, InstanceState
from .errors import ErrorKind, classify, user_message
from .logging import setup_logging

__all__ = [
    "__version__",
    "SentinelConfig",
    "SentinelContext",
    "CredentialCipher",
    "EncryptedBlob",
    "DecryptionError",
    "generate_master_password",
    "InstanceClient",
    "ClientPool",
    "Session",
    "AuthResult",
    "InstanceError",
    "Instance",
    "InstanceUpdate",
    "InstanceRegistry",
    "MemoryStore",
    "JsonFileStore",
    "AuthCircuitBreaker",
    "SessionLifecycleManager",
    "SessionScheduler",
    "ConnectResult",
    "ConnectionStateStore",
    "ConnectionPhase",
    "InstanceState",
    "ErrorKind",
    "classify",
    "user_message",
    "setup_logging",
]
