"""
PiSentinel Core - Instances
===========================
Configured Pi-hole servers, their encrypted credentials, and storage.
"""

from .models import (
    Instance,
    InstanceCollection,
    InstanceUpdate,
    GlobalSettings,
    LegacyConfig,
)
from .storage import KeyValueStore, MemoryStore, JsonFileStore
from .registry import (
    InstanceRegistry,
    InstanceNotFoundError,
    EXTENSION_ENTROPY,
    INSTANCES_KEY,
    LEGACY_CONFIG_KEY,
    LEGACY_SESSION_KEY,
    LEGACY_MASTER_KEY,
    master_key_key,
    session_key,
)

__all__ = [
    # Models
    "Instance",
    "InstanceCollection",
    "InstanceUpdate",
    "GlobalSettings",
    "LegacyConfig",
    # Storage
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    # Registry
    "InstanceRegistry",
    "InstanceNotFoundError",
    "EXTENSION_ENTROPY",
    "INSTANCES_KEY",
    "LEGACY_CONFIG_KEY",
    "LEGACY_SESSION_KEY",
    "LEGACY_MASTER_KEY",
    "master_key_key",
    "session_key",
]
