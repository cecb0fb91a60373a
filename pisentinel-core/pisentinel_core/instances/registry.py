"""
Instance Registry
=================
CRUD for configured Pi-hole servers plus per-instance credential custody.

Each instance gets its own random master key. The Pi-hole password is
encrypted under it; the master key itself lives in memory and in the
volatile store. With ``remember_password`` the master key is additionally
persisted, encrypted under a fixed, non-secret entropy string. That mode only
obfuscates: anyone holding the durable store can recover the password.
"""

import asyncio
from typing import Optional, List, Dict
from urllib.parse import urlparse

import structlog

from ..crypto import CredentialCipher, DecryptionError, generate_master_password
from ..http.client import normalize_url
from .models import Instance, InstanceCollection, InstanceUpdate, GlobalSettings, LegacyConfig
from .storage import KeyValueStore

logger = structlog.get_logger(__name__)

# Durable keys
INSTANCES_KEY = "pisentinel_instances"
LEGACY_CONFIG_KEY = "pisentinel_config"

# Volatile keys
MASTER_KEY_PREFIX = "masterKey_"
INSTANCE_SESSION_PREFIX = "pisentinel_instance_session_"
LEGACY_SESSION_KEY = "pisentinel_session"
LEGACY_MASTER_KEY = "masterKey"

EXTENSION_ENTROPY = "PiSentinel-v1-MasterKey-Encryption"


class InstanceNotFoundError(LookupError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance not found: {instance_id}")


def master_key_key(instance_id: str) -> str:
    return f"{MASTER_KEY_PREFIX}{instance_id}"


def session_key(instance_id: str) -> str:
    return f"{INSTANCE_SESSION_PREFIX}{instance_id}"


class InstanceRegistry:
    """
    Owns the instance collection and every instance's secrets.

    Usage:
        registry = InstanceRegistry(durable=JsonFileStore(path), volatile=MemoryStore())
        await registry.initialize()
        instance = await registry.add_instance("Home", "http://pi.hole", "secret")
        password = await registry.get_decrypted_password(instance.id)
    """

    def __init__(
        self,
        durable: KeyValueStore,
        volatile: KeyValueStore,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.durable = durable
        self.volatile = volatile
        self.cipher = cipher or CredentialCipher()
        self._master_keys: Dict[str, str] = {}
        self._cache: Optional[InstanceCollection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Migrate legacy data if needed and load master keys from the volatile store."""
        await self.migrate_if_needed()
        collection = await self.load()
        for instance in collection.instances:
            master_key = await self.volatile.get(master_key_key(instance.id))
            if master_key:
                self._master_keys[instance.id] = master_key
        logger.info("instance_registry_initialized", instances=len(collection.instances))

    # ----- Collection persistence -----

    async def load(self) -> InstanceCollection:
        if self._cache is not None:
            return self._cache
        raw = await self.durable.get(INSTANCES_KEY)
        self._cache = InstanceCollection.model_validate(raw) if raw else InstanceCollection()
        return self._cache

    async def _save(self, collection: InstanceCollection) -> None:
        await self.durable.set(INSTANCES_KEY, collection.model_dump(mode="json"))
        self._cache = collection

    def invalidate_cache(self) -> None:
        """Forget the cached collection (another writer changed the durable store)."""
        self._cache = None

    # ----- Queries -----

    async def get_instances(self) -> List[Instance]:
        return list((await self.load()).instances)

    async def get_instance(self, instance_id: str) -> Optional[Instance]:
        return (await self.load()).find(instance_id)

    async def get_active_instance_id(self) -> Optional[str]:
        return (await self.load()).active_instance_id

    async def get_global_settings(self) -> GlobalSettings:
        return (await self.load()).global_settings

    @staticmethod
    def display_name(instance: Instance) -> str:
        """Instance name, falling back to the URL's hostname."""
        if instance.name:
            return instance.name
        return urlparse(instance.url).hostname or instance.url

    # ----- Master keys -----

    async def set_master_key(self, instance_id: str, master_key: str) -> None:
        self._master_keys[instance_id] = master_key
        await self.volatile.set(master_key_key(instance_id), master_key)

    async def _resolve_master_key(self, instance: Instance, use_persisted: bool) -> Optional[str]:
        """Memory, then volatile store, then (optionally) the persisted encrypted copy."""
        master_key = self._master_keys.get(instance.id)
        if master_key:
            return master_key

        master_key = await self.volatile.get(master_key_key(instance.id))
        if master_key:
            self._master_keys[instance.id] = master_key
            return master_key

        if use_persisted and instance.encrypted_master_key is not None:
            try:
                master_key = await self.cipher.decrypt(instance.encrypted_master_key, EXTENSION_ENTROPY)
            except DecryptionError as e:
                logger.warning("master_key_recovery_failed", instance_id=instance.id, reason=e.reason)
                return None
            await self.set_master_key(instance.id, master_key)
            logger.debug("master_key_recovered", instance_id=instance.id)
            return master_key

        return None

    async def get_decrypted_password(self, instance_id: str) -> Optional[str]:
        """
        Decrypt an instance's password.

        Returns None when the instance, its password blob, or a usable master
        key is missing, or when decryption fails. Never raises for those cases.
        """
        instance = await self.get_instance(instance_id)
        if instance is None or instance.encrypted_password is None:
            logger.debug("password_unavailable", instance_id=instance_id, reason="no_encrypted_password")
            return None

        master_key = await self._resolve_master_key(instance, use_persisted=instance.remember_password)
        if master_key is None:
            logger.info("password_unavailable", instance_id=instance_id, reason="no_master_key")
            return None

        try:
            return await self.cipher.decrypt(instance.encrypted_password, master_key)
        except DecryptionError as e:
            logger.warning("password_decryption_failed", instance_id=instance_id, reason=e.reason)
            return None

    async def has_password(self, instance_id: str) -> bool:
        return await self.get_decrypted_password(instance_id) is not None

    # ----- Mutations -----

    async def add_instance(
        self,
        name: Optional[str],
        url: str,
        password: str,
        remember_password: bool = False,
    ) -> Instance:
        master_key = generate_master_password()
        encrypted_password = await self.cipher.encrypt(password, master_key)
        encrypted_master_key = None
        if remember_password:
            encrypted_master_key = await self.cipher.encrypt(master_key, EXTENSION_ENTROPY)

        instance = Instance(
            name=name or None,
            url=normalize_url(url),
            passwordless=len(password) == 0,
            remember_password=remember_password,
            encrypted_password=encrypted_password,
            encrypted_master_key=encrypted_master_key,
        )
        await self.set_master_key(instance.id, master_key)

        async with self._write_lock:
            collection = (await self.load()).model_copy(deep=True)
            collection.instances.append(instance)
            if len(collection.instances) == 1:
                collection.active_instance_id = instance.id
            await self._save(collection)

        logger.info("instance_added", instance_id=instance.id, remember_password=remember_password)
        return instance

    async def update_instance(self, instance_id: str, update: InstanceUpdate) -> Optional[Instance]:
        """
        Apply a partial update. Returns None for an unknown id.

        A new password is encrypted under the existing, recovered or freshly
        generated master key. Turning ``remember_password`` on without a new
        password needs a resolvable master key and is otherwise ignored.
        """
        async with self._write_lock:
            collection = (await self.load()).model_copy(deep=True)
            index = collection.index_of(instance_id)
            if index == -1:
                return None
            instance = collection.instances[index]

            if update.is_set("name"):
                instance.name = update.name or None

            if update.is_set("url") and update.url is not None:
                instance.url = normalize_url(update.url)

            if update.is_set("password") and update.password is not None:
                master_key = await self._resolve_master_key(instance, use_persisted=True)
                if master_key is None:
                    master_key = generate_master_password()
                    await self.set_master_key(instance_id, master_key)

                instance.encrypted_password = await self.cipher.encrypt(update.password, master_key)
                instance.passwordless = len(update.password) == 0

                remember = instance.remember_password
                if update.is_set("remember_password") and update.remember_password is not None:
                    remember = update.remember_password
                instance.remember_password = remember
                instance.encrypted_master_key = (
                    await self.cipher.encrypt(master_key, EXTENSION_ENTROPY) if remember else None
                )

            elif update.is_set("remember_password") and update.remember_password is not None:
                if update.remember_password:
                    master_key = await self._resolve_master_key(instance, use_persisted=True)
                    if master_key is not None:
                        instance.remember_password = True
                        instance.encrypted_master_key = await self.cipher.encrypt(master_key, EXTENSION_ENTROPY)
                    else:
                        logger.warning(
                            "remember_password_unavailable",
                            instance_id=instance_id,
                            hint="re-enter the password to enable",
                        )
                else:
                    instance.remember_password = False
                    instance.encrypted_master_key = None

            collection.instances[index] = instance
            await self._save(collection)

        logger.info("instance_updated", instance_id=instance_id, fields=sorted(update.model_fields_set))
        return instance

    async def delete_instance(self, instance_id: str) -> bool:
        async with self._write_lock:
            collection = (await self.load()).model_copy(deep=True)
            index = collection.index_of(instance_id)
            if index == -1:
                return False
            del collection.instances[index]
            if collection.active_instance_id == instance_id:
                collection.active_instance_id = collection.instances[0].id if collection.instances else None
            await self._save(collection)

        self._master_keys.pop(instance_id, None)
        await self.volatile.remove(master_key_key(instance_id))
        await self.volatile.remove(session_key(instance_id))

        logger.info("instance_deleted", instance_id=instance_id)
        return True

    async def set_active_instance(self, instance_id: Optional[str]) -> None:
        """Select one instance, or None for "All" mode."""
        async with self._write_lock:
            collection = (await self.load()).model_copy(deep=True)
            if instance_id is not None and collection.find(instance_id) is None:
                raise InstanceNotFoundError(instance_id)
            collection.active_instance_id = instance_id
            await self._save(collection)
        logger.info("active_instance_set", instance_id=instance_id or "all")

    async def update_global_settings(
        self,
        notifications_enabled: Optional[bool] = None,
        refresh_interval: Optional[int] = None,
    ) -> GlobalSettings:
        async with self._write_lock:
            collection = (await self.load()).model_copy(deep=True)
            if notifications_enabled is not None:
                collection.global_settings.notifications_enabled = notifications_enabled
            if refresh_interval is not None:
                collection.global_settings.refresh_interval = refresh_interval
            await self._save(collection)
        return collection.global_settings

    # ----- Migration -----

    async def migrate_if_needed(self) -> Optional[Instance]:
        """
        Convert a single-server legacy record into a one-instance collection.

        Runs at most once: an existing collection key stops it. The legacy
        record is left in place.
        """
        if await self.durable.contains(INSTANCES_KEY):
            return None

        raw = await self.durable.get(LEGACY_CONFIG_KEY)
        if not raw:
            return None
        legacy = LegacyConfig.model_validate(raw)
        if not legacy.pihole_url:
            return None

        logger.info("migrating_legacy_config")
        instance = Instance(
            name=None,
            url=normalize_url(legacy.pihole_url),
            remember_password=legacy.remember_password,
            encrypted_password=legacy.encrypted_password,
            encrypted_master_key=legacy.encrypted_master_key,
        )
        collection = InstanceCollection(
            instances=[instance],
            active_instance_id=instance.id,
            global_settings=GlobalSettings(
                notifications_enabled=legacy.notifications_enabled,
                refresh_interval=legacy.refresh_interval,
            ),
        )
        await self._save(collection)

        legacy_session = await self.volatile.get(LEGACY_SESSION_KEY)
        if legacy_session:
            await self.volatile.set(session_key(instance.id), legacy_session)
            await self.volatile.remove(LEGACY_SESSION_KEY)

        legacy_master_key = await self.volatile.get(LEGACY_MASTER_KEY)
        if legacy_master_key:
            await self.set_master_key(instance.id, legacy_master_key)
            await self.volatile.remove(LEGACY_MASTER_KEY)

        logger.info("migration_complete", instance_id=instance.id)
        return instance
