"""
Instance Registry Tests
=======================
CRUD, credential custody and legacy migration.
"""

import pytest


@pytest.fixture
def stores():
    from pisentinel_core.instances import MemoryStore

    return MemoryStore(), MemoryStore()


@pytest.fixture
def registry(stores):
    from pisentinel_core.instances import InstanceRegistry

    durable, volatile = stores
    return InstanceRegistry(durable, volatile)


class TestInstanceCrud:
    """Tests for add, update, delete and activation."""

    @pytest.mark.asyncio
    async def test_add_encrypts_password(self, registry, stores):
        from pisentinel_core.instances import INSTANCES_KEY

        instance = await registry.add_instance("Home", "http://pi.hole/ ", "secret")

        assert instance.url == "http://pi.hole"
        assert instance.passwordless is False
        assert instance.encrypted_master_key is None
        assert await registry.get_decrypted_password(instance.id) == "secret"

        stored = await stores[0].get(INSTANCES_KEY)
        assert "secret" not in str(stored)

    @pytest.mark.asyncio
    async def test_first_instance_becomes_active(self, registry):
        first = await registry.add_instance("a", "http://a.lan", "x")
        await registry.add_instance("b", "http://b.lan", "y")

        assert await registry.get_active_instance_id() == first.id

    @pytest.mark.asyncio
    async def test_empty_password_is_passwordless(self, registry):
        instance = await registry.add_instance(None, "http://pi.hole", "")

        assert instance.passwordless is True
        assert await registry.get_decrypted_password(instance.id) == ""

    @pytest.mark.asyncio
    async def test_each_instance_has_its_own_master_key(self, registry, stores):
        from pisentinel_core.instances import master_key_key

        first = await registry.add_instance("a", "http://a.lan", "x")
        second = await registry.add_instance("b", "http://b.lan", "y")

        volatile = stores[1]
        assert await volatile.get(master_key_key(first.id)) != await volatile.get(master_key_key(second.id))

    @pytest.mark.asyncio
    async def test_update_name_and_url(self, registry):
        from pisentinel_core.instances import InstanceUpdate

        instance = await registry.add_instance("Home", "http://pi.hole", "secret")

        updated = await registry.update_instance(instance.id, InstanceUpdate(name="", url="http://new.lan/"))

        assert updated.name is None
        assert updated.url == "http://new.lan"
        assert await registry.get_decrypted_password(instance.id) == "secret"

    @pytest.mark.asyncio
    async def test_update_password(self, registry):
        from pisentinel_core.instances import InstanceUpdate

        instance = await registry.add_instance("Home", "http://pi.hole", "secret")

        await registry.update_instance(instance.id, InstanceUpdate(password="rotated", remember_password=True))

        stored = await registry.get_instance(instance.id)
        assert stored.remember_password is True
        assert stored.encrypted_master_key is not None
        assert await registry.get_decrypted_password(instance.id) == "rotated"

    @pytest.mark.asyncio
    async def test_turn_off_remember(self, registry):
        from pisentinel_core.instances import InstanceUpdate

        instance = await registry.add_instance("Home", "http://pi.hole", "secret", remember_password=True)

        updated = await registry.update_instance(instance.id, InstanceUpdate(remember_password=False))

        assert updated.remember_password is False
        assert updated.encrypted_master_key is None

    @pytest.mark.asyncio
    async def test_remember_needs_master_key(self, stores):
        """Without a resolvable master key, turning on remember is ignored."""
        from pisentinel_core.instances import InstanceRegistry, InstanceUpdate, MemoryStore

        durable, volatile = stores
        registry = InstanceRegistry(durable, volatile)
        instance = await registry.add_instance("Home", "http://pi.hole", "secret")

        restarted = InstanceRegistry(durable, MemoryStore())
        updated = await restarted.update_instance(instance.id, InstanceUpdate(remember_password=True))

        assert updated.remember_password is False

    @pytest.mark.asyncio
    async def test_update_unknown(self, registry):
        from pisentinel_core.instances import InstanceUpdate

        assert await registry.update_instance("missing", InstanceUpdate(name="x")) is None

    @pytest.mark.asyncio
    async def test_delete_reassigns_active_and_clears_keys(self, registry, stores):
        from pisentinel_core.instances import master_key_key, session_key

        first = await registry.add_instance("a", "http://a.lan", "x")
        second = await registry.add_instance("b", "http://b.lan", "y")
        volatile = stores[1]
        await volatile.set(session_key(first.id), {"v": 1})

        assert await registry.delete_instance(first.id) is True

        assert await registry.get_active_instance_id() == second.id
        assert await volatile.contains(master_key_key(first.id)) is False
        assert await volatile.contains(session_key(first.id)) is False
        assert await registry.delete_instance(first.id) is False

    @pytest.mark.asyncio
    async def test_delete_last_leaves_all_mode(self, registry):
        instance = await registry.add_instance("a", "http://a.lan", "x")

        await registry.delete_instance(instance.id)

        assert await registry.get_active_instance_id() is None
        assert await registry.get_instances() == []

    @pytest.mark.asyncio
    async def test_set_active(self, registry):
        from pisentinel_core.instances import InstanceNotFoundError

        instance = await registry.add_instance("a", "http://a.lan", "x")

        await registry.set_active_instance(None)
        assert await registry.get_active_instance_id() is None
        await registry.set_active_instance(instance.id)
        assert await registry.get_active_instance_id() == instance.id
        with pytest.raises(InstanceNotFoundError):
            await registry.set_active_instance("missing")

    @pytest.mark.asyncio
    async def test_global_settings(self, registry):
        settings = await registry.update_global_settings(refresh_interval=60)

        assert settings.refresh_interval == 60
        assert settings.notifications_enabled is True
        assert (await registry.get_global_settings()).refresh_interval == 60

    def test_display_name(self):
        from pisentinel_core.instances import Instance, InstanceRegistry

        assert InstanceRegistry.display_name(Instance(name="Home", url="http://pi.hole")) == "Home"
        assert InstanceRegistry.display_name(Instance(url="https://10.0.0.2:8443")) == "10.0.0.2"


class TestPasswordCustody:
    """Tests for master key resolution."""

    @pytest.mark.asyncio
    async def test_forgotten_without_remember(self, stores):
        """A new process without the volatile master key cannot decrypt."""
        from pisentinel_core.instances import InstanceRegistry, MemoryStore

        durable, volatile = stores
        instance = await InstanceRegistry(durable, volatile).add_instance("Home", "http://pi.hole", "secret")

        restarted = InstanceRegistry(durable, MemoryStore())
        await restarted.initialize()

        assert await restarted.get_decrypted_password(instance.id) is None
        assert await restarted.has_password(instance.id) is False

    @pytest.mark.asyncio
    async def test_recovered_with_remember(self, stores):
        from pisentinel_core.instances import InstanceRegistry, MemoryStore, master_key_key

        durable, volatile = stores
        instance = await InstanceRegistry(durable, volatile).add_instance(
            "Home", "http://pi.hole", "secret", remember_password=True
        )

        fresh_volatile = MemoryStore()
        restarted = InstanceRegistry(durable, fresh_volatile)
        await restarted.initialize()

        assert await restarted.get_decrypted_password(instance.id) == "secret"
        assert await fresh_volatile.contains(master_key_key(instance.id))

    @pytest.mark.asyncio
    async def test_volatile_master_key_survives_registry_restart(self, stores):
        from pisentinel_core.instances import InstanceRegistry

        durable, volatile = stores
        instance = await InstanceRegistry(durable, volatile).add_instance("Home", "http://pi.hole", "secret")

        restarted = InstanceRegistry(durable, volatile)
        await restarted.initialize()

        assert await restarted.get_decrypted_password(instance.id) == "secret"

    @pytest.mark.asyncio
    async def test_unknown_instance(self, registry):
        assert await registry.get_decrypted_password("missing") is None


class TestMigration:
    """Tests for single-instance to multi-instance migration."""

    LEGACY_URL = "http://legacy.lan/"

    async def _legacy_stores(self):
        from pisentinel_core.crypto import CredentialCipher
        from pisentinel_core.instances import (
            MemoryStore,
            LEGACY_CONFIG_KEY,
            LEGACY_MASTER_KEY,
            LEGACY_SESSION_KEY,
        )

        cipher = CredentialCipher()
        durable, volatile = MemoryStore(), MemoryStore()
        blob = await cipher.encrypt("legacy-secret", "legacy-master")
        await durable.set(LEGACY_CONFIG_KEY, {
            "piholeUrl": self.LEGACY_URL,
            "encryptedPassword": blob.model_dump(),
            "rememberPassword": False,
            "notificationsEnabled": False,
            "refreshInterval": 45,
        })
        await volatile.set(LEGACY_MASTER_KEY, "legacy-master")
        await volatile.set(LEGACY_SESSION_KEY, {"sid": "s", "csrf": "c", "expiresAt": 1})
        return durable, volatile

    @pytest.mark.asyncio
    async def test_migrates_once(self):
        from pisentinel_core.instances import (
            InstanceRegistry,
            LEGACY_CONFIG_KEY,
            LEGACY_MASTER_KEY,
            LEGACY_SESSION_KEY,
            session_key,
        )

        durable, volatile = await self._legacy_stores()
        registry = InstanceRegistry(durable, volatile)

        await registry.initialize()

        instances = await registry.get_instances()
        assert len(instances) == 1
        instance = instances[0]
        assert instance.url == "http://legacy.lan"
        assert instance.name is None
        assert await registry.get_active_instance_id() == instance.id
        assert (await registry.get_global_settings()).refresh_interval == 45
        assert await registry.get_decrypted_password(instance.id) == "legacy-secret"
        assert await volatile.contains(session_key(instance.id))
        assert await volatile.contains(LEGACY_SESSION_KEY) is False
        assert await volatile.contains(LEGACY_MASTER_KEY) is False
        assert await durable.contains(LEGACY_CONFIG_KEY)

        again = InstanceRegistry(durable, volatile)
        assert await again.migrate_if_needed() is None
        await again.initialize()
        assert len(await again.get_instances()) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self, registry):
        assert await registry.migrate_if_needed() is None
        await registry.initialize()
        assert await registry.get_instances() == []


class TestJsonFileStore:
    """Tests for the durable file store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        from pisentinel_core.instances import JsonFileStore

        path = tmp_path / "nested" / "instances.json"
        store = JsonFileStore(path)

        await store.set("k", {"a": [1, 2]})
        assert await store.get("k") == {"a": [1, 2]}

        reopened = JsonFileStore(path)
        assert await reopened.get("k") == {"a": [1, 2]}
        assert await reopened.contains("k")

        await reopened.remove("k")
        assert await JsonFileStore(path).get("k", "gone") == "gone"

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, tmp_path):
        from pisentinel_core.instances import JsonFileStore

        path = tmp_path / "instances.json"
        path.write_text("{not json")

        assert await JsonFileStore(path).get("k") is None

    @pytest.mark.asyncio
    async def test_registry_persists_to_disk(self, tmp_path):
        from pisentinel_core.instances import InstanceRegistry, JsonFileStore, MemoryStore

        path = tmp_path / "instances.json"
        volatile = MemoryStore()
        instance = await InstanceRegistry(JsonFileStore(path), volatile).add_instance("Home", "http://pi.hole", "s")

        reloaded = InstanceRegistry(JsonFileStore(path), volatile)
        await reloaded.initialize()

        assert (await reloaded.get_instance(instance.id)).name == "Home"
        assert await reloaded.get_decrypted_password(instance.id) == "s"
