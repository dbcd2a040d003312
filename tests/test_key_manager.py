"""
Tests for the key manager: key lifecycle, registration backoff and the
public key cache.
"""

import asyncio
from unittest.mock import patch

import httpx
import pytest

from client.key_manager import REGISTRATION_FAILED_NOTICE, KeyManager, KeyState
from client.sdk import APIError
from client.settings_store import MemorySettingsStore, load_settings, migrate_settings
from shared.crypto_utils import (
    b64decode,
    decrypt_private_key,
    derive_symmetric_key,
    generate_keypair,
)
from shared.errors import (
    KeyNotFound,
    KeyNotInitialized,
    NetworkError,
    PublicKeyFetchFailed,
)
from shared.models import HOUR_MS, PUBLIC_KEY_CACHE_TTL_MS, PublicKeyRecord


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeRelay:
    """Records calls; failures are configured per test."""

    def __init__(self):
        self.registrations = []
        self.fetches = []
        self.register_error = None
        self.fetch_error = None
        self.directory = {}

    async def register_public_key(self, user_id, vault_id, public_key_pem, key_id):
        self.registrations.append(key_id)
        if self.register_error is not None:
            raise self.register_error
        self.directory[user_id] = (public_key_pem, key_id)
        return {"success": True}

    async def fetch_public_key(self, user_id, vault_id):
        self.fetches.append(user_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        if user_id not in self.directory:
            raise APIError("Public key not found", 404)
        pem, key_id = self.directory[user_id]
        return PublicKeyRecord(user_id=user_id, public_key=pem, key_id=key_id, registered_at=1)


@pytest.fixture
def store():
    return MemorySettingsStore({"schemaVersion": 2, "userId": "U1", "vaultId": "vault-1"})


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notices():
    return []


@pytest.fixture
def manager(store, relay, clock, notices):
    return KeyManager(store, relay, clock=clock, notifier=notices.append)


class TestInitialization:
    """Tests for generating and loading keys."""

    @pytest.mark.asyncio
    async def test_first_run_generates_and_registers(self, manager, store, relay):
        await manager.initialize()

        assert manager.is_initialized
        assert manager.state is KeyState.REGISTERED
        assert relay.registrations == [manager.key_id]

        settings = await load_settings(store)
        assert settings.encryption_keys.key_id == manager.key_id
        assert settings.encryption_keys.public_key_pem == manager.get_key_pair().public_key_pem
        assert not settings.registration_retry.pending

    @pytest.mark.asyncio
    async def test_private_key_encrypted_at_rest(self, manager, store):
        await manager.initialize()

        record = (await load_settings(store)).encryption_keys
        blob = b64decode(record.encrypted_private_key)
        assert b"PRIVATE KEY" not in blob

        key = derive_symmetric_key(record.device_seed, b64decode(record.salt))
        assert decrypt_private_key(blob, key) == manager.get_key_pair().private_key_pem

    @pytest.mark.asyncio
    async def test_restart_loads_existing_keys(self, manager, store, relay, clock):
        await manager.initialize()

        restarted = KeyManager(store, relay, clock=clock)
        with patch("client.key_manager.generate_keypair") as generate:
            await restarted.initialize()

        generate.assert_not_called()
        assert restarted.key_id == manager.key_id
        assert restarted.get_key_pair().fingerprint == manager.get_key_pair().fingerprint
        assert restarted.state is KeyState.REGISTERED
        assert len(relay.registrations) == 1

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, manager, store):
        await manager.initialize()
        key_id = manager.key_id
        saves = store.save_count

        await manager.initialize()

        assert manager.key_id == key_id
        assert store.save_count == saves

    @pytest.mark.asyncio
    async def test_concurrent_initialize_generates_once(self, manager, relay):
        with patch("client.key_manager.generate_keypair", wraps=generate_keypair) as generate:
            await asyncio.gather(manager.initialize(), manager.initialize(), manager.initialize())

        assert generate.call_count == 1
        assert len(relay.registrations) == 1

    @pytest.mark.asyncio
    async def test_get_key_pair_before_initialize(self, manager):
        with pytest.raises(KeyNotInitialized):
            manager.get_key_pair()

    @pytest.mark.asyncio
    async def test_unreadable_stored_key(self, manager, store, relay):
        await manager.initialize()
        data = await store.load_data()
        data["encryptionKeys"]["deviceSeed"] = "a-different-device"
        await store.save_data(data)

        with pytest.raises(KeyNotInitialized):
            await KeyManager(store, relay).initialize()


class TestRegistrationRetry:
    """Tests for registration failure handling and backoff."""

    @pytest.mark.asyncio
    async def test_failure_does_not_fail_initialize(self, manager, store, relay, notices):
        relay.register_error = httpx.ConnectError("relay down")

        await manager.initialize()

        assert manager.is_initialized
        assert manager.state is KeyState.PENDING_RETRY
        retry = (await load_settings(store)).registration_retry
        assert retry.pending
        assert retry.failure_count == 1
        assert notices == [REGISTRATION_FAILED_NOTICE]

    @pytest.mark.asyncio
    async def test_backoff_schedule(self, manager, store, relay, clock, notices):
        relay.register_error = APIError("Service unavailable", 503)
        await manager.initialize()

        for failures, wait_hours in [(1, 2), (2, 4), (3, 8), (4, 16), (5, 24), (6, 24)]:
            retry = (await load_settings(store)).registration_retry
            assert retry.failure_count == failures
            attempts = len(relay.registrations)

            clock.advance(wait_hours * HOUR_MS - 1)
            assert await manager.attempt_registration() is False
            assert len(relay.registrations) == attempts

            clock.advance(1)
            assert await manager.attempt_registration() is False
            assert len(relay.registrations) == attempts + 1

        # The user is only told once
        assert notices == [REGISTRATION_FAILED_NOTICE]

    @pytest.mark.asyncio
    async def test_success_clears_retry_state(self, manager, store, relay, clock):
        relay.register_error = httpx.ConnectError("relay down")
        await manager.initialize()

        relay.register_error = None
        clock.advance(2 * HOUR_MS)
        assert await manager.attempt_registration() is True

        retry = (await load_settings(store)).registration_retry
        assert not retry.pending
        assert retry.failure_count == 0
        assert manager.state is KeyState.REGISTERED

    @pytest.mark.asyncio
    async def test_restart_retries_when_due(self, manager, store, relay, clock):
        relay.register_error = httpx.ConnectError("relay down")
        await manager.initialize()
        relay.register_error = None

        clock.advance(HOUR_MS)
        early = KeyManager(store, relay, clock=clock)
        await early.initialize()
        assert early.state is KeyState.PENDING_RETRY
        assert len(relay.registrations) == 1

        clock.advance(HOUR_MS)
        await early.initialize()
        assert early.state is KeyState.REGISTERED
        assert len(relay.registrations) == 2

    @pytest.mark.asyncio
    async def test_missing_identity_leaves_registration_pending(self, relay, clock):
        store = MemorySettingsStore({"schemaVersion": 2})
        manager = KeyManager(store, relay, clock=clock, notifier=lambda message: None)

        await manager.initialize()

        assert relay.registrations == []
        assert (await load_settings(store)).registration_retry.pending

    @pytest.mark.asyncio
    async def test_force_register_ignores_backoff(self, manager, relay):
        relay.register_error = httpx.ConnectError("relay down")
        await manager.initialize()
        relay.register_error = None

        await manager.force_register_public_key()

        assert len(relay.registrations) == 2
        assert manager.state is KeyState.REGISTERED

    @pytest.mark.asyncio
    async def test_force_register_failure(self, manager, store, relay):
        await manager.initialize()
        relay.register_error = APIError("Unauthorized access", 403)

        with pytest.raises(NetworkError):
            await manager.force_register_public_key()

        assert (await load_settings(store)).registration_retry.pending

    @pytest.mark.asyncio
    async def test_force_register_without_keys(self, manager):
        with pytest.raises(KeyNotInitialized):
            await manager.force_register_public_key()


class TestPublicKeyCache:
    """Tests for fetching and caching other parties' keys."""

    @pytest.fixture
    def peer(self, relay):
        keypair = generate_keypair()
        relay.directory["U2"] = (keypair.public_key_pem, "peer-key")
        return keypair

    @pytest.mark.asyncio
    async def test_fetch_then_cache(self, manager, relay, peer):
        first = await manager.get_public_key("U2")
        second = await manager.get_public_key("U2")

        assert first.public_numbers() == peer.public_key.public_numbers()
        assert second.public_numbers() == peer.public_key.public_numbers()
        assert relay.fetches == ["U2"]
        assert manager.get_cached_entry("U2").key_id == "peer-key"

    @pytest.mark.asyncio
    async def test_cache_expires(self, manager, relay, clock, peer):
        await manager.get_public_key("U2")

        clock.advance(PUBLIC_KEY_CACHE_TTL_MS - 1)
        await manager.get_public_key("U2")
        assert len(relay.fetches) == 1

        clock.advance(1)
        await manager.get_public_key("U2")
        assert len(relay.fetches) == 2

    @pytest.mark.asyncio
    async def test_clear_cache_for_user(self, manager, relay, peer):
        await manager.get_public_key("U2")
        manager.clear_cache_for_user("U2")
        await manager.get_public_key("U2")

        assert len(relay.fetches) == 2

    @pytest.mark.asyncio
    async def test_unknown_user(self, manager):
        with pytest.raises(KeyNotFound) as exc_info:
            await manager.get_public_key("nobody")
        assert exc_info.value.user_id == "nobody"

    @pytest.mark.asyncio
    async def test_relay_error(self, manager, relay):
        relay.fetch_error = APIError("Internal error", 500)
        with pytest.raises(PublicKeyFetchFailed):
            await manager.get_public_key("U2")

    @pytest.mark.asyncio
    async def test_relay_unreachable(self, manager, relay):
        relay.fetch_error = httpx.ConnectError("relay down")
        with pytest.raises(NetworkError):
            await manager.get_public_key("U2")

    @pytest.mark.asyncio
    async def test_invalid_key_returned(self, manager, relay):
        relay.directory["U2"] = ("not a pem", "bad")
        with pytest.raises(PublicKeyFetchFailed):
            await manager.get_public_key("U2")


class TestSettingsMigration:

    def test_v1_settings_migrated(self):
        data = migrate_settings({
            "lineUserId": "U1",
            "vaultId": "vault-1",
            "pendingKeyRegistration": True,
            "encryptionKeys": {"publicKey": "pem", "deviceId": "seed", "salt": "s"},
        })

        assert data["schemaVersion"] == 2
        assert data["userId"] == "U1"
        assert "pendingKeyRegistration" not in data
        assert data["registrationRetry"] == {"pending": True, "lastAttemptAt": 0, "failureCount": 0}
        assert data["encryptionKeys"]["publicKeyPem"] == "pem"
        assert data["encryptionKeys"]["deviceSeed"] == "seed"

    @pytest.mark.asyncio
    async def test_unknown_keys_preserved(self):
        store = MemorySettingsStore({"schemaVersion": 2, "syncFolder": "Inbox"})
        settings = await load_settings(store)

        assert settings.to_data()["syncFolder"] == "Inbox"

    @pytest.mark.asyncio
    async def test_empty_store(self):
        settings = await load_settings(MemorySettingsStore())
        assert settings.encryption_keys is None
        assert not settings.registration_retry.pending
