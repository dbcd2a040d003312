"""
Integration tests for VaultRelay.

These tests run the vault client against the relay app in-process and
verify the end-to-end flow from ingestion to the note writer.
"""

import tempfile
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

from client.key_manager import KeyManager
from client.recovery import ErrorRecovery
from client.sdk import RelayClient, RelayError
from client.settings_store import MemorySettingsStore
from client.sync import MessageSync
from relay.crypto import RelayCrypto
from relay.database import Database
from relay.main import app
from relay.mirror import RelayMirror
from shared.crypto_utils import NONCE_SIZE, b64encode
from shared.envelope import DECRYPTION_PLACEHOLDER, EnvelopeCodec

INGEST_TOKEN = "integration-token"


@pytest_asyncio.fixture
async def test_db():
    """Create a temporary test database."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Database(db_path=str(Path(tmpdir) / "test.db"))
        await db.connect()
        yield db
        await db.disconnect()


@pytest.fixture
def relay_crypto():
    """Create relay crypto with temp key."""
    with tempfile.TemporaryDirectory() as tmpdir:
        crypto = RelayCrypto(key_path=str(Path(tmpdir) / "relay.key"))
        crypto.initialize()
        yield crypto


@pytest.fixture
def transport(test_db, relay_crypto):
    with patch("relay.main.db", test_db), \
            patch("relay.main.relay_mirror", RelayMirror(test_db, relay_crypto)), \
            patch("relay.main.INGEST_TOKEN", INGEST_TOKEN):
        yield httpx.ASGITransport(app=app)


@pytest_asyncio.fixture
async def relay(transport):
    async with RelayClient(base_url="http://relay.test", transport=transport) as client:
        yield client


@pytest.fixture
def store():
    return MemorySettingsStore({"schemaVersion": 2, "userId": "U1", "vaultId": "vault-1"})


class Vault:
    """Client-side stack plus a note writer that collects output."""

    def __init__(self, store, relay):
        self.notes = {}
        self.key_manager = KeyManager(store, relay, notifier=lambda message: None)
        self.recovery = ErrorRecovery(self.key_manager, notifier=lambda message: None)
        self.codec = EnvelopeCodec(self.key_manager, recovery=self.recovery)
        self.sync = MessageSync(relay, self.key_manager, self.codec, note_writer=self.write_note)

    async def write_note(self, record, text):
        self.notes[record["messageId"]] = text


async def ingest(relay, message_id, text):
    response = await relay.client.post(
        "/ingest",
        json={"userId": "U1", "messageId": message_id, "text": text},
        headers={"X-Ingest-Token": INGEST_TOKEN},
    )
    assert response.status_code == 200
    return response.json()["status"]


class TestEndToEnd:
    """Tests for the ingest -> store -> sync -> decrypt flow."""

    @pytest.mark.asyncio
    async def test_legacy_then_encrypted(self, relay, store):
        await relay.register_mapping("U1", "vault-1")

        # Before any key is registered the relay stores plaintext
        assert await ingest(relay, "m1", "hello") == "legacy"

        vault = Vault(store, relay)
        await vault.key_manager.initialize()

        record = await relay.fetch_public_key("U1", "vault-1")
        assert record.key_id == vault.key_manager.key_id

        assert await ingest(relay, "m2", "encrypted hello") == "encrypted"

        report = await vault.sync.sync()

        assert vault.notes == {"m1": "hello", "m2": "encrypted hello"}
        assert report.fetched == 2
        assert report.written == 2
        assert report.placeholders == 0
        assert sorted(report.acknowledged) == ["m1", "m2"]

        records = await relay.fetch_messages("vault-1", "U1")
        assert all(r["synced"] for r in records)

    @pytest.mark.asyncio
    async def test_second_sync_skips_synced(self, relay, store):
        await relay.register_mapping("U1", "vault-1")
        vault = Vault(store, relay)
        await vault.key_manager.initialize()
        await ingest(relay, "m1", "first")

        await vault.sync.sync()
        report = await vault.sync.sync()

        assert report.skipped == 1
        assert report.written == 0

    @pytest.mark.asyncio
    async def test_corrupted_record_does_not_stop_sync(self, relay, store, test_db):
        await relay.register_mapping("U1", "vault-1")
        vault = Vault(store, relay)
        await vault.key_manager.initialize()

        await ingest(relay, "m1", "will be corrupted")
        await ingest(relay, "m2", "intact")

        [corrupted] = [r for r in await test_db.get_messages("vault-1", "U1") if r["messageId"] == "m1"]
        corrupted["iv"] = b64encode(b"\x00" * NONCE_SIZE)
        await test_db.store_message("vault-1", "U1", "m1", corrupted)

        report = await vault.sync.sync()

        assert vault.notes == {"m1": DECRYPTION_PLACEHOLDER, "m2": "intact"}
        assert report.placeholders == 1
        assert report.written == 2

    @pytest.mark.asyncio
    async def test_note_write_failure_leaves_record_unsynced(self, relay, store):
        await relay.register_mapping("U1", "vault-1")
        vault = Vault(store, relay)
        await vault.key_manager.initialize()
        await ingest(relay, "m1", "cannot write")
        await ingest(relay, "m2", "can write")

        async def flaky_writer(record, text):
            if record["messageId"] == "m1":
                raise OSError("disk full")
            vault.notes[record["messageId"]] = text

        vault.sync.note_writer = flaky_writer
        report = await vault.sync.sync()

        assert report.failed_writes == ["m1"]
        assert report.acknowledged == ["m2"]
        synced = {r["messageId"]: r["synced"] for r in await relay.fetch_messages("vault-1", "U1")}
        assert synced == {"m1": False, "m2": True}

    @pytest.mark.asyncio
    async def test_self_encryption_through_directory(self, relay, store):
        await relay.register_mapping("U1", "vault-1")
        vault = Vault(store, relay)
        await vault.key_manager.initialize()

        envelope = await vault.codec.encrypt_for_recipient("note to self", "U1")

        assert envelope.sender_key_id == vault.key_manager.get_key_pair().fingerprint
        assert await vault.codec.decrypt_envelope(envelope) == "note to self"

    @pytest.mark.asyncio
    async def test_registration_retried_after_mapping(self, relay, store):
        vault = Vault(store, relay)

        # No mapping yet: the relay refuses the key
        await vault.key_manager.initialize()
        assert (await store.load_data())["registrationRetry"]["pending"] is True

        await relay.register_mapping("U1", "vault-1")
        await vault.key_manager.force_register_public_key()

        assert (await store.load_data())["registrationRetry"]["pending"] is False
        assert await ingest(relay, "m1", "now encrypted") == "encrypted"

    @pytest.mark.asyncio
    async def test_sync_requires_identity(self, relay):
        vault = Vault(MemorySettingsStore({"schemaVersion": 2}), relay)
        with pytest.raises(RelayError):
            await vault.sync.sync()
