"""
VaultRelay Relay-side Mirror

Runs the same envelope codec as the client when an upstream message
arrives: recipients with a registered public key get an encrypted record,
everyone else gets a plaintext legacy record.
"""

from enum import Enum
from typing import Any, Optional

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
import structlog

from shared.crypto_utils import KeyPair, import_public_pem
from shared.envelope import EnvelopeCodec
from shared.errors import CryptoFailure, KeyNotFound, KeyNotInitialized, PublicKeyFetchFailed
from shared.models import EncryptedMessage, IncomingMessage, LegacyMessage
from .crypto import RelayCrypto, relay_crypto
from .database import Database, db

logger = structlog.get_logger()


class StoreOutcome(str, Enum):
    ENCRYPTED = "encrypted"
    LEGACY = "legacy"
    UNMAPPED = "unmapped"


class DirectoryKeySource:
    """Key source backed by the relay's public key directory."""

    def __init__(self, database: Database, crypto: RelayCrypto):
        self.database = database
        self.crypto = crypto

    async def get_public_key(self, user_id: str) -> RSAPublicKey:
        record = await self.database.get_public_key(user_id)
        if record is None:
            raise KeyNotFound(f"No public key registered for user {user_id}", user_id=user_id)
        try:
            return import_public_pem(record["public_key"])
        except CryptoFailure as e:
            raise PublicKeyFetchFailed(
                f"Stored public key for user {user_id} is invalid",
                user_id=user_id,
                cause=e
            ) from e

    def get_key_pair(self) -> KeyPair:
        try:
            return self.crypto.keypair
        except RuntimeError as e:
            raise KeyNotInitialized("Relay key pair not initialized", cause=e) from e


class RelayMirror:
    """Encrypt-if-key-known persistence for incoming messages."""

    def __init__(self, database: Database, crypto: RelayCrypto):
        self.database = database
        self.codec = EnvelopeCodec(DirectoryKeySource(database, crypto))

    async def store_incoming(
        self,
        message: IncomingMessage
    ) -> tuple[StoreOutcome, Optional[dict[str, Any]]]:
        """
        Persist an incoming message for its mapped vault.

        Returns:
            The outcome and the stored record (None when the user has no vault)

        Raises:
            EncryptionFailed: If the user has a key but encryption failed;
                the message is not stored
        """
        vault_id = await self.database.get_vault_for_user(message.user_id)
        if not vault_id:
            logger.warning("no_vault_mapping", user_id=message.user_id)
            return StoreOutcome.UNMAPPED, None

        if await self.database.get_public_key(message.user_id) is None:
            record = LegacyMessage(
                timestamp=message.timestamp,
                message_id=message.message_id,
                user_id=message.user_id,
                text=message.text,
                vault_id=vault_id,
            ).model_dump(by_alias=True)
            outcome = StoreOutcome.LEGACY
        else:
            # Self-addressed: the recipient is the user who sent the message upstream
            envelope = await self.codec.encrypt_for_recipient(message.text, message.user_id)
            record = EncryptedMessage.from_envelope(
                envelope,
                message_id=message.message_id,
                user_id=message.user_id,
                vault_id=vault_id,
                timestamp=message.timestamp,
            ).model_dump(by_alias=True)
            outcome = StoreOutcome.ENCRYPTED

        await self.database.store_message(vault_id, message.user_id, message.message_id, record)
        logger.info(
            "message_stored",
            user_id=message.user_id,
            message_id=message.message_id,
            outcome=outcome.value
        )
        return outcome, record


# Global mirror instance
relay_mirror = RelayMirror(db, relay_crypto)
