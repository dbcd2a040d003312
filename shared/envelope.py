"""
VaultRelay Envelope Codec

Message-level protocol shared by the client and the relay: builds an
EncryptedEnvelope for a recipient and reverses it with the local private
key. Stored records are decoded once into Encrypted | Legacy | Unknown.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
import structlog

from .crypto_utils import (
    KeyPair,
    b64decode,
    b64encode,
    decrypt_aead,
    encrypt_aead,
    generate_symmetric_key,
    unwrap_key,
    wrap_key,
)
from .errors import (
    CryptoFailure,
    DecryptionFailed,
    E2EEError,
    EncryptionFailed,
    KeyNotInitialized,
)
from .models import ENVELOPE_VERSION, EncryptedEnvelope, now_ms

logger = structlog.get_logger()

DECRYPTION_PLACEHOLDER = "[Message could not be decrypted]"

# Structural markers of the encrypted shape
ENCRYPTED_FIELDS = ("encryptedContent", "iv", "version")
WRAPPED_KEY_FIELDS = ("encryptedAESKey", "encryptedSymmetricKey", "encryptedAesKey")


class KeySource(Protocol):
    """Where the codec gets recipient public keys and the local key pair."""

    async def get_public_key(self, user_id: str) -> RSAPublicKey: ...

    def get_key_pair(self) -> KeyPair: ...


class RecoveryPolicy(Protocol):
    """Failure handling hooks the codec delegates to (see client.recovery)."""

    async def resolve_public_key(self, user_id: str) -> RSAPublicKey: ...

    async def handle(self, error: E2EEError, context: str) -> Any: ...

    async def handle_decryption_failure(
        self, error: E2EEError, envelope: EncryptedEnvelope
    ) -> str: ...


# =============================================================================
# Stored Record Classification
# =============================================================================

@dataclass(frozen=True)
class Encrypted:
    envelope: EncryptedEnvelope
    record: Any


@dataclass(frozen=True)
class Legacy:
    text: str
    record: Any


@dataclass(frozen=True)
class Unknown:
    record: Any


StoredRecord = Union[Encrypted, Legacy, Unknown]


def _wrapped_key(record: Mapping) -> Optional[str]:
    for field in WRAPPED_KEY_FIELDS:
        value = record.get(field)
        if isinstance(value, str):
            return value
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def classify(record: Any) -> StoredRecord:
    """
    Decode a stored record by its structure.

    Encrypted iff encryptedContent, the wrapped key, iv and version are all
    strings. Legacy iff it has a string ``text`` and none of the encrypted
    fields (a bare string also counts). Everything else is Unknown.
    """
    if isinstance(record, str):
        return Legacy(text=record, record=record)
    if not isinstance(record, Mapping):
        return Unknown(record=record)

    wrapped = _wrapped_key(record)
    if wrapped is not None and all(isinstance(record.get(f), str) for f in ENCRYPTED_FIELDS):
        sender = record.get("senderKeyId")
        recipient = record.get("recipientUserId")
        envelope = EncryptedEnvelope(
            encrypted_content=record["encryptedContent"],
            encrypted_symmetric_key=wrapped,
            iv=record["iv"],
            sender_key_id=sender if isinstance(sender, str) else "",
            recipient_user_id=recipient if isinstance(recipient, str) else "",
            timestamp=_as_int(record.get("timestamp")),
            version=record["version"],
        )
        return Encrypted(envelope=envelope, record=record)

    has_encrypted_fields = any(f in record for f in ENCRYPTED_FIELDS + WRAPPED_KEY_FIELDS)
    if isinstance(record.get("text"), str) and not has_encrypted_fields:
        return Legacy(text=record["text"], record=record)

    return Unknown(record=record)


def describe_unknown(record: Any) -> str:
    """Best-effort debug serialization of an unrecognized record."""
    try:
        return json.dumps(record, default=str, ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        return repr(record)


# =============================================================================
# Codec
# =============================================================================

class EnvelopeCodec:
    """
    Encrypts and decrypts messages for one key source.

    The client uses it with its KeyManager; the relay uses the same class
    with a directory-backed key source.
    """

    def __init__(
        self,
        keys: KeySource,
        recovery: Optional[RecoveryPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.keys = keys
        self.recovery = recovery
        self._clock = clock

    async def _resolve_public_key(self, user_id: str) -> RSAPublicKey:
        if self.recovery is not None:
            return await self.recovery.resolve_public_key(user_id)
        return await self.keys.get_public_key(user_id)

    async def _local_key_pair(self) -> KeyPair:
        try:
            return self.keys.get_key_pair()
        except KeyNotInitialized as e:
            if self.recovery is None:
                raise
            await self.recovery.handle(e, context="local_key_pair")
            return self.keys.get_key_pair()

    def _build_envelope(
        self,
        plaintext: str,
        public_key: RSAPublicKey,
        recipient_user_id: str,
        sender_key_id: str,
    ) -> EncryptedEnvelope:
        sym_key = generate_symmetric_key()
        ciphertext, nonce = encrypt_aead(plaintext.encode("utf-8"), sym_key)
        wrapped = wrap_key(sym_key, public_key)
        return EncryptedEnvelope(
            encrypted_content=b64encode(ciphertext),
            encrypted_symmetric_key=b64encode(wrapped),
            iv=b64encode(nonce),
            sender_key_id=sender_key_id,
            recipient_user_id=recipient_user_id,
            timestamp=self._clock(),
            version=ENVELOPE_VERSION,
        )

    async def encrypt_for_recipient(
        self,
        plaintext: str,
        recipient_user_id: str
    ) -> EncryptedEnvelope:
        """
        Encrypt a message for a specific recipient.

        Args:
            plaintext: Message text
            recipient_user_id: Identity whose public key wraps the content key

        Returns:
            A fresh EncryptedEnvelope (new content key and nonce every call)

        Raises:
            EncryptionFailed: Wrapping whatever went wrong
        """
        try:
            public_key = await self._resolve_public_key(recipient_user_id)
            key_pair = await self._local_key_pair()
            return self._build_envelope(
                plaintext, public_key, recipient_user_id, key_pair.fingerprint
            )
        except EncryptionFailed:
            raise
        except (E2EEError, CryptoFailure) as e:
            logger.error(
                "encryption_failed",
                recipient_user_id=recipient_user_id,
                error=repr(e)
            )
            raise EncryptionFailed(
                f"Failed to encrypt message for user {recipient_user_id}",
                user_id=recipient_user_id,
                cause=e
            ) from e

    async def encrypt_with_key(
        self,
        plaintext: str,
        public_key: RSAPublicKey,
        recipient_user_id: str
    ) -> EncryptedEnvelope:
        """Encrypt with an already resolved recipient key."""
        try:
            key_pair = await self._local_key_pair()
            return self._build_envelope(
                plaintext, public_key, recipient_user_id, key_pair.fingerprint
            )
        except EncryptionFailed:
            raise
        except (E2EEError, CryptoFailure) as e:
            raise EncryptionFailed(
                f"Failed to encrypt message for user {recipient_user_id}",
                user_id=recipient_user_id,
                cause=e
            ) from e

    async def encrypt_batch(
        self,
        plaintexts: list[str],
        recipient_user_id: str
    ) -> list[EncryptedEnvelope]:
        """
        Encrypt several messages for the same recipient.

        The recipient key is looked up once and reused for every item.
        """
        try:
            public_key = await self._resolve_public_key(recipient_user_id)
        except EncryptionFailed:
            raise
        except E2EEError as e:
            raise EncryptionFailed(
                f"Failed to encrypt batch for user {recipient_user_id}",
                user_id=recipient_user_id,
                cause=e
            ) from e
        return [
            await self.encrypt_with_key(plaintext, public_key, recipient_user_id)
            for plaintext in plaintexts
        ]

    async def decrypt_envelope(self, envelope: EncryptedEnvelope) -> str:
        """
        Decrypt an envelope with the local private key.

        Unknown versions are logged and still attempted.

        Raises:
            DecryptionFailed: On any decoding, unwrap or tag failure
            KeyNotInitialized: If no local key pair is available
        """
        if envelope.version != ENVELOPE_VERSION:
            logger.warning(
                "envelope_version_mismatch",
                expected=ENVELOPE_VERSION,
                got=envelope.version
            )

        key_pair = await self._local_key_pair()
        recipient = envelope.recipient_user_id or None

        try:
            content = b64decode(envelope.encrypted_content)
            wrapped = b64decode(envelope.encrypted_symmetric_key)
            nonce = b64decode(envelope.iv)
        except CryptoFailure as e:
            raise DecryptionFailed(
                "Malformed envelope encoding", user_id=recipient, cause=e, stage="decode"
            ) from e

        try:
            sym_key = unwrap_key(wrapped, key_pair.private_key)
        except CryptoFailure as e:
            raise DecryptionFailed(
                "Failed to unwrap content key", user_id=recipient, cause=e, stage="unwrap"
            ) from e

        try:
            plaintext = decrypt_aead(content, sym_key, nonce)
        except CryptoFailure as e:
            raise DecryptionFailed(
                "Failed to decrypt message content", user_id=recipient, cause=e, stage="aead"
            ) from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionFailed(
                "Decrypted content is not UTF-8", user_id=recipient, cause=e, stage="decode"
            ) from e

    async def process_transparently(self, record: Any) -> str:
        """
        Turn any stored record into displayable text. Never raises.

        Encrypted records are decrypted (failures become a placeholder),
        legacy records return their text verbatim, unknown records return
        a debug serialization.
        """
        stored = classify(record)

        if isinstance(stored, Encrypted):
            try:
                return await self.decrypt_envelope(stored.envelope)
            except Exception as e:
                if isinstance(e, E2EEError):
                    error = e
                else:
                    error = DecryptionFailed(
                        "Unexpected decryption error",
                        user_id=stored.envelope.recipient_user_id or None,
                        cause=e
                    )
                return await self._on_decrypt_failure(error, stored.envelope)

        if isinstance(stored, Legacy):
            return stored.text

        logger.warning("unknown_record_format", record_type=type(stored.record).__name__)
        return describe_unknown(stored.record)

    async def _on_decrypt_failure(
        self,
        error: E2EEError,
        envelope: EncryptedEnvelope
    ) -> str:
        if self.recovery is None:
            logger.error(
                "decryption_failed",
                kind=error.kind.value,
                stage=error.stage,
                error=str(error)
            )
            return DECRYPTION_PLACEHOLDER
        try:
            return await self.recovery.handle_decryption_failure(error, envelope)
        except Exception as e:
            logger.error("decryption_recovery_failed", error=repr(e))
            return DECRYPTION_PLACEHOLDER
