"""
VaultRelay Pydantic Models

Shared data models for key records, encrypted envelopes, stored messages
and relay request bodies. Attributes are snake_case; JSON uses camelCase
aliases so records match what the relay stores and serves.
"""

import time
import uuid
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

from .retry import registration_wait_hours


ENVELOPE_VERSION = "1.0"
HOUR_MS = 60 * 60 * 1000
PUBLIC_KEY_CACHE_TTL_MS = 24 * HOUR_MS


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Key Models
# =============================================================================

class KeyPairRecord(BaseModel):
    """
    Locally persisted key pair for one end-user identity.

    The private key is stored encrypted with a key derived from
    (device_seed, salt). The record is replaced as a whole, never patched.
    """
    public_key_pem: str = Field(alias="publicKeyPem")
    encrypted_private_key: str = Field(alias="encryptedPrivateKey")  # base64
    device_seed: str = Field(alias="deviceSeed")
    key_id: str = Field(default_factory=generate_id, alias="keyId")
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    salt: str  # base64, 16 bytes

    class Config:
        populate_by_name = True


class PublicKeyRecord(BaseModel):
    """Relay-side directory entry for one recipient."""
    user_id: str = Field(alias="userId")
    public_key: str = Field(alias="publicKey")
    key_id: str = Field(alias="keyId")
    registered_at: int = Field(default_factory=now_ms, alias="registeredAt")

    class Config:
        populate_by_name = True


class PublicKeyCacheEntry(BaseModel):
    """Client-side cached copy of another party's public key."""
    user_id: str = Field(alias="userId")
    public_key_pem: str = Field(alias="publicKeyPem")
    key_id: str = Field(alias="keyId")
    fetched_at: int = Field(alias="fetchedAt")

    class Config:
        populate_by_name = True

    def is_fresh(self, now: int, ttl_ms: int = PUBLIC_KEY_CACHE_TTL_MS) -> bool:
        return now - self.fetched_at < ttl_ms


class RegistrationRetryState(BaseModel):
    """Backoff bookkeeping for a failed public key registration."""
    pending: bool = False
    last_attempt_at: int = Field(default=0, alias="lastAttemptAt")
    failure_count: int = Field(default=0, alias="failureCount")

    class Config:
        populate_by_name = True

    def wait_hours(self) -> int:
        return registration_wait_hours(self.failure_count)

    def is_due(self, now: int) -> bool:
        """True if enough time has passed since the last attempt."""
        return now - self.last_attempt_at >= self.wait_hours() * HOUR_MS


# =============================================================================
# Envelope Models
# =============================================================================

class EncryptedEnvelope(BaseModel):
    """
    One encrypted message.

    Content is AES-256-GCM under a fresh key; that key is RSA-OAEP wrapped
    for the recipient. All binary fields are base64.
    """
    encrypted_content: str = Field(alias="encryptedContent")
    encrypted_symmetric_key: str = Field(
        validation_alias=AliasChoices(
            "encryptedAESKey",
            "encryptedSymmetricKey",
            "encryptedAesKey",
            "encrypted_symmetric_key",
        ),
        serialization_alias="encryptedAESKey",
    )
    iv: str
    sender_key_id: str = Field(default="", alias="senderKeyId")
    recipient_user_id: str = Field(default="", alias="recipientUserId")
    timestamp: int = Field(default_factory=now_ms)
    version: str = ENVELOPE_VERSION

    class Config:
        populate_by_name = True

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True)


# =============================================================================
# Stored Message Models
# =============================================================================

class LegacyMessage(BaseModel):
    """Plaintext record stored when the recipient has no registered key."""
    timestamp: int
    message_id: str = Field(alias="messageId")
    user_id: str = Field(alias="userId")
    text: str
    vault_id: str = Field(alias="vaultId")
    synced: bool = False

    class Config:
        populate_by_name = True


class EncryptedMessage(BaseModel):
    """Encrypted record: legacy metadata plus envelope fields, no text."""
    timestamp: int
    message_id: str = Field(alias="messageId")
    user_id: str = Field(alias="userId")
    vault_id: str = Field(alias="vaultId")
    synced: bool = False
    encrypted: Literal[True] = True
    encrypted_content: str = Field(alias="encryptedContent")
    encrypted_symmetric_key: str = Field(alias="encryptedAESKey")
    iv: str
    sender_key_id: str = Field(alias="senderKeyId")
    recipient_user_id: str = Field(alias="recipientUserId")
    version: str = ENVELOPE_VERSION

    class Config:
        populate_by_name = True

    @classmethod
    def from_envelope(
        cls,
        envelope: EncryptedEnvelope,
        message_id: str,
        user_id: str,
        vault_id: str,
        timestamp: int,
    ) -> "EncryptedMessage":
        return cls(
            timestamp=timestamp,
            message_id=message_id,
            user_id=user_id,
            vault_id=vault_id,
            encrypted_content=envelope.encrypted_content,
            encrypted_symmetric_key=envelope.encrypted_symmetric_key,
            iv=envelope.iv,
            sender_key_id=envelope.sender_key_id,
            recipient_user_id=envelope.recipient_user_id,
            version=envelope.version,
        )


# =============================================================================
# Relay Request Bodies
# =============================================================================

# Fields are optional so the relay can answer 400 on missing values.

class MappingRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    vault_id: Optional[str] = Field(default=None, alias="vaultId")

    class Config:
        populate_by_name = True


class PublicKeyRegisterRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    vault_id: Optional[str] = Field(default=None, alias="vaultId")
    public_key: Optional[str] = Field(default=None, alias="publicKey")
    key_id: Optional[str] = Field(default=None, alias="keyId")

    class Config:
        populate_by_name = True


class SyncStatusRequest(BaseModel):
    vault_id: Optional[str] = Field(default=None, alias="vaultId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    message_ids: Optional[list[str]] = Field(default=None, alias="messageIds")

    class Config:
        populate_by_name = True


class IncomingMessage(BaseModel):
    """An upstream message that has already passed signature verification."""
    user_id: str = Field(alias="userId")
    message_id: str = Field(alias="messageId")
    text: str
    timestamp: int = Field(default_factory=now_ms)

    class Config:
        populate_by_name = True
