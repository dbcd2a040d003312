"""
VaultRelay Shared Module

Crypto primitives, models, error taxonomy and the envelope codec shared
between the relay and the vault client.
"""

from .models import (
    KeyPairRecord,
    PublicKeyRecord,
    PublicKeyCacheEntry,
    RegistrationRetryState,
    EncryptedEnvelope,
    LegacyMessage,
    EncryptedMessage,
)
from .crypto_utils import (
    KeyPair,
    generate_keypair,
    key_fingerprint,
)
from .errors import (
    E2EEError,
    E2EEErrorKind,
    CryptoFailure,
    AuthenticationFailed,
)
from .envelope import (
    EnvelopeCodec,
    Encrypted,
    Legacy,
    Unknown,
    classify,
    DECRYPTION_PLACEHOLDER,
)

__all__ = [
    # Models
    "KeyPairRecord",
    "PublicKeyRecord",
    "PublicKeyCacheEntry",
    "RegistrationRetryState",
    "EncryptedEnvelope",
    "LegacyMessage",
    "EncryptedMessage",
    # Crypto
    "KeyPair",
    "generate_keypair",
    "key_fingerprint",
    # Errors
    "E2EEError",
    "E2EEErrorKind",
    "CryptoFailure",
    "AuthenticationFailed",
    # Envelope
    "EnvelopeCodec",
    "Encrypted",
    "Legacy",
    "Unknown",
    "classify",
    "DECRYPTION_PLACEHOLDER",
]
