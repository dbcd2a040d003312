"""
VaultRelay Error Taxonomy

Closed set of end-to-end encryption failures. Every failure raised by the
crypto, key and envelope layers surfaces as one of these kinds so call
sites can match on ``error.kind`` instead of on platform exceptions.
"""

from enum import Enum
from typing import Optional


class E2EEErrorKind(str, Enum):
    KEY_NOT_INITIALIZED = "KEY_NOT_INITIALIZED"
    KEY_NOT_FOUND = "KEY_NOT_FOUND"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    ENCRYPTION_FAILED = "ENCRYPTION_FAILED"
    PUBLIC_KEY_FETCH_FAILED = "PUBLIC_KEY_FETCH_FAILED"
    KEY_GENERATION_FAILED = "KEY_GENERATION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"


class E2EEError(Exception):
    """
    Base exception for end-to-end encryption failures.

    Attributes:
        kind: Taxonomy kind
        user_id: Identity the failure relates to, when known
        cause: Underlying exception, when wrapped
        stage: Optional sub-stage (e.g. "unwrap" or "aead" for decryption)
    """

    kind: E2EEErrorKind = E2EEErrorKind.ENCRYPTION_FAILED

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.user_id = user_id
        self.cause = cause
        self.stage = stage

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, message={str(self)!r})"


class KeyNotInitialized(E2EEError):
    kind = E2EEErrorKind.KEY_NOT_INITIALIZED


class KeyNotFound(E2EEError):
    kind = E2EEErrorKind.KEY_NOT_FOUND


class DecryptionFailed(E2EEError):
    kind = E2EEErrorKind.DECRYPTION_FAILED


class EncryptionFailed(E2EEError):
    kind = E2EEErrorKind.ENCRYPTION_FAILED


class PublicKeyFetchFailed(E2EEError):
    kind = E2EEErrorKind.PUBLIC_KEY_FETCH_FAILED


class KeyGenerationFailed(E2EEError):
    kind = E2EEErrorKind.KEY_GENERATION_FAILED


class NetworkError(E2EEError):
    kind = E2EEErrorKind.NETWORK_ERROR


ERROR_CLASSES: dict[E2EEErrorKind, type[E2EEError]] = {
    cls.kind: cls
    for cls in (
        KeyNotInitialized,
        KeyNotFound,
        DecryptionFailed,
        EncryptionFailed,
        PublicKeyFetchFailed,
        KeyGenerationFailed,
        NetworkError,
    )
}


def make_error(
    kind: E2EEErrorKind,
    message: str,
    user_id: Optional[str] = None,
    cause: Optional[BaseException] = None,
    stage: Optional[str] = None,
) -> E2EEError:
    """Build the taxonomy exception for a given kind."""
    return ERROR_CLASSES[kind](message, user_id=user_id, cause=cause, stage=stage)


class CryptoFailure(Exception):
    """Raised by the low-level crypto primitives."""
    pass


class AuthenticationFailed(CryptoFailure):
    """AEAD tag verification failed (tampered data or wrong key)."""
    pass
