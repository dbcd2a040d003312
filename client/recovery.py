"""
VaultRelay Error Recovery

Maps failures into the E2EE taxonomy and applies a fixed recovery action
per kind: re-initialize keys, bounded cache-busting refetch, placeholder
text for undecryptable messages, or propagate.
"""

from typing import Any, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
import httpx
import structlog

from shared.envelope import DECRYPTION_PLACEHOLDER
from shared.errors import (
    AuthenticationFailed,
    CryptoFailure,
    DecryptionFailed,
    E2EEError,
    E2EEErrorKind,
    EncryptionFailed,
    KeyGenerationFailed,
    KeyNotFound,
    NetworkError,
    PublicKeyFetchFailed,
)
from shared.models import HOUR_MS, EncryptedEnvelope, now_ms
from shared.retry import retry_bounded
from .key_manager import KeyManager, log_notifier
from .sdk import APIError

logger = structlog.get_logger()

MAX_KEY_FETCH_ATTEMPTS = 3
UNREACHABLE_WINDOW_MS = HOUR_MS

KEY_SETUP_NOTICE = "Encryption keys could not be set up. Please check your settings."
NETWORK_NOTICE = "Network error. Please check your internet connection."

# Fallback kind for unrecognized exceptions, by the operation that raised them
_CONTEXT_DEFAULTS: dict[str, type[E2EEError]] = {
    "encrypt": EncryptionFailed,
    "decrypt": DecryptionFailed,
    "fetch": PublicKeyFetchFailed,
    "register": NetworkError,
    "generate": KeyGenerationFailed,
}


def _status_error(status_code: Optional[int], context: str) -> type[E2EEError]:
    if status_code == 404 and context in ("fetch", "encrypt"):
        return KeyNotFound
    if context == "register":
        return NetworkError
    return PublicKeyFetchFailed


def classify_error(
    exc: BaseException,
    context: str = "decrypt",
    user_id: Optional[str] = None
) -> E2EEError:
    """
    Map any exception into the closed E2EE taxonomy.

    Taxonomy errors pass through unchanged.

    Args:
        exc: The failure to classify
        context: Operation that failed: encrypt, decrypt, fetch, register or generate
        user_id: Identity the failure relates to, if known
    """
    if isinstance(exc, E2EEError):
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, (AuthenticationFailed, InvalidTag)):
        return DecryptionFailed(message, user_id=user_id, cause=exc, stage="aead")

    if isinstance(exc, httpx.TransportError):
        return NetworkError(message, user_id=user_id, cause=exc)

    if isinstance(exc, APIError):
        cls = _status_error(exc.status_code, context)
        return cls(message, user_id=user_id, cause=exc)

    if isinstance(exc, httpx.HTTPStatusError):
        cls = _status_error(exc.response.status_code, context)
        return cls(message, user_id=user_id, cause=exc)

    if isinstance(exc, CryptoFailure) and context == "generate":
        return KeyGenerationFailed(message, user_id=user_id, cause=exc)

    cls = _CONTEXT_DEFAULTS.get(context, DecryptionFailed)
    return cls(message, user_id=user_id, cause=exc)


class ErrorRecovery:
    """
    Applies the recovery policy for each E2EE error kind.

    Also serves as the envelope codec's recovery hook for public key
    lookups and decryption failures.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        notifier: Optional[Callable[[str], None]] = None,
        clock: Callable[[], int] = now_ms,
        max_key_fetch_attempts: int = MAX_KEY_FETCH_ATTEMPTS
    ):
        self.key_manager = key_manager
        self.max_key_fetch_attempts = max_key_fetch_attempts
        self._notify = notifier or log_notifier
        self._clock = clock
        self._unreachable: dict[str, int] = {}

    async def handle(self, error: BaseException, context: str = "decrypt") -> Any:
        """
        Main error handling entry point.

        Returns the recovered value where the policy recovers (public key
        after a refetch, placeholder text after a decryption failure) and
        raises a taxonomy error otherwise.
        """
        error = classify_error(error, context=context)
        logger.warning(
            "e2ee_error",
            kind=error.kind.value,
            context=context,
            user_id=error.user_id,
            error=str(error)
        )

        if error.kind is E2EEErrorKind.KEY_NOT_INITIALIZED:
            return await self._handle_key_not_initialized(error)

        if error.kind is E2EEErrorKind.KEY_NOT_FOUND:
            if not error.user_id:
                raise error
            return await self.refetch_public_key(error.user_id)

        if error.kind is E2EEErrorKind.DECRYPTION_FAILED:
            return DECRYPTION_PLACEHOLDER

        if error.kind is E2EEErrorKind.PUBLIC_KEY_FETCH_FAILED:
            if error.user_id:
                self.mark_unreachable(error.user_id)
            raise error

        if error.kind is E2EEErrorKind.NETWORK_ERROR:
            self._notify(NETWORK_NOTICE)
            raise error

        # ENCRYPTION_FAILED and KEY_GENERATION_FAILED are not recoverable here
        raise error

    async def _handle_key_not_initialized(self, error: E2EEError) -> None:
        try:
            await self.key_manager.initialize()
        except Exception as e:
            logger.error("key_initialization_failed", error=str(e))
            self._notify(KEY_SETUP_NOTICE)
            raise KeyGenerationFailed(
                "Failed to initialize encryption keys",
                cause=e
            ) from e

    # =========================================================================
    # Public Key Lookups
    # =========================================================================

    async def resolve_public_key(self, user_id: str) -> RSAPublicKey:
        """Fetch a public key, applying the recovery policy on failure."""
        try:
            return await self.key_manager.get_public_key(user_id)
        except E2EEError as e:
            return await self.handle(e, context="fetch")

    async def refetch_public_key(self, user_id: str) -> RSAPublicKey:
        """
        Retry a public key lookup with the cache invalidated before each try.

        Raises:
            PublicKeyFetchFailed: After MAX_KEY_FETCH_ATTEMPTS failures
        """
        def bust_cache(attempt: int) -> None:
            self.key_manager.clear_cache_for_user(user_id)

        result = await retry_bounded(
            lambda: self.key_manager.get_public_key(user_id),
            attempts=self.max_key_fetch_attempts,
            retry_on=(KeyNotFound, PublicKeyFetchFailed, NetworkError),
            before_attempt=bust_cache
        )
        if result.ok:
            self._unreachable.pop(user_id, None)
            return result.value

        self.mark_unreachable(user_id)
        raise PublicKeyFetchFailed(
            f"Failed to fetch public key for user {user_id} "
            f"after {self.max_key_fetch_attempts} attempts",
            user_id=user_id,
            cause=result.error
        ) from result.error

    # =========================================================================
    # Decryption Failures
    # =========================================================================

    async def handle_decryption_failure(
        self,
        error: BaseException,
        envelope: EncryptedEnvelope
    ) -> str:
        """
        Turn a failed decryption into placeholder text.

        An unwrap failure means the content key was wrapped for a different
        public key, so the cached key for the recipient is dropped.
        """
        error = classify_error(error, context="decrypt")

        if error.kind is E2EEErrorKind.DECRYPTION_FAILED and error.stage == "unwrap":
            if envelope.recipient_user_id:
                self.key_manager.clear_cache_for_user(envelope.recipient_user_id)
                logger.info(
                    "stale_public_key_invalidated",
                    user_id=envelope.recipient_user_id
                )

        logger.error(
            "message_decryption_failed",
            kind=error.kind.value,
            stage=error.stage,
            sender_key_id=envelope.sender_key_id,
            error=str(error)
        )
        return DECRYPTION_PLACEHOLDER

    # =========================================================================
    # Reachability
    # =========================================================================

    def mark_unreachable(self, user_id: str) -> None:
        """Advisory only: record that a user's key could not be fetched."""
        self._unreachable[user_id] = self._clock()

    def is_unreachable(self, user_id: str, window_ms: int = UNREACHABLE_WINDOW_MS) -> bool:
        marked_at = self._unreachable.get(user_id)
        return marked_at is not None and self._clock() - marked_at < window_ms

    @property
    def unreachable_users(self) -> dict[str, int]:
        return dict(self._unreachable)
