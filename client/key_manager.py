"""
VaultRelay Key Manager

Owns the local key pair lifecycle: generation, at-rest protection,
persistence, registration with the relay's key directory (with backoff
retry), and a read-through cache of other parties' public keys.
"""

import asyncio
from enum import Enum
from typing import Callable, Optional

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from pydantic import ValidationError
import httpx
import structlog

from shared.crypto_utils import (
    KeyPair,
    b64decode,
    b64encode,
    decrypt_private_key,
    derive_symmetric_key,
    encrypt_private_key,
    generate_device_seed,
    generate_keypair,
    generate_salt,
    import_private_pem,
    import_public_pem,
)
from shared.errors import (
    CryptoFailure,
    KeyGenerationFailed,
    KeyNotFound,
    KeyNotInitialized,
    NetworkError,
    PublicKeyFetchFailed,
)
from shared.models import (
    PUBLIC_KEY_CACHE_TTL_MS,
    KeyPairRecord,
    PublicKeyCacheEntry,
    RegistrationRetryState,
    generate_id,
    now_ms,
)
from .sdk import APIError, RelayClient
from .settings_store import SettingsStore, load_settings, save_settings

logger = structlog.get_logger()

REGISTRATION_FAILED_NOTICE = (
    "Could not register your encryption key with the relay. "
    "It will be retried automatically in the background."
)


class KeyState(str, Enum):
    UNINITIALIZED = "uninitialized"
    KEYS_GENERATED = "keys_generated"
    REGISTERED = "registered"
    REGISTRATION_FAILED = "registration_failed"
    PENDING_RETRY = "pending_retry"


def log_notifier(message: str) -> None:
    """Default notifier: user-facing notices go to the log."""
    logger.warning("user_notice", message=message)


class KeyManager:
    """
    Manages the key pair of one end-user identity.

    All operations are safe to call repeatedly. ``initialize()`` is
    single-flight: concurrent callers share one in-flight run, so keys are
    never generated twice.
    """

    def __init__(
        self,
        store: SettingsStore,
        relay: RelayClient,
        clock: Callable[[], int] = now_ms,
        notifier: Optional[Callable[[str], None]] = None,
        cache_ttl_ms: int = PUBLIC_KEY_CACHE_TTL_MS
    ):
        self.store = store
        self.relay = relay
        self.cache_ttl_ms = cache_ttl_ms
        self._clock = clock
        self._notify = notifier or log_notifier
        self._key_pair: Optional[KeyPair] = None
        self._record: Optional[KeyPairRecord] = None
        self._public_key_cache: dict[str, PublicKeyCacheEntry] = {}
        self._init_task: Optional[asyncio.Task] = None
        self.state = KeyState.UNINITIALIZED

    @property
    def is_initialized(self) -> bool:
        return self._key_pair is not None

    @property
    def key_id(self) -> Optional[str]:
        return self._record.key_id if self._record else None

    # =========================================================================
    # Initialization
    # =========================================================================

    async def initialize(self) -> None:
        """
        Load or generate the key pair.

        Once keys are loaded, later calls only drive a pending registration
        retry (subject to backoff).

        Raises:
            KeyGenerationFailed: If a new key pair could not be generated
            KeyNotInitialized: If the stored key pair could not be unlocked
        """
        if self._key_pair is not None:
            await self._retry_pending_registration()
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task

        try:
            # Callers may give up waiting; the run itself keeps going
            await asyncio.shield(task)
        finally:
            if task.done() and (task.cancelled() or task.exception() is not None):
                if self._init_task is task:
                    self._init_task = None

    async def _initialize(self) -> None:
        settings = await load_settings(self.store)

        if settings.encryption_keys is None:
            await self._generate_and_save_keys()
            return

        self._load_existing_keys(settings.encryption_keys)
        if settings.registration_retry.pending:
            self.state = KeyState.PENDING_RETRY
            await self.attempt_registration()
        else:
            self.state = KeyState.REGISTERED

        logger.info(
            "key_manager_initialized",
            key_id=self.key_id,
            state=self.state.value
        )

    async def _generate_and_save_keys(self) -> None:
        try:
            key_pair = generate_keypair()
        except CryptoFailure as e:
            logger.error("key_generation_failed", error=str(e))
            raise KeyGenerationFailed("Failed to generate key pair", cause=e) from e

        device_seed = generate_device_seed()
        salt = generate_salt()
        protection_key = derive_symmetric_key(device_seed, salt)
        encrypted_private = encrypt_private_key(key_pair.private_key_pem, protection_key)

        record = KeyPairRecord(
            public_key_pem=key_pair.public_key_pem,
            encrypted_private_key=b64encode(encrypted_private),
            device_seed=device_seed,
            key_id=generate_id(),
            created_at=self._clock(),
            salt=b64encode(salt),
        )

        settings = await load_settings(self.store)
        settings.encryption_keys = record
        await save_settings(self.store, settings)

        self._key_pair = key_pair
        self._record = record
        self.state = KeyState.KEYS_GENERATED
        logger.info(
            "key_pair_generated",
            key_id=record.key_id,
            fingerprint=key_pair.fingerprint
        )

        await self._register(record)

    def _load_existing_keys(self, record: KeyPairRecord) -> None:
        try:
            salt = b64decode(record.salt)
            protection_key = derive_symmetric_key(record.device_seed, salt)
            private_pem = decrypt_private_key(
                b64decode(record.encrypted_private_key),
                protection_key
            )
            private_key = import_private_pem(private_pem)
            public_key = import_public_pem(record.public_key_pem)
        except CryptoFailure as e:
            logger.error("stored_key_pair_unreadable", key_id=record.key_id, error=str(e))
            raise KeyNotInitialized("Stored key pair could not be unlocked", cause=e) from e

        self._key_pair = KeyPair(private_key=private_key, public_key=public_key)
        self._record = record
        self.state = KeyState.KEYS_GENERATED

    def get_key_pair(self) -> KeyPair:
        """
        Get the local key pair.

        Raises:
            KeyNotInitialized: If initialize() has not completed
        """
        if self._key_pair is None:
            raise KeyNotInitialized("Key pair not initialized. Call initialize() first.")
        return self._key_pair

    # =========================================================================
    # Registration
    # =========================================================================

    async def _send_registration(self, record: KeyPairRecord) -> None:
        settings = await load_settings(self.store)
        if not settings.user_id or not settings.vault_id:
            raise APIError("User id and vault id must be configured before registering", 400)
        await self.relay.register_public_key(
            user_id=settings.user_id,
            vault_id=settings.vault_id,
            public_key_pem=record.public_key_pem,
            key_id=record.key_id
        )

    async def _register(self, record: KeyPairRecord) -> bool:
        """One registration attempt. Failures are recorded, not raised."""
        try:
            await self._send_registration(record)
        except (APIError, httpx.HTTPError) as e:
            await self._record_registration_failure(e)
            return False
        await self._clear_retry_state()
        return True

    async def _clear_retry_state(self) -> None:
        settings = await load_settings(self.store)
        settings.registration_retry = RegistrationRetryState()
        await save_settings(self.store, settings)
        self.state = KeyState.REGISTERED
        logger.info("public_key_registered", key_id=self.key_id)

    async def _record_registration_failure(self, error: Exception) -> None:
        self.state = KeyState.REGISTRATION_FAILED
        settings = await load_settings(self.store)
        retry = settings.registration_retry
        first_failure = not retry.pending

        retry.pending = True
        retry.failure_count += 1
        retry.last_attempt_at = self._clock()
        await save_settings(self.store, settings)

        self.state = KeyState.PENDING_RETRY
        logger.warning(
            "public_key_registration_failed",
            failure_count=retry.failure_count,
            next_retry_hours=retry.wait_hours(),
            error=str(error)
        )
        if first_failure:
            self._notify(REGISTRATION_FAILED_NOTICE)

    async def _retry_pending_registration(self) -> None:
        settings = await load_settings(self.store)
        if settings.registration_retry.pending:
            await self.attempt_registration()

    async def attempt_registration(self, force: bool = False) -> bool:
        """
        Retry a pending registration if the backoff window has elapsed.

        Waits min(2 ** failure_count, 24) hours between attempts and keeps
        retrying indefinitely.

        Returns:
            True if the key is now registered, False if skipped or failed
        """
        settings = await load_settings(self.store)
        retry = settings.registration_retry
        if not retry.pending:
            return False

        record = self._record or settings.encryption_keys
        if record is None:
            raise KeyNotInitialized("No keys found to register")

        now = self._clock()
        if not force and not retry.is_due(now):
            logger.debug(
                "registration_retry_not_due",
                failure_count=retry.failure_count,
                wait_hours=retry.wait_hours()
            )
            return False

        return await self._register(record)

    async def force_register_public_key(self) -> None:
        """
        Register immediately, ignoring backoff. For user-triggered actions.

        Raises:
            KeyNotInitialized: If there is no stored key pair
            NetworkError: If the relay could not be reached or refused the key
        """
        record = self._record
        if record is None:
            settings = await load_settings(self.store)
            record = settings.encryption_keys
        if record is None:
            raise KeyNotInitialized("No keys found to register")

        try:
            await self._send_registration(record)
        except httpx.HTTPError as e:
            await self._record_registration_failure(e)
            raise NetworkError("Could not reach the relay to register the public key", cause=e) from e
        except APIError as e:
            await self._record_registration_failure(e)
            raise NetworkError(
                f"Relay rejected public key registration ({e.status_code}): {e}",
                cause=e
            ) from e

        await self._clear_retry_state()

    # =========================================================================
    # Public Key Cache
    # =========================================================================

    async def get_public_key(self, user_id: str) -> RSAPublicKey:
        """
        Get a user's public key, from cache if fetched within the TTL.

        Raises:
            KeyNotFound: If the relay has no key for the user
            NetworkError: If the relay could not be reached
            PublicKeyFetchFailed: On any other lookup failure
        """
        now = self._clock()
        cached = self._public_key_cache.get(user_id)
        if cached is not None and cached.is_fresh(now, self.cache_ttl_ms):
            return import_public_pem(cached.public_key_pem)

        settings = await load_settings(self.store)
        if not settings.vault_id:
            raise PublicKeyFetchFailed(
                f"No vault configured to fetch public key for user {user_id}",
                user_id=user_id
            )

        try:
            record = await self.relay.fetch_public_key(user_id, settings.vault_id)
            public_key = import_public_pem(record.public_key)
        except APIError as e:
            if e.status_code == 404:
                raise KeyNotFound(
                    f"No public key registered for user {user_id}",
                    user_id=user_id,
                    cause=e
                ) from e
            raise PublicKeyFetchFailed(
                f"Failed to fetch public key for user {user_id}",
                user_id=user_id,
                cause=e
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Network error fetching public key for user {user_id}",
                user_id=user_id,
                cause=e
            ) from e
        except (ValidationError, CryptoFailure) as e:
            raise PublicKeyFetchFailed(
                f"Invalid public key returned for user {user_id}",
                user_id=user_id,
                cause=e
            ) from e

        self._public_key_cache[user_id] = PublicKeyCacheEntry(
            user_id=user_id,
            public_key_pem=record.public_key,
            key_id=record.key_id,
            fetched_at=now
        )
        logger.debug("public_key_fetched", user_id=user_id, key_id=record.key_id)
        return public_key

    def get_cached_entry(self, user_id: str) -> Optional[PublicKeyCacheEntry]:
        return self._public_key_cache.get(user_id)

    def clear_cache_for_user(self, user_id: str) -> None:
        """Invalidate one cached key (e.g. after a suspected stale-key failure)."""
        self._public_key_cache.pop(user_id, None)

    def clear_public_key_cache(self) -> None:
        self._public_key_cache.clear()
