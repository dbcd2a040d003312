"""
VaultRelay Relay Cryptography

Manages the relay's own key pair. The relay never decrypts messages; its
key only identifies it as the sender of envelopes it builds.
"""

import os
from pathlib import Path
from typing import Optional
import structlog

from shared.crypto_utils import KeyPair

logger = structlog.get_logger()

RELAY_KEY_PATH = os.environ.get("RELAY_KEY_PATH", "data/relay.key")


class RelayCrypto:
    """Loads or generates the relay key pair."""

    def __init__(self, key_path: str = RELAY_KEY_PATH):
        self.key_path = Path(key_path)
        self._keypair: Optional[KeyPair] = None

    def initialize(self) -> None:
        """Load or generate the relay's key pair."""
        self._keypair = KeyPair.load_or_generate(self.key_path)
        logger.info(
            "relay_crypto_initialized",
            fingerprint=self._keypair.fingerprint
        )

    @property
    def keypair(self) -> KeyPair:
        """Get the relay's key pair."""
        if not self._keypair:
            raise RuntimeError("Crypto not initialized. Call initialize() first.")
        return self._keypair

    @property
    def sender_key_id(self) -> str:
        return self.keypair.fingerprint


# Global relay crypto instance
relay_crypto = RelayCrypto()
