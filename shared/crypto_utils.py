"""
VaultRelay Cryptographic Utilities

Hybrid envelope primitives: RSA-OAEP (SHA-256) for wrapping keys and
AES-256-GCM for content. PBKDF2-HMAC-SHA256 protects the private key at rest.
"""

import os
import json
import time
import base64
import binascii
import hashlib
import platform
from pathlib import Path
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoFailure, AuthenticationFailed


# Constants
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
NONCE_SIZE = 12          # 96 bits for AES-GCM
KEY_SIZE = 32            # 256 bits for AES-256
SALT_SIZE = 16           # 128 bits for PBKDF2 salt
PBKDF2_ITERATIONS = 100_000
FINGERPRINT_BYTES = 8


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


@dataclass
class KeyPair:
    """
    RSA key pair used for key wrapping.

    The public key is distributed through the relay's key directory.
    The private key never leaves the device unencrypted.
    """
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    @property
    def public_key_pem(self) -> str:
        """Get the SubjectPublicKeyInfo PEM text."""
        return export_public_pem(self.public_key)

    @property
    def private_key_pem(self) -> str:
        """Get the unencrypted PKCS8 PEM text."""
        return export_private_pem(self.private_key)

    @property
    def fingerprint(self) -> str:
        """Short stable identifier of the public key."""
        return key_fingerprint(self.public_key_pem)

    def save(self, path: Path) -> None:
        """
        Save the private key to a PEM file.

        Args:
            path: File path to save the key
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.private_key_pem)
        # Owner read/write only
        os.chmod(path, 0o600)

    @classmethod
    def load(cls, path: Path) -> "KeyPair":
        """
        Load a key pair from a private key PEM file.

        Args:
            path: Path to the private key file

        Returns:
            KeyPair instance
        """
        private_key = import_private_pem(path.read_text())
        return cls(
            private_key=private_key,
            public_key=private_key.public_key()
        )

    @classmethod
    def load_or_generate(cls, path: Path) -> "KeyPair":
        """
        Load existing key pair or generate a new one.

        Args:
            path: Path to the private key file

        Returns:
            KeyPair instance
        """
        if path.exists():
            return cls.load(path)
        keypair = generate_keypair()
        keypair.save(path)
        return keypair


def generate_keypair() -> KeyPair:
    """
    Generate a new 2048-bit RSA key pair.

    Returns:
        New KeyPair instance

    Raises:
        CryptoFailure: If the platform backend cannot generate the key
    """
    try:
        private_key = rsa.generate_private_key(
            public_exponent=RSA_PUBLIC_EXPONENT,
            key_size=RSA_KEY_SIZE,
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CryptoFailure(f"RSA key generation failed: {e}") from e
    return KeyPair(
        private_key=private_key,
        public_key=private_key.public_key()
    )


def generate_symmetric_key() -> bytes:
    """Generate a fresh 256-bit AES key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def generate_salt() -> bytes:
    """Generate a fresh PBKDF2 salt."""
    return os.urandom(SALT_SIZE)


# =============================================================================
# Encoding
# =============================================================================

def b64encode(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Decode standard base64 text.

    Raises:
        CryptoFailure: If the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise CryptoFailure(f"Invalid base64 data: {e}") from e


def export_public_pem(public_key: rsa.RSAPublicKey) -> str:
    """Export a public key as SubjectPublicKeyInfo PEM text."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def export_private_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Export a private key as unencrypted PKCS8 PEM text."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def import_public_pem(pem: str) -> rsa.RSAPublicKey:
    """
    Import an RSA public key from PEM text.

    Raises:
        CryptoFailure: If the PEM is malformed or not an RSA key
    """
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise CryptoFailure(f"Invalid public key PEM: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoFailure("Public key is not an RSA key")
    return key


def import_private_pem(pem: str) -> rsa.RSAPrivateKey:
    """
    Import an RSA private key from unencrypted PEM text.

    Raises:
        CryptoFailure: If the PEM is malformed or not an RSA key
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as e:
        raise CryptoFailure(f"Invalid private key PEM: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoFailure("Private key is not an RSA key")
    return key


# =============================================================================
# Symmetric Encryption
# =============================================================================

def encrypt_aead(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """
    Encrypt data using AES-256-GCM with a fresh random nonce.

    Args:
        plaintext: Data to encrypt
        key: 32-byte AES key

    Returns:
        Tuple of (ciphertext || tag, nonce)
    """
    if len(key) != KEY_SIZE:
        raise CryptoFailure(f"AES key must be {KEY_SIZE} bytes, got {len(key)}")
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return ciphertext, nonce


def decrypt_aead(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    Decrypt data encrypted with AES-256-GCM.

    Raises:
        AuthenticationFailed: If the tag does not verify or the nonce is malformed
    """
    if len(key) != KEY_SIZE:
        raise CryptoFailure(f"AES key must be {KEY_SIZE} bytes, got {len(key)}")
    if len(nonce) != NONCE_SIZE:
        raise AuthenticationFailed(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationFailed("AEAD tag verification failed") from e


# =============================================================================
# Key Wrapping
# =============================================================================

def wrap_key(sym_key: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """
    Encrypt a symmetric key with a recipient's RSA public key.

    The result is exactly one modulus-sized OAEP block.
    """
    try:
        return public_key.encrypt(sym_key, _oaep())
    except ValueError as e:
        raise CryptoFailure(f"Key wrap failed: {e}") from e


def unwrap_key(wrapped: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """
    Decrypt a wrapped symmetric key with our RSA private key.

    Raises:
        CryptoFailure: If the block does not decrypt or is not a 256-bit key
    """
    try:
        sym_key = private_key.decrypt(wrapped, _oaep())
    except ValueError as e:
        raise CryptoFailure("Key unwrap failed") from e
    if len(sym_key) != KEY_SIZE:
        raise CryptoFailure(f"Unwrapped key has unexpected length {len(sym_key)}")
    return sym_key


# =============================================================================
# Private Key Protection
# =============================================================================

def derive_symmetric_key(seed: str, salt: bytes) -> bytes:
    """
    Derive the at-rest protection key from a device seed.

    Only ever used to protect the locally stored private key.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(seed.encode("utf-8"))


def encrypt_private_key(private_key_pem: str, key: bytes) -> bytes:
    """
    Encrypt a private key PEM for storage.

    Returns:
        nonce || ciphertext || tag (concatenated)
    """
    ciphertext, nonce = encrypt_aead(private_key_pem.encode("utf-8"), key)
    return nonce + ciphertext


def decrypt_private_key(blob: bytes, key: bytes) -> str:
    """
    Decrypt a private key PEM produced by encrypt_private_key.

    Raises:
        AuthenticationFailed: If the protection key is wrong or the blob was altered
    """
    nonce = blob[:NONCE_SIZE]
    ciphertext = blob[NONCE_SIZE:]
    return decrypt_aead(ciphertext, key, nonce).decode("utf-8")


# =============================================================================
# Identifiers
# =============================================================================

def key_fingerprint(public_key_pem: str) -> str:
    """First 8 bytes of SHA-256 over the PEM text, as hex."""
    digest = hashlib.sha256(public_key_pem.encode("utf-8")).digest()
    return digest[:FINGERPRINT_BYTES].hex()


def generate_device_seed() -> str:
    """
    Generate a device-specific seed for at-rest key derivation.

    Mixes host characteristics with fresh randomness, so two installs on
    the same machine still get different seeds.
    """
    fingerprint = {
        "node": platform.node(),
        "system": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "timestamp": int(time.time() * 1000),
        "random": os.urandom(16).hex(),
    }
    data = json.dumps(fingerprint, sort_keys=True).encode("utf-8")
    return b64encode(hashlib.sha256(data).digest())
