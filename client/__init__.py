"""
VaultRelay Client

Key management, message decryption and sync for the note vault side.
"""

from .sdk import RelayClient, RelayError, APIError
from .key_manager import KeyManager, KeyState
from .recovery import ErrorRecovery, classify_error
from .sync import MessageSync, SyncReport

__all__ = [
    "RelayClient",
    "RelayError",
    "APIError",
    "KeyManager",
    "KeyState",
    "ErrorRecovery",
    "classify_error",
    "MessageSync",
    "SyncReport",
]
__version__ = "0.1.0"
