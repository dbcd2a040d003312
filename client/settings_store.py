"""
VaultRelay Settings Store

Key-value persistence for the client's settings blob, plus the typed,
versioned view of it that the key manager reads and writes.
"""

import json
import os
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field
import structlog

from shared.models import KeyPairRecord, RegistrationRetryState

logger = structlog.get_logger()

SETTINGS_SCHEMA_VERSION = 2


class SettingsStore(Protocol):
    """Injected persistence capability (the host's settings store)."""

    async def load_data(self) -> Optional[dict[str, Any]]: ...

    async def save_data(self, data: dict[str, Any]) -> None: ...


class MemorySettingsStore:
    """In-process store, used by tests and embedding hosts."""

    def __init__(self, data: Optional[dict[str, Any]] = None):
        self._data: Optional[dict[str, Any]] = json.loads(json.dumps(data)) if data else None
        self.save_count = 0

    async def load_data(self) -> Optional[dict[str, Any]]:
        return json.loads(json.dumps(self._data)) if self._data is not None else None

    async def save_data(self, data: dict[str, Any]) -> None:
        self._data = json.loads(json.dumps(data))
        self.save_count += 1


class JsonFileSettingsStore:
    """Settings persisted as a JSON file with owner-only permissions."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def load_data(self) -> Optional[dict[str, Any]]:
        if not self.path.exists():
            return None
        return json.loads(self.path.read_text())

    async def save_data(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2))
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)


class PersistedSettings(BaseModel):
    """Typed view of the settings blob. Unknown keys are preserved."""
    schema_version: int = Field(default=SETTINGS_SCHEMA_VERSION, alias="schemaVersion")
    api_url: Optional[str] = Field(default=None, alias="apiUrl")
    user_id: Optional[str] = Field(default=None, alias="userId")
    vault_id: Optional[str] = Field(default=None, alias="vaultId")
    encryption_keys: Optional[KeyPairRecord] = Field(default=None, alias="encryptionKeys")
    registration_retry: RegistrationRetryState = Field(
        default_factory=RegistrationRetryState, alias="registrationRetry"
    )

    class Config:
        populate_by_name = True
        extra = "allow"

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def migrate_settings(data: Optional[dict[str, Any]]) -> dict[str, Any]:
    """
    Bring a raw settings blob up to the current schema.

    Version 1 blobs (no ``schemaVersion``) used a bare
    ``pendingKeyRegistration`` flag, ``lineUserId`` for the identity, and
    ``publicKey``/``deviceId`` inside ``encryptionKeys``.
    """
    data = dict(data or {})
    version = data.get("schemaVersion", 1)

    if version < 2:
        if "lineUserId" in data and "userId" not in data:
            data["userId"] = data.pop("lineUserId")

        keys = data.get("encryptionKeys")
        if isinstance(keys, dict):
            keys = dict(keys)
            if "publicKey" in keys and "publicKeyPem" not in keys:
                keys["publicKeyPem"] = keys.pop("publicKey")
            if "deviceId" in keys and "deviceSeed" not in keys:
                keys["deviceSeed"] = keys.pop("deviceId")
            data["encryptionKeys"] = keys

        pending = bool(data.pop("pendingKeyRegistration", False))
        data.setdefault(
            "registrationRetry",
            {"pending": pending, "lastAttemptAt": 0, "failureCount": 0}
        )
        data["schemaVersion"] = SETTINGS_SCHEMA_VERSION
        logger.info("settings_migrated", from_version=version, to_version=SETTINGS_SCHEMA_VERSION)

    return data


async def load_settings(store: SettingsStore) -> PersistedSettings:
    """Load, migrate and validate the settings blob."""
    raw = await store.load_data()
    return PersistedSettings.model_validate(migrate_settings(raw))


async def save_settings(store: SettingsStore, settings: PersistedSettings) -> None:
    await store.save_data(settings.to_data())
