"""
VaultRelay Python SDK

Client library for the relay's key directory and message store.
"""

import os
from pathlib import Path
from typing import Any, Optional
from dataclasses import dataclass, field
import httpx

from shared.models import PublicKeyRecord


DEFAULT_URL = "http://localhost:8787"


class RelayError(Exception):
    """Base exception for relay client errors."""
    pass


class APIError(RelayError):
    """Raised when an API request fails."""
    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


def _default_config_dir() -> Path:
    return Path(os.environ.get("VAULTRELAY_HOME", Path.home() / ".vaultrelay"))


@dataclass
class ClientConfig:
    """Client configuration."""
    base_url: str = field(default_factory=lambda: os.environ.get("VAULTRELAY_API_URL", DEFAULT_URL))
    timeout: float = 30.0
    config_dir: Path = field(default_factory=_default_config_dir)

    @property
    def settings_file(self) -> Path:
        return self.config_dir / "settings.json"


class RelayClient:
    """
    Async client for the relay HTTP API.

    Usage:
        async with RelayClient("https://relay.example.com") as relay:
            record = await relay.fetch_public_key("U123", vault_id="my-vault")
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = ClientConfig(base_url=base_url, timeout=timeout)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RelayClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport
            )

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client."""
        if not self._client:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[dict] = None,
        headers: Optional[dict] = None
    ) -> Any:
        """
        Make an API request.

        Raises:
            APIError: On any 4xx/5xx response
            httpx.TransportError: On connection failures
        """
        response = await self.client.request(
            method,
            path,
            json=json_data,
            headers=headers
        )

        if response.status_code >= 400:
            try:
                body = response.json()
                error_detail = body.get("detail") or body.get("error") or response.text
            except Exception:
                error_detail = response.text
            raise APIError(str(error_detail), response.status_code)

        return response.json()

    # =========================================================================
    # Vault Mapping
    # =========================================================================

    async def register_mapping(self, user_id: str, vault_id: str) -> dict:
        """Associate an upstream user id with a vault."""
        return await self._request(
            "POST",
            "/mapping",
            json_data={"userId": user_id, "vaultId": vault_id}
        )

    # =========================================================================
    # Public Key Directory
    # =========================================================================

    async def register_public_key(
        self,
        user_id: str,
        vault_id: str,
        public_key_pem: str,
        key_id: str
    ) -> dict:
        """
        Publish our public key so the relay can encrypt for us.

        Raises:
            APIError: 400 on missing fields, 403 on vault mismatch
        """
        return await self._request(
            "POST",
            "/publickey/register",
            json_data={
                "userId": user_id,
                "vaultId": vault_id,
                "publicKey": public_key_pem,
                "keyId": key_id
            }
        )

    async def fetch_public_key(self, user_id: str, vault_id: str) -> PublicKeyRecord:
        """
        Look up a registered public key.

        Raises:
            APIError: 404 if the user has no key, 403 if the vault does not own it
        """
        data = await self._request(
            "GET",
            f"/publickey/{user_id}",
            headers={"X-Vault-Id": vault_id}
        )
        return PublicKeyRecord.model_validate(data)

    # =========================================================================
    # Messages
    # =========================================================================

    async def fetch_messages(self, vault_id: str, user_id: str) -> list[dict]:
        """Get stored message records (plaintext or encrypted)."""
        return await self._request("GET", f"/messages/{vault_id}/{user_id}")

    async def update_sync_status(
        self,
        vault_id: str,
        user_id: str,
        message_ids: list[str]
    ) -> dict:
        """Mark records as synced on the relay."""
        return await self._request(
            "POST",
            "/messages/update-sync-status",
            json_data={
                "vaultId": vault_id,
                "userId": user_id,
                "messageIds": message_ids
            }
        )

    async def health(self) -> dict:
        """Check relay health."""
        return await self._request("GET", "/health")
