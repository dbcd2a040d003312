"""
VaultRelay Relay - Main Application

FastAPI server that stores incoming messages for note vaults and serves
the public key directory used for end-to-end encryption.
"""

import hmac
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import structlog

from shared.crypto_utils import import_public_pem
from shared.errors import CryptoFailure, EncryptionFailed
from shared.models import (
    IncomingMessage,
    MappingRequest,
    PublicKeyRecord,
    PublicKeyRegisterRequest,
    SyncStatusRequest,
)

from .database import db
from .crypto import relay_crypto
from .mirror import relay_mirror

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Configuration - Load from environment variables
INGEST_TOKEN = os.environ.get("RELAY_INGEST_TOKEN", "")
CORS_ORIGINS = os.environ.get("RELAY_CORS_ORIGINS", "app://obsidian.md").split(",")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("relay_starting")
    await db.connect()
    relay_crypto.initialize()
    await db.purge_expired()
    logger.info("relay_started", sender_key_id=relay_crypto.sender_key_id)

    yield

    # Shutdown
    logger.info("relay_shutting_down")
    await db.disconnect()
    logger.info("relay_stopped")


# Create FastAPI app
app = FastAPI(
    title="VaultRelay",
    description="Message relay and public key directory for note vaults",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Vault-Id"],
    expose_headers=["Content-Length"],
    max_age=86400,
)


async def _require_vault_owner(user_id: str, vault_id: str) -> None:
    """Reject unless the user id is mapped to this vault."""
    stored_vault_id = await db.get_vault_for_user(user_id)
    if not stored_vault_id or not hmac.compare_digest(stored_vault_id, vault_id):
        logger.warning("vault_authorization_failed", user_id=user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unauthorized access"
        )


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


# =============================================================================
# Vault Mapping
# =============================================================================

@app.post("/mapping")
async def api_set_mapping(request: MappingRequest):
    """Map an upstream user id to a vault."""
    if not request.user_id or not request.vault_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing userId or vaultId"
        )
    await db.set_user_mapping(request.user_id, request.vault_id)
    logger.info("vault_mapping_set", user_id=request.user_id)
    return {"status": "ok"}


# =============================================================================
# Public Key Directory
# =============================================================================

@app.post("/publickey/register")
async def api_register_public_key(request: PublicKeyRegisterRequest):
    """
    Register (or replace) a user's public key.

    The vault id must match the stored mapping for the user id.
    """
    if not all([request.user_id, request.vault_id, request.public_key, request.key_id]):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing userId, vaultId, publicKey or keyId"
        )

    await _require_vault_owner(request.user_id, request.vault_id)

    try:
        import_public_pem(request.public_key)
    except CryptoFailure:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid public key"
        )

    await db.upsert_public_key(
        user_id=request.user_id,
        public_key=request.public_key,
        key_id=request.key_id
    )
    logger.info("public_key_registered", user_id=request.user_id, key_id=request.key_id)
    return {"success": True}


@app.get("/publickey/{user_id}")
async def api_get_public_key(
    user_id: str,
    x_vault_id: Optional[str] = Header(default=None, alias="X-Vault-Id")
):
    """Look up a registered public key."""
    if not x_vault_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Vault-Id header"
        )

    await _require_vault_owner(user_id, x_vault_id)

    record = await db.get_public_key(user_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Public key not found"
        )

    return PublicKeyRecord(
        user_id=record["user_id"],
        public_key=record["public_key"],
        key_id=record["key_id"],
        registered_at=record["registered_at"]
    ).model_dump(by_alias=True)


# =============================================================================
# Messages
# =============================================================================

@app.get("/messages/{vault_id}/{user_id}")
async def api_get_messages(vault_id: str, user_id: str):
    """List stored message records for a vault."""
    await _require_vault_owner(user_id, vault_id)
    messages = await db.get_messages(vault_id, user_id)
    logger.info("messages_listed", user_id=user_id, count=len(messages))
    return messages


@app.post("/messages/update-sync-status")
async def api_update_sync_status(request: SyncStatusRequest):
    """Mark messages as synced to the vault."""
    if not request.vault_id or not request.user_id or request.message_ids is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing vaultId, userId or messageIds"
        )

    await _require_vault_owner(request.user_id, request.vault_id)

    updated = 0
    for message_id in request.message_ids:
        if await db.mark_synced(request.vault_id, request.user_id, message_id):
            updated += 1
        else:
            logger.warning("sync_status_message_not_found", message_id=message_id)

    return {"status": "ok", "updated": updated}


@app.post("/ingest")
async def api_ingest(
    message: IncomingMessage,
    x_ingest_token: Optional[str] = Header(default=None, alias="X-Ingest-Token")
):
    """
    Accept an upstream message that has already been verified.

    Stored encrypted when the user has a registered public key,
    as plaintext otherwise.
    """
    if not INGEST_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ingestion is not configured"
        )
    if not x_ingest_token or not hmac.compare_digest(x_ingest_token, INGEST_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid ingest token"
        )

    try:
        outcome, _ = await relay_mirror.store_incoming(message)
    except EncryptionFailed as e:
        logger.error("ingest_encryption_failed", user_id=message.user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to encrypt message"
        )

    return {"status": outcome.value}


# =============================================================================
# Run Server
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "relay.main:app",
        host="0.0.0.0",
        port=int(os.environ.get("RELAY_PORT", "8787")),
    )
