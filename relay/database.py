"""
VaultRelay Database Layer

SQLite database with async support using aiosqlite. Holds vault mappings,
the public key directory and stored message records.
"""

import os
import json
import aiosqlite
from pathlib import Path
from typing import Optional, Any
import structlog

from shared.models import now_ms

logger = structlog.get_logger()


# SQL Schema
SCHEMA = """
-- Upstream user id -> vault that receives its messages
CREATE TABLE IF NOT EXISTS user_mappings (
    user_id TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

-- Public key directory (last write wins)
CREATE TABLE IF NOT EXISTS public_keys (
    user_id TEXT PRIMARY KEY,
    public_key TEXT NOT NULL,
    key_id TEXT NOT NULL,
    registered_at INTEGER NOT NULL
);

-- Stored message records (plaintext legacy or encrypted envelope JSON)
CREATE TABLE IF NOT EXISTS messages (
    key TEXT PRIMARY KEY,
    vault_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    body TEXT NOT NULL,
    encrypted BOOLEAN DEFAULT FALSE,
    synced BOOLEAN DEFAULT FALSE,
    created_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_owner ON messages(vault_id, user_id);
CREATE INDEX IF NOT EXISTS idx_messages_expires ON messages(expires_at);
"""

DAY_MS = 24 * 60 * 60 * 1000


def message_key(vault_id: str, user_id: str, message_id: str) -> str:
    """Storage key for one message record."""
    return f"{vault_id}/{user_id}/{message_id}"


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str = "data/relay.db", message_ttl_days: int = 10):
        self.db_path = Path(db_path)
        self.message_ttl_ms = message_ttl_days * DAY_MS
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Initialize database connection and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.executescript(SCHEMA)
        await self._connection.commit()

        logger.info("database_connected", path=str(self.db_path))

    async def disconnect(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("database_disconnected")

    @property
    def conn(self) -> aiosqlite.Connection:
        """Get the database connection."""
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    # =========================================================================
    # Vault Mappings
    # =========================================================================

    async def set_user_mapping(self, user_id: str, vault_id: str) -> None:
        """Map an upstream user id to a vault (overwrites)."""
        await self.conn.execute(
            """
            INSERT INTO user_mappings (user_id, vault_id, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET vault_id = excluded.vault_id
            """,
            (user_id, vault_id, now_ms())
        )
        await self.conn.commit()

    async def get_vault_for_user(self, user_id: str) -> Optional[str]:
        """Get the vault a user id is mapped to."""
        async with self.conn.execute(
            "SELECT vault_id FROM user_mappings WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row["vault_id"] if row else None

    # =========================================================================
    # Public Key Directory
    # =========================================================================

    async def upsert_public_key(
        self,
        user_id: str,
        public_key: str,
        key_id: str,
        registered_at: Optional[int] = None
    ) -> dict[str, Any]:
        """Create or replace the public key record for a user."""
        await self.conn.execute(
            """
            INSERT INTO public_keys (user_id, public_key, key_id, registered_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                public_key = excluded.public_key,
                key_id = excluded.key_id,
                registered_at = excluded.registered_at
            """,
            (user_id, public_key, key_id, registered_at or now_ms())
        )
        await self.conn.commit()
        return await self.get_public_key(user_id)

    async def get_public_key(self, user_id: str) -> Optional[dict[str, Any]]:
        """Get the public key record for a user."""
        async with self.conn.execute(
            "SELECT * FROM public_keys WHERE user_id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Messages
    # =========================================================================

    async def store_message(
        self,
        vault_id: str,
        user_id: str,
        message_id: str,
        body: dict[str, Any]
    ) -> str:
        """Store (or replace) a message record. Returns its key."""
        key = message_key(vault_id, user_id, message_id)
        now = now_ms()
        await self.conn.execute(
            """
            INSERT OR REPLACE INTO messages
                (key, vault_id, user_id, message_id, body, encrypted, synced, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key,
                vault_id,
                user_id,
                message_id,
                json.dumps(body),
                bool(body.get("encrypted", False)),
                bool(body.get("synced", False)),
                now,
                now + self.message_ttl_ms,
            )
        )
        await self.conn.commit()
        return key

    async def get_messages(self, vault_id: str, user_id: str) -> list[dict[str, Any]]:
        """Get all unexpired message records for a vault/user pair."""
        async with self.conn.execute(
            """
            SELECT body, synced FROM messages
            WHERE vault_id = ? AND user_id = ? AND expires_at > ?
            ORDER BY created_at, rowid
            """,
            (vault_id, user_id, now_ms())
        ) as cursor:
            rows = await cursor.fetchall()

        records = []
        for row in rows:
            record = json.loads(row["body"])
            record["synced"] = bool(row["synced"])
            records.append(record)
        return records

    async def mark_synced(self, vault_id: str, user_id: str, message_id: str) -> bool:
        """Mark one message as synced and refresh its expiry."""
        now = now_ms()
        cursor = await self.conn.execute(
            """
            UPDATE messages SET synced = TRUE, expires_at = ?
            WHERE key = ?
            """,
            (now + self.message_ttl_ms, message_key(vault_id, user_id, message_id))
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def purge_expired(self) -> int:
        """Delete expired message records. Returns the number removed."""
        cursor = await self.conn.execute(
            "DELETE FROM messages WHERE expires_at <= ?", (now_ms(),)
        )
        await self.conn.commit()
        if cursor.rowcount:
            logger.info("expired_messages_purged", count=cursor.rowcount)
        return cursor.rowcount


# Global database instance
db = Database(
    db_path=os.environ.get("RELAY_DB_PATH", "data/relay.db"),
    message_ttl_days=int(os.environ.get("MESSAGE_TTL_DAYS", "10"))
)
