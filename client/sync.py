"""
VaultRelay Message Sync

Pulls stored records from the relay, turns each into text through the
envelope codec and hands it to the note writer.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
import structlog

from shared.envelope import DECRYPTION_PLACEHOLDER, EnvelopeCodec
from shared.errors import E2EEError, NetworkError
from .key_manager import KeyManager
from .sdk import APIError, RelayClient, RelayError
from .settings_store import load_settings

logger = structlog.get_logger()

# Receives the raw record and its display text
NoteWriter = Callable[[dict[str, Any], str], Awaitable[None]]


@dataclass
class SyncReport:
    """Summary of one sync pass."""
    fetched: int = 0
    written: int = 0
    placeholders: int = 0
    skipped: int = 0
    failed_writes: list[str] = field(default_factory=list)
    acknowledged: list[str] = field(default_factory=list)


class MessageSync:
    """
    One-identity sync pass.

    A record that fails to decrypt is written with placeholder text; a
    record whose note cannot be written is left unsynced. Either way the
    pass continues with the remaining records.
    """

    def __init__(
        self,
        relay: RelayClient,
        key_manager: KeyManager,
        codec: EnvelopeCodec,
        note_writer: NoteWriter
    ):
        self.relay = relay
        self.key_manager = key_manager
        self.codec = codec
        self.note_writer = note_writer

    async def sync(self) -> SyncReport:
        """
        Run a sync pass.

        Raises:
            NetworkError: If the relay could not be reached or refused the request
            KeyGenerationFailed: If local keys could not be set up
            RelayError: If the vault or user id is not configured
        """
        # Local keys must be ready before any record is decrypted
        await self.key_manager.initialize()

        settings = await load_settings(self.key_manager.store)
        if not settings.vault_id or not settings.user_id:
            raise RelayError("Vault id and user id must be configured before syncing")

        try:
            records = await self.relay.fetch_messages(settings.vault_id, settings.user_id)
        except (APIError, httpx.HTTPError) as e:
            raise NetworkError(f"Failed to fetch messages: {e}", cause=e) from e

        report = SyncReport(fetched=len(records))
        logger.info("sync_started", count=len(records))

        for record in records:
            if not isinstance(record, dict):
                report.skipped += 1
                continue
            if record.get("synced"):
                report.skipped += 1
                continue

            message_id = str(record.get("messageId", ""))
            text = await self.codec.process_transparently(record)
            if text == DECRYPTION_PLACEHOLDER:
                report.placeholders += 1

            try:
                await self.note_writer(record, text)
            except (OSError, ValueError, E2EEError) as e:
                logger.error("note_write_failed", message_id=message_id, error=str(e))
                report.failed_writes.append(message_id)
                continue

            report.written += 1
            if message_id:
                report.acknowledged.append(message_id)

        if report.acknowledged:
            try:
                await self.relay.update_sync_status(
                    settings.vault_id,
                    settings.user_id,
                    report.acknowledged
                )
            except (APIError, httpx.HTTPError) as e:
                # Records stay unsynced on the relay and are fetched again next pass
                logger.warning("sync_status_update_failed", error=str(e))

        logger.info(
            "sync_completed",
            written=report.written,
            placeholders=report.placeholders,
            skipped=report.skipped,
            failed_writes=len(report.failed_writes)
        )
        return report
