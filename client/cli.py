"""
VaultRelay Command Line Interface

CLI for managing the vault's encryption keys and syncing relayed messages.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shared.envelope import EnvelopeCodec
from shared.errors import E2EEError
from .key_manager import KeyManager
from .recovery import ErrorRecovery
from .sdk import APIError, ClientConfig, RelayClient, RelayError
from .settings_store import JsonFileSettingsStore, load_settings, save_settings
from .sync import MessageSync

# Initialize Typer app
app = typer.Typer(
    name="vaultrelay",
    help="VaultRelay - end-to-end encrypted message relay for note vaults",
    add_completion=False
)

# Rich console for pretty output
console = Console()


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def notify(message: str) -> None:
    """Show a user-facing notice."""
    console.print(f"[yellow]! {message}[/yellow]")


def format_ms(timestamp: int) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp / 1000).isoformat(timespec="seconds")


@asynccontextmanager
async def open_client(url: Optional[str] = None):
    """Wire settings store, relay client, key manager and codec together."""
    config = ClientConfig()
    store = JsonFileSettingsStore(config.settings_file)
    settings = await load_settings(store)
    base_url = url or settings.api_url or config.base_url

    async with RelayClient(base_url=base_url, timeout=config.timeout) as relay:
        key_manager = KeyManager(store, relay, notifier=notify)
        recovery = ErrorRecovery(key_manager, notifier=notify)
        codec = EnvelopeCodec(key_manager, recovery=recovery)
        yield store, relay, key_manager, codec


# =============================================================================
# Setup Commands
# =============================================================================

@app.command()
def configure(
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Upstream messaging user id"),
    vault_id: Optional[str] = typer.Option(None, "--vault-id", help="Vault identifier"),
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Relay URL")
):
    """Save identity and relay settings."""
    async def _configure():
        store = JsonFileSettingsStore(ClientConfig().settings_file)
        settings = await load_settings(store)
        if user_id:
            settings.user_id = user_id
        if vault_id:
            settings.vault_id = vault_id
        if url:
            settings.api_url = url
        await save_settings(store, settings)
        console.print("[green]✓ Settings saved[/green]")
        console.print(f"  User ID: {escape(settings.user_id or '-')}")
        console.print(f"  Vault ID: {escape(settings.vault_id or '-')}")
        console.print(f"  Relay: {settings.api_url or ClientConfig().base_url}")

    run_async(_configure())


@app.command()
def mapping(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Relay URL")
):
    """Register the user id -> vault mapping with the relay."""
    async def _mapping():
        async with open_client(url) as (store, relay, _, _):
            settings = await load_settings(store)
            if not settings.user_id or not settings.vault_id:
                console.print("[red]✗ Run 'vaultrelay configure' first.[/red]")
                raise typer.Exit(1)
            try:
                await relay.register_mapping(settings.user_id, settings.vault_id)
            except (APIError, httpx.HTTPError) as e:
                console.print(f"[red]✗ Mapping failed: {escape(str(e))}[/red]")
                raise typer.Exit(1)
            console.print("[green]✓ Mapping registered[/green]")

    run_async(_mapping())


# =============================================================================
# Key Commands
# =============================================================================

@app.command()
def init(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Relay URL")
):
    """Generate or load the encryption key pair."""
    async def _init():
        async with open_client(url) as (_, _, key_manager, _):
            try:
                await key_manager.initialize()
            except E2EEError as e:
                console.print(f"[red]✗ Key setup failed: {escape(str(e))}[/red]")
                raise typer.Exit(1)
            console.print("[green]✓ Encryption keys ready[/green]")
            console.print(f"  Key ID: {key_manager.key_id}")
            console.print(f"  Fingerprint: {key_manager.get_key_pair().fingerprint}")
            console.print(f"  State: {key_manager.state.value}")

    run_async(_init())


@app.command()
def register(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Relay URL")
):
    """Register the public key with the relay now, ignoring backoff."""
    async def _register():
        async with open_client(url) as (_, _, key_manager, _):
            try:
                await key_manager.initialize()
                await key_manager.force_register_public_key()
            except E2EEError as e:
                console.print(f"[red]✗ Registration failed: {escape(str(e))}[/red]")
                raise typer.Exit(1)
            console.print("[green]✓ Public key registered[/green]")

    run_async(_register())


@app.command()
def status():
    """Show key and registration status."""
    async def _status():
        store = JsonFileSettingsStore(ClientConfig().settings_file)
        settings = await load_settings(store)

        table = Table(title="VaultRelay Status")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("User ID", escape(settings.user_id or "-"))
        table.add_row("Vault ID", escape(settings.vault_id or "-"))
        table.add_row("Relay", settings.api_url or ClientConfig().base_url)

        keys = settings.encryption_keys
        table.add_row("Key ID", keys.key_id if keys else "[yellow]not generated[/yellow]")
        if keys:
            table.add_row("Key created", format_ms(keys.created_at))

        retry = settings.registration_retry
        if retry.pending:
            table.add_row("Registration", f"[yellow]pending[/yellow] ({retry.failure_count} failures)")
            table.add_row("Last attempt", format_ms(retry.last_attempt_at))
            table.add_row("Next retry after", f"{retry.wait_hours()}h")
        elif keys:
            table.add_row("Registration", "[green]registered[/green]")

        console.print(table)

    run_async(_status())


# =============================================================================
# Sync Command
# =============================================================================

@app.command()
def sync(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Relay URL")
):
    """Fetch new messages from the relay and print them."""
    async def print_note(record: dict, text: str) -> None:
        title = escape(f"{format_ms(record.get('timestamp', 0))}  {record.get('messageId', '')}")
        style = "green" if record.get("encrypted") else "white"
        console.print(Panel(Text(text), title=title, border_style=style))

    async def _sync():
        async with open_client(url) as (_, relay, key_manager, codec):
            syncer = MessageSync(relay, key_manager, codec, note_writer=print_note)
            try:
                report = await syncer.sync()
            except (E2EEError, RelayError) as e:
                console.print(f"[red]✗ Sync failed: {escape(str(e))}[/red]")
                raise typer.Exit(1)
            console.print(
                f"[green]✓ Synced {report.written} messages[/green] "
                f"({report.placeholders} undecryptable, {report.skipped} already synced)"
            )

    run_async(_sync())


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
