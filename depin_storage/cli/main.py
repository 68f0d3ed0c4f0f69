"""
CLI interface for the DePIN storage marketplace.

Provider operators run `start`; buyers run `providers`, `purchase` and
`allocations`.
"""

import os
import signal
import sys
import threading
from typing import Optional

import typer
import yaml
from eth_account import Account
from rich.console import Console
from rich.table import Table

from depin_storage.config.loader import (
    PRIVATE_KEY_ENV,
    AppConfig,
    load_config,
    resolve_config_path,
)
from depin_storage.core.directory import ProviderDirectory, summarize_allocations
from depin_storage.core.errors import ConfigurationError, DaemonUnavailable, StoreError
from depin_storage.core.orchestrator import PurchaseOrchestrator
from depin_storage.core.pricing import format_units
from depin_storage.core.tracker import LivenessTracker
from depin_storage.logging_config import configure_logging
from depin_storage.sdk.chain_client import Web3ChainClient
from depin_storage.sdk.ipfs_client import IpfsDaemon
from depin_storage.storage.repository import InventoryStore

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_RECONCILE = 2  # Payment taken but no allocation recorded

CONFIG_HELP = "Path to YAML config (default: $DEPIN_STORAGE_CONFIG or depin_storage.yaml)"


def _load(config_path: Optional[str]) -> AppConfig:
    """Load config and set up logging, exiting on configuration errors."""
    try:
        config = load_config(resolve_config_path(config_path))
    except (FileNotFoundError, ConfigurationError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    configure_logging(config.logging.level, config.logging.json)
    return config


def _private_key() -> str:
    key = os.environ.get(PRIVATE_KEY_ENV)
    if key:
        return key
    return typer.prompt("Private key", hide_input=True)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """DePIN storage marketplace CLI."""
    if ctx.invoked_subcommand is None:
        console.print("DePIN Storage - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """Initialize the inventory store database."""
    app_config = _load(config)
    try:
        InventoryStore(app_config.store.db_path).initialize_schema()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """Show configured network and store status."""
    app_config = _load(config)
    chain = app_config.chain
    console.print(f"Network: {chain.chain_name} ({chain.chain_id})")
    console.print(f"Token contract: {chain.token_address}")
    console.print(f"Storage contract: {chain.storage_contract_address}")
    try:
        providers = InventoryStore(app_config.store.db_path).list_providers()
    except StoreError as e:
        console.print(f"[red]Store unavailable:[/] {e}")
        console.print("Run `depin-storage init` to initialize the database")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Store reachable, {len(providers)} provider(s) registered")


@app.command()
def providers(
    online_only: bool = typer.Option(False, "--online", help="Only show online providers"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)
):
    """List storage providers with their online status."""
    app_config = _load(config)
    try:
        directory = ProviderDirectory(InventoryStore(app_config.store.db_path))
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    listings = directory.listings()
    directory.close()
    if online_only:
        listings = [item for item in listings if item.online]
    if not listings:
        console.print("[yellow]No storage providers found[/]")
        return

    table = Table(title="Storage Providers")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("Available (GB)", justify="right")
    table.add_column("Price / GB", justify="right")
    table.add_column("Status")
    for item in listings:
        record = item.record
        table.add_row(
            record.id,
            record.name,
            record.wallet_address,
            str(record.available_storage),
            str(record.price_per_gb),
            "[green]Online[/]" if item.online else "[red]Offline[/]"
        )
    console.print(table)


@app.command()
def allocations(
    address: str = typer.Argument(..., help="Buyer wallet address"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)
):
    """Show a buyer's active storage allocations."""
    app_config = _load(config)
    store = InventoryStore(app_config.store.db_path)
    try:
        summary = summarize_allocations(store, address)
        records = store.list_allocations(user_address=address)
    except StoreError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]Total storage:[/bold] {summary.total_gb} GB")
    console.print(f"Active allocations: {summary.active_allocations}")
    if summary.nearest_expiry is not None:
        console.print(f"Next expiry in {summary.remaining_days} day(s)")

    if not records:
        console.print("\n[dim]No allocations found.[/]")
        return

    table = Table(title="Allocations")
    table.add_column("Provider")
    table.add_column("GB", justify="right")
    table.add_column("Paid (base units)", justify="right")
    table.add_column("Transaction")
    table.add_column("Expires")
    for record in records:
        table.add_row(
            record.provider_id,
            str(record.allocated_gb),
            str(record.paid_amount),
            record.transaction_hash,
            record.expires_at.strftime("%Y-%m-%d %H:%M UTC")
        )
    console.print(table)


@app.command()
def start(config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)):
    """Run as a storage provider until interrupted."""
    app_config = _load(config)
    try:
        provider_config = app_config.require_provider()
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    address = Account.from_key(_normalize_key(_private_key())).address
    store = InventoryStore(app_config.store.db_path)
    store.initialize_schema()
    tracker = LivenessTracker(
        store=store,
        daemon=IpfsDaemon(provider_config.ipfs_api_url),
        wallet_address=address,
        storage_gb=provider_config.storage_gb,
        price_per_gb=provider_config.price_per_gb,
        name=provider_config.name,
        interval=provider_config.heartbeat_interval
    )

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        console.print("\n[yellow]Provider is shutting down...[/]")
        stop_event.set()

    previous_handlers = {
        signum: signal.signal(signum, _handle_signal)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }

    console.print(f"[green]Provider address:[/] {address}")
    try:
        tracker.run(stop_event)
    except DaemonUnavailable as e:
        console.print(f"[red]IPFS daemon is not running:[/] {e}")
        console.print("Start it with `ipfs daemon` first.")
        sys.exit(EXIT_CODE_FAIL)
    except StoreError as e:
        console.print(f"[red]Could not register provider:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def purchase(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    gb: int = typer.Argument(..., help="Storage to purchase, in whole GB"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve wallet prompts without asking"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=CONFIG_HELP)
):
    """Purchase storage from a provider."""
    app_config = _load(config)
    confirm = None if yes else (lambda prompt: typer.confirm(prompt, default=False))
    try:
        chain = Web3ChainClient(app_config.chain, _private_key(), confirm=confirm)
    except ValueError as e:
        console.print(f"[red]Invalid signer:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    orchestrator = PurchaseOrchestrator(
        chain=chain,
        store=InventoryStore(app_config.store.db_path),
        chain_config=app_config.chain
    )
    result = orchestrator.purchase(provider_id, gb)

    if result.ok:
        allocation = result.allocation
        console.print(f"[green]✓[/] Purchased {allocation.allocated_gb} GB")
        console.print(f"Paid: {format_units(allocation.paid_amount, result.decimals)} tokens")
        console.print(f"Transaction: {allocation.transaction_hash}")
        console.print(f"Expires: {allocation.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
        sys.exit(EXIT_CODE_PASS)

    error = result.error
    if error.needs_reconciliation:
        console.print(f"[bold red]Payment taken but not recorded:[/] {error}")
        console.print(f"Transaction for reconciliation: {error.tx_hash}")
        sys.exit(EXIT_CODE_RECONCILE)

    console.print(f"[red]Purchase failed at {error}[/]")
    if error.retryable:
        console.print("Refresh the provider list and try again.")
    sys.exit(EXIT_CODE_FAIL)


def _normalize_key(key: str) -> str:
    key = key.strip()
    return key if key.startswith("0x") else f"0x{key}"


if __name__ == "__main__":
    app()
