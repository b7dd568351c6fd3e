"""
Operator command line for the FamilyChain reconciler.
"""

import asyncio
from collections import Counter

import typer
from rich.console import Console
from rich.table import Table

from .core.config import load_settings
from .core.database import Database
from .core.exceptions import FamilyChainError
from .core.logging import get_logger, setup_logging
from .indexer.core.types import LedgerPosition
from .indexer.engine import ReconciliationEngine
from .indexer.main import ReconcilerService, load_signer, main as run_service
from .services.checkpoint_tracker import CheckpointTracker
from .services.ledger_client import LedgerClient
from .services.read_model import ReadModelStore
from .services.settlement_coordinator import SettlementCoordinator
from .utils.amounts import format_token_amount

console = Console()
app = typer.Typer(help="FamilyChain event reconciler")


def _bootstrap():
    settings = load_settings()
    setup_logging(settings)
    return settings, get_logger("familychain.cli")


@app.command()
def run():
    """Run the reconciler until interrupted."""
    asyncio.run(run_service())


@app.command("init-db")
def init_db():
    """Create all tables (development; use alembic upgrade otherwise)."""
    async def _init():
        settings, logger = _bootstrap()
        database = Database(settings, logger=logger)
        await database.create_tables()
        await database.close()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command("drop-db")
def drop_db():
    """Drop all tables."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _drop():
        settings, logger = _bootstrap()
        database = Database(settings, logger=logger)
        await database.drop_tables()
        await database.close()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_drop())


@app.command()
def backfill(
    wait_settlements: bool = typer.Option(True, help="Wait for triggered settlements to finish"),
):
    """Ingest everything up to the confirmed head, then exit."""
    async def _backfill():
        settings, logger = _bootstrap()
        service = ReconcilerService(settings, logger=logger)
        try:
            await service.initialize()
            stats = await service.ingestor.sync_to_head()
            if wait_settlements:
                await service.settlements.wait_idle()
        finally:
            await service.close()

        table = Table(title="Backfill")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        for key, value in stats.to_dict().items():
            table.add_row(key, str(value))
        console.print(table)

    _run_or_exit(_backfill())


@app.command()
def status():
    """Show checkpoint, ledger head, lag and settlement counts."""
    async def _status():
        settings, logger = _bootstrap()
        database = Database(settings, logger=logger)
        adapter = LedgerClient.from_settings(settings, logger=logger)
        store = ReadModelStore(database, adapter, logger=logger)
        try:
            database_ok = await database.health_check()
            lag = await store.get_lag(settings.chain_id)
            settlements = await store.list_settlements() if database_ok else []
        finally:
            await adapter.close()
            await database.close()

        table = Table(title=f"Reconciler status (chain {settings.chain_id})")
        table.add_column("Component", style="cyan")
        table.add_column("Status", style="green")
        table.add_row("Database", "✅ Connected" if database_ok else "❌ Disconnected")
        table.add_row("Checkpoint", str(lag.checkpoint) if lag.checkpoint else "none")
        table.add_row("Ledger head", str(lag.head) if lag.head is not None else "❌ unreachable")
        table.add_row("Blocks behind", str(lag.blocks_behind) if lag.blocks_behind is not None else "?")

        counts = Counter(settlement.status.value for settlement in settlements)
        for name, count in sorted(counts.items()):
            table.add_row(f"Settlements {name}", str(count))
        console.print(table)

    _run_or_exit(_status())


@app.command()
def rewind(block: int = typer.Option(..., "--block", help="Keep events up to and including this block")):
    """Roll the read model back to a block and replay; ingestion resumes after it."""
    confirm = typer.confirm(f"Discard all ledger events above block {block}?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _rewind():
        settings, logger = _bootstrap()
        database = Database(settings, logger=logger)
        settlements = SettlementCoordinator(database, None, settings, logger=logger)
        engine = ReconciliationEngine(settlements, logger=logger)
        checkpoints = CheckpointTracker(database, logger=logger)
        try:
            async with database.session() as session:
                result = await engine.rollback(session, block)
                await checkpoints.store(
                    session,
                    settings.chain_id,
                    LedgerPosition.end_of_block(block),
                    allow_rewind=True,
                )
        finally:
            await database.close()

        console.print(f"⏪ Rewound to block {block}: {result.applied} events replayed, {result.skipped} skipped")

    _run_or_exit(_rewind())


@app.command("retry-settlement")
def retry_settlement(
    task_id: int,
    fresh: bool = typer.Option(False, "--fresh", help="Sign a new transaction instead of re-sending the stored one"),
):
    """Retry an escalated (settlement_pending) settlement."""
    async def _retry():
        settings, logger = _bootstrap()
        database = Database(settings, logger=logger)
        adapter = LedgerClient.from_settings(settings, logger=logger)
        settlements = SettlementCoordinator(
            database, adapter, settings, signer=load_signer(settings), logger=logger
        )
        try:
            if not settlements.enabled:
                console.print("❌ Settlement is not configured")
                raise typer.Exit(code=1)
            await settlements.retry(task_id, fresh=fresh)
            await settlements.wait_idle()
            settlement = await ReadModelStore(database).get_settlement(task_id)
        finally:
            await adapter.close()
            await database.close()

        amount = format_token_amount(settlement.amount, settings.token_decimals)
        console.print(f"🔁 Settlement for task {task_id} ({amount}): {settlement.status.value}")
        if settlement.last_error:
            console.print(f"   last error: {settlement.last_error}")

    _run_or_exit(_retry())


def _run_or_exit(coro) -> None:
    try:
        asyncio.run(coro)
    except FamilyChainError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
