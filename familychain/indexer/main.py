"""
Main entry point for the reconciler service.

Wires settings, database, ledger client, engine, ingestor and settlement
coordinator together and runs them until a signal or a fatal error.
"""

import asyncio
import signal
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from ..core.config import Settings, load_settings
from ..core.database import Database, open_database
from ..core.exceptions import ConfigurationError
from ..core.logging import bind_chain_context, get_logger, setup_logging
from ..services.checkpoint_tracker import CheckpointTracker
from ..services.event_parser import EventParser
from ..services.ledger_client import LedgerClient
from ..services.read_model import ReadModelStore
from ..services.settlement_coordinator import SettlementCoordinator
from .engine import ReconciliationEngine
from .ingestor import EventIngestor


def load_signer(settings: Settings) -> Optional[LocalAccount]:
    """Settlement signing account, or None when settlement is not configured."""
    if not settings.settlement_configured:
        return None
    try:
        return Account.from_key(settings.settlement_private_key.get_secret_value())
    except ValueError as e:
        raise ConfigurationError(f"Invalid settlement private key: {e}") from e


class ReconcilerService:
    """
    Service coordinator.

    Owns every long-lived component; other code receives them through
    constructors.
    """

    def __init__(self, settings: Settings, logger=None):
        self.settings = settings
        self.logger = (logger or get_logger(__name__)).bind(service="reconciler")

        self.database: Optional[Database] = None
        self.adapter: Optional[LedgerClient] = None
        self.settlements: Optional[SettlementCoordinator] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.ingestor: Optional[EventIngestor] = None
        self.read_model: Optional[ReadModelStore] = None

        self.running = False
        self._health_task: Optional[asyncio.Task] = None
        self._shutdown: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        """Build components and position the ingestor at its checkpoint."""
        settings = self.settings
        missing = [
            name for name in ("task_registry_address", "family_registry_address", "reward_token_address")
            if getattr(settings, name) is None
        ]
        if missing:
            raise ConfigurationError("Contract addresses are not configured", {"missing": missing})

        self.logger.info("Initializing reconciler", chain_id=settings.chain_id, environment=settings.environment)

        self.database = await open_database(settings, logger=self.logger)
        self.adapter = LedgerClient.from_settings(settings, logger=self.logger)

        signer = load_signer(settings)
        if signer is None:
            self.logger.warning("Settlement signer not configured, approved rewards stay queued")

        self.settlements = SettlementCoordinator(
            self.database, self.adapter, settings, signer=signer, logger=self.logger
        )
        self.engine = ReconciliationEngine(self.settlements, logger=self.logger)
        self.ingestor = EventIngestor(
            adapter=self.adapter,
            parser=EventParser(settings.contract_addresses(), logger=self.logger),
            engine=self.engine,
            checkpoints=CheckpointTracker(self.database, logger=self.logger),
            database=self.database,
            settings=settings,
            settlements=self.settlements,
            logger=self.logger,
        )
        self.read_model = ReadModelStore(self.database, self.adapter, logger=self.logger)

        await self.ingestor.initialize()
        self.logger.info("Reconciler initialized")

    async def run(self) -> None:
        """Run until stopped. Re-raises a fatal ingestion error."""
        if self._shutdown is not None:
            return
        self.running = True
        await self.settlements.start()
        self._health_task = asyncio.create_task(self._periodic_health_check(), name="health-check")
        self.logger.info("Reconciler started")

        try:
            await self.ingestor.run()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """
        Shut down once: the ingestor drains first so no new settlements
        appear while the coordinator drains. Every caller waits for the
        same shutdown to finish.
        """
        if self._shutdown is None:
            self._shutdown = asyncio.create_task(self._stop_components(), name="reconciler-shutdown")
        await asyncio.shield(self._shutdown)

    async def _stop_components(self) -> None:
        self.running = False
        self.logger.info("Stopping reconciler")

        if self.ingestor is not None:
            await self.ingestor.stop()
        if self.settlements is not None:
            await self.settlements.stop()

        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        self.logger.info("Reconciler stopped")

    async def close(self) -> None:
        if self.adapter is not None:
            await self.adapter.close()
        if self.database is not None:
            await self.database.close()

    async def _periodic_health_check(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.settings.health_log_interval)
                if not self.running:
                    break

                lag = await self.read_model.get_lag(self.settings.chain_id)
                database_ok = await self.database.health_check()
                self.logger.info(
                    "Reconciler health check",
                    ingestor=self.ingestor.get_status(),
                    lag=lag.to_dict(),
                    database_ok=database_ok,
                )
                if not database_ok:
                    self.logger.warning("Database health check failed")

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Health check error", error=str(e))


async def main(settings: Optional[Settings] = None) -> None:
    """Run the reconciler service."""
    settings = settings or load_settings()
    setup_logging(settings)
    bind_chain_context(settings.chain_id, environment=settings.environment)
    logger = get_logger(__name__)

    service = ReconcilerService(settings, logger=logger)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def signal_handler(signum: int) -> None:
        logger.info("Received signal, shutting down", signal=signal.Signals(signum).name)
        stop_requested.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    async def stop_on_signal():
        await stop_requested.wait()
        await service.stop()

    stopper = asyncio.create_task(stop_on_signal(), name="signal-stopper")
    try:
        await service.initialize()
        if not stop_requested.is_set():
            await service.run()
    except Exception as e:
        logger.error("Reconciler service failed", error=str(e))
        raise
    finally:
        if not stop_requested.is_set():
            stopper.cancel()
        await service.stop()
        await asyncio.gather(stopper, return_exceptions=True)
        await service.close()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


if __name__ == "__main__":
    asyncio.run(main())
