"""AumOS Integration Sync service entry point.

IntegrationEngine is built once per process from Settings and owns:
- Primary database engine and the transactional store factory
- Credential vault
- SyncRunner, SyncScheduler and VerificationMatcher
- IntegrationService and ControlHealthService for the presentation layer

`aumos-integration-sync` runs the scheduler until SIGINT or SIGTERM.
"""

import asyncio
import signal
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from aumos_integration_sync.adapters import sql_store_factory
from aumos_integration_sync.core.interfaces import StoreFactory
from aumos_integration_sync.core.services import IntegrationService
from aumos_integration_sync.credentials import CredentialVault
from aumos_integration_sync.database import close_database, init_database
from aumos_integration_sync.errors import ConfigurationError
from aumos_integration_sync.observability import configure_logging, get_logger
from aumos_integration_sync.settings import Settings
from aumos_integration_sync.sync import SyncRunner, SyncScheduler
from aumos_integration_sync.verification import ControlHealthService, VerificationMatcher

logger = get_logger(__name__)


class IntegrationEngine:
    """Process-wide wiring of the sync engine.

    Args:
        settings: Service settings.
        store_factory: Overrides the database-backed store. When given,
            start() does not open a database engine.
    """

    def __init__(self, settings: Settings, store_factory: StoreFactory | None = None) -> None:
        self.settings = settings
        self.vault = CredentialVault.from_settings(settings)
        self._owns_database = store_factory is None
        self._store_factory = store_factory
        self.runner: SyncRunner | None = None
        self.scheduler: SyncScheduler | None = None
        self.integrations: IntegrationService | None = None
        self.control_health: ControlHealthService | None = None

    async def start(self, run_scheduler: bool = True) -> None:
        """Open the database, build the services and start the scheduler.

        Args:
            run_scheduler: Start the background scheduler loop.
        """
        settings = self.settings

        if self._owns_database:
            logger.info("Initializing primary database", service=settings.service_name)
            session_factory = await init_database(
                settings.database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
            )
            self._store_factory = sql_store_factory(session_factory)

        if self._store_factory is None:
            raise ConfigurationError("No store factory available")

        if not self.vault.test_vault():
            raise ConfigurationError("Credential vault self-test failed")

        self.runner = SyncRunner(
            store_factory=self._store_factory,
            vault=self.vault,
            matcher=VerificationMatcher(),
            sync_timeout_seconds=settings.sync_timeout_seconds,
            http_timeout_seconds=settings.http_timeout_seconds,
            evidence_validity_hours=settings.evidence_validity_hours,
        )
        self.scheduler = SyncScheduler(
            runner=self.runner,
            store_factory=self._store_factory,
            max_concurrent_syncs=settings.max_concurrent_syncs,
            interval_seconds=settings.scheduler_interval_seconds,
        )
        self.integrations = IntegrationService(
            store_factory=self._store_factory,
            vault=self.vault,
            runner=self.runner,
            scheduler=self.scheduler,
            default_sync_frequency_minutes=settings.default_sync_frequency_minutes,
        )
        self.control_health = ControlHealthService(self._store_factory)

        if run_scheduler:
            self.scheduler.start()

        logger.info(
            "Integration sync engine startup complete",
            max_concurrent_syncs=settings.max_concurrent_syncs,
            scheduler=run_scheduler,
        )

    async def close(self) -> None:
        """Stop the scheduler, wait for in-flight syncs and dispose the database."""
        logger.info("Shutting down integration sync engine")
        if self.scheduler is not None:
            await self.scheduler.stop()
            await self.scheduler.wait_idle()
        if self._owns_database:
            await close_database()
        logger.info("Integration sync engine shutdown complete")

    @asynccontextmanager
    async def lifespan(self, run_scheduler: bool = True) -> AsyncGenerator["IntegrationEngine", None]:
        """Start the engine for the duration of the block.

        Yields:
            The started engine.
        """
        await self.start(run_scheduler=run_scheduler)
        try:
            yield self
        finally:
            await self.close()


async def serve(settings: Settings) -> None:
    """Run the engine until the process receives SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with IntegrationEngine(settings).lifespan():
        await stop.wait()


def run() -> None:
    """Console entry point."""
    settings = Settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    run()
