"""Integration lifecycle service.

IntegrationService holds the organization-scoped operations a presentation
layer calls: listing connectable types, connecting, updating, disconnecting,
testing and syncing integrations, and reading sync logs. It contains no
framework code; callers pass plain ids and receive ORM rows or result objects.

Every operation checks that the integration belongs to the calling
organization before delegating to the SyncRunner or SyncScheduler.
"""

import uuid
from dataclasses import dataclass
from typing import Any

from aumos_integration_sync.core.interfaces import StoreFactory
from aumos_integration_sync.core.models import Integration, IntegrationLog
from aumos_integration_sync.credentials import CredentialVault
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.errors import IntegrationSyncError, NotFoundError, ValidationError
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers import INTEGRATION_TYPES, IntegrationType, is_supported
from aumos_integration_sync.providers.base import TestResult
from aumos_integration_sync.sync.runner import SyncResult, SyncRunner
from aumos_integration_sync.sync.scheduler import SyncScheduler, TriggerResult

logger = get_logger(__name__)


@dataclass
class ConnectResult:
    """Outcome of connect_integration()."""

    integration: Integration
    sync: SyncResult

    @property
    def message(self) -> str:
        return (
            f"Connected successfully. Generated {self.sync.evidence_generated} evidence items "
            f"and verified {self.sync.controls_verified} controls."
        )


@dataclass
class SyncLogPage:
    """One page of IntegrationLog rows, newest first."""

    logs: list[IntegrationLog]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.page_size) if self.page_size else 0


class IntegrationService:
    """Organization-scoped integration lifecycle.

    Args:
        store_factory: Opens one transactional store per operation.
        vault: Encrypts credentials on connect.
        runner: Runs the initial and manual syncs and connection tests.
        scheduler: Queues background syncs for trigger_integration_sync.
        default_sync_frequency_minutes: Frequency given to new integrations.
    """

    def __init__(
        self,
        store_factory: StoreFactory,
        vault: CredentialVault,
        runner: SyncRunner,
        scheduler: SyncScheduler,
        default_sync_frequency_minutes: int = 60,
    ) -> None:
        self._store_factory = store_factory
        self._vault = vault
        self._runner = runner
        self._scheduler = scheduler
        self._default_sync_frequency_minutes = default_sync_frequency_minutes

    @staticmethod
    def list_integration_types() -> list[IntegrationType]:
        return list(INTEGRATION_TYPES)

    async def list_integrations(self, organization_id: uuid.UUID) -> list[Integration]:
        async with self._store_factory() as store:
            return await store.integrations.list_for_organization(organization_id)

    async def get_integration(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> Integration:
        """Return a live integration of the organization.

        Raises:
            NotFoundError: If it does not exist or belongs to another organization.
        """
        async with self._store_factory() as store:
            integration = await store.integrations.get_for_organization(integration_id, organization_id)
        if integration is None:
            raise NotFoundError("Integration not found")
        return integration

    async def connect_integration(
        self,
        organization_id: uuid.UUID,
        integration_type: str,
        name: str,
        credentials: dict[str, Any],
        config: dict[str, Any] | None = None,
        connected_by_id: uuid.UUID | None = None,
    ) -> ConnectResult:
        """Store a new integration and run its first sync.

        The integration is created in pending status with encrypted
        credentials. The initial sync moves it to active, or to error when the
        sync fails.

        Args:
            organization_id: Owning organization.
            integration_type: github | aws | gsuite.
            name: Display name.
            credentials: Plain credential map; encrypted before storage.
            config: Provider configuration.
            connected_by_id: The connecting user.

        Returns:
            ConnectResult with the refreshed integration and the sync result.

        Raises:
            ValidationError: If the type is unsupported, the organization
                already has a live integration of this type, or the initial
                sync fails.
        """
        if not is_supported(integration_type):
            raise ValidationError(f"Unsupported integration type: {integration_type}")

        encrypted = self._vault.encrypt(credentials)

        async with self._store_factory() as store:
            existing = await store.integrations.find_by_type(organization_id, integration_type)
            if existing is not None:
                raise ValidationError(f'An integration of type "{integration_type}" already exists')
            integration = await store.integrations.create(
                organization_id=organization_id,
                integration_type=integration_type,
                name=name,
                credentials_encrypted=encrypted,
                config=dict(config or {}),
                sync_frequency_minutes=self._default_sync_frequency_minutes,
                connected_by_id=connected_by_id,
            )
            integration_id = integration.id

        logger.info(
            "Integration connected, running initial sync",
            integration_id=str(integration_id),
            organization_id=str(organization_id),
            integration_type=integration_type,
        )

        try:
            result = await self._runner.run_sync(integration_id)
        except IntegrationSyncError as exc:
            raise ValidationError(exc.message) from exc

        return ConnectResult(integration=await self.get_integration(organization_id, integration_id), sync=result)

    async def update_integration(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        sync_frequency_minutes: int | None = None,
    ) -> Integration:
        """Update name, config or sync frequency. None leaves a field unchanged.

        Raises:
            NotFoundError: If the integration is not found for the organization.
            ValidationError: If sync_frequency_minutes is not positive.
        """
        if sync_frequency_minutes is not None and sync_frequency_minutes < 1:
            raise ValidationError("sync_frequency_minutes must be at least 1")

        async with self._store_factory() as store:
            if await store.integrations.get_for_organization(integration_id, organization_id) is None:
                raise NotFoundError("Integration not found")
            return await store.integrations.update_settings(
                integration_id,
                name=name,
                config=config,
                sync_frequency_minutes=sync_frequency_minutes,
            )

    async def disconnect_integration(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> None:
        """Soft-delete an integration and discard its credentials.

        Raises:
            NotFoundError: If the integration is not found for the organization.
        """
        async with self._store_factory() as store:
            if await store.integrations.get_for_organization(integration_id, organization_id) is None:
                raise NotFoundError("Integration not found")
            await store.integrations.soft_delete(integration_id, deleted_at=utcnow())

    async def sync_integration(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        collector_ids: list[str] | None = None,
    ) -> SyncResult:
        """Run a sync now and wait for its result."""
        await self._require_configured(organization_id, integration_id)
        return await self._runner.run_sync(integration_id, collector_ids)

    async def trigger_integration_sync(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> TriggerResult:
        """Queue a background sync through the scheduler."""
        await self._require_configured(organization_id, integration_id)
        return await self._scheduler.trigger_sync(integration_id)

    async def test_integration(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> TestResult:
        await self._require_configured(organization_id, integration_id)
        return await self._runner.test_connection(integration_id)

    async def list_sync_logs(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> SyncLogPage:
        """Return a page of the integration's sync logs.

        Raises:
            NotFoundError: If the integration is not found for the organization.
            ValidationError: If page or page_size is out of range.
        """
        if page < 1 or not 1 <= page_size <= 100:
            raise ValidationError("page must be >= 1 and page_size between 1 and 100")

        async with self._store_factory() as store:
            if await store.integrations.get_for_organization(integration_id, organization_id) is None:
                raise NotFoundError("Integration not found")
            logs, total = await store.logs.list_for_integration(integration_id, page=page, page_size=page_size)
        return SyncLogPage(logs=logs, page=page, page_size=page_size, total=total)

    async def _require_configured(self, organization_id: uuid.UUID, integration_id: uuid.UUID) -> None:
        integration = await self.get_integration(organization_id, integration_id)
        if not integration.credentials_encrypted:
            raise ValidationError("Integration is not properly configured")
