"""SyncRunner — one end-to-end integration sync.

Pipeline:
1. Load the integration (no writes happen if it is missing or has no credentials)
2. Open a running IntegrationLog row
3. Decrypt credentials via the CredentialVault
4. Build the provider from the type registry
5. connect()
6. collect() — partial collector failures are kept, never fatal
7. generate_evidence() from the successful collection results
8. disconnect()
9. In one transaction: persist evidence, run the verification matcher, mark the
   integration active and complete the log row

Any failure from step 3 onward becomes a single transaction that sets the
integration to error and fails the log row, after which the original error is
re-raised to the caller. Steps 3-8 are bounded by sync_timeout_seconds.
"""

import asyncio
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from aumos_integration_sync.core.interfaces import ISyncStore, StoreFactory
from aumos_integration_sync.credentials import CredentialVault
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.errors import (
    CollectionError,
    ConfigurationError,
    NotFoundError,
    ProviderConnectionError,
    SyncTimeoutError,
)
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers import ProviderFactory, create_provider
from aumos_integration_sync.providers.base import (
    ControlMapping,
    GeneratedEvidence,
    IntegrationProvider,
    ProviderContext,
    TestResult,
    elapsed_ms,
)
from aumos_integration_sync.verification.matcher import VerificationMatcher

logger = get_logger(__name__)

SYNC_OPERATION = "sync"


@dataclass
class SyncResult:
    """Outcome of a completed sync.

    Attributes:
        evidence_generated: Evidence rows persisted.
        controls_verified: Controls the matcher marked verified.
        controls_failed: Controls the matcher marked failed.
        errors: Collector errors from every collector, successful or not.
        duration_ms: Wall time of the sync.
    """

    evidence_generated: int
    controls_verified: int
    controls_failed: int
    errors: list[CollectionError] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "evidenceGenerated": self.evidence_generated,
            "controlsVerified": self.controls_verified,
            "controlsFailed": self.controls_failed,
            "errors": [error.to_dict() for error in self.errors],
            "durationMs": self.duration_ms,
        }


@dataclass
class _IntegrationSnapshot:
    id: uuid.UUID
    organization_id: uuid.UUID
    type: str
    credentials_encrypted: str
    config: dict[str, Any]
    sync_frequency_minutes: int


@dataclass
class _Collected:
    evidence: list[GeneratedEvidence]
    mappings: list[ControlMapping]
    errors: list[CollectionError]


class SyncRunner:
    """Orchestrates integration syncs and connection tests.

    Args:
        store_factory: Opens one transactional store per `async with` block.
        vault: Decrypts stored credential envelopes.
        matcher: Applies evidence to controls. Defaults to a new VerificationMatcher.
        provider_factory: Builds a provider for an integration type.
        sync_timeout_seconds: Upper bound on the vendor-facing part of a sync.
        http_timeout_seconds: Per-request vendor timeout passed to providers.
        evidence_validity_hours: Validity window stamped on generated evidence.
    """

    def __init__(
        self,
        store_factory: StoreFactory,
        vault: CredentialVault,
        matcher: VerificationMatcher | None = None,
        provider_factory: ProviderFactory = create_provider,
        sync_timeout_seconds: float = 300.0,
        http_timeout_seconds: float = 30.0,
        evidence_validity_hours: int = 24,
    ) -> None:
        self._store_factory = store_factory
        self._vault = vault
        self._matcher = matcher or VerificationMatcher()
        self._provider_factory = provider_factory
        self._sync_timeout_seconds = sync_timeout_seconds
        self._http_timeout_seconds = http_timeout_seconds
        self._evidence_validity_hours = evidence_validity_hours

    async def run_sync(self, integration_id: uuid.UUID, collector_ids: Sequence[str] | None = None) -> SyncResult:
        """Run a full sync for an integration.

        Args:
            integration_id: The integration to sync.
            collector_ids: Collectors to run. None or empty runs all of them.

        Returns:
            SyncResult for the completed sync.

        Raises:
            NotFoundError: If the integration does not exist.
            ConfigurationError: If it has no credentials, or its type is unsupported.
            DecryptionError: If the stored credentials cannot be decrypted.
            ProviderConnectionError: If the provider cannot connect.
            SyncTimeoutError: If the vendor-facing work exceeds the timeout.
            PersistenceError: If a database write fails.
        """
        started = time.monotonic()

        async with self._store_factory() as store:
            snapshot = await self._load(store, integration_id)
            log = await store.logs.start(
                integration_id,
                SYNC_OPERATION,
                {"collectors": list(collector_ids) if collector_ids else "all"},
            )
            log_id = log.id

        logger.info("Starting sync", integration_id=str(integration_id), integration_type=snapshot.type)

        try:
            deadline = asyncio.timeout(self._sync_timeout_seconds)
            try:
                async with deadline:
                    collected = await self._collect(snapshot, collector_ids)
            except TimeoutError as exc:
                if not deadline.expired():
                    raise
                raise SyncTimeoutError(f"Sync exceeded timeout of {self._sync_timeout_seconds:g} seconds") from exc

            async with self._store_factory() as store:
                evidence_ids: dict[int, uuid.UUID] = {}
                for index, item in enumerate(collected.evidence):
                    saved = await store.evidence.create_from_generated(snapshot.organization_id, snapshot.id, item)
                    evidence_ids[index] = saved.id

                outcome = await self._matcher.match(
                    store,
                    snapshot.organization_id,
                    collected.evidence,
                    evidence_ids,
                    collected.mappings,
                )

                result = SyncResult(
                    evidence_generated=len(evidence_ids),
                    controls_verified=outcome.verified,
                    controls_failed=outcome.failed,
                    errors=collected.errors,
                    duration_ms=elapsed_ms(started),
                )
                now = utcnow()
                await store.integrations.mark_synced(
                    snapshot.id,
                    synced_at=now,
                    next_sync_at=now + timedelta(minutes=snapshot.sync_frequency_minutes),
                )
                await store.logs.complete(
                    log_id,
                    items_processed=result.evidence_generated,
                    items_failed=len(result.errors),
                    details=result.to_dict(),
                    completed_at=now,
                    duration_ms=result.duration_ms,
                )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            duration = elapsed_ms(started)
            logger.error(
                "Sync failed",
                integration_id=str(integration_id),
                error_type=type(exc).__name__,
                error=message,
                duration_ms=duration,
            )
            async with self._store_factory() as store:
                await store.integrations.mark_error(snapshot.id, message)
                await store.logs.fail(log_id, message, completed_at=utcnow(), duration_ms=duration)
            raise

        logger.info(
            "Sync completed",
            integration_id=str(integration_id),
            evidence_generated=result.evidence_generated,
            controls_verified=result.controls_verified,
            controls_failed=result.controls_failed,
            collector_errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        return result

    async def test_connection(self, integration_id: uuid.UUID) -> TestResult:
        """Check an integration's credentials without collecting anything.

        The integration becomes active on success and error otherwise.

        Args:
            integration_id: The integration to test.

        Returns:
            The provider's TestResult.

        Raises:
            NotFoundError: If the integration does not exist.
            ConfigurationError: If it has no credentials, or its type is unsupported.
            DecryptionError: If the stored credentials cannot be decrypted.
        """
        async with self._store_factory() as store:
            snapshot = await self._load(store, integration_id)

        provider = self._build_provider(snapshot)
        try:
            result = await provider.test_connection()
        finally:
            await provider.disconnect()

        async with self._store_factory() as store:
            await store.integrations.record_test_result(snapshot.id, result.success, result.error)

        logger.info(
            "Connection test finished",
            integration_id=str(integration_id),
            success=result.success,
            latency_ms=result.latency_ms,
        )
        return result

    @staticmethod
    async def _load(store: ISyncStore, integration_id: uuid.UUID) -> _IntegrationSnapshot:
        integration = await store.integrations.get(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration not found: {integration_id}")
        if not integration.credentials_encrypted:
            raise ConfigurationError("Integration has no credentials configured")
        return _IntegrationSnapshot(
            id=integration.id,
            organization_id=integration.organization_id,
            type=integration.type,
            credentials_encrypted=integration.credentials_encrypted,
            config=dict(integration.config or {}),
            sync_frequency_minutes=integration.sync_frequency_minutes,
        )

    def _build_provider(self, snapshot: _IntegrationSnapshot) -> IntegrationProvider:
        credentials = self._vault.decrypt(snapshot.credentials_encrypted)
        context = ProviderContext(
            organization_id=snapshot.organization_id,
            integration_id=snapshot.id,
            credentials=credentials,
            config=snapshot.config,
            http_timeout=self._http_timeout_seconds,
            evidence_validity_hours=self._evidence_validity_hours,
        )
        return self._provider_factory(snapshot.type, context)

    async def _collect(self, snapshot: _IntegrationSnapshot, collector_ids: Sequence[str] | None) -> _Collected:
        provider = self._build_provider(snapshot)
        try:
            connection = await provider.connect()
            if not connection.success:
                raise ProviderConnectionError(connection.error or "Failed to connect")
            logger.info("Provider connected", integration_id=str(snapshot.id), metadata=connection.metadata)

            results = await provider.collect(collector_ids)
            succeeded = [r for r in results if r.success]
            logger.info(
                "Collection completed",
                integration_id=str(snapshot.id),
                successful=len(succeeded),
                failed=len(results) - len(succeeded),
            )

            evidence = provider.generate_evidence(succeeded)
            logger.info("Evidence generated", integration_id=str(snapshot.id), count=len(evidence))

            return _Collected(
                evidence=evidence,
                mappings=provider.get_control_mappings(),
                errors=[error for r in results for error in r.errors],
            )
        finally:
            await provider.disconnect()
