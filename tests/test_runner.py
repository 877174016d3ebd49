"""Tests for SyncRunner.

Covers the success pipeline, the paired Integration+Log failure write, the
early exits that must not write anything, the sync timeout and connection tests.
"""

import asyncio
import re
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from aumos_integration_sync.credentials import CredentialVault
from aumos_integration_sync.core.interfaces import ControlCandidate
from aumos_integration_sync.errors import (
    CollectionError,
    ConfigurationError,
    DecryptionError,
    NotFoundError,
    PersistenceError,
    ProviderConnectionError,
    SyncTimeoutError,
)
from aumos_integration_sync.providers.base import (
    CollectionResult,
    ConnectionResult,
    ControlMapping,
    ProviderContext,
    TestResult,
)
from aumos_integration_sync.sync.runner import SyncRunner
from tests.conftest import FakeStoreFactory, make_evidence, make_fake_integration, make_fake_provider

_CREDENTIALS = {"accessToken": "ghp_secret"}


def _runner(
    factory: FakeStoreFactory,
    vault: CredentialVault,
    provider: MagicMock | None = None,
    **kwargs: object,
) -> SyncRunner:
    provider_factory = MagicMock(return_value=provider) if provider is not None else MagicMock()
    return SyncRunner(store_factory=factory, vault=vault, provider_factory=provider_factory, **kwargs)


def _configured(factory: FakeStoreFactory, vault: CredentialVault, organization_id: uuid.UUID) -> MagicMock:
    integration = make_fake_integration(organization_id, credentials_encrypted=vault.encrypt(_CREDENTIALS))
    factory.store.integrations.get.return_value = integration
    return integration


def _record_block(factory: FakeStoreFactory, blocks: list[int]):
    def record(*args: object, **kwargs: object) -> None:
        blocks.append(factory.block)

    return record


class TestRunSyncSuccess:
    """The happy path from load to the final transactional write."""

    @pytest.mark.asyncio()
    async def test_persists_evidence_and_matches_controls(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """Evidence is stored, matched, and the integration rescheduled in one transaction."""
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        store = factory.store
        store.controls.list_candidates.return_value = [ControlCandidate(id=uuid.uuid4(), name="MFA enforcement")]
        provider = make_fake_provider(
            evidence=[
                make_evidence(title="MFA", control_patterns=["mfa"]),
                make_evidence(title="Inventory", control_patterns=["inventory"]),
            ],
            mappings=[ControlMapping(evidence_source="github")],
        )
        runner = _runner(factory, vault, provider)

        result = await runner.run_sync(integration.id)

        assert result.evidence_generated == 2
        assert result.controls_verified == 1
        assert result.controls_failed == 0
        assert result.errors == []
        assert store.evidence.create_from_generated.await_count == 2
        assert factory.opened == 2
        assert factory.committed == 2
        assert factory.rolled_back == 0

        synced = store.integrations.mark_synced.await_args
        assert synced.args == (integration.id,)
        assert synced.kwargs["next_sync_at"] - synced.kwargs["synced_at"] == timedelta(minutes=60)

        completed = store.logs.complete.await_args
        assert completed.args == (store.logs.start.return_value.id,)
        assert completed.kwargs["items_processed"] == 2
        assert completed.kwargs["items_failed"] == 0
        assert completed.kwargs["details"]["evidenceGenerated"] == 2
        store.integrations.mark_error.assert_not_awaited()
        provider.disconnect.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_provider_receives_decrypted_context(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        integration.config = {"organization": "acme"}
        provider = make_fake_provider()
        runner = SyncRunner(
            store_factory=factory,
            vault=vault,
            provider_factory=MagicMock(return_value=provider),
            http_timeout_seconds=12.0,
            evidence_validity_hours=48,
        )

        await runner.run_sync(integration.id)

        integration_type, context = runner._provider_factory.call_args.args
        assert integration_type == "github"
        assert isinstance(context, ProviderContext)
        assert context.credentials == _CREDENTIALS
        assert context.config == {"organization": "acme"}
        assert context.http_timeout == 12.0
        assert context.evidence_validity_hours == 48

    @pytest.mark.asyncio()
    async def test_collector_errors_are_reported_not_fatal(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """Only successful results reach generate_evidence; every error is counted."""
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        now = datetime.now(UTC)
        warning = CollectionError(code="MFA_CHECK_FAILED", message="user bob")
        failure = CollectionError(code="S3_COLLECTION_FAILED", message="AccessDenied")
        ok = CollectionResult(True, "iam", 2, [warning], None, now)
        failed = CollectionResult(False, "s3", 0, [failure], None, now)
        provider = make_fake_provider(results=[ok, failed], evidence=[make_evidence()])

        result = await _runner(factory, vault, provider).run_sync(integration.id, ["iam", "s3"])

        provider.collect.assert_awaited_once_with(["iam", "s3"])
        provider.generate_evidence.assert_called_once_with([ok])
        assert result.errors == [warning, failure]
        assert factory.store.logs.complete.await_args.kwargs["items_failed"] == 2
        assert factory.store.logs.start.await_args.args == (integration.id, "sync", {"collectors": ["iam", "s3"]})

    @pytest.mark.asyncio()
    async def test_all_collectors_requested_by_default(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)

        await _runner(factory, vault, make_fake_provider()).run_sync(integration.id)

        assert factory.store.logs.start.await_args.args[2] == {"collectors": "all"}


class TestRunSyncFailure:
    """Failures after the log row exists end in one paired terminal write."""

    @pytest.mark.asyncio()
    async def test_connect_failure_marks_error_and_fails_log_together(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """Integration error status and the failed log row are written in the same transaction."""
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        store = factory.store
        provider = make_fake_provider(connection=ConnectionResult(success=False, error="Bad credentials"))
        blocks: list[int] = []
        store.integrations.mark_error.side_effect = _record_block(factory, blocks)
        store.logs.fail.side_effect = _record_block(factory, blocks)

        with pytest.raises(ProviderConnectionError, match="Bad credentials"):
            await _runner(factory, vault, provider).run_sync(integration.id)

        store.integrations.mark_error.assert_awaited_once_with(integration.id, "Bad credentials")
        fail = store.logs.fail.await_args
        assert fail.args[:2] == (store.logs.start.return_value.id, "Bad credentials")
        assert fail.kwargs["duration_ms"] is not None
        assert len(blocks) == 2
        assert blocks[0] == blocks[1] != 0
        provider.collect.assert_not_awaited()
        provider.disconnect.assert_awaited_once()
        store.evidence.create_from_generated.assert_not_awaited()
        store.integrations.mark_synced.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_missing_integration_writes_nothing(self, vault: CredentialVault) -> None:
        factory = FakeStoreFactory()
        factory.store.integrations.get.return_value = None
        integration_id = uuid.uuid4()

        with pytest.raises(NotFoundError, match=f"Integration not found: {integration_id}"):
            await _runner(factory, vault, make_fake_provider()).run_sync(integration_id)

        factory.store.logs.start.assert_not_awaited()
        factory.store.integrations.mark_error.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_missing_credentials_writes_nothing(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """A sync never runs for an integration without a credential blob."""
        factory = FakeStoreFactory()
        integration = make_fake_integration(organization_id, credentials_encrypted=None)
        factory.store.integrations.get.return_value = integration
        provider = make_fake_provider()
        runner = _runner(factory, vault, provider)

        with pytest.raises(ConfigurationError, match="no credentials"):
            await runner.run_sync(integration.id)

        factory.store.logs.start.assert_not_awaited()
        factory.store.integrations.mark_error.assert_not_awaited()
        runner._provider_factory.assert_not_called()

    @pytest.mark.asyncio()
    async def test_corrupted_credentials_raise_decryption_error(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        factory = FakeStoreFactory()
        other_vault = CredentialVault(b"\x01" * 32)
        integration = make_fake_integration(organization_id, credentials_encrypted=other_vault.encrypt(_CREDENTIALS))
        factory.store.integrations.get.return_value = integration
        runner = _runner(factory, vault, make_fake_provider())

        with pytest.raises(DecryptionError):
            await runner.run_sync(integration.id)

        runner._provider_factory.assert_not_called()
        factory.store.integrations.mark_error.assert_awaited_once()
        factory.store.logs.fail.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_unsupported_type(self, vault: CredentialVault, organization_id: uuid.UUID) -> None:
        """The real provider registry rejects unknown types as a configuration error."""
        factory = FakeStoreFactory()
        integration = make_fake_integration(
            organization_id, integration_type="jira", credentials_encrypted=vault.encrypt(_CREDENTIALS)
        )
        factory.store.integrations.get.return_value = integration

        with pytest.raises(ConfigurationError, match="Unsupported integration type: jira"):
            await SyncRunner(store_factory=factory, vault=vault).run_sync(integration.id)

        factory.store.integrations.mark_error.assert_awaited_once_with(
            integration.id, "Unsupported integration type: jira"
        )

    @pytest.mark.asyncio()
    async def test_timeout_fails_sync_and_disconnects(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """A hung collector is cut off at sync_timeout_seconds and takes the failure path."""
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        provider = make_fake_provider()

        async def hang(collector_ids: object = None) -> list[CollectionResult]:
            await asyncio.sleep(10)
            return []

        provider.collect.side_effect = hang
        runner = _runner(factory, vault, provider, sync_timeout_seconds=0.05)

        with pytest.raises(SyncTimeoutError, match=re.escape("Sync exceeded timeout of 0.05 seconds")):
            await runner.run_sync(integration.id)

        provider.disconnect.assert_awaited_once()
        factory.store.integrations.mark_error.assert_awaited_once_with(
            integration.id, "Sync exceeded timeout of 0.05 seconds"
        )

    @pytest.mark.asyncio()
    async def test_persistence_failure_rolls_back_and_records_error(
        self, vault: CredentialVault, organization_id: uuid.UUID
    ) -> None:
        """A failed success-write is rolled back, then the failure write runs on its own."""
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        factory.store.integrations.mark_synced.side_effect = PersistenceError("Database write failed: boom")

        with pytest.raises(PersistenceError):
            await _runner(factory, vault, make_fake_provider(evidence=[make_evidence()])).run_sync(integration.id)

        assert factory.rolled_back == 1
        assert factory.opened == 3
        factory.store.integrations.mark_error.assert_awaited_once_with(integration.id, "Database write failed: boom")


class TestTestConnection:
    """SyncRunner.test_connection()."""

    @pytest.mark.asyncio()
    async def test_success_records_active(self, vault: CredentialVault, organization_id: uuid.UUID) -> None:
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        provider = make_fake_provider()

        result = await _runner(factory, vault, provider).test_connection(integration.id)

        assert result.success is True
        factory.store.integrations.record_test_result.assert_awaited_once_with(integration.id, True, None)
        provider.connect.assert_not_awaited()
        provider.disconnect.assert_awaited_once()
        factory.store.logs.start.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_failure_records_error(self, vault: CredentialVault, organization_id: uuid.UUID) -> None:
        factory = FakeStoreFactory()
        integration = _configured(factory, vault, organization_id)
        provider = make_fake_provider()
        provider.test_connection.return_value = TestResult(success=False, latency_ms=40, error="Bad credentials")

        result = await _runner(factory, vault, provider).test_connection(integration.id)

        assert result.error == "Bad credentials"
        factory.store.integrations.record_test_result.assert_awaited_once_with(
            integration.id, False, "Bad credentials"
        )

    @pytest.mark.asyncio()
    async def test_missing_integration(self, vault: CredentialVault) -> None:
        factory = FakeStoreFactory()
        factory.store.integrations.get.return_value = None

        with pytest.raises(NotFoundError):
            await _runner(factory, vault, make_fake_provider()).test_connection(uuid.uuid4())

        factory.store.integrations.record_test_result.assert_not_awaited()
