"""Test fixtures for aumos-integration-sync.

Provides:
- organization_id: A fixed organization UUID
- vault: A CredentialVault with a random key
- make_fake_store(): A MagicMock ISyncStore whose repositories are AsyncMocks
- FakeStoreFactory: A StoreFactory that records commits and rollbacks per block
- make_fake_integration(): A fake Integration row
- make_fake_provider(): A provider double with configurable results
- make_evidence(): A GeneratedEvidence with sensible defaults
"""

import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from aumos_integration_sync.credentials import CredentialVault
from aumos_integration_sync.providers.base import (
    CollectionResult,
    Confidence,
    ConnectionResult,
    ControlMapping,
    GeneratedEvidence,
    TestResult,
    VerificationResult,
)


@pytest.fixture()
def organization_id() -> uuid.UUID:
    """Return a fixed organization UUID for consistent test assertions.

    Returns:
        A deterministic UUID for the test organization.
    """
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def user_id() -> uuid.UUID:
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def vault() -> CredentialVault:
    """Create a vault with a fresh random 32-byte key."""
    return CredentialVault(os.urandom(32))


def _saved_evidence(*args: Any, **kwargs: Any) -> MagicMock:
    evidence = MagicMock()
    evidence.id = uuid.uuid4()
    return evidence


def make_fake_store() -> MagicMock:
    """Create a fake ISyncStore.

    Every repository is an AsyncMock. Defaults describe an empty database:
    no due integrations, no controls, no logs.

    Returns:
        MagicMock exposing integrations, logs, evidence, controls, links and effectiveness.
    """
    store = MagicMock()
    store.integrations = AsyncMock()
    store.logs = AsyncMock()
    store.evidence = AsyncMock()
    store.controls = AsyncMock()
    store.links = AsyncMock()
    store.effectiveness = AsyncMock()

    log = MagicMock()
    log.id = uuid.uuid4()
    store.logs.start.return_value = log
    store.logs.list_for_integration.return_value = ([], 0)

    store.evidence.create_from_generated.side_effect = _saved_evidence
    store.evidence.list_for_control.return_value = []

    store.controls.list_candidates.return_value = []
    store.effectiveness.history.return_value = []

    store.integrations.list_due.return_value = []
    store.integrations.count_due.return_value = 0
    store.integrations.next_due_at.return_value = None
    return store


class FakeStoreFactory:
    """StoreFactory double handing out one shared fake store.

    Attributes:
        store: The fake store yielded by every block.
        opened: Number of blocks entered.
        committed: Blocks that exited cleanly.
        rolled_back: Blocks that exited with an exception.
        block: 1-based index of the open block, 0 outside any block.
    """

    def __init__(self, store: MagicMock | None = None) -> None:
        self.store = store or make_fake_store()
        self.opened = 0
        self.committed = 0
        self.rolled_back = 0
        self.block = 0

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[MagicMock]:
        self.opened += 1
        self.block = self.opened
        try:
            yield self.store
        except BaseException:
            self.rolled_back += 1
            raise
        else:
            self.committed += 1
        finally:
            self.block = 0


def make_fake_integration(
    organization_id: uuid.UUID,
    integration_type: str = "github",
    credentials_encrypted: str | None = "encrypted-blob",
    status: str = "active",
    config: dict[str, Any] | None = None,
    sync_frequency_minutes: int = 60,
    next_sync_at: datetime | None = None,
) -> MagicMock:
    """Create a fake Integration ORM object for tests.

    Args:
        organization_id: Owning organization UUID.
        integration_type: Vendor type.
        credentials_encrypted: Vault envelope, or None for an unconfigured integration.
        status: Integration status.
        config: Provider configuration.
        sync_frequency_minutes: Scheduled sync interval.
        next_sync_at: When the integration is next due.

    Returns:
        MagicMock with integration-like attributes.
    """
    integration = MagicMock()
    integration.id = uuid.uuid4()
    integration.organization_id = organization_id
    integration.type = integration_type
    integration.name = f"{integration_type} integration"
    integration.status = status
    integration.error_message = None
    integration.credentials_encrypted = credentials_encrypted
    integration.config = config or {}
    integration.sync_frequency_minutes = sync_frequency_minutes
    integration.last_sync_at = None
    integration.next_sync_at = next_sync_at or datetime.now(UTC) - timedelta(minutes=5)
    integration.deleted_at = None
    return integration


def make_evidence(
    title: str = "MFA Enforcement Status",
    source: str = "github",
    control_patterns: list[str] | None = None,
    is_implemented: bool | None = True,
    reason: str = "All users have MFA",
) -> GeneratedEvidence:
    """Create a GeneratedEvidence item.

    Args:
        title: Evidence title.
        source: Evidence source the mappings are matched against.
        control_patterns: Keywords and framework codes.
        is_implemented: Verification verdict, or None for evidence without one.
        reason: Verification reason.

    Returns:
        A GeneratedEvidence valid for the next 24 hours.
    """
    now = datetime.now(UTC)
    verification = None
    if is_implemented is not None:
        verification = VerificationResult(
            is_implemented=is_implemented,
            confidence=Confidence.HIGH,
            reason=reason,
            metrics={"rate": 100 if is_implemented else 10},
        )
    return GeneratedEvidence(
        title=title,
        description=f"{title} description",
        evidence_type="config",
        source=source,
        metadata={},
        valid_from=now,
        valid_until=now + timedelta(hours=24),
        control_patterns=control_patterns if control_patterns is not None else ["mfa"],
        verification_result=verification,
    )


def make_fake_provider(
    evidence: list[GeneratedEvidence] | None = None,
    mappings: list[ControlMapping] | None = None,
    connection: ConnectionResult | None = None,
    results: list[CollectionResult] | None = None,
) -> MagicMock:
    """Create a provider double.

    Args:
        evidence: What generate_evidence() returns.
        mappings: What get_control_mappings() returns.
        connection: What connect() returns. Defaults to success.
        results: What collect() returns. Defaults to one successful collector.

    Returns:
        MagicMock with async lifecycle methods and sync evidence methods.
    """
    provider = MagicMock()
    provider.type = "github"
    provider.connect = AsyncMock(return_value=connection or ConnectionResult(success=True))
    provider.disconnect = AsyncMock()
    provider.test_connection = AsyncMock(return_value=TestResult(success=True, latency_ms=12))
    if results is None:
        results = [
            CollectionResult(
                success=True,
                collector="repos",
                items_collected=1,
                errors=[],
                data=None,
                collected_at=datetime.now(UTC),
            )
        ]
    provider.collect = AsyncMock(return_value=results)
    provider.generate_evidence = MagicMock(return_value=evidence or [])
    provider.get_control_mappings = MagicMock(return_value=mappings or [])
    return provider
