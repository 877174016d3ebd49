"""Abstract interfaces (Protocol classes) for the integration sync engine.

Defines the contracts between the sync pipeline and the persistence adapters
using typing.Protocol. The runner, scheduler, matcher and health service depend
on these protocols, never on the SQLAlchemy implementations, so tests can
substitute in-memory fakes.

A StoreFactory opens one ISyncStore per `async with` block. Everything done
through the store inside the block commits together or not at all:

    async with store_factory() as store:
        await store.integrations.mark_error(integration_id, message)
        await store.logs.fail(log_id, message, completed_at, duration_ms)

Protocols defined:
- IIntegrationRepository
- IIntegrationLogRepository
- IEvidenceRepository
- IControlRepository
- IEvidenceLinkRepository
- IEffectivenessLogRepository
- ISyncStore
"""

import uuid
from collections.abc import Callable, Collection
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from aumos_integration_sync.core.models import (
    Control,
    ControlEffectivenessLog,
    Evidence,
    Integration,
    IntegrationLog,
)
from aumos_integration_sync.providers.base import GeneratedEvidence


@dataclass(frozen=True)
class ControlCandidate:
    """Read model of a control as the verification matcher sees it.

    Attributes:
        id: Control UUID.
        name: Control name, tested against name patterns and keywords.
        code: Control code, tested against code patterns.
        requirement_codes: Codes of framework requirements mapped to the control.
    """

    id: uuid.UUID
    name: str
    code: str | None = None
    requirement_codes: tuple[str, ...] = field(default_factory=tuple)


class IIntegrationRepository(Protocol):
    """Repository contract for Integration persistence.

    Every lookup ignores soft-deleted integrations.
    """

    async def get(self, integration_id: uuid.UUID) -> Integration | None:
        """Return a live integration by id, or None."""
        ...

    async def get_for_organization(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> Integration | None:
        """Return a live integration only if it belongs to the organization."""
        ...

    async def find_by_type(self, organization_id: uuid.UUID, integration_type: str) -> Integration | None:
        """Return the organization's live integration of a given type, if any."""
        ...

    async def list_for_organization(self, organization_id: uuid.UUID) -> list[Integration]:
        """List the organization's live integrations, newest first."""
        ...

    async def create(
        self,
        organization_id: uuid.UUID,
        integration_type: str,
        name: str,
        credentials_encrypted: str,
        config: dict[str, Any],
        sync_frequency_minutes: int,
        connected_by_id: uuid.UUID | None,
    ) -> Integration:
        """Create an integration in `pending` status.

        Args:
            organization_id: Owning organization.
            integration_type: github | aws | gsuite.
            name: Display name.
            credentials_encrypted: CredentialVault envelope.
            config: Provider configuration.
            sync_frequency_minutes: Scheduled sync interval.
            connected_by_id: The connecting user.

        Returns:
            The persisted Integration.
        """
        ...

    async def update_settings(
        self,
        integration_id: uuid.UUID,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        sync_frequency_minutes: int | None = None,
    ) -> Integration:
        """Update the user-editable fields; None leaves a field unchanged."""
        ...

    async def mark_synced(self, integration_id: uuid.UUID, synced_at: datetime, next_sync_at: datetime) -> None:
        """Set status active, clear the error, stamp last/next sync times."""
        ...

    async def mark_error(self, integration_id: uuid.UUID, error_message: str) -> None:
        """Set status error with the given message."""
        ...

    async def record_test_result(self, integration_id: uuid.UUID, success: bool, error_message: str | None) -> None:
        """Set status active (clearing the error) or error after a connection test."""
        ...

    async def soft_delete(self, integration_id: uuid.UUID, deleted_at: datetime) -> None:
        """Mark disconnected, discard the credential blob, stamp deleted_at."""
        ...

    async def list_due(self, now: datetime, exclude_ids: Collection[uuid.UUID], limit: int) -> list[Integration]:
        """Active integrations with next_sync_at <= now, earliest first.

        Args:
            now: Reference time.
            exclude_ids: Integrations already syncing.
            limit: Maximum rows to return.
        """
        ...

    async def count_due(self, now: datetime, exclude_ids: Collection[uuid.UUID]) -> int:
        """Count active, due integrations not in exclude_ids."""
        ...

    async def next_due_at(self) -> datetime | None:
        """Earliest next_sync_at among active integrations."""
        ...


class IIntegrationLogRepository(Protocol):
    """Repository contract for IntegrationLog persistence."""

    async def start(self, integration_id: uuid.UUID, operation: str, details: dict[str, Any]) -> IntegrationLog:
        """Create a `running` log row."""
        ...

    async def complete(
        self,
        log_id: uuid.UUID,
        items_processed: int,
        items_failed: int,
        details: dict[str, Any],
        completed_at: datetime,
        duration_ms: int,
    ) -> None:
        """Finalize a log row as `completed`."""
        ...

    async def fail(self, log_id: uuid.UUID, error_message: str, completed_at: datetime, duration_ms: int) -> None:
        """Finalize a log row as `failed`."""
        ...

    async def list_for_integration(
        self, integration_id: uuid.UUID, page: int = 1, page_size: int = 20
    ) -> tuple[list[IntegrationLog], int]:
        """Return one page of logs (newest first) and the total count."""
        ...


class IEvidenceRepository(Protocol):
    """Repository contract for Evidence persistence."""

    async def create_from_generated(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        evidence: GeneratedEvidence,
    ) -> Evidence:
        """Persist generated evidence as non-provisional Evidence pending review."""
        ...

    async def list_for_control(self, control_id: uuid.UUID) -> list[Evidence]:
        """Live evidence linked to a control, most recently collected first."""
        ...


class IControlRepository(Protocol):
    """Repository contract for Control reads and verification writes."""

    async def get(self, control_id: uuid.UUID) -> Control | None:
        """Return a live control by id, or None."""
        ...

    async def list_candidates(self, organization_id: uuid.UUID) -> list[ControlCandidate]:
        """Live controls of the organization with their framework requirement codes."""
        ...

    async def record_verification(
        self,
        control_id: uuid.UUID,
        implementation_status: str,
        verification_status: str,
        verified_at: datetime,
        source: str,
        details: dict[str, Any],
    ) -> None:
        """Apply an automated pass/fail judgment to a control."""
        ...

    async def record_automated_link(self, control_id: uuid.UUID, source: str, details: dict[str, Any]) -> None:
        """Mark a control automated without touching its implementation/verification status."""
        ...

    async def mark_reviewed(self, control_id: uuid.UUID, reviewed_at: datetime) -> None:
        """Stamp last_reviewed_at."""
        ...


class IEvidenceLinkRepository(Protocol):
    """Repository contract for EvidenceControlLink upserts."""

    async def upsert(self, evidence_id: uuid.UUID, control_id: uuid.UUID, relevance: str, notes: str) -> None:
        """Insert the link, or update relevance/notes if the pair already exists."""
        ...


class IEffectivenessLogRepository(Protocol):
    """Repository contract for ControlEffectivenessLog persistence."""

    async def append(
        self,
        control_id: uuid.UUID,
        score: float,
        factors: dict[str, Any],
        triggered_by: str,
        calculated_at: datetime,
    ) -> ControlEffectivenessLog:
        """Append one history row."""
        ...

    async def history(self, control_id: uuid.UUID, limit: int = 50) -> list[ControlEffectivenessLog]:
        """History rows for a control, newest first."""
        ...


class ISyncStore(Protocol):
    """One transactional unit of work over every repository."""

    integrations: IIntegrationRepository
    logs: IIntegrationLogRepository
    evidence: IEvidenceRepository
    controls: IControlRepository
    links: IEvidenceLinkRepository
    effectiveness: IEffectivenessLogRepository


StoreFactory = Callable[[], AbstractAsyncContextManager[ISyncStore]]
