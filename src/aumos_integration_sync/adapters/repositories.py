"""SQLAlchemy repositories for the integration sync primary database.

Each repository implements the corresponding interface from core/interfaces.py
and wraps the AsyncSession owned by the enclosing SqlSyncStore. Repositories
flush but never commit; the store decides when the transaction ends.

Repositories:
- IntegrationRepository        — Integration lifecycle and scheduler queries
- IntegrationLogRepository     — IntegrationLog start/finalize
- EvidenceRepository           — Evidence persistence and control lookups
- ControlRepository            — Control reads and verification writes
- EvidenceLinkRepository       — EvidenceControlLink upserts
- EffectivenessLogRepository   — ControlEffectivenessLog history
"""

import uuid
from collections.abc import Collection
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from aumos_integration_sync.core.interfaces import ControlCandidate
from aumos_integration_sync.core.models import (
    Control,
    ControlEffectivenessLog,
    ControlFrameworkMapping,
    Evidence,
    EvidenceControlLink,
    FrameworkRequirement,
    Integration,
    IntegrationLog,
    IntegrationStatus,
    SyncLogStatus,
)
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.errors import NotFoundError
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers.base import GeneratedEvidence

logger = get_logger(__name__)


class _SessionRepository:
    """Holds the session shared by every repository of one store."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session


class IntegrationRepository(_SessionRepository):
    """Repository for Integration persistence.

    Soft-deleted integrations are invisible to every query here.

    Args:
        session: The primary DB async session.
    """

    async def get(self, integration_id: uuid.UUID) -> Integration | None:
        stmt = select(Integration).where(
            Integration.id == integration_id,
            Integration.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_organization(self, integration_id: uuid.UUID, organization_id: uuid.UUID) -> Integration | None:
        stmt = select(Integration).where(
            Integration.id == integration_id,
            Integration.organization_id == organization_id,
            Integration.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_type(self, organization_id: uuid.UUID, integration_type: str) -> Integration | None:
        stmt = (
            select(Integration)
            .where(
                Integration.organization_id == organization_id,
                Integration.type == integration_type,
                Integration.deleted_at.is_(None),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_organization(self, organization_id: uuid.UUID) -> list[Integration]:
        stmt = (
            select(Integration)
            .where(
                Integration.organization_id == organization_id,
                Integration.deleted_at.is_(None),
            )
            .order_by(Integration.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

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
        """Create and persist a new integration in pending status.

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
        integration = Integration(
            organization_id=organization_id,
            type=integration_type,
            name=name,
            status=IntegrationStatus.PENDING,
            credentials_encrypted=credentials_encrypted,
            config=config,
            sync_frequency_minutes=sync_frequency_minutes,
            connected_by_id=connected_by_id,
        )
        self._session.add(integration)
        await self._session.flush()
        await self._session.refresh(integration)
        logger.info(
            "Integration created in DB",
            integration_id=str(integration.id),
            organization_id=str(organization_id),
            integration_type=integration_type,
        )
        return integration

    async def update_settings(
        self,
        integration_id: uuid.UUID,
        name: str | None = None,
        config: dict[str, Any] | None = None,
        sync_frequency_minutes: int | None = None,
    ) -> Integration:
        """Update the user-editable fields of an integration.

        Raises:
            NotFoundError: If the integration does not exist.
        """
        integration = await self.get(integration_id)
        if integration is None:
            raise NotFoundError(f"Integration not found: {integration_id}")
        if name is not None:
            integration.name = name
        if config is not None:
            integration.config = config
        if sync_frequency_minutes is not None:
            integration.sync_frequency_minutes = sync_frequency_minutes
        await self._session.flush()
        await self._session.refresh(integration)
        return integration

    async def _update(self, integration_id: uuid.UUID, **values: Any) -> None:
        stmt = update(Integration).where(Integration.id == integration_id).values(updated_at=utcnow(), **values)
        await self._session.execute(stmt)

    async def mark_synced(self, integration_id: uuid.UUID, synced_at: datetime, next_sync_at: datetime) -> None:
        await self._update(
            integration_id,
            status=IntegrationStatus.ACTIVE,
            error_message=None,
            last_sync_at=synced_at,
            next_sync_at=next_sync_at,
        )

    async def mark_error(self, integration_id: uuid.UUID, error_message: str) -> None:
        await self._update(integration_id, status=IntegrationStatus.ERROR, error_message=error_message)

    async def record_test_result(self, integration_id: uuid.UUID, success: bool, error_message: str | None) -> None:
        if success:
            await self._update(integration_id, status=IntegrationStatus.ACTIVE, error_message=None)
        else:
            await self._update(integration_id, status=IntegrationStatus.ERROR, error_message=error_message)

    async def soft_delete(self, integration_id: uuid.UUID, deleted_at: datetime) -> None:
        await self._update(
            integration_id,
            status=IntegrationStatus.DISCONNECTED,
            credentials_encrypted=None,
            deleted_at=deleted_at,
        )
        logger.info("Integration soft-deleted", integration_id=str(integration_id))

    def _due_filter(self, now: datetime, exclude_ids: Collection[uuid.UUID]) -> list[Any]:
        clauses: list[Any] = [
            Integration.status == IntegrationStatus.ACTIVE,
            Integration.next_sync_at <= now,
            Integration.deleted_at.is_(None),
        ]
        if exclude_ids:
            clauses.append(Integration.id.not_in(list(exclude_ids)))
        return clauses

    async def list_due(self, now: datetime, exclude_ids: Collection[uuid.UUID], limit: int) -> list[Integration]:
        """Return due integrations, oldest next_sync_at first.

        Args:
            now: Reference time.
            exclude_ids: Integrations already syncing.
            limit: Maximum rows to return.

        Returns:
            Up to `limit` active integrations whose next_sync_at has passed.
        """
        if limit <= 0:
            return []
        stmt = (
            select(Integration)
            .where(*self._due_filter(now, exclude_ids))
            .order_by(Integration.next_sync_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_due(self, now: datetime, exclude_ids: Collection[uuid.UUID]) -> int:
        stmt = select(func.count()).select_from(Integration).where(*self._due_filter(now, exclude_ids))
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def next_due_at(self) -> datetime | None:
        stmt = select(func.min(Integration.next_sync_at)).where(
            Integration.status == IntegrationStatus.ACTIVE,
            Integration.deleted_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class IntegrationLogRepository(_SessionRepository):
    """Repository for IntegrationLog rows.

    A log row is created once as running and finalized exactly once.

    Args:
        session: The primary DB async session.
    """

    async def start(self, integration_id: uuid.UUID, operation: str, details: dict[str, Any]) -> IntegrationLog:
        log = IntegrationLog(
            integration_id=integration_id,
            operation=operation,
            status=SyncLogStatus.RUNNING,
            details=details,
            started_at=utcnow(),
        )
        self._session.add(log)
        await self._session.flush()
        await self._session.refresh(log)
        return log

    async def complete(
        self,
        log_id: uuid.UUID,
        items_processed: int,
        items_failed: int,
        details: dict[str, Any],
        completed_at: datetime,
        duration_ms: int,
    ) -> None:
        stmt = (
            update(IntegrationLog)
            .where(IntegrationLog.id == log_id)
            .values(
                status=SyncLogStatus.COMPLETED,
                items_processed=items_processed,
                items_failed=items_failed,
                details=details,
                completed_at=completed_at,
                duration_ms=duration_ms,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def fail(self, log_id: uuid.UUID, error_message: str, completed_at: datetime, duration_ms: int) -> None:
        stmt = (
            update(IntegrationLog)
            .where(IntegrationLog.id == log_id)
            .values(
                status=SyncLogStatus.FAILED,
                error_message=error_message,
                completed_at=completed_at,
                duration_ms=duration_ms,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def list_for_integration(
        self, integration_id: uuid.UUID, page: int = 1, page_size: int = 20
    ) -> tuple[list[IntegrationLog], int]:
        """Return one page of logs, newest first, and the total count.

        Args:
            integration_id: The integration whose logs to list.
            page: Page number (1-indexed).
            page_size: Records per page.

        Returns:
            Tuple of (logs on the page, total log count).
        """
        count_stmt = (
            select(func.count()).select_from(IntegrationLog).where(IntegrationLog.integration_id == integration_id)
        )
        total = (await self._session.execute(count_stmt)).scalar_one()

        stmt = (
            select(IntegrationLog)
            .where(IntegrationLog.integration_id == integration_id)
            .order_by(IntegrationLog.started_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


class EvidenceRepository(_SessionRepository):
    """Repository for Evidence rows.

    Args:
        session: The primary DB async session.
    """

    async def create_from_generated(
        self,
        organization_id: uuid.UUID,
        integration_id: uuid.UUID,
        evidence: GeneratedEvidence,
    ) -> Evidence:
        """Persist generated evidence.

        Integration-sourced evidence is never provisional. It still enters the
        review queue as pending.

        Args:
            organization_id: Owning organization.
            integration_id: The integration that produced it.
            evidence: The provider's GeneratedEvidence.

        Returns:
            The persisted Evidence.
        """
        row = Evidence(
            organization_id=organization_id,
            integration_id=integration_id,
            title=evidence.title,
            description=evidence.description,
            evidence_type=evidence.evidence_type,
            source=evidence.source,
            evidence_metadata=evidence.metadata,
            valid_from=evidence.valid_from,
            valid_until=evidence.valid_until,
            collected_at=utcnow(),
            is_provisional=False,
            review_status="pending",
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_control(self, control_id: uuid.UUID) -> list[Evidence]:
        stmt = (
            select(Evidence)
            .join(EvidenceControlLink, EvidenceControlLink.evidence_id == Evidence.id)
            .where(
                EvidenceControlLink.control_id == control_id,
                Evidence.deleted_at.is_(None),
            )
            .order_by(Evidence.collected_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class ControlRepository(_SessionRepository):
    """Repository for Control reads and the matcher's verification writes.

    Args:
        session: The primary DB async session.
    """

    async def get(self, control_id: uuid.UUID) -> Control | None:
        stmt = select(Control).where(Control.id == control_id, Control.deleted_at.is_(None))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_candidates(self, organization_id: uuid.UUID) -> list[ControlCandidate]:
        """Load the organization's live controls with their requirement codes.

        Args:
            organization_id: Owning organization.

        Returns:
            One ControlCandidate per control, ordered by creation time.
        """
        stmt = (
            select(Control.id, Control.name, Control.code, FrameworkRequirement.code)
            .outerjoin(ControlFrameworkMapping, ControlFrameworkMapping.control_id == Control.id)
            .outerjoin(
                FrameworkRequirement,
                FrameworkRequirement.id == ControlFrameworkMapping.framework_requirement_id,
            )
            .where(
                Control.organization_id == organization_id,
                Control.deleted_at.is_(None),
            )
            .order_by(Control.created_at.asc(), Control.id)
        )
        result = await self._session.execute(stmt)

        rows: dict[uuid.UUID, tuple[str, str | None, list[str]]] = {}
        for control_id, name, code, requirement_code in result.all():
            entry = rows.setdefault(control_id, (name, code, []))
            if requirement_code is not None:
                entry[2].append(requirement_code)

        return [
            ControlCandidate(id=control_id, name=name, code=code, requirement_codes=tuple(codes))
            for control_id, (name, code, codes) in rows.items()
        ]

    async def record_verification(
        self,
        control_id: uuid.UUID,
        implementation_status: str,
        verification_status: str,
        verified_at: datetime,
        source: str,
        details: dict[str, Any],
    ) -> None:
        stmt = (
            update(Control)
            .where(Control.id == control_id)
            .values(
                implementation_status=implementation_status,
                is_automated=True,
                automation_source=source,
                verification_status=verification_status,
                verified_at=verified_at,
                verification_source=source,
                verification_details=details,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def record_automated_link(self, control_id: uuid.UUID, source: str, details: dict[str, Any]) -> None:
        stmt = (
            update(Control)
            .where(Control.id == control_id)
            .values(
                is_automated=True,
                automation_source=source,
                verification_source=source,
                verification_details=details,
                updated_at=utcnow(),
            )
        )
        await self._session.execute(stmt)

    async def mark_reviewed(self, control_id: uuid.UUID, reviewed_at: datetime) -> None:
        stmt = (
            update(Control)
            .where(Control.id == control_id)
            .values(last_reviewed_at=reviewed_at, updated_at=utcnow())
        )
        await self._session.execute(stmt)


class EvidenceLinkRepository(_SessionRepository):
    """Repository for EvidenceControlLink upserts.

    Args:
        session: The primary DB async session.
    """

    async def upsert(self, evidence_id: uuid.UUID, control_id: uuid.UUID, relevance: str, notes: str) -> None:
        """Insert the link, or refresh its notes when the pair already exists.

        Args:
            evidence_id: Persisted evidence id.
            control_id: Matched control id.
            relevance: primary | supporting.
            notes: Free-text note recording which rule matched.
        """
        now = utcnow()
        stmt = insert(EvidenceControlLink).values(
            id=uuid.uuid4(),
            evidence_id=evidence_id,
            control_id=control_id,
            relevance=relevance,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EvidenceControlLink.evidence_id, EvidenceControlLink.control_id],
            set_={"notes": stmt.excluded.notes, "updated_at": now},
        )
        await self._session.execute(stmt)


class EffectivenessLogRepository(_SessionRepository):
    """Repository for the append-only ControlEffectivenessLog.

    Args:
        session: The primary DB async session.
    """

    async def append(
        self,
        control_id: uuid.UUID,
        score: float,
        factors: dict[str, Any],
        triggered_by: str,
        calculated_at: datetime,
    ) -> ControlEffectivenessLog:
        entry = ControlEffectivenessLog(
            control_id=control_id,
            effectiveness_score=Decimal(str(score)),
            factors=factors,
            triggered_by=triggered_by,
            calculated_at=calculated_at,
        )
        self._session.add(entry)
        await self._session.flush()
        await self._session.refresh(entry)
        return entry

    async def history(self, control_id: uuid.UUID, limit: int = 50) -> list[ControlEffectivenessLog]:
        stmt = (
            select(ControlEffectivenessLog)
            .where(ControlEffectivenessLog.control_id == control_id)
            .order_by(ControlEffectivenessLog.calculated_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
