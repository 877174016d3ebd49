"""SQLAlchemy ORM models for the integration sync engine.

All models use the `isync_` table prefix and extend IntegrationSyncModel for
automatic id (UUID), created_at, and updated_at fields.

Models:
- Integration              — Organization-scoped connection to one vendor system
- IntegrationLog           — One row per sync / test attempt
- Evidence                 — Persisted evidence (integration-sourced or manual)
- FrameworkRequirement     — A framework clause (ISO A.5.9, SOC 2 CC6.1, ...)
- Control                  — Internal compliance control with verification state
- ControlFrameworkMapping  — Control ↔ framework requirement link with coverage
- EvidenceControlLink      — Evidence ↔ control link, unique per pair
- ControlEffectivenessLog  — Append-only history of control health scores

Soft-deleted rows carry a non-null deleted_at and are excluded by every
repository query that serves the sync pipeline.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from aumos_integration_sync.database import IntegrationSyncModel, utcnow


class IntegrationStatus(enum.StrEnum):
    """Lifecycle states of an Integration."""

    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class SyncLogStatus(enum.StrEnum):
    """States of an IntegrationLog row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ImplementationStatus(enum.StrEnum):
    """Control implementation states written by the matcher."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    IMPLEMENTED = "implemented"
    NOT_APPLICABLE = "not_applicable"


class VerificationStatus(enum.StrEnum):
    """Whether automated evidence currently backs a control's claimed state."""

    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"
    STALE = "stale"


class Integration(IntegrationSyncModel):
    """An organization's configured connection to one external vendor system.

    The credential blob is the serialized CredentialVault envelope. An
    integration must hold a non-null blob before any sync may run; disconnecting
    clears it together with the soft delete.

    Attributes:
        organization_id: Owning organization UUID.
        type: Vendor type — github | aws | gsuite.
        name: Human-readable name.
        status: pending | active | error | disconnected.
        error_message: Last fatal sync or test error, cleared on success.
        credentials_encrypted: Vault envelope, or None once disconnected.
        config: Provider configuration (organization, region, domain, ...).
        last_sync_at: Completion time of the last successful sync.
        next_sync_at: When the scheduler should pick this integration up.
        sync_frequency_minutes: Interval between scheduled syncs.
        connected_by_id: User who connected the integration.
        deleted_at: Soft-delete marker.
    """

    __tablename__ = "isync_integrations"
    __table_args__ = (Index("ix_isync_integrations_status_next_sync_at", "status", "next_sync_at"),)

    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        index=True,
        comment="Owning organization",
    )
    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Vendor type: github | aws | gsuite",
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=IntegrationStatus.PENDING,
        comment="pending | active | error | disconnected",
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    credentials_encrypted: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="AES-256-GCM envelope produced by CredentialVault. Never logged.",
    )
    config: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Provider configuration map",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    next_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Scheduler due time; integrations are started in ascending order",
    )
    sync_frequency_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=60,
    )
    connected_by_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class IntegrationLog(IntegrationSyncModel):
    """One sync or connection-test attempt for an integration.

    Created as `running` at sync start and finalized exactly once as
    `completed` or `failed`, in the same transaction as the Integration update.
    """

    __tablename__ = "isync_integration_logs"

    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    operation: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Operation name, e.g. sync",
    )
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="running | completed | failed",
    )
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Requested collectors at start; full SyncResult snapshot on completion",
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Evidence(IntegrationSyncModel):
    """A structured, timestamped artifact about the organization's security posture.

    Integration-sourced evidence is stored with is_provisional=False: it is
    treated as pre-verified. Manually uploaded evidence stays provisional until
    a human reviews it.
    """

    __tablename__ = "isync_evidence"

    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("isync_integrations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_type: Mapped[str] = mapped_column(
        "type",
        String(50),
        nullable=False,
        comment="config | report | screenshot | document | ...",
    )
    source: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="manual",
        comment="Source tag: manual, github, aws-iam, aws-cloudtrail, aws-s3, google-workspace",
    )
    collected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="pending",
        comment="pending | approved | rejected",
    )
    is_provisional: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False for integration-sourced evidence",
    )
    evidence_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        comment="Collector payload the evidence was generated from",
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class FrameworkRequirement(IntegrationSyncModel):
    """A requirement clause of a compliance framework."""

    __tablename__ = "isync_framework_requirements"

    framework_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    code: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Canonical code, e.g. A.5.17 or CC6.1",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Control(IntegrationSyncModel):
    """A compliance control whose state evidence can satisfy or fail.

    verification_status is written only by the verification matcher or by an
    explicit human review action.
    """

    __tablename__ = "isync_controls"
    __table_args__ = (Index("ix_isync_controls_org_verification", "organization_id", "verification_status"),)

    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    implementation_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=ImplementationStatus.NOT_STARTED,
    )
    is_automated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    automation_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    verification_status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default=VerificationStatus.UNVERIFIED,
        comment="unverified | verified | failed | stale",
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    verification_details: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Evidence title/id, confidence, reason, metrics, matched rule",
    )
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_frequency_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ControlFrameworkMapping(IntegrationSyncModel):
    """Many-to-many link from a Control to a FrameworkRequirement."""

    __tablename__ = "isync_control_framework_mappings"

    control_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_controls.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    framework_requirement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_framework_requirements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    coverage: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="full",
        comment="full | partial",
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class EvidenceControlLink(IntegrationSyncModel):
    """Link between persisted Evidence and a Control, unique per pair."""

    __tablename__ = "isync_evidence_control_links"
    __table_args__ = (UniqueConstraint("evidence_id", "control_id", name="uq_isync_evidence_control_pair"),)

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_evidence.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_controls.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    relevance: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="primary",
        comment="primary | supporting",
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class ControlEffectivenessLog(IntegrationSyncModel):
    """Append-only history of computed control health scores."""

    __tablename__ = "isync_control_effectiveness_logs"
    __table_args__ = (Index("ix_isync_effectiveness_control_calculated", "control_id", "calculated_at"),)

    control_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("isync_controls.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    effectiveness_score: Mapped[Decimal] = mapped_column(
        Numeric(5, 2),
        nullable=False,
        comment="Overall health score 0-100",
    )
    factors: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Component scores, inputs, and recommendations",
    )
    triggered_by: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="manual | sync | review_by_<user_id>",
    )
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
