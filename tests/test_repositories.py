"""Tests for the adapter/repository layer.

These are unit tests using mock SQLAlchemy sessions. Statements handed to
session.execute() are captured and compiled against the PostgreSQL dialect.

Tests verify:
- Transaction boundaries of sql_store_factory (commit, rollback, error mapping)
- Organization scoping and soft-delete filtering in queries
- Idempotent EvidenceControlLink upserts
- Aggregation of framework requirement codes per control
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from aumos_integration_sync.adapters.repositories import (
    ControlRepository,
    EvidenceLinkRepository,
    EvidenceRepository,
    IntegrationLogRepository,
    IntegrationRepository,
)
from aumos_integration_sync.adapters.store import SqlSyncStore, sql_store_factory
from aumos_integration_sync.core.models import Evidence, IntegrationStatus, SyncLogStatus
from aumos_integration_sync.errors import NotFoundError, PersistenceError
from tests.conftest import make_evidence


def make_session(rows: list | None = None, scalar: object = None) -> MagicMock:
    """Create a mock AsyncSession whose execute() returns canned rows."""
    result = MagicMock()
    result.all.return_value = rows or []
    result.scalars.return_value.all.return_value = rows or []
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar

    session = MagicMock()
    session.execute = AsyncMock(return_value=result)
    session.flush = AsyncMock()
    session.refresh = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session


def _sql(stmt: object) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _executed(session: MagicMock) -> object:
    return session.execute.await_args.args[0]


class TestSqlStoreFactory:
    """Each `async with` block is one transaction."""

    def _factory(self, session: MagicMock):
        @asynccontextmanager
        async def session_factory() -> AsyncIterator[MagicMock]:
            yield session

        return sql_store_factory(session_factory)

    @pytest.mark.asyncio()
    async def test_commits_on_clean_exit(self) -> None:
        session = make_session()
        open_store = self._factory(session)

        async with open_store() as store:
            assert isinstance(store, SqlSyncStore)
            assert isinstance(store.integrations, IntegrationRepository)

        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_sqlalchemy_error_becomes_persistence_error(self) -> None:
        session = make_session()
        open_store = self._factory(session)

        with pytest.raises(PersistenceError, match="Database write failed"):
            async with open_store():
                raise OperationalError("UPDATE isync_integrations", {}, Exception("connection reset"))

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_other_errors_roll_back_and_propagate(self) -> None:
        session = make_session()
        open_store = self._factory(session)

        with pytest.raises(NotFoundError):
            async with open_store():
                raise NotFoundError("Integration not found")

        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()


class TestIntegrationRepository:
    """Query construction for IntegrationRepository."""

    @pytest.mark.asyncio()
    async def test_get_for_organization_is_scoped(self, organization_id: uuid.UUID) -> None:
        """Lookups filter on the organization and hide soft-deleted rows."""
        session = make_session()

        assert await IntegrationRepository(session).get_for_organization(uuid.uuid4(), organization_id) is None

        sql = _sql(_executed(session))
        assert "isync_integrations.organization_id" in sql
        assert "isync_integrations.deleted_at IS NULL" in sql

    @pytest.mark.asyncio()
    async def test_list_due_orders_and_excludes(self) -> None:
        session = make_session()
        excluded = uuid.uuid4()

        await IntegrationRepository(session).list_due(datetime.now(UTC), exclude_ids={excluded}, limit=2)

        stmt = _executed(session)
        sql = _sql(stmt)
        assert "ORDER BY isync_integrations.next_sync_at ASC" in sql
        assert "NOT IN" in sql
        assert "LIMIT" in sql
        assert IntegrationStatus.ACTIVE in stmt.compile().params.values()

    @pytest.mark.asyncio()
    async def test_list_due_without_free_slots_skips_query(self) -> None:
        session = make_session()

        assert await IntegrationRepository(session).list_due(datetime.now(UTC), exclude_ids=set(), limit=0) == []

        session.execute.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_mark_error_sets_status_and_message(self) -> None:
        session = make_session()

        await IntegrationRepository(session).mark_error(uuid.uuid4(), "Bad credentials")

        params = _executed(session).compile().params
        assert params["status"] == IntegrationStatus.ERROR
        assert params["error_message"] == "Bad credentials"

    @pytest.mark.asyncio()
    async def test_mark_synced_clears_error(self) -> None:
        session = make_session()
        now = datetime.now(UTC)

        await IntegrationRepository(session).mark_synced(
            uuid.uuid4(), synced_at=now, next_sync_at=now + timedelta(hours=1)
        )

        params = _executed(session).compile().params
        assert params["status"] == IntegrationStatus.ACTIVE
        assert params["error_message"] is None
        assert params["next_sync_at"] == now + timedelta(hours=1)

    @pytest.mark.asyncio()
    async def test_soft_delete_discards_credentials(self) -> None:
        session = make_session()

        await IntegrationRepository(session).soft_delete(uuid.uuid4(), deleted_at=datetime.now(UTC))

        params = _executed(session).compile().params
        assert params["status"] == IntegrationStatus.DISCONNECTED
        assert params["credentials_encrypted"] is None

    @pytest.mark.asyncio()
    async def test_update_settings_unknown(self) -> None:
        session = make_session(scalar=None)

        with pytest.raises(NotFoundError):
            await IntegrationRepository(session).update_settings(uuid.uuid4(), name="x")

        session.flush.assert_not_awaited()


class TestIntegrationLogRepository:
    @pytest.mark.asyncio()
    async def test_start_creates_running_row(self) -> None:
        session = make_session()
        integration_id = uuid.uuid4()

        log = await IntegrationLogRepository(session).start(integration_id, "sync", {"collectors": "all"})

        assert log.integration_id == integration_id
        assert log.status == SyncLogStatus.RUNNING
        assert log.details == {"collectors": "all"}
        session.add.assert_called_once_with(log)
        session.flush.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_fail_records_message_and_duration(self) -> None:
        session = make_session()

        await IntegrationLogRepository(session).fail(
            uuid.uuid4(), "boom", completed_at=datetime.now(UTC), duration_ms=7
        )

        params = _executed(session).compile().params
        assert params["status"] == SyncLogStatus.FAILED
        assert params["error_message"] == "boom"
        assert params["duration_ms"] == 7


class TestEvidenceRepository:
    @pytest.mark.asyncio()
    async def test_integration_evidence_is_not_provisional(self, organization_id: uuid.UUID) -> None:
        """Generated evidence is stored as non-provisional and pending review."""
        session = make_session()
        integration_id = uuid.uuid4()
        generated = make_evidence(title="Branch Protection Status")

        row = await EvidenceRepository(session).create_from_generated(organization_id, integration_id, generated)

        assert isinstance(row, Evidence)
        assert row.integration_id == integration_id
        assert row.title == "Branch Protection Status"
        assert row.is_provisional is False
        assert row.review_status == "pending"
        assert row.valid_until == generated.valid_until
        session.add.assert_called_once_with(row)


class TestControlRepository:
    @pytest.mark.asyncio()
    async def test_candidates_collect_requirement_codes(self, organization_id: uuid.UUID) -> None:
        """Joined rows are folded into one candidate per control, in query order."""
        mfa_id, review_id = uuid.uuid4(), uuid.uuid4()
        session = make_session(
            rows=[
                (mfa_id, "MFA enforcement", "AC-2", "A.8.5"),
                (mfa_id, "MFA enforcement", "AC-2", "CC6.1"),
                (review_id, "Code review", None, None),
            ]
        )

        candidates = await ControlRepository(session).list_candidates(organization_id)

        assert [c.id for c in candidates] == [mfa_id, review_id]
        assert candidates[0].code == "AC-2"
        assert candidates[0].requirement_codes == ("A.8.5", "CC6.1")
        assert candidates[1].requirement_codes == ()
        assert "LEFT OUTER JOIN isync_control_framework_mappings" in _sql(_executed(session))


class TestEvidenceLinkRepository:
    @pytest.mark.asyncio()
    async def test_upsert_is_on_conflict_update(self) -> None:
        """Re-linking the same (evidence, control) pair updates the existing row."""
        session = make_session()

        await EvidenceLinkRepository(session).upsert(uuid.uuid4(), uuid.uuid4(), "primary", "Auto-linked")

        sql = _sql(_executed(session))
        assert sql.startswith("INSERT INTO isync_evidence_control_links")
        assert "ON CONFLICT (evidence_id, control_id) DO UPDATE" in sql
        assert "notes = excluded.notes" in sql
