"""Tests for the VerificationMatcher.

Covers the four match rules, source wildcards, first-match-wins ordering,
evidence without a verdict, and idempotent link upserts across repeated runs.
"""

import re
import uuid
from typing import Any

import pytest

from aumos_integration_sync.core.interfaces import ControlCandidate
from aumos_integration_sync.providers.base import ControlMapping
from aumos_integration_sync.verification.matcher import (
    PATTERN_MATCH_LABEL,
    UNVERIFIED_LINK_NOTE,
    VerificationMatcher,
    mapping_covers,
    match_reason,
)
from tests.conftest import make_evidence, make_fake_store


def _control(name: str, code: str | None = None, requirement_codes: tuple[str, ...] = ()) -> ControlCandidate:
    return ControlCandidate(id=uuid.uuid4(), name=name, code=code, requirement_codes=requirement_codes)


def _mapping(source: str = "github", name: str | None = None, code: str | None = None) -> ControlMapping:
    return ControlMapping(
        evidence_source=source,
        control_name_pattern=re.compile(name, re.IGNORECASE) if name else None,
        control_code_pattern=re.compile(code, re.IGNORECASE) if code else None,
    )


class DictLinkStore:
    """In-memory EvidenceControlLink table keyed by (evidence_id, control_id)."""

    def __init__(self) -> None:
        self.rows: dict[tuple[uuid.UUID, uuid.UUID], dict[str, Any]] = {}

    async def upsert(self, evidence_id: uuid.UUID, control_id: uuid.UUID, relevance: str, notes: str) -> None:
        self.rows[(evidence_id, control_id)] = {"relevance": relevance, "notes": notes}


class TestMappingCovers:
    @pytest.mark.parametrize(
        ("mapping_source", "evidence_source", "expected"),
        [
            ("github", "github", True),
            ("github", "gitlab", False),
            ("aws-*", "aws-iam", True),
            ("aws-*", "aws-s3", True),
            ("aws-*", "aws", True),
            ("aws-*", "awsome", False),
            ("aws-iam", "aws-s3", False),
        ],
    )
    def test_source_matching(self, mapping_source: str, evidence_source: str, expected: bool) -> None:
        """A trailing -* covers every source sharing the prefix."""
        assert mapping_covers(_mapping(mapping_source), evidence_source) is expected


class TestMatchReason:
    """Each rule matches independently; framework codes take the label precedence."""

    def test_name_pattern(self) -> None:
        evidence = make_evidence(control_patterns=[])
        reason = match_reason(_mapping(name=r"multi.?factor"), evidence, _control("Multi-Factor Login"))
        assert reason == PATTERN_MATCH_LABEL

    def test_code_pattern(self) -> None:
        evidence = make_evidence(control_patterns=[])
        reason = match_reason(_mapping(code=r"^AC-"), evidence, _control("Anything", code="AC-7"))
        assert reason == PATTERN_MATCH_LABEL

    def test_code_pattern_needs_a_code(self) -> None:
        assert match_reason(_mapping(code=r".*"), make_evidence(control_patterns=[]), _control("Anything")) is None

    def test_keyword_substring_is_case_insensitive(self) -> None:
        reason = match_reason(_mapping(), make_evidence(control_patterns=["MFA"]), _control("Enforce mfa for staff"))
        assert reason == PATTERN_MATCH_LABEL

    def test_framework_requirement_code(self) -> None:
        """An evidence pattern equal to a mapped requirement code names the codes."""
        control = _control("Secure authentication", requirement_codes=("A.8.5", "CC6.1"))

        reason = match_reason(_mapping(), make_evidence(control_patterns=["a.8.5"]), control)

        assert reason == "Framework requirement: A.8.5, CC6.1"

    def test_no_rule_matches(self) -> None:
        control = _control("Physical security", code="PS-1", requirement_codes=("A.7.1",))

        assert match_reason(_mapping(name="mfa", code="AC"), make_evidence(control_patterns=["mfa"]), control) is None


class TestVerificationMatcher:
    """VerificationMatcher.match() against a fake store."""

    @pytest.mark.asyncio()
    async def test_verified_and_failed_controls(self, organization_id: uuid.UUID) -> None:
        """Passing evidence verifies its controls; failing evidence fails them."""
        mfa_control = _control("MFA for all users")
        review_control = _control("Code review required")
        store = make_fake_store()
        store.controls.list_candidates.return_value = [mfa_control, review_control]
        evidence = [
            make_evidence(title="MFA", control_patterns=["mfa"], is_implemented=True),
            make_evidence(title="Reviews", control_patterns=["code review"], is_implemented=False, reason="20%"),
        ]
        evidence_ids = {0: uuid.uuid4(), 1: uuid.uuid4()}

        outcome = await VerificationMatcher().match(store, organization_id, evidence, evidence_ids, [_mapping()])

        assert (outcome.verified, outcome.failed) == (1, 1)
        calls = {c.args[0]: c.kwargs for c in store.controls.record_verification.await_args_list}
        assert calls[mfa_control.id]["implementation_status"] == "implemented"
        assert calls[mfa_control.id]["verification_status"] == "verified"
        assert calls[review_control.id]["implementation_status"] == "not_started"
        assert calls[review_control.id]["verification_status"] == "failed"
        details = calls[review_control.id]["details"]
        assert details["evidenceTitle"] == "Reviews"
        assert details["evidenceId"] == str(evidence_ids[1])
        assert details["reason"] == "20%"
        assert details["confidence"] == "high"
        assert details["matchedBy"] == PATTERN_MATCH_LABEL
        store.controls.list_candidates.assert_awaited_once_with(organization_id)

    @pytest.mark.asyncio()
    async def test_first_match_wins(self, organization_id: uuid.UUID) -> None:
        """A control matched by earlier evidence ignores later evidence in the same run."""
        control = _control("MFA enforcement")
        store = make_fake_store()
        store.controls.list_candidates.return_value = [control]
        evidence = [
            make_evidence(title="First", control_patterns=["mfa"], is_implemented=True),
            make_evidence(title="Second", control_patterns=["mfa"], is_implemented=False),
        ]

        outcome = await VerificationMatcher().match(
            store, organization_id, evidence, {0: uuid.uuid4(), 1: uuid.uuid4()}, [_mapping(), _mapping()]
        )

        assert (outcome.verified, outcome.failed) == (1, 0)
        store.controls.record_verification.assert_awaited_once()
        assert store.controls.record_verification.await_args.kwargs["details"]["evidenceTitle"] == "First"
        store.links.upsert.assert_awaited_once()

    @pytest.mark.asyncio()
    async def test_evidence_without_mapping_source_is_skipped(self, organization_id: uuid.UUID) -> None:
        store = make_fake_store()
        store.controls.list_candidates.return_value = [_control("MFA")]

        outcome = await VerificationMatcher().match(
            store, organization_id, [make_evidence(source="aws-iam")], {0: uuid.uuid4()}, [_mapping("github")]
        )

        assert (outcome.verified, outcome.failed) == (0, 0)
        store.links.upsert.assert_not_awaited()
        store.controls.record_verification.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_evidence_without_verdict_only_links(self, organization_id: uuid.UUID) -> None:
        """Evidence with no verification result marks the control automated and leaves its status."""
        control = _control("MFA")
        store = make_fake_store()
        store.controls.list_candidates.return_value = [control]
        evidence_id = uuid.uuid4()

        outcome = await VerificationMatcher().match(
            store, organization_id, [make_evidence(is_implemented=None)], {0: evidence_id}, [_mapping()]
        )

        assert (outcome.verified, outcome.failed) == (0, 0)
        store.controls.record_verification.assert_not_awaited()
        control_id, source, details = store.controls.record_automated_link.await_args.args
        assert control_id == control.id
        assert source == "github"
        assert details["note"] == UNVERIFIED_LINK_NOTE
        assert details["evidenceId"] == str(evidence_id)

    @pytest.mark.asyncio()
    async def test_missing_evidence_id_skips_link(self, organization_id: uuid.UUID) -> None:
        store = make_fake_store()
        store.controls.list_candidates.return_value = [_control("MFA")]

        outcome = await VerificationMatcher().match(store, organization_id, [make_evidence()], {}, [_mapping()])

        assert outcome.verified == 1
        store.links.upsert.assert_not_awaited()
        assert store.controls.record_verification.await_args.kwargs["details"]["evidenceId"] is None

    @pytest.mark.asyncio()
    async def test_repeated_runs_keep_one_link_per_pair(self, organization_id: uuid.UUID) -> None:
        """Re-matching the same evidence updates links in place instead of duplicating them."""
        controls = [_control("MFA for admins"), _control("MFA for users")]
        store = make_fake_store()
        store.controls.list_candidates.return_value = controls
        links = DictLinkStore()
        store.links = links
        evidence_ids = {0: uuid.uuid4()}
        matcher = VerificationMatcher()

        for _ in range(3):
            await matcher.match(store, organization_id, [make_evidence()], evidence_ids, [_mapping()])

        assert set(links.rows) == {(evidence_ids[0], c.id) for c in controls}
        assert all(row["relevance"] == "primary" for row in links.rows.values())
        assert all(row["notes"].startswith("Auto-linked by integration sync.") for row in links.rows.values())
        assert store.controls.record_verification.await_count == 6
