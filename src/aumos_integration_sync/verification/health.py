"""Control health scoring.

A control's health is a 0-100 score built from four independently capped
components:

- Verification (0-40)  verified 40, unverified 20, stale 10, failed 0
- Freshness    (0-25)  days since the newest linked, live evidence
- Coverage     (0-20)  +10 integration evidence, +5 any evidence, +5 three or more
- Review       (0-15)  days since last_reviewed_at

score_control_health() is pure. ControlHealthService loads its inputs from the
store and optionally appends the result to ControlEffectivenessLog.
"""

import asyncio
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from aumos_integration_sync.core.interfaces import StoreFactory
from aumos_integration_sync.core.models import ControlEffectivenessLog, Evidence, VerificationStatus
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.errors import NotFoundError
from aumos_integration_sync.observability import get_logger

logger = get_logger(__name__)

VERIFICATION_WEIGHT = 40.0
FRESHNESS_WEIGHT = 25.0
COVERAGE_WEIGHT = 20.0
REVIEW_WEIGHT = 15.0

# (max days, share of the weight), checked in order
_FRESHNESS_STEPS: tuple[tuple[int, float], ...] = ((7, 1.0), (30, 0.75), (90, 0.5), (180, 0.25))
_REVIEW_STEPS: tuple[tuple[int, float], ...] = ((30, 1.0), (60, 0.75), (90, 0.5))

_VERIFICATION_SHARES: dict[str, float] = {
    VerificationStatus.VERIFIED: 1.0,
    VerificationStatus.UNVERIFIED: 0.5,
    VerificationStatus.STALE: 0.25,
    VerificationStatus.FAILED: 0.0,
}

# Freshness and review recommendations fire past the "acceptable" step
_STALE_EVIDENCE_DAYS = 90
_OVERDUE_REVIEW_DAYS = 90
_MIN_EVIDENCE_COUNT = 3

_SECONDS_PER_DAY = 86_400


@dataclass
class ControlHealthFactors:
    """Component scores and the inputs they were derived from."""

    verification_score: float
    verification_status: str
    freshness_score: float
    days_since_last_evidence: int | None
    coverage_score: float
    evidence_count: int
    has_integration_evidence: bool
    review_score: float
    days_since_last_review: int | None
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verificationScore": self.verification_score,
            "verificationStatus": self.verification_status,
            "freshnessScore": self.freshness_score,
            "daysSinceLastEvidence": self.days_since_last_evidence,
            "coverageScore": self.coverage_score,
            "evidenceCount": self.evidence_count,
            "hasIntegrationEvidence": self.has_integration_evidence,
            "reviewScore": self.review_score,
            "daysSinceLastReview": self.days_since_last_review,
            "recommendations": list(self.recommendations),
        }


@dataclass
class ControlHealthResult:
    """Health of one control at calculated_at."""

    control_id: uuid.UUID
    overall_score: int
    factors: ControlHealthFactors
    calculated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "controlId": str(self.control_id),
            "overallScore": self.overall_score,
            "factors": self.factors.to_dict(),
            "calculatedAt": self.calculated_at.isoformat(),
        }


@dataclass(frozen=True)
class EvidenceSnapshot:
    """The two evidence attributes health scoring depends on."""

    collected_at: datetime
    is_provisional: bool


@dataclass
class HealthHistoryEntry:
    """One ControlEffectivenessLog row as returned to callers."""

    id: uuid.UUID
    effectiveness_score: float
    factors: dict[str, Any]
    triggered_by: str | None
    calculated_at: datetime

    @classmethod
    def from_log(cls, log: ControlEffectivenessLog) -> "HealthHistoryEntry":
        return cls(
            id=log.id,
            effectiveness_score=float(log.effectiveness_score),
            factors=log.factors or {},
            triggered_by=log.triggered_by,
            calculated_at=log.calculated_at,
        )


# ---------------------------------------------------------------------------
# Component scores
# ---------------------------------------------------------------------------


def verification_score(status: str) -> tuple[float, str]:
    """Return (score, normalized status). Unknown statuses count as unverified."""
    if status not in _VERIFICATION_SHARES:
        status = VerificationStatus.UNVERIFIED
    return VERIFICATION_WEIGHT * _VERIFICATION_SHARES[status], str(status)


def _stepped(days: int | None, steps: Sequence[tuple[int, float]], weight: float) -> float:
    if days is None:
        return 0.0
    for max_days, share in steps:
        if days <= max_days:
            return weight * share
    return 0.0


def freshness_score(days_since_last_evidence: int | None) -> float:
    return _stepped(days_since_last_evidence, _FRESHNESS_STEPS, FRESHNESS_WEIGHT)


def review_score(days_since_last_review: int | None) -> float:
    return _stepped(days_since_last_review, _REVIEW_STEPS, REVIEW_WEIGHT)


def coverage_score(evidence_count: int, has_integration_evidence: bool) -> float:
    """Sum of three independent coverage bonuses."""
    score = 0.0
    if has_integration_evidence:
        score += COVERAGE_WEIGHT * 0.5
    if evidence_count > 0:
        score += COVERAGE_WEIGHT * 0.25
    if evidence_count >= _MIN_EVIDENCE_COUNT:
        score += COVERAGE_WEIGHT * 0.25
    return score


def days_between(earlier: datetime, later: datetime) -> int:
    """Whole days elapsed from earlier to later, rounded down."""
    return int((later - earlier).total_seconds() // _SECONDS_PER_DAY)


def build_recommendations(factors: ControlHealthFactors) -> list[str]:
    """Return one recommendation per unmet threshold."""
    recommendations: list[str] = []

    if factors.verification_status == VerificationStatus.FAILED:
        recommendations.append(
            "Control verification failed. Review the verification details and fix the underlying issue."
        )
    elif factors.verification_status == VerificationStatus.STALE:
        recommendations.append("Control verification is stale. Run a new sync to refresh verification status.")
    elif factors.verification_status == VerificationStatus.UNVERIFIED:
        recommendations.append(
            "Control has not been verified. Connect an integration or add integration-backed evidence."
        )

    if factors.days_since_last_evidence is None:
        recommendations.append("No evidence linked to this control. Add relevant evidence.")
    elif factors.days_since_last_evidence > _STALE_EVIDENCE_DAYS:
        recommendations.append(
            f"Evidence is {factors.days_since_last_evidence} days old. Collect fresh evidence."
        )

    if not factors.has_integration_evidence:
        recommendations.append(
            "No integration-generated evidence. Connect an integration for automated verification."
        )
    if factors.evidence_count < _MIN_EVIDENCE_COUNT:
        recommendations.append(
            "Limited evidence coverage. Add more supporting evidence for stronger compliance posture."
        )

    if factors.days_since_last_review is None:
        recommendations.append("Control has never been reviewed. Schedule a review.")
    elif factors.days_since_last_review > _OVERDUE_REVIEW_DAYS:
        recommendations.append(
            f"Control was last reviewed {factors.days_since_last_review} days ago. Schedule a review."
        )

    return recommendations


def score_control_health(
    control_id: uuid.UUID,
    verification_status: str,
    evidence: Iterable[EvidenceSnapshot],
    last_reviewed_at: datetime | None,
    now: datetime | None = None,
) -> ControlHealthResult:
    """Compute a control's health score.

    Args:
        control_id: The control being scored.
        verification_status: The control's current verification status.
        evidence: Live (non-deleted) evidence linked to the control.
        last_reviewed_at: Time of the last human review, if any.
        now: Reference time. Defaults to the current UTC time.

    Returns:
        ControlHealthResult with the rounded overall score, factors and recommendations.
    """
    now = now or utcnow()
    evidence = list(evidence)

    days_since_last_evidence: int | None = None
    if evidence:
        newest = max(item.collected_at for item in evidence)
        days_since_last_evidence = days_between(newest, now)

    has_integration_evidence = any(not item.is_provisional for item in evidence)

    days_since_last_review: int | None = None
    if last_reviewed_at is not None:
        days_since_last_review = days_between(last_reviewed_at, now)

    verification, status = verification_score(verification_status)
    factors = ControlHealthFactors(
        verification_score=verification,
        verification_status=status,
        freshness_score=freshness_score(days_since_last_evidence),
        days_since_last_evidence=days_since_last_evidence,
        coverage_score=coverage_score(len(evidence), has_integration_evidence),
        evidence_count=len(evidence),
        has_integration_evidence=has_integration_evidence,
        review_score=review_score(days_since_last_review),
        days_since_last_review=days_since_last_review,
    )
    factors.recommendations = build_recommendations(factors)

    total = factors.verification_score + factors.freshness_score + factors.coverage_score + factors.review_score
    return ControlHealthResult(
        control_id=control_id,
        # Halves round up
        overall_score=int(total + 0.5),
        factors=factors,
        calculated_at=now,
    )


class ControlHealthService:
    """Computes, persists and reports control health against the store.

    Args:
        store_factory: Opens one transactional store per operation.
    """

    def __init__(self, store_factory: StoreFactory) -> None:
        self._store_factory = store_factory

    async def calculate_control_health(self, control_id: uuid.UUID) -> ControlHealthResult:
        """Score a control without persisting anything.

        Raises:
            NotFoundError: If the control does not exist.
        """
        async with self._store_factory() as store:
            control = await store.controls.get(control_id)
            if control is None:
                raise NotFoundError(f"Control not found: {control_id}")
            evidence: list[Evidence] = await store.evidence.list_for_control(control_id)

        return score_control_health(
            control_id=control_id,
            verification_status=control.verification_status,
            evidence=[EvidenceSnapshot(e.collected_at, e.is_provisional) for e in evidence],
            last_reviewed_at=control.last_reviewed_at,
        )

    async def calculate_control_health_batch(self, control_ids: Sequence[uuid.UUID]) -> list[ControlHealthResult]:
        """Score several controls concurrently, preserving input order."""
        return list(await asyncio.gather(*(self.calculate_control_health(cid) for cid in control_ids)))

    async def calculate_and_log_control_health(
        self,
        control_id: uuid.UUID,
        triggered_by: str = "manual",
    ) -> ControlHealthResult:
        """Score a control and append the result to its effectiveness history.

        Args:
            control_id: The control to score.
            triggered_by: Actor recorded on the history row.

        Returns:
            The computed ControlHealthResult.
        """
        result = await self.calculate_control_health(control_id)
        async with self._store_factory() as store:
            await store.effectiveness.append(
                control_id=control_id,
                score=result.overall_score,
                factors=result.factors.to_dict(),
                triggered_by=triggered_by,
                calculated_at=result.calculated_at,
            )
        logger.info(
            "Control health logged",
            control_id=str(control_id),
            overall_score=result.overall_score,
            triggered_by=triggered_by,
        )
        return result

    async def mark_control_reviewed(self, control_id: uuid.UUID, user_id: uuid.UUID | str) -> ControlHealthResult:
        """Record a human review, then score and log the control.

        Raises:
            NotFoundError: If the control does not exist.
        """
        async with self._store_factory() as store:
            if await store.controls.get(control_id) is None:
                raise NotFoundError(f"Control not found: {control_id}")
            await store.controls.mark_reviewed(control_id, utcnow())
        return await self.calculate_and_log_control_health(control_id, triggered_by=f"review_by_{user_id}")

    async def refresh_control_health(self, control_id: uuid.UUID) -> ControlHealthResult:
        """Recompute without touching last_reviewed_at or the history."""
        return await self.calculate_control_health(control_id)

    async def get_verification_history(self, control_id: uuid.UUID, limit: int = 50) -> list[HealthHistoryEntry]:
        """Return the control's effectiveness history, newest first."""
        async with self._store_factory() as store:
            logs = await store.effectiveness.history(control_id, limit=limit)
        return [HealthHistoryEntry.from_log(log) for log in logs]
