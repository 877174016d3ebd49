"""Control verification: evidence-to-control matching and control health scoring."""

from aumos_integration_sync.verification.health import (
    ControlHealthResult,
    ControlHealthService,
    EvidenceSnapshot,
    score_control_health,
)
from aumos_integration_sync.verification.matcher import MatchOutcome, VerificationMatcher

__all__ = [
    "ControlHealthResult",
    "ControlHealthService",
    "EvidenceSnapshot",
    "MatchOutcome",
    "VerificationMatcher",
    "score_control_health",
]
