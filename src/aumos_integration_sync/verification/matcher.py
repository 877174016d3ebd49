"""Verification matcher — links generated evidence to compliance controls.

For every persisted evidence item the matcher selects the provider mappings
whose source covers the evidence source, then tests each control of the
organization against four independent rules:

1. control name matches the mapping's name pattern
2. control code matches the mapping's code pattern
3. one of the evidence's control_patterns is a substring of the control name
4. one of the evidence's control_patterns equals a mapped requirement code

A control is updated at most once per invocation. The first evidence/mapping
pair that matches it wins; later matches in iteration order are ignored.
"""

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from aumos_integration_sync.core.interfaces import ControlCandidate, ISyncStore
from aumos_integration_sync.core.models import ImplementationStatus, VerificationStatus
from aumos_integration_sync.database import utcnow
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers.base import ControlMapping, GeneratedEvidence

logger = get_logger(__name__)

LINK_RELEVANCE = "primary"
PATTERN_MATCH_LABEL = "Control name/code pattern"
UNVERIFIED_LINK_NOTE = "Evidence linked but no automated verification criteria"


@dataclass
class MatchOutcome:
    """Counters returned to the SyncRunner."""

    verified: int = 0
    failed: int = 0


def mapping_covers(mapping: ControlMapping, source: str) -> bool:
    """Return True if the mapping applies to evidence from `source`.

    A mapping source ending in "-*" covers every source sharing its prefix.
    """
    if mapping.evidence_source == source:
        return True
    if mapping.evidence_source.endswith("-*"):
        prefix = mapping.evidence_source[:-1]
        return source.startswith(prefix) or source == prefix[:-1]
    return False


def match_reason(
    mapping: ControlMapping,
    evidence: GeneratedEvidence,
    control: ControlCandidate,
) -> str | None:
    """Return the matched-by label for a control, or None if no rule matches.

    Args:
        mapping: The provider mapping under test.
        evidence: The generated evidence whose patterns are tested.
        control: The candidate control.
    """
    name_match = bool(mapping.control_name_pattern and mapping.control_name_pattern.search(control.name))
    code_match = bool(
        mapping.control_code_pattern and control.code and mapping.control_code_pattern.search(control.code)
    )

    patterns = [pattern.lower() for pattern in evidence.control_patterns]
    control_name = control.name.lower()
    pattern_match = any(pattern in control_name for pattern in patterns)

    requirement_codes = {code.lower() for code in control.requirement_codes}
    framework_match = any(pattern in requirement_codes for pattern in patterns)

    if framework_match:
        return f"Framework requirement: {', '.join(control.requirement_codes)}"
    if name_match or code_match or pattern_match:
        return PATTERN_MATCH_LABEL
    return None


class VerificationMatcher:
    """Applies evidence verification results to the controls they match.

    Stateless; one instance may serve every sync.
    """

    async def match(
        self,
        store: ISyncStore,
        organization_id: uuid.UUID,
        evidence: Sequence[GeneratedEvidence],
        evidence_ids: Mapping[int, uuid.UUID],
        mappings: Sequence[ControlMapping],
    ) -> MatchOutcome:
        """Link evidence to matching controls and update their verification state.

        Args:
            store: The store of the sync's persistence transaction.
            organization_id: Organization whose controls are candidates.
            evidence: Generated evidence, in generation order.
            evidence_ids: Index in `evidence` → persisted Evidence id.
            mappings: The provider's control mappings.

        Returns:
            MatchOutcome with the number of controls verified and failed.
        """
        outcome = MatchOutcome()
        controls = await store.controls.list_candidates(organization_id)
        logger.debug("Loaded controls for matching", organization_id=str(organization_id), count=len(controls))

        processed: set[uuid.UUID] = set()

        for index, item in enumerate(evidence):
            evidence_id = evidence_ids.get(index)
            relevant = [mapping for mapping in mappings if mapping_covers(mapping, item.source)]

            for mapping in relevant:
                for control in controls:
                    if control.id in processed:
                        continue

                    matched_by = match_reason(mapping, item, control)
                    if matched_by is None:
                        continue

                    processed.add(control.id)

                    if evidence_id is not None:
                        await store.links.upsert(
                            evidence_id=evidence_id,
                            control_id=control.id,
                            relevance=LINK_RELEVANCE,
                            notes=f"Auto-linked by integration sync. {matched_by}",
                        )

                    await self._apply(store, control, item, evidence_id, matched_by, outcome)

        logger.info(
            "Control verification applied",
            organization_id=str(organization_id),
            controls_matched=len(processed),
            verified=outcome.verified,
            failed=outcome.failed,
        )
        return outcome

    async def _apply(
        self,
        store: ISyncStore,
        control: ControlCandidate,
        evidence: GeneratedEvidence,
        evidence_id: uuid.UUID | None,
        matched_by: str,
        outcome: MatchOutcome,
    ) -> None:
        now = utcnow()
        result = evidence.verification_result

        if result is None:
            details: dict[str, Any] = {
                "evidenceTitle": evidence.title,
                "evidenceId": str(evidence_id) if evidence_id else None,
                "linkedAt": now.isoformat(),
                "source": evidence.source,
                "matchedBy": matched_by,
                "note": UNVERIFIED_LINK_NOTE,
            }
            await store.controls.record_automated_link(control.id, evidence.source, details)
            return

        details = {
            "evidenceTitle": evidence.title,
            "evidenceId": str(evidence_id) if evidence_id else None,
            "verifiedAt": now.isoformat(),
            "source": evidence.source,
            "matchedBy": matched_by,
            "confidence": str(result.confidence),
            "reason": result.reason,
            "metrics": result.metrics,
        }
        await store.controls.record_verification(
            control.id,
            implementation_status=(
                ImplementationStatus.IMPLEMENTED if result.is_implemented else ImplementationStatus.NOT_STARTED
            ),
            verification_status=VerificationStatus.VERIFIED if result.is_implemented else VerificationStatus.FAILED,
            verified_at=now,
            source=evidence.source,
            details=details,
        )

        if result.is_implemented:
            outcome.verified += 1
            logger.debug("Control verified", control=control.name, reason=result.reason)
        else:
            outcome.failed += 1
            logger.debug("Control failed verification", control=control.name, reason=result.reason)
