"""Provider contract shared by every vendor integration.

A provider is any class satisfying IntegrationProvider. Vendor variants do not
inherit from a common base: each composes the small helpers defined here.

- ProviderContext   — organization/integration ids, decrypted credentials, config
- ConnectionState   — disconnected → connecting → {connected, error} state machine
- run_collectors()  — runs collectors independently, one result per requested id
- validity_window() — standard evidence validity window
- rate_confidence() — maps a percentage onto high/medium/low confidence

Transient result types (ConnectionResult, CollectionResult, GeneratedEvidence,
ControlMapping, ...) are plain dataclasses. Collector payloads are the typed
pydantic models in providers/payloads.py.
"""

import enum
import math
import re
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar, Protocol

from aumos_integration_sync.errors import CollectionError, ProviderNotConnectedError
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.providers.payloads import CollectorPayload

logger = get_logger(__name__)

UNKNOWN_COLLECTOR = "UNKNOWN_COLLECTOR"
GENERIC_COLLECTION_FAILURE = "COLLECTION_ERROR"


class ProviderState(enum.StrEnum):
    """Connection state of a provider instance."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Confidence(enum.StrEnum):
    """Confidence attached to a verification judgment."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CredentialField:
    """A credential the provider needs, as shown on the connect form."""

    key: str
    label: str
    type: str = "text"
    placeholder: str | None = None
    help_text: str | None = None
    required: bool = True


@dataclass(frozen=True)
class ConfigField:
    """An optional configuration value the provider understands."""

    key: str
    label: str
    type: str = "text"
    default: Any = None
    help_text: str | None = None


@dataclass(frozen=True)
class CollectorInfo:
    """A named unit of data collection within a provider."""

    id: str
    name: str
    description: str
    evidence_types: tuple[str, ...] = ()
    control_categories: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ConnectionResult:
    """Outcome of connect()."""

    success: bool
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TestResult:
    """Outcome of test_connection()."""

    __test__ = False  # not a pytest test class

    success: bool
    latency_ms: int
    error: str | None = None
    scopes: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for callers and log details."""
        payload: dict[str, Any] = {"success": self.success, "latencyMs": self.latency_ms}
        if self.error is not None:
            payload["error"] = self.error
        if self.scopes:
            payload["scopes"] = list(self.scopes)
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


@dataclass
class CollectorOutput:
    """What a single collector handler returns on success.

    Attributes:
        payload: Typed collector payload.
        items_collected: Number of vendor objects inspected.
        errors: Non-fatal problems met while collecting (one user, one bucket, ...).
    """

    payload: CollectorPayload
    items_collected: int
    errors: list[CollectionError] = field(default_factory=list)


@dataclass
class CollectionResult:
    """Per-collector outcome of collect()."""

    success: bool
    collector: str
    items_collected: int
    errors: list[CollectionError]
    data: CollectorPayload | None
    collected_at: datetime


@dataclass(frozen=True)
class VerificationResult:
    """Pass/fail judgment an evidence item carries for the controls it matches."""

    is_implemented: bool
    confidence: Confidence
    reason: str
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedEvidence:
    """Evidence produced by a provider, before persistence.

    control_patterns combines free-text keywords ("mfa", "encryption") and
    canonical framework requirement codes ("A.8.5", "CC6.1"). It is the only
    channel the matcher uses to find candidate controls, so it is populated even
    when verification_result is None.
    """

    title: str
    description: str
    evidence_type: str
    source: str
    metadata: dict[str, Any]
    valid_from: datetime
    valid_until: datetime
    control_patterns: list[str]
    verification_result: VerificationResult | None = None


@dataclass(frozen=True)
class ControlMapping:
    """Provider rule tying an evidence source to candidate controls.

    evidence_source may end in "-*" to cover every source sharing a prefix.
    """

    evidence_source: str
    control_name_pattern: re.Pattern[str] | None = None
    control_code_pattern: re.Pattern[str] | None = None
    control_tags: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Composed helpers
# ---------------------------------------------------------------------------


@dataclass
class ProviderContext:
    """Everything a provider instance is constructed with.

    Attributes:
        organization_id: Owning organization.
        integration_id: The integration being synced.
        credentials: Decrypted credential map. Never logged.
        config: Provider configuration map.
        http_timeout: Per-request vendor timeout in seconds.
        evidence_validity_hours: Validity window for generated evidence.
    """

    organization_id: Any
    integration_id: Any
    credentials: dict[str, Any]
    config: dict[str, Any] = field(default_factory=dict)
    http_timeout: float = 30.0
    evidence_validity_hours: int = 24

    def missing_credentials(self, fields: Sequence[CredentialField]) -> list[str]:
        """Return the keys of required credentials that are absent or empty."""
        return [f.key for f in fields if f.required and not self.credentials.get(f.key)]

    def credential(self, key: str) -> Any:
        """Return a credential value, or None when absent."""
        return self.credentials.get(key)

    def config_value(self, key: str, default: Any = None) -> Any:
        """Return a config value, falling back to default when unset."""
        value = self.config.get(key)
        return default if value is None else value


class ConnectionState:
    """Tracks a provider's connection lifecycle.

    Args:
        display_name: Vendor name used in error messages.
    """

    def __init__(self, display_name: str) -> None:
        self._display_name = display_name
        self._state = ProviderState.DISCONNECTED

    @property
    def state(self) -> ProviderState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ProviderState.CONNECTED

    def begin(self) -> None:
        self._state = ProviderState.CONNECTING

    def mark_connected(self) -> None:
        self._state = ProviderState.CONNECTED

    def mark_failed(self) -> None:
        self._state = ProviderState.ERROR

    def reset(self) -> None:
        self._state = ProviderState.DISCONNECTED

    def ensure_connected(self) -> None:
        """Raise unless connect() has succeeded.

        Raises:
            ProviderNotConnectedError: If the provider is not connected.
        """
        if not self.is_connected:
            raise ProviderNotConnectedError(
                f"{self._display_name} provider is not connected. Call connect() first."
            )


def validity_window(hours: int = 24, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return (valid_from, valid_until) starting now and lasting `hours`."""
    valid_from = now or datetime.now(UTC)
    return valid_from, valid_from + timedelta(hours=hours)


def percentage(part: int, whole: int, when_empty: int = 0) -> int:
    """Return part/whole as a whole percentage, rounding halves up.

    Args:
        part: Numerator.
        whole: Denominator.
        when_empty: Value returned when whole is zero.
    """
    if whole <= 0:
        return when_empty
    return math.floor(part * 100 / whole + 0.5)


def rate_confidence(rate: float, high_at: float, medium_at: float) -> Confidence:
    """Map a percentage onto a confidence level.

    Args:
        rate: Observed percentage.
        high_at: Minimum rate for high confidence.
        medium_at: Minimum rate for medium confidence.
    """
    if rate >= high_at:
        return Confidence.HIGH
    if rate >= medium_at:
        return Confidence.MEDIUM
    return Confidence.LOW


def elapsed_ms(started: float) -> int:
    """Milliseconds elapsed since a time.monotonic() reading."""
    return int((time.monotonic() - started) * 1000)


CollectorHandler = Callable[[], Awaitable[CollectorOutput]]


async def run_collectors(
    provider_name: str,
    available: Sequence[CollectorInfo],
    handlers: Mapping[str, CollectorHandler],
    requested: Sequence[str] | None = None,
    failure_codes: Mapping[str, str] | None = None,
) -> list[CollectionResult]:
    """Run collectors independently and return one result per collector.

    A failure in one collector never aborts the others. Results follow the
    requested order, or registration order when nothing is requested. An
    unknown id yields a failed result with an UNKNOWN_COLLECTOR error.

    Args:
        provider_name: Vendor name for log context.
        available: Registered collectors, in registration order.
        handlers: Collector id → coroutine function producing a CollectorOutput.
        requested: Collector ids to run. None or empty runs every collector.
        failure_codes: Collector id → error code used when the handler raises
            something other than CollectionError.

    Returns:
        One CollectionResult per collector id, in order.
    """
    collector_ids = list(requested) if requested else [info.id for info in available]
    known = {info.id for info in available}
    codes = failure_codes or {}
    results: list[CollectionResult] = []

    for collector_id in collector_ids:
        collected_at = datetime.now(UTC)

        handler = handlers.get(collector_id) if collector_id in known else None
        if handler is None:
            results.append(
                CollectionResult(
                    success=False,
                    collector=collector_id,
                    items_collected=0,
                    errors=[
                        CollectionError(
                            code=UNKNOWN_COLLECTOR,
                            message=f"Unknown collector: {collector_id}",
                            retryable=False,
                        )
                    ],
                    data=None,
                    collected_at=collected_at,
                )
            )
            continue

        try:
            output = await handler()
        except CollectionError as exc:
            error = exc
        except Exception as exc:
            error = CollectionError(
                code=codes.get(collector_id, GENERIC_COLLECTION_FAILURE),
                message=str(exc) or f"Failed to collect {collector_id}",
                retryable=True,
            )
        else:
            results.append(
                CollectionResult(
                    success=True,
                    collector=collector_id,
                    items_collected=output.items_collected,
                    errors=list(output.errors),
                    data=output.payload,
                    collected_at=collected_at,
                )
            )
            continue

        logger.warning(
            "Collector failed",
            provider=provider_name,
            collector=collector_id,
            error_code=error.code,
            error=error.message,
        )
        results.append(
            CollectionResult(
                success=False,
                collector=collector_id,
                items_collected=0,
                errors=[error],
                data=None,
                collected_at=collected_at,
            )
        )

    return results


# ---------------------------------------------------------------------------
# Capability set
# ---------------------------------------------------------------------------


class IntegrationProvider(Protocol):
    """Capability set implemented once per vendor.

    All collection and evidence methods require a successful connect().
    """

    type: ClassVar[str]
    display_name: ClassVar[str]
    description: ClassVar[str]
    icon: ClassVar[str]
    required_credentials: ClassVar[tuple[CredentialField, ...]]
    config_fields: ClassVar[tuple[ConfigField, ...]]

    @property
    def state(self) -> ProviderState:
        """Current connection state."""
        ...

    async def connect(self) -> ConnectionResult:
        """Validate credentials and open the vendor session."""
        ...

    async def disconnect(self) -> None:
        """Close the vendor session. Safe to call when not connected."""
        ...

    async def test_connection(self) -> TestResult:
        """Cheap authenticated round trip, connecting first if needed."""
        ...

    def get_available_collectors(self) -> list[CollectorInfo]:
        """Collectors in registration order."""
        ...

    async def collect(self, collector_ids: Sequence[str] | None = None) -> list[CollectionResult]:
        """Run the requested collectors (all when None or empty)."""
        ...

    def generate_evidence(self, results: Sequence[CollectionResult]) -> list[GeneratedEvidence]:
        """Turn successful collection results into evidence."""
        ...

    def get_control_mappings(self) -> list[ControlMapping]:
        """Rules the matcher uses to find candidate controls."""
        ...
