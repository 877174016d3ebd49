"""Error taxonomy for the integration sync engine.

IntegrationSyncError
├── ConfigurationError        missing credentials, unsupported type, bad vault key
├── NotFoundError             integration or control does not exist
├── ValidationError           caller asked for something the current state forbids
├── ProviderConnectionError   vendor authentication / connect failure
│   └── SyncTimeoutError      the sync exceeded sync_timeout_seconds
├── ProviderNotConnectedError collection attempted before connect()
├── CollectionError           local to one collector, reported not raised
├── CredentialVaultError
│   ├── EncryptionError
│   └── DecryptionError       tamper, wrong key, or malformed envelope
└── PersistenceError          the store rejected a transactional write
"""

from typing import Any


class IntegrationSyncError(Exception):
    """Base error for the integration sync engine.

    Attributes:
        message: Human-readable error description.
        error_code: Stable machine-readable code.
    """

    error_code = "INTEGRATION_SYNC_ERROR"

    def __init__(self, message: str, error_code: str | None = None) -> None:
        """Initialize IntegrationSyncError.

        Args:
            message: Error description.
            error_code: Optional override for the class-level error code.
        """
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ConfigurationError(IntegrationSyncError):
    """Raised when the integration or the process is misconfigured."""

    error_code = "CONFIGURATION_ERROR"


class NotFoundError(IntegrationSyncError):
    """Raised when a requested integration or control does not exist."""

    error_code = "NOT_FOUND"


class ValidationError(IntegrationSyncError):
    """Raised when a request conflicts with the current integration state."""

    error_code = "VALIDATION_ERROR"


class ProviderConnectionError(IntegrationSyncError):
    """Raised when a provider cannot authenticate against its vendor API."""

    error_code = "CONNECTION_ERROR"


class SyncTimeoutError(ProviderConnectionError):
    """Raised when a sync does not finish within the configured timeout."""

    error_code = "SYNC_TIMEOUT"


class ProviderNotConnectedError(IntegrationSyncError):
    """Raised when a provider operation requires a connection that is not open."""

    error_code = "NOT_CONNECTED"


class CollectionError(IntegrationSyncError):
    """A failure local to a single collector.

    Collection errors are caught by the collector runner and attached to the
    collector's CollectionResult. They never abort sibling collectors.

    Attributes:
        code: Collector-specific error code (e.g. MFA_CHECK_FAILED).
        retryable: Whether a later sync may succeed without intervention.
        context: Extra identifiers (user name, bucket name, ...).
    """

    error_code = "COLLECTION_ERROR"

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = True,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize CollectionError.

        Args:
            code: Collector-specific error code.
            message: Error description.
            retryable: Whether the failure is transient.
            context: Optional identifiers describing what failed.
        """
        super().__init__(message, error_code=code)
        self.code = code
        self.retryable = retryable
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for log details and SyncResult payloads."""
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = self.context
        return payload

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CollectionError):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash((self.code, self.message, self.retryable))


class CredentialVaultError(IntegrationSyncError):
    """Base error for credential vault operations."""

    error_code = "CREDENTIAL_VAULT_ERROR"


class EncryptionError(CredentialVaultError):
    """Raised when credentials cannot be encrypted."""

    error_code = "ENCRYPTION_ERROR"


class DecryptionError(CredentialVaultError):
    """Raised when a stored credential envelope cannot be decrypted.

    Distinct from ProviderConnectionError so operators can tell corrupted
    storage or a rotated key apart from credentials the vendor rejected.
    """

    error_code = "DECRYPTION_ERROR"


class PersistenceError(IntegrationSyncError):
    """Raised when the database rejects a transactional write."""

    error_code = "PERSISTENCE_ERROR"
