"""Credential storage for integration secrets."""

from aumos_integration_sync.credentials.vault import ALGORITHM, ENVELOPE_VERSION, CredentialVault

__all__ = ["ALGORITHM", "ENVELOPE_VERSION", "CredentialVault"]
