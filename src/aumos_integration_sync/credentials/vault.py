"""AES-256-GCM credential vault for integration secrets at rest.

Every integration credential map (API tokens, access keys, service-account
JSON) is encrypted before it reaches the database. The stored value is a
self-describing JSON envelope:

    {
        "encryptedData": "<hex ciphertext>",
        "iv": "<hex 16-byte nonce>",
        "authTag": "<hex 16-byte GCM tag>",
        "algorithm": "aes-256-gcm",
        "version": 1
    }

A fresh random nonce is generated for every encrypt() call. decrypt() verifies
the GCM tag before returning anything, so tampering or a wrong key always
surfaces as DecryptionError.
"""

import json
import os
import time
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from aumos_integration_sync.errors import ConfigurationError, DecryptionError, EncryptionError
from aumos_integration_sync.observability import get_logger
from aumos_integration_sync.settings import Settings

logger = get_logger(__name__)

ALGORITHM = "aes-256-gcm"
ENVELOPE_VERSION = 1

_KEY_BYTES = 32
_NONCE_BYTES = 16
_TAG_BYTES = 16

# Development-only fallback. Never valid outside environment=development.
_DEVELOPMENT_KEY_HEX = "deadbeef" * 8


class CredentialVault:
    """Authenticated encryption of credential maps.

    Construct once at process start (see CredentialVault.from_settings) and
    pass the instance to the components that need it.

    Args:
        key: The 32-byte AES-256 key.

    Raises:
        ConfigurationError: If the key is not exactly 32 bytes.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != _KEY_BYTES:
            raise ConfigurationError(
                f"Credential vault key must be exactly {_KEY_BYTES} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> "CredentialVault":
        """Build a vault from a 64-character hex key.

        Args:
            key_hex: The key as 64 hexadecimal characters.

        Returns:
            A ready CredentialVault.

        Raises:
            ConfigurationError: If the key is not 64 valid hex characters.
        """
        if len(key_hex) != _KEY_BYTES * 2:
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY must be exactly 64 hex characters (32 bytes). "
                "Generate with: openssl rand -hex 32"
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ConfigurationError("INTEGRATION_ENCRYPTION_KEY is not valid hex") from exc
        return cls(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        """Build the vault from service settings.

        Outside development a missing key is fatal. In development the vault
        falls back to a fixed, publicly known key and logs a loud warning.

        Args:
            settings: Service settings.

        Returns:
            A ready CredentialVault.

        Raises:
            ConfigurationError: If the key is missing outside development or malformed.
        """
        if settings.encryption_key:
            return cls.from_hex(settings.encryption_key)

        if settings.is_development:
            logger.warning(
                "INTEGRATION_ENCRYPTION_KEY not set. Using the fixed development key. "
                "Credentials encrypted with it are NOT protected.",
                environment=settings.environment,
            )
            return cls.from_hex(_DEVELOPMENT_KEY_HEX)

        raise ConfigurationError(
            "INTEGRATION_ENCRYPTION_KEY environment variable is required outside development. "
            "Generate with: openssl rand -hex 32"
        )

    def encrypt(self, credentials: dict[str, Any]) -> str:
        """Encrypt a credential map for storage.

        Args:
            credentials: Credential map, e.g. {"accessToken": "ghp_..."}.

        Returns:
            The serialized envelope, safe to store in a text column.

        Raises:
            EncryptionError: If the map is not JSON-serializable.
        """
        try:
            plaintext = json.dumps(credentials).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Credentials are not JSON-serializable: {type(exc).__name__}") from exc

        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        ciphertext, auth_tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]

        envelope = {
            "encryptedData": ciphertext.hex(),
            "iv": nonce.hex(),
            "authTag": auth_tag.hex(),
            "algorithm": ALGORITHM,
            "version": ENVELOPE_VERSION,
        }
        return json.dumps(envelope)

    def decrypt(self, envelope_text: str) -> dict[str, Any]:
        """Decrypt a stored envelope back into the credential map.

        Args:
            envelope_text: The string produced by encrypt().

        Returns:
            The original credential map.

        Raises:
            DecryptionError: If the envelope is malformed, the authentication
                tag does not verify, or the plaintext is not a JSON object.
        """
        try:
            envelope = json.loads(envelope_text)
        except (TypeError, ValueError) as exc:
            raise DecryptionError("Invalid encrypted credentials format") from exc

        if not isinstance(envelope, dict):
            raise DecryptionError("Invalid encrypted credentials format")

        fields = (envelope.get("encryptedData"), envelope.get("iv"), envelope.get("authTag"))
        if not all(isinstance(field, str) and field for field in fields):
            raise DecryptionError("Malformed encrypted credentials")

        try:
            ciphertext, nonce, auth_tag = (bytes.fromhex(field) for field in fields)
        except ValueError as exc:
            raise DecryptionError("Malformed encrypted credentials") from exc

        if len(auth_tag) != _TAG_BYTES or not nonce:
            raise DecryptionError("Malformed encrypted credentials")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + auth_tag, None)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError(
                "Failed to decrypt credentials. Data may be corrupted or key may be incorrect."
            ) from exc

        try:
            credentials = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionError("Decrypted data is not valid JSON") from exc

        if not isinstance(credentials, dict):
            raise DecryptionError("Decrypted data is not a credential map")
        return credentials

    def test_vault(self) -> bool:
        """Round-trip a sentinel payload. Used by health checks."""
        sentinel = {"test": "value", "timestamp": int(time.time() * 1000)}
        try:
            return self.decrypt(self.encrypt(sentinel)) == sentinel
        except (EncryptionError, DecryptionError):
            logger.error("Credential vault self-test failed")
            return False

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        """Return True if value has the shape of a vault envelope.

        Only the format is checked; the ciphertext is not decrypted.
        """
        if not value:
            return False
        try:
            parsed = json.loads(value)
        except ValueError:
            return False
        return (
            isinstance(parsed, dict)
            and parsed.get("algorithm") == ALGORITHM
            and isinstance(parsed.get("encryptedData"), str)
            and isinstance(parsed.get("iv"), str)
            and isinstance(parsed.get("authTag"), str)
        )
