"""Error taxonomy for the token vault.

Messages raised from here must never carry plaintext tokens or key material.
"""
from __future__ import annotations


class TokenVaultError(Exception):
    """Base class for every error raised by the vault."""


class ConfigurationError(TokenVaultError):
    """Required configuration (key material, salt) is missing or malformed."""


class EncryptionError(TokenVaultError):
    """Encryption failed (key derivation or cipher parameters)."""


class DecryptionError(TokenVaultError):
    """Ciphertext, nonce, tag or bound metadata did not verify."""


class MetadataValidationError(DecryptionError):
    """Token metadata violates its invariants; treated as corruption."""


class UnsupportedVersionError(DecryptionError):
    """Blob was produced by a different envelope schema version."""

    def __init__(self, version: str, supported: str):
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported encryption version: {version} (supported: {supported})"
        )


class RecordNotFoundError(TokenVaultError):
    """Requested credential record does not exist."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Credential record not found: {record_id}")


class StorageError(TokenVaultError):
    """Durable store read or write failed."""


class StorageTimeoutError(StorageError, TimeoutError):
    """Durable store did not answer within the configured bound."""


class ConcurrentRotationError(StorageError):
    """Record changed underneath a rotation (version check lost)."""


class CollaboratorError(TokenVaultError):
    """Platform refresh call failed."""


class CollaboratorTimeoutError(CollaboratorError, TimeoutError):
    """Platform refresh call did not complete within the configured bound."""
