"""AES-GCM envelope encryption for OAuth credentials.

Keys are derived from a master secret with scrypt and cached for the life of
the process. Every blob records the schema version and key id it was
produced with, so retired keys can stay in the keyring until their blobs
have been re-encrypted.
"""
from __future__ import annotations

import base64
import binascii
import hmac
import json
import secrets
import threading
from dataclasses import dataclass
from typing import Any, Final, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import Settings
from .errors import (
    ConfigurationError,
    DecryptionError,
    EncryptionError,
    UnsupportedVersionError,
)
from .logging import get_logger
from .metadata import TokenMetadata

logger = get_logger(__name__)

SCHEMA_VERSION: Final[str] = "2.0"
ALGORITHM: Final[str] = "aes-256-gcm"
KEY_LENGTH: Final[int] = 32
NONCE_LENGTH: Final[int] = 12
TAG_LENGTH: Final[int] = 16
MIN_MASTER_KEY_LENGTH: Final[int] = 16

# Used when ENCRYPTION_SALT is not configured; a fixed salt keeps keys stable.
DEFAULT_SALT: Final[bytes] = b"tokenvault-credential-kdf-salt"

# scrypt cost parameters (N, r, p)
SCRYPT_N: Final[int] = 2**14
SCRYPT_R: Final[int] = 8
SCRYPT_P: Final[int] = 1


def decode_key_material(value: str, name: str = "key material") -> bytes:
    """Decode hex or urlsafe base64 key material into raw bytes."""
    stripped = (value or "").strip()
    if not stripped:
        raise ConfigurationError(f"{name} is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.urlsafe_b64decode(stripped + "=" * (-len(stripped) % 4))
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(
                f"{name} must be hex encoded or urlsafe base64"
            ) from exc


@dataclass(frozen=True)
class EncryptedBlob:
    """Ciphertext envelope. Immutable; re-encryption always yields a new blob."""

    ciphertext: bytes
    iv: bytes
    auth_tag: bytes
    schema_version: str
    key_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "encrypted": self.ciphertext.hex(),
            "iv": self.iv.hex(),
            "authTag": self.auth_tag.hex(),
            "version": self.schema_version,
            "keyId": self.key_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EncryptedBlob":
        if not isinstance(data, Mapping):
            raise DecryptionError("encrypted envelope must be an object")
        try:
            return cls(
                ciphertext=bytes.fromhex(data["encrypted"]),
                iv=bytes.fromhex(data["iv"]),
                auth_tag=bytes.fromhex(data["authTag"]),
                schema_version=str(data["version"]),
                key_id=str(data["keyId"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DecryptionError("malformed encrypted envelope") from exc

    @classmethod
    def from_json(cls, raw: str) -> "EncryptedBlob":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise DecryptionError("encrypted envelope is not valid JSON") from exc
        return cls.from_dict(data)


@dataclass(frozen=True)
class EngineHealth:
    status: str
    version: str
    key_id: str
    algorithm: str
    key_configured: bool
    key_source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "version": self.version,
            "keyId": self.key_id,
            "algorithm": self.algorithm,
            "masterKeyConfigured": self.key_configured,
            "keySource": self.key_source,
        }


class CryptoEngine:
    """Authenticated encryption of secret strings bound to token metadata."""

    def __init__(
        self,
        master_key: bytes,
        salt: bytes = DEFAULT_SALT,
        key_id: str = "default",
        previous_keys: Mapping[str, bytes] | None = None,
        key_source: str = "configured",
    ):
        if len(master_key or b"") < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"master key must be at least {MIN_MASTER_KEY_LENGTH} bytes"
            )
        if not salt:
            raise ConfigurationError("KDF salt must not be empty")
        if not key_id:
            raise ConfigurationError("key id must not be empty")

        self._key_id = key_id
        self._salt = salt
        self._key_source = key_source
        self._masters: dict[str, bytes] = dict(previous_keys or {})
        self._masters[key_id] = master_key
        self._derived: dict[str, bytes] = {}
        self._derive_lock = threading.Lock()
        self._derivation_failed = False

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def key_ids(self) -> list[str]:
        return sorted(self._masters)

    def derive_key(self, key_id: str | None = None) -> bytes:
        """Derive (once) the AES key for `key_id`, defaulting to the current key."""
        key_id = key_id or self._key_id
        cached = self._derived.get(key_id)
        if cached is not None:
            return cached

        with self._derive_lock:
            cached = self._derived.get(key_id)
            if cached is not None:
                return cached

            master = self._masters.get(key_id)
            if master is None:
                raise KeyError(key_id)

            try:
                kdf = Scrypt(
                    salt=self._salt,
                    length=KEY_LENGTH,
                    n=SCRYPT_N,
                    r=SCRYPT_R,
                    p=SCRYPT_P,
                )
                derived = kdf.derive(master)
            except Exception as exc:  # noqa: BLE001
                self._derivation_failed = True
                raise EncryptionError("key derivation failed") from exc

            self._derived[key_id] = derived
            return derived

    def encrypt(self, plaintext: str, metadata: TokenMetadata) -> EncryptedBlob:
        """Encrypt `plaintext`, binding the canonical form of `metadata` as AAD."""
        if not isinstance(plaintext, str):
            raise EncryptionError("plaintext must be a string")

        key = self.derive_key()
        nonce = secrets.token_bytes(NONCE_LENGTH)
        try:
            sealed = AESGCM(key).encrypt(
                nonce, plaintext.encode("utf-8"), metadata.canonical_bytes()
            )
        except (ValueError, OverflowError, TypeError) as exc:
            raise EncryptionError("cipher rejected encryption parameters") from exc

        return EncryptedBlob(
            ciphertext=sealed[:-TAG_LENGTH],
            iv=nonce,
            auth_tag=sealed[-TAG_LENGTH:],
            schema_version=SCHEMA_VERSION,
            key_id=self._key_id,
        )

    def decrypt(self, blob: EncryptedBlob, metadata: TokenMetadata) -> str:
        """Verify and decrypt `blob` against the metadata it was sealed with."""
        if blob.schema_version != SCHEMA_VERSION:
            raise UnsupportedVersionError(blob.schema_version, SCHEMA_VERSION)

        try:
            key = self.derive_key(blob.key_id)
        except KeyError as exc:
            raise DecryptionError(f"unknown key id: {blob.key_id}") from exc

        if len(blob.iv) != NONCE_LENGTH or len(blob.auth_tag) != TAG_LENGTH:
            raise DecryptionError("malformed nonce or authentication tag")

        try:
            raw = AESGCM(key).decrypt(
                blob.iv, blob.ciphertext + blob.auth_tag, metadata.canonical_bytes()
            )
            return raw.decode("utf-8")
        except InvalidTag as exc:
            raise DecryptionError(
                "authentication failed: ciphertext or metadata was modified"
            ) from exc
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted payload is not valid UTF-8") from exc

    def reencrypt(
        self,
        blob: EncryptedBlob,
        metadata: TokenMetadata,
        new_metadata: TokenMetadata | None = None,
    ) -> EncryptedBlob:
        """Move a blob onto the current key (and optionally new metadata)."""
        plaintext = self.decrypt(blob, metadata)
        try:
            return self.encrypt(plaintext, new_metadata or metadata)
        finally:
            del plaintext

    @staticmethod
    def secure_compare(a: str, b: str) -> bool:
        """Constant-time string equality; False for mismatched lengths or types."""
        if not isinstance(a, str) or not isinstance(b, str):
            return False
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    @staticmethod
    def generate_key_material() -> dict[str, str]:
        """New hex master key and salt for key rotation procedures."""
        return {
            "key": secrets.token_hex(KEY_LENGTH),
            "salt": secrets.token_hex(KEY_LENGTH),
        }

    def health_status(self) -> EngineHealth:
        configured = self._key_source == "configured"
        if self._derivation_failed:
            status = "error"
        elif configured:
            status = "healthy"
        else:
            status = "warning"

        return EngineHealth(
            status=status,
            version=SCHEMA_VERSION,
            key_id=self._key_id,
            algorithm=ALGORITHM,
            key_configured=configured,
            key_source=self._key_source,
        )


def load_default_engine(settings: Settings) -> CryptoEngine:
    """Construct the engine from settings.

    Raises ConfigurationError when no master key is configured, unless
    ALLOW_EPHEMERAL_KEY is set for local development.
    """
    salt = (
        decode_key_material(settings.ENCRYPTION_SALT, "ENCRYPTION_SALT")
        if settings.ENCRYPTION_SALT
        else DEFAULT_SALT
    )
    previous = {
        key_id: decode_key_material(value, f"ENCRYPTION_PREVIOUS_KEYS[{key_id}]")
        for key_id, value in settings.ENCRYPTION_PREVIOUS_KEYS.items()
    }

    if settings.ENCRYPTION_MASTER_KEY:
        return CryptoEngine(
            decode_key_material(settings.ENCRYPTION_MASTER_KEY, "ENCRYPTION_MASTER_KEY"),
            salt=salt,
            key_id=settings.ENCRYPTION_KEY_ID,
            previous_keys=previous,
        )

    if not settings.ALLOW_EPHEMERAL_KEY:
        raise ConfigurationError(
            "ENCRYPTION_MASTER_KEY must be set for credential encryption"
        )

    logger.warning(
        "ENCRYPTION_MASTER_KEY not set; using an ephemeral key. "
        "Stored credentials will not survive a restart."
    )
    return CryptoEngine(
        secrets.token_bytes(KEY_LENGTH),
        salt=salt,
        key_id=settings.ENCRYPTION_KEY_ID,
        previous_keys=previous,
        key_source="ephemeral",
    )
