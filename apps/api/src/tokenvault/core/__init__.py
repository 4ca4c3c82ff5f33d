"""Core modules for the token vault."""
from .config import settings
from .crypto import CryptoEngine, EncryptedBlob, load_default_engine
from .metadata import TokenMetadata
from .policy import RotationPolicy, should_rotate

__all__ = [
    "settings",
    "CryptoEngine",
    "EncryptedBlob",
    "load_default_engine",
    "TokenMetadata",
    "RotationPolicy",
    "should_rotate",
]
