from .lifecycle import CredentialLifecycleManager

__all__ = [
    "CredentialLifecycleManager",
]
