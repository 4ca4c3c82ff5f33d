"""Repository helpers for database persistence."""

from .accounts import AccountRepository

__all__ = ["AccountRepository"]
