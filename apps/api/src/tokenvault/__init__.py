"""Encrypted OAuth credential storage and rotation for connected social accounts."""

__version__ = "0.1.0"
