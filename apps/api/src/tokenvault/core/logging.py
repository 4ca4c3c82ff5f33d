"""
Logging configuration for the token vault.

Structured logging with request_id context, plus a redaction filter so that
token values never reach a handler even if a caller formats one into a
message by mistake.

Allowed in logs: record id, platform, username, error type.
Never allowed: access/refresh tokens, master keys, salts, derived keys.
"""
import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from typing import Optional


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REDACTED_VALUE = "[REDACTED]"

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id"}

SECRET_KEY_NAMES = frozenset({
    "access_token",
    "refresh_token",
    "accesstoken",
    "refreshtoken",
    "token",
    "master_key",
    "salt",
    "client_secret",
    "app_secret",
    "authorization",
})

SECRET_VALUE_PATTERNS = [
    re.compile(r"((?:access|refresh)[_-]?token[\"']?\s*[=:]\s*[\"']?)[^\s\"'&,}]+", re.IGNORECASE),
    re.compile(r"((?:client|app)[_-]?secret[\"']?\s*[=:]\s*[\"']?)[^\s\"'&,}]+", re.IGNORECASE),
    re.compile(r"(fb_exchange_token=)[^\s&]+", re.IGNORECASE),
    re.compile(r"(bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    re.compile(r"()\bEAA[A-Za-z0-9]{20,}"),  # Facebook / Instagram Graph tokens
    re.compile(r"()\bIGQ[A-Za-z0-9_-]{20,}"),  # Instagram Basic Display tokens
    re.compile(r"()\bAQ[A-Za-z0-9_-]{40,}"),  # LinkedIn tokens
    re.compile(r"()\b[0-9a-fA-F]{64,}\b"),  # raw hex key material
]


def redact_text(value: str) -> str:
    """Replace anything that looks like a credential inside free text."""
    for pattern in SECRET_VALUE_PATTERNS:
        value = pattern.sub(lambda m: f"{m.group(1)}{REDACTED_VALUE}", value)
    return value


def redact_value(key: str, value):
    if key.lower() in SECRET_KEY_NAMES:
        return REDACTED_VALUE
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {k: redact_value(str(k), v) for k, v in value.items()}
    return value


class RequestIDFilter(logging.Filter):
    """Adds request_id from the ContextVar set by the request context middleware."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


class SecretRedactionFilter(logging.Filter):
    """Scrubs token-like values from the message, its args and `extra` fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                # Leave malformed format strings for the handler to report
                return True
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        for key in _extra_keys(record):
            setattr(record, key, redact_value(key, getattr(record, key)))
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {"timestamp": "...", "level": "...", "logger": "...", "request_id": "...", "message": "...", ...extra}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        for key in _extra_keys(record):
            log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = redact_text(self.formatException(record.exc_info))

        return json.dumps(log_data, ensure_ascii=False, default=str)


def _extra_keys(record: logging.LogRecord) -> list[str]:
    return [key for key in vars(record) if key not in _RESERVED_ATTRS]


def setup_logging(
    level: Optional[str] = None,
    format_style: Optional[str] = None
) -> None:
    """
    Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
               Defaults to LOG_LEVEL env var or INFO.
        format_style: "standard" for human-readable, "json" for structured logging.
                      Defaults to LOG_FORMAT env var or "json".
    """
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = (format_style or os.getenv("LOG_FORMAT", "json")).lower()

    numeric_level = getattr(logging, log_level, None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(RequestIDFilter())
    handler.addFilter(SecretRedactionFilter())

    if log_format == "json":
        handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s [%(request_id)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    root_logger.addHandler(handler)

    # httpx logs full request URLs, which carry refresh tokens for some platforms
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    return logging.getLogger(name)


def set_request_id(request_id: Optional[str]) -> None:
    """Set the request ID for the current context."""
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    """Get the request ID from the current context, or None if not set."""
    return request_id_var.get()
