"""Logging setup for the API client."""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import Settings, get_settings
from .exceptions import APIError

console = Console(stderr=True)

_BEARER_RE = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9_\-\.=+/]+")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\b")
_KV_RE = re.compile(
    r"(?i)([\"']?(?:access_?token|refresh_?token|token)[\"']?\s*[:=]\s*[\"']?)(?!refreshed\b)([^\s\"',}]+)"
)


def mask_token(token: Optional[str]) -> str:
    """Return a loggable stand-in for a credential."""
    if not token:
        return "<none>"
    return f"{token[:4]}…"


def redact(text: str) -> str:
    """Mask bearer credentials, JWTs and token key/value pairs in ``text``."""
    text = _BEARER_RE.sub("Bearer ***", text)
    text = _JWT_RE.sub("***", text)
    return _KV_RE.sub(lambda m: f"{m.group(1)}***", text)


class RedactingFilter(logging.Filter):
    """Rewrites records so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter with API error context."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data.update({
                "exception_type": exc_type.__name__,
                "exception_message": redact(str(exc_value)),
            })
            if isinstance(exc_value, APIError):
                log_data["error"] = exc_value.to_dict()

        return json.dumps(log_data)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> logging.Logger:
    """
    Set up logging for the API client.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to write JSON logs to
        json_format: Use JSON format on stderr

    Returns:
        Configured ``kidspoints_api`` logger
    """
    logger = logging.getLogger("kidspoints_api")
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers = []

    if json_format:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(RedactingFilter())
    logger.addHandler(handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JsonFormatter())
        file_handler.addFilter(RedactingFilter())
        logger.addHandler(file_handler)

    return logger


def setup_logging_from_settings(
    settings: Optional[Settings] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure logging from ``KIDSPOINTS_LOG_LEVEL`` and ``KIDSPOINTS_LOG_JSON``."""
    settings = settings or get_settings()
    return setup_logging(settings.log_level, log_file=log_file, json_format=settings.log_json)
