"""
Structured Logging Module

Provides JSON-formatted log lines for the affiliation service:
- One line per record, easy to ship and parse
- Request ID correlation through a context variable
- Sanitization of user supplied text before it is logged
- Secret redaction on every emitted line

SECURITY: registered secrets (passwords, tokens, DSNs) never reach a log line.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from errors import redact

REQUEST_ID_KEY = "X-REQUEST-ID"

_request_id: ContextVar[str] = ContextVar("request_id", default="")

LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
}


def sanitize_for_logging(text: Any, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Maximum length kept

    Returns:
        Sanitized text safe for logging
    """
    if text is None or text == "":
        return ""
    sanitized = re.sub(r"[\r\n\x00-\x1f\x7f-\x9f]", " ", str(text))
    sanitized = re.sub(r"\s+", " ", sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the correlation id for the current request context

    Args:
        request_id: Incoming id (auto-generated if None)

    Returns:
        The request ID being used
    """
    rid = request_id or uuid.uuid4().hex
    _request_id.set(rid)
    return rid


def clear_request_id() -> None:
    _request_id.set("")


class RequestIdFilter(logging.Filter):
    """Stamps the current request id on every record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        return True


class JsonFormatter(logging.Formatter):
    """Formats a record as a single JSON object"""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.exc_info:
            message = f"{message} {self.formatException(record.exc_info)}"
        payload: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": redact(message),
        }
        request_id = getattr(record, "request_id", "")
        if request_id:
            payload[REQUEST_ID_KEY] = request_id
        return json.dumps(payload, ensure_ascii=False)


def parse_log_level(value: Optional[str]) -> int:
    """Map LOG_LEVEL (debug, info, warn) to a logging level; default debug."""
    return LOG_LEVELS.get((value or "").strip().lower(), logging.DEBUG)


def configure_logging(
    level: Optional[str] = None,
    stream=None,
) -> logging.Handler:
    """Install the JSON handler on the root logger

    Args:
        level: LOG_LEVEL value (debug, info, warn)
        stream: Output stream (stderr if None)

    Returns:
        The installed handler
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_affiliation_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    handler._affiliation_handler = True
    root.addHandler(handler)
    root.setLevel(parse_log_level(level))
    return handler
