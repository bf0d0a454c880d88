"""
Error kinds for the affiliation service

Every error raised by the repository, the merge engine and the outbound
adapters is an AffiliationError carrying an HTTP-style status code. The
transport maps the code to the response status and emits the message after
secret redaction.
"""

import threading
from typing import Optional, Set

# HTTP status codes used as error kinds
ERR_BAD_REQUEST = "400"
ERR_UNAUTHORIZED = "401"
ERR_FORBIDDEN = "403"
ERR_NOT_FOUND = "404"
ERR_CONFLICT = "409"
ERR_SERVER_ERROR = "500"

REDACTED = "[redacted]"

_STATUS_TEXT = {
    ERR_BAD_REQUEST: "BAD REQUEST",
    ERR_UNAUTHORIZED: "UNAUTHORIZED",
    ERR_FORBIDDEN: "FORBIDDEN",
    ERR_NOT_FOUND: "NOT FOUND",
    ERR_CONFLICT: "CONFLICT",
    ERR_SERVER_ERROR: "INTERNAL SERVER ERROR",
}


class AffiliationError(Exception):
    """Base error that also holds a status code"""

    code: str = ERR_SERVER_ERROR

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class BadRequestError(AffiliationError):
    code = ERR_BAD_REQUEST


class ValidationError(BadRequestError):
    """Field-level validation failure"""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class UnauthorizedError(AffiliationError):
    code = ERR_UNAUTHORIZED


class ForbiddenError(AffiliationError):
    code = ERR_FORBIDDEN


class NotFoundError(AffiliationError):
    code = ERR_NOT_FOUND


class ConflictError(AffiliationError):
    code = ERR_CONFLICT


class InternalError(AffiliationError):
    code = ERR_SERVER_ERROR


def status_text(code: str) -> str:
    """Human readable text for a status code"""
    return _STATUS_TEXT.get(code, code)


def wrap(exc: BaseException, context: str) -> AffiliationError:
    """Add context to an error while keeping its kind and code.

    Args:
        exc: Original exception
        context: Prefix describing the operation that failed

    Returns:
        AffiliationError of the same class and code as ``exc``; exceptions
        without a code become InternalError
    """
    message = f"{context}: {exc}"
    if isinstance(exc, AffiliationError):
        wrapped = AffiliationError.__new__(type(exc))
        AffiliationError.__init__(wrapped, message, exc.code)
        if isinstance(exc, ValidationError):
            wrapped.field = exc.field
        wrapped.__cause__ = exc
        return wrapped
    wrapped = InternalError(message)
    wrapped.__cause__ = exc
    return wrapped


# ============================================
# SECRET REDACTION
# ============================================

_redacted_lock = threading.Lock()
_redacted: Set[str] = set()


def register_secret(secret: Optional[str]) -> None:
    """Remember a string that must never reach a client or a log line."""
    if not secret:
        return
    with _redacted_lock:
        _redacted.add(secret)


def clear_secrets() -> None:
    """Forget all registered secrets (for testing)"""
    with _redacted_lock:
        _redacted.clear()


def redact(text: str) -> str:
    """Replace every registered secret in ``text`` with ``[redacted]``."""
    if not text:
        return text
    with _redacted_lock:
        secrets = sorted(_redacted, key=len, reverse=True)
    for secret in secrets:
        text = text.replace(secret, REDACTED)
    return text
