"""
CRM failure classification.

Every failure coming back from the CRM operation is reduced to an
ErrorRecord with one of seven categories. Retryability is a fixed property
of the category; nothing downstream looks at raw error text.

Recognised shapes, tried in order:
  1. ErrorRecord / CrmSyncError       -> taken as-is
  2. timeouts, connection errors      -> network_error
  3. HTTP-like responses              -> by status code (+ body hints)
  4. bare category strings            -> that category
  5. anything else                    -> message substrings, else server_error
"""
import asyncio
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    VALIDATION_ERROR = "validation_error"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_PROPERTY = "invalid_property"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVER_ERROR,
    ErrorCategory.NETWORK_ERROR,
})

NETWORK_ERROR_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED", "ECONNRESET", "ETIMEDOUT", "EAI_AGAIN"})


@dataclass(frozen=True)
class ErrorRecord:
    """A classified failure."""

    category: ErrorCategory
    message: str
    retry_after: Optional[int] = None  # seconds, from Retry-After or similar
    status_code: Optional[int] = None
    retry_at: Optional[datetime] = None  # naive UTC, from a body resetTime

    @property
    def is_retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


class CrmSyncError(Exception):
    """Raised by CRM sync operations that already know what went wrong."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.SERVER_ERROR,
        *,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.category = ErrorCategory(category)
        self.retry_after = retry_after
        self.status_code = status_code

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(
            category=self.category,
            message=str(self),
            retry_after=self.retry_after,
            status_code=self.status_code,
        )


def is_retryable(category) -> bool:
    return ErrorCategory(category) in RETRYABLE_CATEGORIES


def classify_error(failure: Any) -> ErrorRecord:
    """
    Turn an arbitrary failure description into an ErrorRecord.

    Never raises: unrecognised shapes, and shapes that blow up while being
    inspected, fall back to server_error.

    Args:
        failure: exception, response object/mapping, category string or
            ErrorRecord.

    Returns:
        The classified ErrorRecord.
    """
    try:
        return _classify(failure)
    except Exception:
        logger.exception("Could not classify CRM failure of type %s", type(failure).__name__)
        return ErrorRecord(ErrorCategory.SERVER_ERROR, "Unclassifiable CRM failure")


# ─── Internal helpers ─────────────────────────────────────────────────────────

def _classify(failure: Any) -> ErrorRecord:
    if isinstance(failure, ErrorRecord):
        return failure
    if isinstance(failure, CrmSyncError):
        return failure.to_record()

    if isinstance(failure, (asyncio.TimeoutError, TimeoutError)):
        return ErrorRecord(ErrorCategory.NETWORK_ERROR, "CRM request timed out")
    if isinstance(failure, (ConnectionError, socket.gaierror)):
        return ErrorRecord(ErrorCategory.NETWORK_ERROR, f"CRM network error: {failure}")
    code = getattr(failure, "code", None)
    if isinstance(code, str) and code in NETWORK_ERROR_CODES:
        return ErrorRecord(ErrorCategory.NETWORK_ERROR, f"CRM network error: {failure}")

    response = _response_of(failure)
    if response is not None:
        return _classify_response(response)

    if isinstance(failure, str):
        try:
            category = ErrorCategory(failure)
        except ValueError:
            return _classify_message(failure)
        return ErrorRecord(category, f"Error type: {failure}")

    return _classify_message(str(failure) if failure is not None else "")


def _get(obj: Any, key: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _status_of(obj: Any) -> Optional[int]:
    for key in ("status_code", "status"):
        value = _get(obj, key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _response_of(failure: Any) -> Any:
    """Return the HTTP-like response carried by a failure, if any."""
    if isinstance(failure, str) or failure is None:
        return None
    if not isinstance(failure, Mapping):
        attached = getattr(failure, "response", None)
        if attached is not None and _status_of(attached) is not None:
            return attached
    if _status_of(failure) is not None:
        return failure
    return None


def _body_of(response: Any) -> Any:
    for key in ("body", "data", "text"):
        body = _get(response, key)
        if callable(body):
            continue
        if body is not None:
            return body
    return None


def _body_text(body: Any) -> str:
    if isinstance(body, Mapping):
        parts = [body.get("message"), body.get("category"), body.get("policyName")]
        error = body.get("error")
        if isinstance(error, Mapping):
            parts.append(error.get("message"))
        elif error:
            parts.append(error)
        return " ".join(str(p) for p in parts if p)
    if isinstance(body, (str, bytes)):
        return body.decode(errors="replace") if isinstance(body, bytes) else body
    return ""


def _body_message(body: Any) -> Optional[str]:
    if isinstance(body, Mapping):
        if body.get("message"):
            return str(body["message"])
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
    return None


def _classify_response(response: Any) -> ErrorRecord:
    status = _status_of(response)
    body = _body_of(response)
    text = _body_text(body).lower()
    retry_after = retry_at = None

    if status in (401, 403):
        category, message = ErrorCategory.AUTH_ERROR, "CRM authentication failed"
    elif status == 429:
        if "daily" in text or "quota" in text:
            category, message = ErrorCategory.QUOTA_EXCEEDED, "CRM quota exceeded"
        else:
            category, message = ErrorCategory.RATE_LIMIT, "CRM rate limit exceeded"
            retry_after = _retry_after_header(response)
            if retry_after is None:
                retry_at = _reset_time_of(body)
    elif status == 400:
        if "property" in text:
            category, message = ErrorCategory.INVALID_PROPERTY, "CRM rejected a property"
        else:
            category, message = ErrorCategory.VALIDATION_ERROR, "CRM validation error"
    elif status is not None and status >= 500:
        category, message = ErrorCategory.SERVER_ERROR, "CRM server error"
    else:
        category, message = ErrorCategory.SERVER_ERROR, "Unknown CRM API error"

    detail = _body_message(body)
    if detail:
        message = f"{message}: {detail}"
    return ErrorRecord(
        category, message, retry_after=retry_after, status_code=status, retry_at=retry_at
    )


def _retry_after_header(response: Any) -> Optional[int]:
    """Seconds to wait from a Retry-After header."""
    headers = _get(response, "headers") or {}
    raw = None
    if hasattr(headers, "get"):
        raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _reset_time_of(body: Any) -> Optional[datetime]:
    """Absolute rate-limit reset time from a body resetTime, as naive UTC.

    The store measures it against its own clock when scheduling.
    """
    reset = body.get("resetTime") if isinstance(body, Mapping) else None
    if not reset:
        return None
    try:
        reset_at = datetime.fromisoformat(str(reset).replace("Z", "+00:00"))
    except ValueError:
        return None
    if reset_at.tzinfo is not None:
        reset_at = reset_at.astimezone(timezone.utc).replace(tzinfo=None)
    return reset_at


# Order matters: "invalid property" must win over plain "invalid".
_MESSAGE_RULES = (
    (ErrorCategory.RATE_LIMIT, ("rate limit", "ratelimit", "too many requests", "429")),
    (ErrorCategory.QUOTA_EXCEEDED, ("quota", "daily limit")),
    (ErrorCategory.AUTH_ERROR, ("unauthorized", "forbidden", "auth", "401", "403")),
    (ErrorCategory.INVALID_PROPERTY, ("property",)),
    (ErrorCategory.VALIDATION_ERROR, ("validation", "invalid", "400")),
    (ErrorCategory.NETWORK_ERROR, ("timed out", "timeout", "connection", "network", "dns")),
)


def _classify_message(message: str) -> ErrorRecord:
    lowered = message.lower()
    for category, needles in _MESSAGE_RULES:
        if any(n in lowered for n in needles):
            return ErrorRecord(category, message)
    return ErrorRecord(ErrorCategory.SERVER_ERROR, message or "Unexpected CRM error")
