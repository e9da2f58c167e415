"""Error taxonomy and the pure classifier for failed remote calls.

WHY: The session manager, the job poller, and every caller-level retry
policy must agree on what a failure means: reauthenticate, back off,
retry at the transport layer, or show the user a message. Putting that
decision in one pure function keeps the policies consistent and makes
them testable without a network.

HOW: ErrorCategory enumerates the taxonomy. classify() maps a status
code (None when no response arrived) plus an optional body and expected
JSON schema to a category, or to None when the call succeeded.
error_from_response() wraps the category in the matching ServiceError
subclass with the best message found in the error body.

RULES:
- 401/403 → AUTHENTICATION, 429 → RATE_LIMITED, 5xx → SERVER
- Any other 4xx → VALIDATION
- No response (status None) → NETWORK
- 2xx whose body does not match the expected schema → UNEXPECTED_RESPONSE
- 1xx/3xx and out-of-range codes → UNEXPECTED_RESPONSE (never success)
- classify() has no side effects and does no I/O
- Error-body message priority: "error", then "message", then "errors"
"""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional, Type

import jsonschema


class ErrorCategory(str, enum.Enum):
    """Failure categories shared by every component of the client.

    RULES:
    - Values serialize cleanly to JSON (str mixin)
    - JOB_FAILED is a job outcome reported by the service, not a call failure
    """

    AUTHENTICATION = "authentication_error"
    RATE_LIMITED = "rate_limited"
    SERVER = "server_error"
    VALIDATION = "validation_error"
    NETWORK = "network_error"
    TIMEOUT = "timeout_error"
    CANCELLED = "cancelled"
    UNEXPECTED_RESPONSE = "unexpected_response"
    JOB_FAILED = "job_failed"


class ServiceError(Exception):
    """Base class for every failure surfaced by the client.

    WHY: Callers render user-facing messages and decide on retries from
    a single structured object instead of parsing exception strings.

    RULES:
    - category identifies the taxonomy bucket
    - retryable says whether a caller-level backoff retry makes sense
    - status_code is None when no HTTP response was received
    """

    category: ErrorCategory = ErrorCategory.UNEXPECTED_RESPONSE
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view used by the HTTP bridge and the CLI."""
        return {
            "category": self.category.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class AuthenticationError(ServiceError):
    """401/403: the token is missing or expired, or the login was rejected."""

    category = ErrorCategory.AUTHENTICATION


class RateLimited(ServiceError):
    """429: surfaced to the caller for backoff, never retried internally."""

    category = ErrorCategory.RATE_LIMITED
    retryable = True


class ServerError(ServiceError):
    """5xx: surfaced, eligible for caller-level backoff."""

    category = ErrorCategory.SERVER
    retryable = True


class ValidationError(ServiceError):
    """4xx other than 401/403/429: the request itself was rejected."""

    category = ErrorCategory.VALIDATION


class NetworkError(ServiceError):
    """No response received; retried transparently at the transport layer."""

    category = ErrorCategory.NETWORK
    retryable = True


class UnexpectedResponse(ServiceError):
    """2xx whose payload does not have any expected shape."""

    category = ErrorCategory.UNEXPECTED_RESPONSE


class JobTimeoutError(ServiceError, TimeoutError):
    """A job exceeded its polling budget (or the service reported TIMEOUT)."""

    category = ErrorCategory.TIMEOUT


class JobCancelledError(ServiceError):
    """The user cancelled a job before it reached a terminal state."""

    category = ErrorCategory.CANCELLED


class JobFailedError(ServiceError):
    """The service reported status ERROR for a submitted job."""

    category = ErrorCategory.JOB_FAILED


ERROR_CLASSES: Dict[ErrorCategory, Type[ServiceError]] = {
    ErrorCategory.AUTHENTICATION: AuthenticationError,
    ErrorCategory.RATE_LIMITED: RateLimited,
    ErrorCategory.SERVER: ServerError,
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.NETWORK: NetworkError,
    ErrorCategory.TIMEOUT: JobTimeoutError,
    ErrorCategory.CANCELLED: JobCancelledError,
    ErrorCategory.UNEXPECTED_RESPONSE: UnexpectedResponse,
    ErrorCategory.JOB_FAILED: JobFailedError,
}

_GENERIC_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.AUTHENTICATION: "Authentication failed",
    ErrorCategory.RATE_LIMITED: "Too many requests, please wait and try again",
    ErrorCategory.SERVER: "The server encountered an error, please try again later",
    ErrorCategory.VALIDATION: "The request was rejected by the server",
    ErrorCategory.NETWORK: "Network connection failed, check your internet connection",
    ErrorCategory.UNEXPECTED_RESPONSE: "The server returned an unexpected response",
}


def classify(
    status_code: Optional[int],
    body: Any = None,
    schema: Optional[Dict[str, Any]] = None,
) -> Optional[ErrorCategory]:
    """Map a remote call result to an error category, or None on success.

    WHY: Single decision point for retry vs. reauthenticate vs. surface.

    HOW: Checks the status code ranges in taxonomy order. For 2xx, the
    body is validated against `schema` (when given) with jsonschema.

    RULES:
    - Pure: status + body + schema in, category out
    - Exhaustive: every non-success input maps to a category

    Args:
        status_code: HTTP status, or None when no response was received.
        body: Parsed JSON body (or raw text when the body is not JSON).
        schema: Optional JSON schema the body of a 2xx response must match.

    Returns:
        The ErrorCategory for a failed call, None for a successful one.
    """
    if status_code is None:
        return ErrorCategory.NETWORK
    if status_code in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if 500 <= status_code <= 599:
        return ErrorCategory.SERVER
    if 400 <= status_code <= 499:
        return ErrorCategory.VALIDATION
    if 200 <= status_code <= 299:
        if schema is not None and not _matches(body, schema):
            return ErrorCategory.UNEXPECTED_RESPONSE
        return None
    return ErrorCategory.UNEXPECTED_RESPONSE


def error_from_response(
    status_code: Optional[int],
    body: Any = None,
    schema: Optional[Dict[str, Any]] = None,
) -> Optional[ServiceError]:
    """Build the ServiceError for a failed call, or None on success."""
    category = classify(status_code, body, schema)
    if category is None:
        return None
    message = extract_error_message(body) or _GENERIC_MESSAGES[category]
    if category is ErrorCategory.UNEXPECTED_RESPONSE and 200 <= (status_code or 0) <= 299:
        message = "{} (HTTP {})".format(_GENERIC_MESSAGES[category], status_code)
    return ERROR_CLASSES[category](message, status_code=status_code, body=body)


def extract_error_message(body: Any) -> Optional[str]:
    """Pull the most specific human-readable message out of an error body.

    RULES:
    - dict bodies: "error", then "message", then "errors" joined by ", "
    - str bodies are returned stripped (None if empty)
    - Anything else yields None
    """
    if isinstance(body, dict):
        for key in ("error", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(e) for e in errors)
        if isinstance(errors, str) and errors.strip():
            return errors.strip()
        return None
    if isinstance(body, str):
        return body.strip() or None
    return None


def user_message(error: BaseException, action: str = "Request") -> str:
    """Render a user-facing message for a failed operation.

    WHY: Job failures should show the provider's own error text when it
    exists and a generic per-kind message otherwise.

    RULES:
    - AuthenticationError always reads "authentication failed"
    - ServiceError with a message → "<action> failed: <message>"
    - Anything else → "<action> failed. Please try again."
    """
    if isinstance(error, AuthenticationError):
        return "{} failed: authentication failed".format(action)
    if isinstance(error, ServiceError) and error.message:
        return "{} failed: {}".format(action, error.message)
    return "{} failed. Please try again.".format(action)


def _matches(body: Any, schema: Dict[str, Any]) -> bool:
    try:
        jsonschema.validate(instance=body, schema=schema)
    except jsonschema.ValidationError:
        return False
    return True
