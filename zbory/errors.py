# zbory/errors.py
"""Error taxonomy shared by every engine component.

- ValidationError: malformed input, reported field by field.
- AuthError: bad/expired OTP, exhausted attempts, unknown or expired token.
  Always carries the same external message.
- StateError: operation against a sheet/document in the wrong lifecycle state.
- NotFoundError: the requested artifact does not exist (yet).
- TransientExternalError: provider unreachable, timed out or returned 5xx.
- PermanentExternalError: provider rejected the request; retrying will not help.
- InvariantViolation: logic or data-integrity defect. The only class that
  should page an operator.
"""

from typing import Dict, Optional

import requests


class ZboryError(Exception):
    code = "ZBORY_ERROR"
    http_status = 500

    def __init__(self, message: str = "", code: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(ZboryError):
    code = "VALIDATION_FAILED"
    http_status = 400

    def __init__(self, errors: Dict[str, str], message: str = "Invalid input."):
        super().__init__(message, details={"fields": dict(errors)})
        self.errors = dict(errors)


AUTH_FAILED_MESSAGE = "The code or link is invalid or has expired."


class AuthError(ZboryError):
    code = "AUTH_FAILED"
    http_status = 401

    def __init__(self, reason: str = "invalid", details: Optional[Dict] = None):
        # reason is kept for logs only; the message never varies
        super().__init__(AUTH_FAILED_MESSAGE, details=details)
        self.reason = reason


class RateLimitedError(AuthError):
    code = "AUTH_RATE_LIMITED"
    http_status = 429

    def __init__(self, retry_after_seconds: int):
        super().__init__("rate_limited", details={"retryAfterSeconds": retry_after_seconds})
        self.message = "Too many attempts. Try again later."
        self.retry_after_seconds = retry_after_seconds


class StateError(ZboryError):
    code = "INVALID_STATE"
    http_status = 409


class NotFoundError(ZboryError):
    code = "NOT_FOUND"
    http_status = 404


class TransientExternalError(ZboryError):
    code = "EXTERNAL_TEMPORARILY_UNAVAILABLE"
    http_status = 503


class PermanentExternalError(ZboryError):
    code = "EXTERNAL_REJECTED"
    http_status = 502


class InvariantViolation(ZboryError):
    code = "INVARIANT_VIOLATION"
    http_status = 500


TRANSIENT_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}


def classify_error(error: BaseException) -> ZboryError:
    """Map an arbitrary exception raised at an external boundary into the taxonomy."""
    if isinstance(error, ZboryError):
        return error

    message = str(error).strip() or error.__class__.__name__

    if isinstance(error, (requests.Timeout, requests.ConnectionError, TimeoutError, ConnectionError)):
        return TransientExternalError(message, code="EXTERNAL_UNREACHABLE")

    if isinstance(error, requests.HTTPError):
        status = error.response.status_code if error.response is not None else None
        if status is None or status in TRANSIENT_HTTP_STATUSES:
            return TransientExternalError(message, code=f"EXTERNAL_HTTP_{status}")
        return PermanentExternalError(message, code=f"EXTERNAL_HTTP_{status}")

    if isinstance(error, requests.RequestException):
        return TransientExternalError(message, code="EXTERNAL_REQUEST_FAILED")

    if isinstance(error, (TypeError, AttributeError, KeyError, NameError)):
        return InvariantViolation(message, code="UNEXPECTED_PROGRAMMING_ERROR")

    return PermanentExternalError(message)
