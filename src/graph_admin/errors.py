from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional

import httpx


class FailureCategory(str, Enum):
    SERVICE_EXCEPTION = "service_exception"
    AUTHENTICATION = "authentication"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


_STATUS_CATEGORIES = {
    400: FailureCategory.VALIDATION,
    401: FailureCategory.AUTHENTICATION,
    403: FailureCategory.PERMISSION_DENIED,
    404: FailureCategory.NOT_FOUND,
    409: FailureCategory.VALIDATION,
    422: FailureCategory.VALIDATION,
    429: FailureCategory.SERVICE_EXCEPTION,
    503: FailureCategory.SERVICE_EXCEPTION,
    504: FailureCategory.SERVICE_EXCEPTION,
}


class GraphFailure(Exception):
    """A failed Microsoft Graph call.

    Carries the HTTP status (if a response was received), a category assigned
    by the call layer, and the response headers so callers can read hints such
    as ``Retry-After`` without parsing the message.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        category: FailureCategory = FailureCategory.UNKNOWN,
        headers: Optional[Mapping[str, str]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.category = category
        self.headers = headers
        self.code = code

    def __repr__(self) -> str:
        return (
            f"GraphFailure(status_code={self.status_code!r}, "
            f"category={self.category.value!r}, code={self.code!r}, message={self.message!r})"
        )


def category_for_status(status_code: int) -> FailureCategory:
    return _STATUS_CATEGORIES.get(status_code, FailureCategory.UNKNOWN)


def failure_from_response(response: httpx.Response) -> GraphFailure:
    """Build a GraphFailure from an error response, reading the Graph error body if any."""
    code: Optional[str] = None
    message = response.reason_phrase or f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        code = error.get("code")
        message = error.get("message") or message

    return GraphFailure(
        message,
        status_code=response.status_code,
        category=category_for_status(response.status_code),
        headers=response.headers,
        code=code,
    )


def failure_from_transport_error(exc: httpx.TransportError) -> GraphFailure:
    # No response was received; the service is treated as temporarily unreachable.
    return GraphFailure(
        f"{type(exc).__name__}: {exc}",
        status_code=None,
        category=FailureCategory.SERVICE_EXCEPTION,
    )
