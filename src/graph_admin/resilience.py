"""Retry wrapper for throttled Microsoft Graph calls.

Every Graph call goes through :class:`ResilientCallExecutor`. A failure is
retried only when it is transient (HTTP 429, 503, 504, or a failure the call
layer tagged as a service exception). Anything else, and the failure of the
last allowed attempt, propagates to the caller unchanged.

The delay before the next attempt is ``base_delay_seconds * attempt``
(linear) unless the policy opts into exponential growth. A ``Retry-After``
header on the failure overrides the computed delay.
"""
from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .audit import JsonAuditLogger
from .errors import FailureCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({429, 503, 504})


class FailureClassification(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=5, ge=1, description="Maximum number of attempts")
    base_delay_seconds: float = Field(default=15, ge=0, description="Base backoff delay")
    backoff: Literal["linear", "exponential"] = Field(
        default="linear",
        description="linear: base * attempt, exponential: base * 2^(attempt - 1)",
    )
    log_attempts: bool = Field(
        default=False,
        description="Emit a warning for every failed attempt that will be retried",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)


def classify_failure(exc: BaseException) -> FailureClassification:
    """Classify a failure by its status code and category, never by its message."""
    status_code = getattr(exc, "status_code", None)
    if status_code in TRANSIENT_STATUS_CODES:
        return FailureClassification.TRANSIENT
    if getattr(exc, "category", None) == FailureCategory.SERVICE_EXCEPTION:
        return FailureClassification.TRANSIENT
    return FailureClassification.FATAL


def retry_after_seconds(exc: BaseException) -> Optional[int]:
    headers: Optional[Mapping[str, Any]] = getattr(exc, "headers", None)
    if not headers:
        return None

    value = None
    for key, header_value in headers.items():
        if str(key).lower() == "retry-after":
            value = header_value
            break
    if value is None:
        return None

    try:
        seconds = int(str(value).strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    if policy.backoff == "exponential":
        return policy.base_delay_seconds * (2 ** (attempt - 1))
    return policy.base_delay_seconds * attempt


class ResilientCallExecutor:
    """Runs a zero-argument operation, retrying transient failures.

    The executor holds only its configuration, so one instance can be reused
    for sequential calls at a call site. Concurrent workers should each build
    their own instance.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        audit_logger: Optional[JsonAuditLogger] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.audit = audit_logger

    def execute(self, operation: Callable[[], T], **log_fields: Any) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except Exception as exc:
                if classify_failure(exc) is FailureClassification.FATAL:
                    raise
                if attempt >= self.policy.max_retries:
                    raise

                delay = compute_delay(self.policy, attempt)
                hint = retry_after_seconds(exc)
                if hint is not None:
                    delay = hint

                if self.policy.log_attempts:
                    self._log_retry(exc, attempt, delay, log_fields)
                self.sleep(delay)

    def _log_retry(self, exc: BaseException, attempt: int, delay: float, fields: dict) -> None:
        event = dict(
            attempt=attempt,
            max_retries=self.policy.max_retries,
            delay_seconds=delay,
            status=getattr(exc, "status_code", None),
            error_type=type(exc).__name__,
            **fields,
        )
        if self.audit:
            self.audit.warning("graph_call_retrying", **event)
        else:
            logger.warning("graph_call_retrying %s", event)
