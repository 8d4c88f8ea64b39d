"""
Request executor interface, response values and response classification.

This module defines the seam between the pagination loop and whatever
produces authenticated HTTP requests, plus the classifier that tells a
rate-limit error payload apart from data and from other API errors.
"""
# [CTX:PBI-1:1-4:IFACE]

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .config import ApiProfile, Credentials
from .rate_limiter import HeaderMap

logger = logging.getLogger(__name__)


@dataclass
class RequestSpec:
    """
    Specification for an HTTP request.

    Attributes:
        url: Full URL to request
        method: HTTP method (GET or POST)
        query_params: Query string parameters (GET)
        body: Form body parameters (POST)
        timeout_s: Transport timeout in seconds
    """
    url: str
    method: str = "GET"
    query_params: dict[str, str] = field(default_factory=dict)
    body: dict[str, str] | None = None
    timeout_s: float = 60.0


@dataclass
class RawResponse:
    """Status, headers and undecoded body of one transport-level success."""
    status: int
    headers: HeaderMap
    body: str
    elapsed_ms: float = 0.0


@dataclass
class ExecutionResult:
    """
    Structured outcome of one executor call.

    Exactly one of ``response`` and ``error`` is set. An HTTP error status is
    still a transport success; the body decides what it means.
    """
    response: Optional[RawResponse] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.response is not None

    @classmethod
    def success(cls, response: RawResponse) -> "ExecutionResult":
        return cls(response=response)

    @classmethod
    def failure(cls, error: str) -> "ExecutionResult":
        return cls(error=error)


class RequestExecutor(ABC):
    """
    Performs one authenticated request and never retries.

    Implementations report transport problems (connection errors, timeouts,
    signing failures) through ExecutionResult.failure instead of raising.
    """

    @abstractmethod
    async def execute(
        self,
        request: RequestSpec,
        credentials: Credentials,
    ) -> ExecutionResult:
        """
        Execute a request.

        Args:
            request: What to send
            credentials: Credentials to authenticate with

        Returns:
            ExecutionResult with either the raw response or an error message
        """
        pass

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Release any held resources."""
        pass


class Verdict(Enum):
    """Response classifications."""
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    OTHER_ERROR = "other_error"


@dataclass(frozen=True)
class Classification:
    """
    Result of classifying a response body.

    Attributes:
        verdict: Success, rate limited or other error
        next_cursor: Cursor of the following page (success only)
        payload: Decoded body (success only)
        passthrough: Raw body to forward as-is (other error only)
    """
    verdict: Verdict
    next_cursor: Optional[str] = None
    payload: Any = None
    passthrough: Optional[str] = None


@dataclass(frozen=True)
class PageResult:
    """One emitted page: decoded body plus the cursor that follows it."""
    payload: Any
    next_cursor: str

    def to_line(self) -> str:
        """Render as a single NDJSON line (without the newline)."""
        return json.dumps(self.payload, ensure_ascii=False)


def _first_error_code(payload: Any) -> tuple[bool, Any]:
    """Return (has_errors, code of the first error entry)."""
    if not isinstance(payload, dict):
        return False, None
    errors = payload.get("errors")
    if not isinstance(errors, list) or not errors:
        return False, None
    first = errors[0]
    code = first.get("code") if isinstance(first, dict) else None
    return True, code


def classify_response(body: str, profile: ApiProfile) -> Classification:
    """
    Classify a response body.

    Args:
        body: Raw response text
        profile: Supplies the rate-limit error code and cursor field name

    Returns:
        Classification; rate-limited bodies carry no data
    """
    try:
        payload = json.loads(body)
    except ValueError:
        logger.debug("[CTX:PBI-1:1-4:IFACE] Body is not JSON, passing through")
        return Classification(verdict=Verdict.OTHER_ERROR, passthrough=body)

    has_errors, code = _first_error_code(payload)
    if has_errors:
        if code == profile.rate_limit_code:
            return Classification(verdict=Verdict.RATE_LIMITED)
        return Classification(verdict=Verdict.OTHER_ERROR, passthrough=body)

    next_cursor = profile.terminal_cursor
    if isinstance(payload, dict) and payload.get(profile.next_cursor_field) is not None:
        next_cursor = str(payload[profile.next_cursor_field])

    return Classification(
        verdict=Verdict.SUCCESS,
        next_cursor=next_cursor,
        payload=payload,
    )
