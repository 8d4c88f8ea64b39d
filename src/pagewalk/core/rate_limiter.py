"""
Rate-limit window tracking and delay scheduling.
[CTX:PBI-1:1-2:RL]

This module implements the window-aware pieces of the fetcher:
- Injectable time source so waits are deterministic in tests
- RateLimitState snapshot of the server's current window accounting
- Header extraction from a case-normalized header map
- Delay scheduler bounding waits between a fallback floor and a ceiling
"""
import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .config import DelayPolicy, HeaderConfig

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    """Process exit codes, one per terminal outcome."""
    OK = 0
    FAILURE = 1
    USAGE = 2
    ABORT_LIMIT = 3
    ABORT_DELAY = 4


# [CTX:PBI-1:1-2:RL] TimeProvider protocol for testability
class TimeProvider(ABC):
    """Protocol for providing time values, allows injection of fake time in tests."""

    @abstractmethod
    def now(self) -> float:
        """Return current time in seconds since epoch."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Block the current task for the given number of seconds."""
        pass


class SystemTimeProvider(TimeProvider):
    """Real time provider using system clock."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class FakeTimeProvider(TimeProvider):
    """Fake time provider for deterministic tests."""

    def __init__(self, initial_time: float = 1000.0):
        self._current_time = initial_time
        self._lock = threading.Lock()
        self.sleep_history: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._current_time

    async def sleep(self, seconds: float) -> None:
        """Simulate sleep by advancing time."""
        self.sleep_history.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        """Advance time by given seconds."""
        with self._lock:
            self._current_time += seconds

    def set(self, time: float) -> None:
        """Set absolute time."""
        with self._lock:
            self._current_time = time


# [CTX:PBI-1:1-2:RL] Window snapshot
@dataclass
class RateLimitState:
    """
    The server's accounting for the active rate-limit window.

    Any field may be None, meaning the value is unknown (nothing persisted,
    or the endpoint does not report it). ``remaining`` is a snapshot taken
    from the last response and is only meaningful until the next request.

    Attributes:
        remaining: Requests left in the current window
        limit: Window capacity
        reset_epoch: Unix time at which the window renews
    """
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_epoch: Optional[int] = None

    @property
    def exhausted(self) -> bool:
        """True only when the window is known to be used up."""
        return self.remaining is not None and self.remaining <= 0

    def apply(self, update: "RateLimitUpdate") -> None:
        """Overwrite the fields the latest response reported."""
        if update.remaining is not None:
            self.remaining = update.remaining
        if update.limit is not None:
            self.limit = update.limit
        if update.reset_epoch is not None:
            self.reset_epoch = update.reset_epoch

    def refill(self, limit: Optional[int]) -> None:
        """Optimistically assume a fresh window after waiting."""
        self.remaining = limit

    def to_dict(self) -> dict[str, Optional[int]]:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_epoch": self.reset_epoch,
        }


@dataclass(frozen=True)
class RateLimitUpdate:
    """Values read from one response's headers; None when the header is absent."""
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_epoch: Optional[int] = None

    @property
    def empty(self) -> bool:
        return self.remaining is None and self.limit is None and self.reset_epoch is None


# [CTX:PBI-1:1-2:RL] Header extraction
class HeaderMap(Mapping):
    """
    Read-only, case-normalized view of a response header block.

    Keys are lower-cased once on construction so lookups match the
    lower-case names in HeaderConfig regardless of how the server spells them.
    When a header repeats, the first occurrence wins.
    """

    def __init__(self, headers: Optional[Mapping[str, str]] = None):
        self._headers: dict[str, str] = {}
        for key, value in (headers or {}).items():
            self._headers.setdefault(key.lower(), value)

    def __getitem__(self, key: str) -> str:
        return self._headers[key.lower()]

    def __iter__(self):
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def get_int(self, key: str) -> Optional[int]:
        """
        Get header value as an integer.

        Returns:
            Parsed integer, or None if the header is missing or not numeric
        """
        raw = self._headers.get(key.lower())
        if raw is None:
            return None
        try:
            return int(raw.strip())
        except ValueError:
            # Some servers send fractional epochs
            try:
                return int(float(raw.strip()))
            except (ValueError, OverflowError):
                logger.debug(f"[CTX:PBI-1:1-2:RL] Ignoring non-numeric header {key}={raw!r}")
                return None

    def relevant(self, header_config: HeaderConfig) -> dict[str, str]:
        """Subset of rate limit headers, for telemetry."""
        names = (header_config.remaining, header_config.limit, header_config.reset)
        return {name: self._headers[name] for name in names if name in self._headers}


def extract_rate_limit(headers: HeaderMap, header_config: HeaderConfig) -> RateLimitUpdate:
    """
    Parse the x-rate-limit-* headers of a response.

    Args:
        headers: Case-normalized response headers
        header_config: Names of the remaining/limit/reset headers

    Returns:
        RateLimitUpdate; every field is None for endpoints without limits
    """
    return RateLimitUpdate(
        remaining=headers.get_int(header_config.remaining),
        limit=headers.get_int(header_config.limit),
        reset_epoch=headers.get_int(header_config.reset),
    )


# [CTX:PBI-1:1-2:RL] Delay scheduler
@dataclass(frozen=True)
class DelayDecision:
    """
    Outcome of the delay scheduler.

    Attributes:
        sleep_s: Seconds to wait before the next attempt (0 when aborting)
        abort: Exit code to stop with, or None to keep going
        reason: Human readable explanation, used in logs
    """
    sleep_s: int = 0
    abort: Optional[ExitCode] = None
    reason: str = ""

    @property
    def aborted(self) -> bool:
        return self.abort is not None


def compute_delay(
    target_epoch: Optional[int],
    policy: DelayPolicy,
    now: float,
    exhausted: bool = False,
) -> DelayDecision:
    """
    Work out how long to wait before the window renews.

    Args:
        target_epoch: Reset time reported by the server, if known
        policy: Fallback/limit bounds and abort switches
        now: Current unix time
        exhausted: True when triggered by a known remaining == 0 rather
                   than by a rate-limit error payload

    Returns:
        DelayDecision with either a sleep duration or an abort code
    """
    if exhausted and policy.exit_on_limit:
        return DelayDecision(
            abort=ExitCode.ABORT_LIMIT,
            reason="rate limit window exhausted",
        )

    now_s = int(now)
    target = target_epoch if target_epoch is not None else now_s + policy.delay_fallback
    # One second of margin so we never race the server's own window boundary
    delay = target - now_s + 1

    if delay < 1:
        delay = policy.delay_fallback

    if delay > policy.delay_limit:
        if policy.exit_on_delay:
            return DelayDecision(
                abort=ExitCode.ABORT_DELAY,
                reason=f"required delay {delay}s exceeds limit {policy.delay_limit}s",
            )
        logger.debug(
            f"[CTX:PBI-1:1-2:RL] Clamping delay {delay}s to {policy.delay_limit}s"
        )
        delay = policy.delay_limit

    return DelayDecision(sleep_s=delay, reason=f"waiting {delay}s for window reset")
