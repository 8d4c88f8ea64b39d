"""
Structured telemetry for the pagination loop.
[CTX:PBI-1:1-6:TELEM]

This module provides structured logging capabilities for understanding:
- Which pages were fetched, in which order
- Waits caused by exhausted windows and by rate-limit error payloads
- Policy aborts and transport failures
- Response header patterns from the API
"""
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class TelemetryLevel(Enum):
    """Telemetry verbosity levels."""
    INFO = "info"
    DEBUG = "debug"


class TelemetryDecision(Enum):
    """Loop decision types."""
    FETCH = "fetch"                          # Request sent, response received
    PAGE = "page"                            # Page emitted, cursor advanced
    WAIT_EXHAUSTED = "wait_exhausted"        # Waiting out a known empty window
    WAIT_RATE_LIMITED = "wait_rate_limited"  # Waiting after a rate-limit payload
    API_ERROR = "api_error"                  # Non rate-limit error passed through
    ABORT = "abort"                          # Stopped by abort policy
    FAILED = "failed"                        # Executor reported a failure


# Decisions worth reporting when not in debug mode
_NOTABLE = {
    TelemetryDecision.PAGE.value,
    TelemetryDecision.WAIT_EXHAUSTED.value,
    TelemetryDecision.WAIT_RATE_LIMITED.value,
    TelemetryDecision.API_ERROR.value,
    TelemetryDecision.ABORT.value,
    TelemetryDecision.FAILED.value,
}


# [CTX:PBI-1:1-6:TELEM] Telemetry event structure
@dataclass
class TelemetryEvent:
    """
    A single telemetry event capturing pagination loop activity.

    Attributes:
        timestamp: ISO 8601 timestamp of event
        resource: API resource being walked
        cursor: Cursor in effect when the decision was taken
        status: HTTP status code (None if no response)
        elapsed_ms: Request duration in milliseconds
        decision: Loop decision (fetch, page, wait, abort, ...)
        sleep_s: Time slept before the next attempt
        headers_seen: Rate limit headers from the response
        page: Number of pages emitted so far
        remaining: Known remaining requests in the window
        reset_epoch: Known window reset time
    """
    timestamp: str
    resource: str
    cursor: Optional[str]
    status: Optional[int]
    elapsed_ms: float
    decision: str
    sleep_s: float = 0.0
    headers_seen: Dict[str, str] = field(default_factory=dict)
    page: int = 0
    remaining: Optional[int] = None
    reset_epoch: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging."""
        return {k: v for k, v in asdict(self).items() if v is not None or k == "status"}

    def to_json(self) -> str:
        """Convert event to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_keyvalue(self) -> str:
        """Convert event to key=value format."""
        pairs = []
        for key, value in self.to_dict().items():
            if isinstance(value, dict):
                # Flatten nested dicts
                for subkey, subval in value.items():
                    pairs.append(f"{key}.{subkey}={subval}")
            else:
                pairs.append(f"{key}={value}")
        return " ".join(pairs)


# [CTX:PBI-1:1-6:TELEM] In-memory statistics tracker
@dataclass
class TelemetryStats:
    """Aggregated statistics, useful for tests and end-of-run summaries."""
    total_events: int = 0
    total_requests: int = 0
    total_pages: int = 0
    total_sleeps: int = 0
    total_sleep_time: float = 0.0
    total_elapsed_time: float = 0.0
    decisions_by_type: Dict[str, int] = field(default_factory=dict)
    status_codes: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        avg_latency = (
            self.total_elapsed_time / self.total_requests
            if self.total_requests > 0
            else 0.0
        )

        return {
            "total_events": self.total_events,
            "total_requests": self.total_requests,
            "total_pages": self.total_pages,
            "total_sleeps": self.total_sleeps,
            "total_sleep_time": self.total_sleep_time,
            "avg_latency_ms": round(avg_latency, 2),
            "decisions_by_type": self.decisions_by_type,
            "status_codes": self.status_codes,
        }


# [CTX:PBI-1:1-6:TELEM] Main telemetry recorder
class TelemetryRecorder:
    """
    Records and emits structured telemetry for loop operations.

    Features:
    - Structured logging in JSON or key=value format
    - Configurable verbosity (info/debug)
    - Optional in-memory statistics collection
    - Event history for tests
    """

    def __init__(
        self,
        level: TelemetryLevel = TelemetryLevel.INFO,
        format_json: bool = False,
        collect_stats: bool = False,
        keep_events: bool = False,
    ):
        """
        Initialize telemetry recorder.

        Args:
            level: Logging verbosity level
            format_json: If True, log as JSON; otherwise use key=value
            collect_stats: If True, collect in-memory statistics
            keep_events: If True, keep every event for get_events()
        """
        self.level = level
        self.format_json = format_json
        self.collect_stats = collect_stats
        self.keep_events = keep_events

        self._stats = TelemetryStats()
        self._stats_lock = threading.Lock()

        self._events: List[TelemetryEvent] = []
        self._events_lock = threading.Lock()

    def record(self, event: TelemetryEvent) -> None:
        """
        Record a telemetry event.

        Args:
            event: Event to record
        """
        if self.format_json:
            log_message = f"[CTX:PBI-1:1-6:TELEM] {event.to_json()}"
        else:
            log_message = f"[CTX:PBI-1:1-6:TELEM] {event.to_keyvalue()}"

        if self.level == TelemetryLevel.DEBUG:
            logger.debug(log_message)
        elif event.decision in _NOTABLE or (event.status and event.status >= 400):
            logger.info(log_message)
        else:
            logger.debug(log_message)

        if self.collect_stats:
            with self._stats_lock:
                self._stats.total_events += 1
                if event.decision == TelemetryDecision.FETCH.value:
                    self._stats.total_requests += 1
                    self._stats.total_elapsed_time += event.elapsed_ms
                elif event.decision == TelemetryDecision.PAGE.value:
                    self._stats.total_pages += 1

                if event.sleep_s > 0:
                    self._stats.total_sleeps += 1
                    self._stats.total_sleep_time += event.sleep_s

                self._stats.decisions_by_type[event.decision] = (
                    self._stats.decisions_by_type.get(event.decision, 0) + 1
                )

                if event.status:
                    self._stats.status_codes[event.status] = (
                        self._stats.status_codes.get(event.status, 0) + 1
                    )

        if self.keep_events:
            with self._events_lock:
                self._events.append(event)

    def get_stats(self) -> TelemetryStats:
        """Get current statistics snapshot."""
        with self._stats_lock:
            return TelemetryStats(
                total_events=self._stats.total_events,
                total_requests=self._stats.total_requests,
                total_pages=self._stats.total_pages,
                total_sleeps=self._stats.total_sleeps,
                total_sleep_time=self._stats.total_sleep_time,
                total_elapsed_time=self._stats.total_elapsed_time,
                decisions_by_type=self._stats.decisions_by_type.copy(),
                status_codes=self._stats.status_codes.copy(),
            )

    def reset_stats(self) -> None:
        """Reset statistics."""
        with self._stats_lock:
            self._stats = TelemetryStats()

    def get_events(self) -> List[TelemetryEvent]:
        """Get all recorded events (for testing)."""
        with self._events_lock:
            return self._events.copy()

    def decisions(self) -> List[str]:
        """Decision sequence of the recorded events."""
        with self._events_lock:
            return [event.decision for event in self._events]

    def clear_events(self) -> None:
        """Clear event history."""
        with self._events_lock:
            self._events.clear()


# [CTX:PBI-1:1-6:TELEM] Global telemetry recorder instance
_global_recorder: Optional[TelemetryRecorder] = None
_recorder_lock = threading.Lock()


def get_recorder() -> TelemetryRecorder:
    """
    Get the global telemetry recorder instance.

    Creates a default recorder if none exists.
    """
    global _global_recorder

    if _global_recorder is None:
        with _recorder_lock:
            if _global_recorder is None:
                _global_recorder = TelemetryRecorder()

    return _global_recorder


def set_recorder(recorder: TelemetryRecorder) -> None:
    """
    Set the global telemetry recorder instance.

    Args:
        recorder: Recorder instance to use globally
    """
    global _global_recorder

    with _recorder_lock:
        _global_recorder = recorder


def create_event(
    resource: str,
    decision: TelemetryDecision,
    cursor: Optional[str] = None,
    status: Optional[int] = None,
    elapsed_ms: float = 0.0,
    sleep_s: float = 0.0,
    headers_seen: Optional[Dict[str, str]] = None,
    page: int = 0,
    remaining: Optional[int] = None,
    reset_epoch: Optional[int] = None,
) -> TelemetryEvent:
    """
    Helper to create a telemetry event with current timestamp.

    Args:
        resource: API resource
        decision: Loop decision
        cursor: Cursor in effect
        status: HTTP status code
        elapsed_ms: Request duration in milliseconds
        sleep_s: Time slept
        headers_seen: Relevant rate limit headers
        page: Pages emitted so far
        remaining: Known remaining requests
        reset_epoch: Known reset time

    Returns:
        TelemetryEvent ready for recording
    """
    return TelemetryEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        resource=resource,
        cursor=cursor,
        status=status,
        elapsed_ms=elapsed_ms,
        decision=decision.value,
        sleep_s=sleep_s,
        headers_seen=headers_seen or {},
        page=page,
        remaining=remaining,
        reset_epoch=reset_epoch,
    )
