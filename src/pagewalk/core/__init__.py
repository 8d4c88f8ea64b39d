"""Core interfaces and types for the rate-limited pagination loop."""

from pagewalk.core.config import (
    ApiProfile,
    ConfigValidationError,
    Credentials,
    DelayPolicy,
    FetchConfig,
    HeaderConfig,
    load_credentials,
    load_profile,
    validate_config,
    validate_profile,
)
from pagewalk.core.datasource import (
    Classification,
    ExecutionResult,
    PageResult,
    RawResponse,
    RequestExecutor,
    RequestSpec,
    Verdict,
    classify_response,
)
from pagewalk.core.paginator import FetchOutcome, LoopContext, LoopState, PaginationLoop
from pagewalk.core.rate_limiter import (
    DelayDecision,
    ExitCode,
    FakeTimeProvider,
    HeaderMap,
    RateLimitState,
    RateLimitUpdate,
    SystemTimeProvider,
    TimeProvider,
    compute_delay,
    extract_rate_limit,
)
from pagewalk.core.state_store import (
    FileStateStore,
    NullStateStore,
    StateStore,
    open_state_store,
)

__all__ = [
    # config
    "ApiProfile",
    "ConfigValidationError",
    "Credentials",
    "DelayPolicy",
    "FetchConfig",
    "HeaderConfig",
    "load_credentials",
    "load_profile",
    "validate_config",
    "validate_profile",
    # datasource
    "Classification",
    "ExecutionResult",
    "PageResult",
    "RawResponse",
    "RequestExecutor",
    "RequestSpec",
    "Verdict",
    "classify_response",
    # paginator
    "FetchOutcome",
    "LoopContext",
    "LoopState",
    "PaginationLoop",
    # rate_limiter
    "DelayDecision",
    "ExitCode",
    "FakeTimeProvider",
    "HeaderMap",
    "RateLimitState",
    "RateLimitUpdate",
    "SystemTimeProvider",
    "TimeProvider",
    "compute_delay",
    "extract_rate_limit",
    # state_store
    "FileStateStore",
    "NullStateStore",
    "StateStore",
    "open_state_store",
]
