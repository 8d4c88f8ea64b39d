"""
Configuration module for fetch runs.

This module provides the immutable run configuration, the API profile
(loadable from YAML) describing the paginated API's dialect, and the
read-only credentials file used by the request executor.
"""
# [CTX:PBI-1:1-1:CFG]

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CREDENTIALS_ENV_VAR = "PAGEWALK_CREDENTIALS"

DEFAULT_TIMEOUT_S = 60
DEFAULT_DELAY_FALLBACK_S = 30
DEFAULT_DELAY_LIMIT_S = 900


class ConfigValidationError(ValueError):
    """Raised when run parameters, profile or credentials are invalid."""
    pass


@dataclass(frozen=True)
class HeaderConfig:
    """Names of the rate limit response headers (matched lower-case)."""

    remaining: str = "x-rate-limit-remaining"
    limit: str = "x-rate-limit-limit"
    reset: str = "x-rate-limit-reset"

    def __post_init__(self):
        object.__setattr__(self, "remaining", self.remaining.lower())
        object.__setattr__(self, "limit", self.limit.lower())
        object.__setattr__(self, "reset", self.reset.lower())


@dataclass(frozen=True)
class ApiProfile:
    """How the target API spells cursors, rate-limit errors and headers."""

    base_url: Optional[str] = None
    cursor_param: str = "cursor"
    next_cursor_field: str = "next_cursor_str"
    terminal_cursor: str = "0"
    rate_limit_code: int = 88
    headers: HeaderConfig = field(default_factory=HeaderConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApiProfile":
        """Create ApiProfile from dictionary."""
        headers_data = data.get("headers") or {}
        if not isinstance(headers_data, dict):
            raise ConfigValidationError("profile headers must be a mapping")
        try:
            headers = HeaderConfig(**headers_data)
        except TypeError as e:
            raise ConfigValidationError(f"unknown header setting: {e}")

        return cls(
            base_url=data.get("base_url"),
            cursor_param=data.get("cursor_param", "cursor"),
            next_cursor_field=data.get("next_cursor_field", "next_cursor_str"),
            terminal_cursor=str(data.get("terminal_cursor", "0")),
            rate_limit_code=data.get("rate_limit_code", 88),
            headers=headers,
        )


@dataclass(frozen=True)
class Credentials:
    """
    Credentials read from a YAML file.

    Acquiring or refreshing them is done elsewhere; this is only the
    stored result, e.g.::

        bearer_token: AAAA...
        base_url: https://api.example.com/1.1
        headers:
          User-Agent: pagewalk
    """

    bearer_token: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    base_url: Optional[str] = None

    def auth_headers(self) -> dict[str, str]:
        """Headers to send with every request."""
        result = dict(self.headers)
        if self.bearer_token:
            result["Authorization"] = f"Bearer {self.bearer_token}"
        return result


@dataclass(frozen=True)
class DelayPolicy:
    """Bounds and abort switches for the delay scheduler."""

    delay_fallback: int = DEFAULT_DELAY_FALLBACK_S
    delay_limit: int = DEFAULT_DELAY_LIMIT_S
    exit_on_limit: bool = False
    exit_on_delay: bool = False


@dataclass(frozen=True)
class FetchConfig:
    """
    Immutable parameters for one fetch run.

    Attributes:
        resource: API path, relative to the base URL, without leading slash
        params: Extra request parameters as (key, value) pairs
        method: GET or POST
        credentials_path: Credentials file passed to the executor
        base_url: Base URL the resource is resolved against
        cursor: Cursor to resume at, None for a fresh start
        max_pages: Stop after this many pages, None for unbounded
        state_path: Where rate limit state is persisted, None to disable
        timeout_s: Per-request timeout handed to the executor
        policy: Delay scheduler bounds and abort switches
        verbose: Progress logging to stderr
        refill_after_wait: Assume a full window after a pre-emptive wait
        profile: API dialect settings
    """

    resource: str
    params: tuple[tuple[str, str], ...] = ()
    method: str = "GET"
    credentials_path: Optional[Path] = None
    base_url: Optional[str] = None
    cursor: Optional[str] = None
    max_pages: Optional[int] = None
    state_path: Optional[Path] = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    policy: DelayPolicy = field(default_factory=DelayPolicy)
    verbose: bool = False
    refill_after_wait: bool = True
    profile: ApiProfile = field(default_factory=ApiProfile)

    @property
    def url(self) -> str:
        """Full URL of the resource."""
        base = self.base_url or self.profile.base_url
        if not base:
            return self.resource
        return f"{base.rstrip('/')}/{self.resource}"


def parse_param(raw: str) -> tuple[str, str]:
    """
    Split a ``key=value`` argument.

    Raises:
        ConfigValidationError: If there is no '=' or the key is empty
    """
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise ConfigValidationError(f"parameter must look like key=value: {raw!r}")
    return key, value


def _read_yaml(path: Path, what: str) -> dict[str, Any]:
    if not path.exists():
        raise ConfigValidationError(f"{what} file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"cannot read {what} file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{what} file {path} must contain a mapping")
    return data


def load_profile(profile_path: str | Path | None = None) -> ApiProfile:
    """
    Load the API profile from a YAML file.

    Args:
        profile_path: Path to profile. If None, the built-in defaults are used.

    Returns:
        Validated ApiProfile

    Raises:
        ConfigValidationError: If the file is missing, unreadable or invalid
    """
    if profile_path is None:
        return ApiProfile()

    data = _read_yaml(Path(profile_path), "profile")
    profile = ApiProfile.from_dict(data)
    validate_profile(profile)
    return profile


def load_credentials(credentials_path: str | Path | None) -> Credentials:
    """
    Load credentials from YAML. None yields anonymous credentials.

    Raises:
        ConfigValidationError: If the file is missing or malformed
    """
    if credentials_path is None:
        return Credentials()

    data = _read_yaml(Path(credentials_path), "credentials")
    headers = data.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigValidationError("credentials headers must be a mapping")
    return Credentials(
        bearer_token=data.get("bearer_token"),
        headers={str(k): str(v) for k, v in headers.items()},
        base_url=data.get("base_url"),
    )


def default_credentials_path() -> Optional[Path]:
    """Credentials path from the environment, if set."""
    value = os.getenv(CREDENTIALS_ENV_VAR)
    return Path(value) if value else None


def validate_profile(profile: ApiProfile) -> None:
    """
    Validate an API profile.

    Raises:
        ConfigValidationError: If the profile is invalid
    """
    if not profile.cursor_param:
        raise ConfigValidationError("cursor_param must not be empty")
    if not profile.next_cursor_field:
        raise ConfigValidationError("next_cursor_field must not be empty")
    if not isinstance(profile.rate_limit_code, int) or isinstance(profile.rate_limit_code, bool):
        raise ConfigValidationError("rate_limit_code must be an integer")


def validate_config(config: FetchConfig) -> None:
    """
    Validate run configuration before any request is made.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    if not config.resource:
        raise ConfigValidationError("resource must not be empty")

    if config.method not in ("GET", "POST"):
        raise ConfigValidationError(f"unsupported method {config.method}")

    if config.max_pages is not None and config.max_pages < 0:
        raise ConfigValidationError("max pages must not be negative")

    if config.timeout_s <= 0:
        raise ConfigValidationError("timeout must be positive")

    policy = config.policy
    if policy.delay_fallback < 1:
        raise ConfigValidationError("fallback delay must be at least 1 second")

    if policy.delay_limit < 1:
        raise ConfigValidationError("delay limit must be at least 1 second")

    if policy.delay_fallback > policy.delay_limit:
        raise ConfigValidationError(
            f"fallback delay {policy.delay_fallback}s exceeds delay limit {policy.delay_limit}s"
        )

    if config.cursor is not None and not config.cursor:
        raise ConfigValidationError("cursor must not be empty")

    validate_profile(config.profile)
