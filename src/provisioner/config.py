"""Configuration management with validation.

All configuration objects are frozen dataclasses validated at construction.
Invalid values raise ConfigurationError immediately rather than failing in the
middle of a wait loop.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


class TimeoutPolicy(str, Enum):
    """What a timed-out wait means to the caller.

    FAIL: the reconciliation result records the timeout as an error.
    WARN: the timeout is logged and flagged on the result, but not an error.
    """

    FAIL = "fail"
    WARN = "warn"


# Configuration constants with documented bounds
DEFAULT_BASE_URL = "https://customer.cloudamqp.com"
DEFAULT_USER_AGENT = "cloudamqp-provisioner"

DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_POLL_TIMEOUT_SECONDS = 1800
MAX_POLL_TIMEOUT_SECONDS = 24 * 3600

DEFAULT_HTTP_RETRY_TOTAL = 5
DEFAULT_HTTP_RETRY_BACKOFF_SECONDS = 2.0
MAX_HTTP_RETRY_BACKOFF_SECONDS = 60
DEFAULT_CONNECTION_TIMEOUT_SECONDS = 30
DEFAULT_READ_TIMEOUT_SECONDS = 120

# Status codes the transport retries on its own: locked, rate limited, unavailable
RETRY_STATUS_CODES: tuple[int, ...] = (423, 429, 503)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file
DEFAULT_MAX_WORKERS = 4

VALID_BASE_URL_PATTERN = r"^https?://[A-Za-z0-9.\-]+(:[0-9]+)?(/.*)?$"


@dataclass(frozen=True)
class PollConfig:
    """Interval and timeout governing every wait (Poller and JobTracker).

    Invariant: interval > 0 and timeout >= interval.
    """

    interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if self.interval <= 0:
            errors.append(f"interval must be greater than 0: {self.interval}")
        if self.timeout < self.interval:
            errors.append(
                f"timeout ({self.timeout}) must be greater than or equal to "
                f"interval ({self.interval})"
            )
        if self.timeout > MAX_POLL_TIMEOUT_SECONDS:
            errors.append(f"timeout cannot exceed {MAX_POLL_TIMEOUT_SECONDS} seconds")

        if errors:
            raise ConfigurationError(
                "Poll configuration validation failed:\n  - " + "\n  - ".join(errors)
            )

    @classmethod
    def from_seconds(cls, sleep: int | float, timeout: int | float) -> PollConfig:
        """Build from the `sleep`/`timeout` pair carried by resource configuration."""
        return cls(interval=float(sleep), timeout=float(timeout))


@dataclass(frozen=True)
class OrchestratorConfig:
    """Per-orchestrator behaviour.

    poll: None means "use the resource type's documented defaults".
    fast_destroy: skip the remote delete for objects whose parent's teardown
        cascades the removal. Faster, but there is no confirmation that the
        remote side actually removed the object.
    """

    poll: PollConfig | None = None
    fast_destroy: bool = False
    timeout_policy: TimeoutPolicy = TimeoutPolicy.FAIL


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings for the control plane API."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    user_agent: str = DEFAULT_USER_AGENT
    retry_total: int = DEFAULT_HTTP_RETRY_TOTAL
    retry_backoff_factor: float = DEFAULT_HTTP_RETRY_BACKOFF_SECONDS
    connection_timeout: int = DEFAULT_CONNECTION_TIMEOUT_SECONDS
    read_timeout: int = DEFAULT_READ_TIMEOUT_SECONDS
    # Extra attempts for a 400 "Timeout talking to backend" response
    backend_timeout_retries: int = 3
    backend_timeout_sleep: float = DEFAULT_POLL_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.api_key:
            errors.append("CLOUDAMQP_APIKEY is required")

        if not re.match(VALID_BASE_URL_PATTERN, self.base_url):
            errors.append(f"CLOUDAMQP_BASEURL must be an http(s) URL: {self.base_url}")

        if self.retry_total < 0:
            errors.append("retry_total cannot be negative")

        if not (0 <= self.retry_backoff_factor <= MAX_HTTP_RETRY_BACKOFF_SECONDS):
            errors.append(
                f"retry_backoff_factor must be between 0 and {MAX_HTTP_RETRY_BACKOFF_SECONDS}"
            )

        if self.backend_timeout_retries < 0:
            errors.append("backend_timeout_retries cannot be negative")

        if errors:
            raise ConfigurationError(
                "Client configuration validation failed:\n  - " + "\n  - ".join(errors)
            )

    def __repr__(self) -> str:
        return (
            f"ClientConfig(base_url={self.base_url!r}, user_agent={self.user_agent!r}, "
            f"api_key='***')"
        )


@dataclass(frozen=True)
class Settings:
    """Process settings loaded from the environment."""

    client: ClientConfig
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables.

        Environment Variables:
            CLOUDAMQP_APIKEY: API key for the customer API (required)
            CLOUDAMQP_BASEURL: API base URL (default: https://customer.cloudamqp.com)
            CLOUDAMQP_USER_AGENT: User agent sent with every request
            CLOUDAMQP_ENABLE_FASTER_INSTANCE_DESTROY: Skip deletes that cascade
                with the instance teardown (default: false)
            CLOUDAMQP_POLL_INTERVAL: Override every resource type's poll interval
            CLOUDAMQP_POLL_TIMEOUT: Override every resource type's poll timeout
            CLOUDAMQP_TIMEOUT_POLICY: fail or warn (default: fail)
            CLOUDAMQP_HTTP_RETRY_TOTAL: Transport retries for 423/429/503 (default: 5)
        """

        def get_int(key: str, default: int | None) -> int | None:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_policy(value: str | None) -> TimeoutPolicy:
            if not value:
                return TimeoutPolicy.FAIL
            try:
                return TimeoutPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in TimeoutPolicy]
                raise ConfigurationError(
                    f"CLOUDAMQP_TIMEOUT_POLICY must be one of {valid}: {value}"
                ) from e

        interval = get_int("CLOUDAMQP_POLL_INTERVAL", None)
        timeout = get_int("CLOUDAMQP_POLL_TIMEOUT", None)
        poll: PollConfig | None = None
        if interval is not None or timeout is not None:
            poll = PollConfig(
                interval=interval if interval is not None else DEFAULT_POLL_INTERVAL_SECONDS,
                timeout=timeout if timeout is not None else DEFAULT_POLL_TIMEOUT_SECONDS,
            )

        retry_total = get_int("CLOUDAMQP_HTTP_RETRY_TOTAL", DEFAULT_HTTP_RETRY_TOTAL)

        return cls(
            client=ClientConfig(
                api_key=os.environ.get("CLOUDAMQP_APIKEY", ""),
                base_url=os.environ.get("CLOUDAMQP_BASEURL", DEFAULT_BASE_URL),
                user_agent=os.environ.get("CLOUDAMQP_USER_AGENT", DEFAULT_USER_AGENT),
                retry_total=retry_total if retry_total is not None else DEFAULT_HTTP_RETRY_TOTAL,
            ),
            orchestrator=OrchestratorConfig(
                poll=poll,
                fast_destroy=get_bool("CLOUDAMQP_ENABLE_FASTER_INSTANCE_DESTROY", False),
                timeout_policy=get_policy(os.environ.get("CLOUDAMQP_TIMEOUT_POLICY")),
            ),
        )
