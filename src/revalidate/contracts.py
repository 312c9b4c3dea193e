"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Typed policies for request coalescing and cache revalidation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any

from .errors import ConfigurationError

SuccessHook = Callable[[str, Any], Awaitable[None] | None]
ErrorHook = Callable[[str, BaseException], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class CoalescingPolicy:
    """In-flight request deduplication controls."""

    enabled: bool = True
    timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ConfigurationError("timeout_s must be > 0")


@dataclass(frozen=True, slots=True)
class RevalidateOptions:
    """
    Per-key revalidation policy.

    Attributes:
        revalidate_on_focus: Dispatch a passive fetch when the application
            regains the foreground.
        revalidate_on_reconnect: Dispatch a passive fetch after connectivity
            is restored.
        revalidate_if_stale: Whether a stale entry alone triggers a fetch on
            subscribe.
        deduping_interval_s: Suppress non-forced fetches when the previous
            one completed within this window.
        refresh_interval_s: Period of passive refreshes; 0 disables them.
        should_retry_on_error: Schedule retries after failed fetches.
        error_retry_count: Maximum attempts per retry cycle.
        error_retry_interval_s: Delay before the first retry.
        error_retry_backoff: Delay multiplier between consecutive retries.
        error_retry_max_s: Upper bound for a single retry delay.
        error_retry_jitter_s: Random jitter added to each retry delay.
        keep_previous_data: Keep exposing the last data while a new fetch
            for the key is outstanding.
        revalidate_after_force: Follow a forced refresh with a passive fetch.
        on_success: Hook called with `(key, data)` after a successful fetch.
        on_error: Hook called with `(key, error)` after a failed fetch.
    """

    revalidate_on_focus: bool = True
    revalidate_on_reconnect: bool = True
    revalidate_if_stale: bool = True
    deduping_interval_s: float = 2.0
    refresh_interval_s: float = 0.0
    should_retry_on_error: bool = True
    error_retry_count: int = 3
    error_retry_interval_s: float = 5.0
    error_retry_backoff: float = 1.0
    error_retry_max_s: float = 60.0
    error_retry_jitter_s: float = 0.0
    keep_previous_data: bool = False
    revalidate_after_force: bool = False
    on_success: SuccessHook | None = None
    on_error: ErrorHook | None = None

    def __post_init__(self) -> None:
        if self.deduping_interval_s < 0:
            raise ConfigurationError("deduping_interval_s must be >= 0")
        if self.refresh_interval_s < 0:
            raise ConfigurationError("refresh_interval_s must be >= 0")
        if self.error_retry_count < 0:
            raise ConfigurationError("error_retry_count must be >= 0")
        if self.error_retry_interval_s < 0:
            raise ConfigurationError("error_retry_interval_s must be >= 0")
        if self.error_retry_backoff < 1.0:
            raise ConfigurationError("error_retry_backoff must be >= 1.0")
        if self.error_retry_max_s < 0:
            raise ConfigurationError("error_retry_max_s must be >= 0")
        if self.error_retry_jitter_s < 0:
            raise ConfigurationError("error_retry_jitter_s must be >= 0")

    def merged(self, **overrides: Any) -> RevalidateOptions:
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)
