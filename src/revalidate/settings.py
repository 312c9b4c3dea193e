"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Cache settings and explicit config loading.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .contracts import CoalescingPolicy, RevalidateOptions


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True, slots=True)
class CacheSettings:
    """Explicit settings used to build coalescers and cache clients."""

    coalesce_enabled: bool = True
    coalesce_timeout_s: float = 30.0

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

    metrics_backend: str = "none"
    metrics_namespace: str = "revalidate"

    @staticmethod
    def from_env() -> "CacheSettings":
        """Load settings from `REVALIDATE_*` environment variables."""
        return CacheSettings(
            coalesce_enabled=_env_bool("REVALIDATE_COALESCE_ENABLED", True),
            coalesce_timeout_s=float(os.getenv("REVALIDATE_COALESCE_TIMEOUT_S", "30")),
            revalidate_on_focus=_env_bool("REVALIDATE_REVALIDATE_ON_FOCUS", True),
            revalidate_on_reconnect=_env_bool("REVALIDATE_REVALIDATE_ON_RECONNECT", True),
            revalidate_if_stale=_env_bool("REVALIDATE_REVALIDATE_IF_STALE", True),
            deduping_interval_s=float(os.getenv("REVALIDATE_DEDUPING_INTERVAL_S", "2")),
            refresh_interval_s=float(os.getenv("REVALIDATE_REFRESH_INTERVAL_S", "0")),
            should_retry_on_error=_env_bool("REVALIDATE_SHOULD_RETRY_ON_ERROR", True),
            error_retry_count=int(os.getenv("REVALIDATE_ERROR_RETRY_COUNT", "3")),
            error_retry_interval_s=float(
                os.getenv("REVALIDATE_ERROR_RETRY_INTERVAL_S", "5")
            ),
            error_retry_backoff=float(os.getenv("REVALIDATE_ERROR_RETRY_BACKOFF", "1")),
            error_retry_max_s=float(os.getenv("REVALIDATE_ERROR_RETRY_MAX_S", "60")),
            error_retry_jitter_s=float(
                os.getenv("REVALIDATE_ERROR_RETRY_JITTER_S", "0")
            ),
            keep_previous_data=_env_bool("REVALIDATE_KEEP_PREVIOUS_DATA", False),
            metrics_backend=os.getenv("REVALIDATE_METRICS_BACKEND", "none").strip().lower()
            or "none",
            metrics_namespace=os.getenv("REVALIDATE_METRICS_NAMESPACE", "revalidate"),
        )

    def to_coalescing_policy(self) -> CoalescingPolicy:
        return CoalescingPolicy(
            enabled=self.coalesce_enabled,
            timeout_s=self.coalesce_timeout_s,
        )

    def to_options(self) -> RevalidateOptions:
        """Build the default per-key options described by these settings."""
        return RevalidateOptions(
            revalidate_on_focus=self.revalidate_on_focus,
            revalidate_on_reconnect=self.revalidate_on_reconnect,
            revalidate_if_stale=self.revalidate_if_stale,
            deduping_interval_s=self.deduping_interval_s,
            refresh_interval_s=self.refresh_interval_s,
            should_retry_on_error=self.should_retry_on_error,
            error_retry_count=self.error_retry_count,
            error_retry_interval_s=self.error_retry_interval_s,
            error_retry_backoff=self.error_retry_backoff,
            error_retry_max_s=self.error_retry_max_s,
            error_retry_jitter_s=self.error_retry_jitter_s,
            keep_previous_data=self.keep_previous_data,
        )
