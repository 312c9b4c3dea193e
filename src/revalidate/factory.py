"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Factory helpers for building a cache client from environment variables.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .client import RevalidatingCacheClient
from .coalescer import RequestCoalescer
from .metrics import CacheMetrics, NoOpCacheMetrics
from .settings import CacheSettings


def create_metrics(settings: CacheSettings, *, registry=None) -> CacheMetrics:
    """
    Resolve the metrics backend named by `settings.metrics_backend`.

    Backends:
    - `none` (default)
    - `prometheus`
    """
    backend = settings.metrics_backend
    if backend in ("none", "noop", "null", ""):
        return NoOpCacheMetrics()
    if backend in ("prometheus", "prom"):
        from .metrics import PrometheusCacheMetrics

        return PrometheusCacheMetrics(
            namespace=settings.metrics_namespace, registry=registry
        )
    raise ValueError(f"Unknown REVALIDATE_METRICS_BACKEND: {backend}")


def create_cache_client_from_env(
    *,
    settings: CacheSettings | None = None,
    metrics: CacheMetrics | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> RevalidatingCacheClient:
    """
    Create a cache client from `REVALIDATE_*` environment variables.

    An explicit `settings` object skips the environment; an explicit
    `metrics` sink overrides `REVALIDATE_METRICS_BACKEND`.
    """
    resolved = settings or CacheSettings.from_env()
    sink = metrics if metrics is not None else create_metrics(resolved)
    coalescer = RequestCoalescer(
        resolved.to_coalescing_policy(), clock=clock, metrics=sink
    )
    return RevalidatingCacheClient(
        coalescer,
        defaults=resolved.to_options(),
        clock=clock,
        metrics=sink,
    )
