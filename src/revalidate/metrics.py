"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Metrics adapters for coalescer and cache client observability.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Protocol

_METRIC_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class CacheMetrics(Protocol):
    """Minimal metrics interface for coalescer and cache instrumentation."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        """Increment a counter metric."""


class NoOpCacheMetrics:
    """Default metrics sink when no metrics backend is provided."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        _ = name
        _ = value
        _ = tags


class PrometheusCacheMetrics(CacheMetrics):
    """
    Prometheus-backed metrics adapter.

    Requires `prometheus_client` package. Pass a dedicated `registry` to
    keep counters out of the process-global default registry.

    Each metric name maps to one counter whose label names are fixed by its
    first use; later increments must carry the same tag keys.
    """

    def __init__(self, *, namespace: str = "revalidate", registry=None) -> None:
        try:
            from prometheus_client import REGISTRY, Counter
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise RuntimeError(
                "PrometheusCacheMetrics requires `prometheus_client` to be installed."
            ) from exc

        self._Counter = Counter
        self._namespace = namespace
        self._registry = registry if registry is not None else REGISTRY
        self._counters: dict[str, tuple[Any, tuple[str, ...]]] = {}

    def incr(self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None) -> None:
        if value < 0:
            raise ValueError(f"Counter '{name}' cannot be decremented (got {value})")
        labels = {label: str(tags[label]) for label in sorted(tags or {})}
        counter = self._counter(name, tuple(labels))
        if labels:
            counter.labels(**labels).inc(value)
        else:
            counter.inc(value)

    def _counter(self, name: str, label_names: tuple[str, ...]) -> Any:
        cached = self._counters.get(name)
        if cached is not None:
            counter, known = cached
            if known != label_names:
                raise ValueError(
                    f"Metric '{name}' uses labels {list(known)}, got {list(label_names)}"
                )
            return counter

        if not _METRIC_NAME.match(name):
            raise ValueError(f"Invalid metric name: {name!r}")
        counter = self._Counter(
            name=name,
            documentation=f"revalidate cache metric {name}",
            namespace=self._namespace,
            labelnames=label_names,
            registry=self._registry,
        )
        self._counters[name] = (counter, label_names)
        return counter
