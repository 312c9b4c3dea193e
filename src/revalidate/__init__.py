"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

In-flight request coalescing and a revalidating cache client for asyncio.

Quick start::

    from revalidate import RevalidatingCacheClient, make_key

    client = RevalidatingCacheClient()
    key = make_key("/api/rates", {"startDate": "2026-01-01", "days": 7})
    sub = client.subscribe(key, fetch_rates, listener=render)
    ...
    await client.refresh(key)
    sub.unsubscribe()
    await client.close()
"""

from .client import RevalidatingCacheClient, Subscription
from .coalescer import CoalescerStats, PendingOperation, RequestCoalescer
from .contracts import CoalescingPolicy, RevalidateOptions
from .errors import (
    ClientClosedError,
    ConfigurationError,
    InvalidKeyError,
    RevalidateError,
    UnknownKeyError,
)
from .factory import create_cache_client_from_env, create_metrics
from .keys import make_key, scoped_key
from .metrics import CacheMetrics, NoOpCacheMetrics, PrometheusCacheMetrics
from .settings import CacheSettings
from .types import MISSING, CacheEntry, EntrySnapshot, EntryState, EntryStats

__all__ = [
    "RequestCoalescer",
    "PendingOperation",
    "CoalescerStats",
    "RevalidatingCacheClient",
    "Subscription",
    "CoalescingPolicy",
    "RevalidateOptions",
    "CacheEntry",
    "EntrySnapshot",
    "EntryStats",
    "EntryState",
    "MISSING",
    "make_key",
    "scoped_key",
    "CacheSettings",
    "create_cache_client_from_env",
    "create_metrics",
    "CacheMetrics",
    "NoOpCacheMetrics",
    "PrometheusCacheMetrics",
    "RevalidateError",
    "InvalidKeyError",
    "ConfigurationError",
    "UnknownKeyError",
    "ClientClosedError",
]
