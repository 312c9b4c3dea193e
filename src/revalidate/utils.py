"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Small helpers shared by the coalescer and cache client.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from random import random
from typing import Any, TypeVar

from .errors import InvalidKeyError

T = TypeVar("T")


def ensure_key(key: object) -> str:
    """Validate a coalescing/cache key and return it unchanged."""
    if not isinstance(key, str):
        raise InvalidKeyError(f"Key must be a string, got {type(key).__name__}")
    if not key.strip():
        raise InvalidKeyError("Key must be non-empty")
    return key


async def resolve(fn: Callable[[], Awaitable[T] | T]) -> T:
    """Call `fn` and await its result when it returns an awaitable."""
    result: Any = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


def backoff_delay(
    attempt: int,
    base_s: float,
    *,
    multiplier: float = 1.0,
    max_s: float | None = None,
    jitter_s: float = 0.0,
) -> float:
    """
    Compute the delay before retry number `attempt` (1-based).

    A multiplier of 1.0 spaces retries evenly by `base_s`; larger values grow
    the delay geometrically, capped at `max_s`, plus up to `jitter_s` of
    random jitter.
    """
    if base_s <= 0:
        base = 0.0
    else:
        base = base_s * (multiplier ** max(0, attempt - 1))
    capped = base if max_s is None else min(base, max_s)
    jitter = random() * jitter_s if jitter_s > 0 else 0.0
    return max(0.0, capped + jitter)
