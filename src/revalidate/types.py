"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Cache entry state and the read-only views handed to subscribers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from .coalescer import PendingOperation
from .contracts import RevalidateOptions

EntryState = Literal["empty", "fetching", "fresh", "stale", "error"]

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[["EntrySnapshot"], Awaitable[None] | None]

# Ordering tag of one underlying fetch: (start timestamp, dispatch sequence).
FetchTag = tuple[float, int]


class _Missing:
    """Sentinel type for "no value supplied"."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True, slots=True)
class EntrySnapshot:
    """
    Immutable view of one cache entry.

    Attributes:
        key: Cache key.
        state: Current lifecycle state.
        data: Visible data, or None when no data is visible.
        has_data: Whether `data` carries a value.
        error: Last failure, cleared by the next success.
        fetched_at_s: Clock time of the last applied successful fetch.
        retry_count: Consecutive failed attempts since the last success.
        is_validating: Whether a fetch for the key is outstanding.
    """

    key: str
    state: EntryState = "empty"
    data: Any = None
    has_data: bool = False
    error: BaseException | None = None
    fetched_at_s: float | None = None
    retry_count: int = 0
    is_validating: bool = False

    @property
    def is_loading(self) -> bool:
        """True while the first value for the key is still being fetched."""
        return self.is_validating and not self.has_data


@dataclass(frozen=True, slots=True)
class EntryStats:
    """Diagnostic counters for one cache entry."""

    key: str
    state: EntryState
    age_s: float | None
    retry_count: int
    subscribers: int
    is_validating: bool


@dataclass(slots=True)
class CacheEntry:
    """
    Mutable cache row owned by the cache client.

    `state` holds the settled state; the entry reads as "fetching" while
    `in_flight` is non-zero. `fetches` maps each caller waiting on a fetch to
    the coalesced operation it joined; operations swept by the coalescer no
    longer count as in flight. `applied_tag` is the ordering tag of the fetch
    whose outcome was last applied; completions with an older tag are
    discarded.
    """

    key: str
    options: RevalidateOptions
    fetch: Fetcher | None = None
    state: EntryState = "empty"
    data: Any = MISSING
    error: BaseException | None = None
    fetched_at_s: float | None = None
    completed_at_s: float | None = None
    retry_count: int = 0
    fetches: dict[int, PendingOperation] = field(default_factory=dict)
    applied_tag: FetchTag | None = None
    subscribers: dict[int, Listener | None] = field(default_factory=dict)
    refresh_task: asyncio.Task[None] | None = None
    retry_task: asyncio.Task[None] | None = None
    last_snapshot: EntrySnapshot | None = None

    @property
    def has_data(self) -> bool:
        return self.data is not MISSING

    @property
    def in_flight(self) -> int:
        return sum(1 for pending in self.fetches.values() if not pending.evicted)

    @property
    def current_state(self) -> EntryState:
        return "fetching" if self.in_flight > 0 else self.state

    def cancel_timers(self) -> None:
        """Cancel the periodic refresh and pending retry timers."""
        for task in (self.refresh_task, self.retry_task):
            if task is not None and not task.done():
                task.cancel()
        self.refresh_task = None
        self.retry_task = None

    def snapshot(self) -> EntrySnapshot:
        visible = self.has_data and (
            self.in_flight == 0 or self.options.keep_previous_data
        )
        return EntrySnapshot(
            key=self.key,
            state=self.current_state,
            data=self.data if visible else None,
            has_data=visible,
            error=self.error,
            fetched_at_s=self.fetched_at_s,
            retry_count=self.retry_count,
            is_validating=self.in_flight > 0,
        )
