"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Revalidating cache client built on top of the request coalescer.

Each key owns one `CacheEntry`. Fetches for a key always go through the
coalescer and are applied to the entry from inside the coalesced operation,
so every underlying fetch updates the cache exactly once. Completions are
ordered by the time their fetch started: a slow fetch that started earlier
never overwrites the outcome of one that started later.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from .coalescer import PendingOperation, RequestCoalescer
from .contracts import RevalidateOptions
from .errors import ClientClosedError, UnknownKeyError
from .metrics import CacheMetrics, NoOpCacheMetrics
from .types import (
    MISSING,
    CacheEntry,
    EntrySnapshot,
    EntryStats,
    Fetcher,
    FetchTag,
    Listener,
)
from .utils import backoff_delay, ensure_key, resolve

logger = logging.getLogger("revalidate.client")


def _changed(previous: EntrySnapshot | None, current: EntrySnapshot) -> bool:
    if previous is None:
        return True
    return (
        previous.state != current.state
        or previous.has_data != current.has_data
        or previous.data is not current.data
        or previous.error is not current.error
        or previous.retry_count != current.retry_count
        or previous.is_validating != current.is_validating
    )


class Subscription:
    """
    Handle returned by `RevalidatingCacheClient.subscribe`.

    `initial` is the entry state at subscribe time; `current` always reads
    the latest state. Usable as a context manager that unsubscribes on exit.
    """

    def __init__(
        self,
        client: RevalidatingCacheClient,
        key: str,
        token: int,
        initial: EntrySnapshot,
    ) -> None:
        self._client = client
        self._key = key
        self._token = token
        self._active = True
        self.initial = initial

    @property
    def key(self) -> str:
        return self._key

    @property
    def active(self) -> bool:
        return self._active

    @property
    def current(self) -> EntrySnapshot:
        return self._client.get(self._key)

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._client._unsubscribe(self._key, self._token)  # noqa: SLF001

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        return f"Subscription(key={self._key!r}, active={self._active})"


class RevalidatingCacheClient:
    """
    Key-based cache with background revalidation, retry and manual refresh.

    All methods must be called from the event loop that drives the client.
    `subscribe` and `mutate` are synchronous; fetches they trigger run as
    background tasks.
    """

    def __init__(
        self,
        coalescer: RequestCoalescer | None = None,
        *,
        defaults: RevalidateOptions | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: CacheMetrics | None = None,
    ) -> None:
        self._metrics: CacheMetrics = metrics or NoOpCacheMetrics()
        self._owns_coalescer = coalescer is None
        self._coalescer = coalescer or RequestCoalescer(
            clock=clock, metrics=self._metrics
        )
        self._defaults = defaults or RevalidateOptions()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._sequence = itertools.count(1)
        self._tokens = itertools.count(1)
        self._closed = False

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    @property
    def defaults(self) -> RevalidateOptions:
        return self._defaults

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def subscribe(
        self,
        key: str,
        fetch: Fetcher,
        options: RevalidateOptions | None = None,
        *,
        listener: Listener | None = None,
    ) -> Subscription:
        """
        Register interest in `key` and trigger a fetch when needed.

        A background fetch is dispatched when the entry has no data, is in
        the error state, is stale (and `revalidate_if_stale` is set) or its
        refresh interval elapsed, unless the previous fetch completed within
        `deduping_interval_s`. `listener` receives an `EntrySnapshot` each
        time the entry changes.
        """
        self._ensure_open()
        ensure_key(key)
        entry = self._entry_for(key, fetch=fetch, options=options)
        token = next(self._tokens)
        entry.subscribers[token] = listener

        now = self._clock()
        reason = self._subscribe_reason(entry, now)
        if reason is not None:
            if self._within_dedupe(entry, now):
                self._metrics.incr("cache_fetch_deduped_total")
                logger.debug("Deduped %s fetch for key '%s'", reason, key)
            else:
                self._dispatch(entry, reason=reason)
        self._ensure_refresh_timer(entry)
        return Subscription(self, key, token, entry.snapshot())

    async def refresh(self, key: str, fetch: Fetcher | None = None) -> Any:
        """
        Force a fetch for `key` regardless of freshness and return its value.

        The deduping window does not apply. A pending error retry is
        cancelled and the refresh interval restarts from this fetch. The
        fetch failure, if any, is raised to the caller.
        """
        self._ensure_open()
        ensure_key(key)
        entry = self._entries.get(key)
        if entry is None:
            if fetch is None:
                raise UnknownKeyError(f"No fetch registered for key '{key}'")
            entry = self._entry_for(key, fetch=fetch, options=None)
        elif fetch is not None:
            entry.fetch = fetch
        elif entry.fetch is None:
            raise UnknownKeyError(f"No fetch registered for key '{key}'")

        self._cancel_retry(entry)
        pending = self._begin(entry, reason="refresh", attempt=1)
        try:
            value = await asyncio.shield(pending.future)
        finally:
            self._restart_refresh_timer(entry)

        if entry.options.revalidate_after_force and not self._closed:
            if entry.state == "fresh":
                entry.state = "stale"
            self._dispatch(entry, reason="after-force")
        return value

    def mutate(
        self,
        key: str,
        data: Any = MISSING,
        *,
        revalidate: bool = False,
    ) -> EntrySnapshot:
        """
        Optimistically replace the cached data for `key` without fetching.

        The next real fetch completion overwrites the value. Without `data`
        the entry is only marked stale. With `revalidate` a background fetch
        is dispatched right away.
        """
        self._ensure_open()
        ensure_key(key)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entry_for(key, fetch=None, options=None)
        if data is not MISSING:
            entry.data = data
        if entry.state != "error" and (entry.has_data or entry.state != "empty"):
            entry.state = "stale"
        self._notify(entry)

        if revalidate:
            if entry.fetch is None:
                raise UnknownKeyError(f"No fetch registered for key '{key}'")
            self._dispatch(entry, reason="mutate")
        return entry.snapshot()

    async def revalidate(self, key: str) -> EntrySnapshot:
        """
        Run a passive fetch for `key` and return the resulting snapshot.

        Honors the deduping window and joins a fetch that is already in
        flight. Failures are recorded on the entry, not raised.
        """
        self._ensure_open()
        ensure_key(key)
        entry = self._entries.get(key)
        if entry is None or entry.fetch is None:
            raise UnknownKeyError(f"No fetch registered for key '{key}'")

        if not self._sweep_fetches(entry) and self._within_dedupe(entry, self._clock()):
            self._metrics.incr("cache_fetch_deduped_total")
            return entry.snapshot()
        self._cancel_retry(entry)
        pending = self._begin(entry, reason="manual", attempt=1)
        try:
            await asyncio.shield(pending.future)
        except Exception as error:  # noqa: BLE001
            logger.debug("Revalidation of key '%s' failed: %r", key, error)
        return entry.snapshot()

    def notify_focus(self) -> int:
        """Revalidate subscribed entries that opted into focus revalidation."""
        return self._revalidate_subscribed("focus", lambda o: o.revalidate_on_focus)

    def notify_reconnect(self) -> int:
        """Revalidate subscribed entries that opted into reconnect revalidation."""
        return self._revalidate_subscribed(
            "reconnect", lambda o: o.revalidate_on_reconnect
        )

    def get(self, key: str) -> EntrySnapshot:
        entry = self._entries.get(key)
        if entry is None:
            return EntrySnapshot(key=key)
        self._sweep_fetches(entry)
        self._interval_elapsed(entry, self._clock())
        return entry.snapshot()

    def entry_stats(self, key: str) -> EntryStats | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        self._sweep_fetches(entry)
        self._interval_elapsed(entry, now)
        return EntryStats(
            key=key,
            state=entry.current_state,
            age_s=None if entry.fetched_at_s is None else now - entry.fetched_at_s,
            retry_count=entry.retry_count,
            subscribers=len(entry.subscribers),
            is_validating=entry.in_flight > 0,
        )

    def keys(self) -> list[str]:
        return list(self._entries)

    def evict(self, key: str) -> bool:
        """Drop the entry for `key` and cancel its timers."""
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        entry.cancel_timers()
        entry.subscribers.clear()
        return True

    async def close(self) -> None:
        """Cancel timers and background fetches; the client is unusable afterwards."""
        if self._closed:
            return
        self._closed = True
        for entry in self._entries.values():
            entry.cancel_timers()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_coalescer:
            await self._coalescer.close()

    # ------------------------------------------------------------------
    # Entry bookkeeping
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError("RevalidatingCacheClient is closed")

    def _entry_for(
        self,
        key: str,
        *,
        fetch: Fetcher | None,
        options: RevalidateOptions | None,
    ) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key, options=options or self._defaults, fetch=fetch)
            self._entries[key] = entry
            return entry
        if fetch is not None:
            entry.fetch = fetch
        if options is not None and options is not entry.options:
            interval_changed = (
                options.refresh_interval_s != entry.options.refresh_interval_s
            )
            entry.options = options
            if interval_changed:
                self._cancel_refresh(entry)
        return entry

    def _unsubscribe(self, key: str, token: int) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.subscribers.pop(token, None)
        if not entry.subscribers:
            # In-flight fetches keep running and still update the entry.
            entry.cancel_timers()

    def _interval_elapsed(self, entry: CacheEntry, now: float) -> bool:
        interval = entry.options.refresh_interval_s
        if interval <= 0 or entry.fetched_at_s is None:
            return False
        if now - entry.fetched_at_s < interval:
            return False
        if entry.state == "fresh":
            entry.state = "stale"
        return True

    def _sweep_fetches(self, entry: CacheEntry) -> int:
        """Let the coalescer sweep hung fetches and return what is still in flight."""
        if self._coalescer.sweep():
            self._notify(entry)
        return entry.in_flight

    def _subscribe_reason(self, entry: CacheEntry, now: float) -> str | None:
        if self._sweep_fetches(entry):
            return None
        if entry.fetch is None:
            return None
        if entry.state == "error":
            return "error"
        if not entry.has_data:
            return "initial"
        if self._interval_elapsed(entry, now):
            return "interval"
        if entry.state == "stale" and entry.options.revalidate_if_stale:
            return "stale"
        return None

    def _within_dedupe(self, entry: CacheEntry, now: float) -> bool:
        if entry.completed_at_s is None:
            return False
        return now - entry.completed_at_s < entry.options.deduping_interval_s

    def _revalidate_subscribed(
        self, reason: str, enabled: Callable[[RevalidateOptions], bool]
    ) -> int:
        self._ensure_open()
        dispatched = 0
        for entry in list(self._entries.values()):
            if not entry.subscribers or not enabled(entry.options):
                continue
            if entry.state == "fresh":
                entry.state = "stale"
                self._notify(entry)
            if self._dispatch_passive(entry, reason=reason):
                dispatched += 1
        return dispatched

    # ------------------------------------------------------------------
    # Fetch dispatch
    # ------------------------------------------------------------------

    def _dispatch_passive(self, entry: CacheEntry, *, reason: str) -> bool:
        if entry.fetch is None or self._sweep_fetches(entry):
            return False
        if self._within_dedupe(entry, self._clock()):
            self._metrics.incr("cache_fetch_deduped_total")
            logger.debug("Deduped %s fetch for key '%s'", reason, entry.key)
            return False
        self._dispatch(entry, reason=reason)
        return True

    def _dispatch(
        self, entry: CacheEntry, *, reason: str, attempt: int = 1
    ) -> asyncio.Task[None]:
        if reason != "retry":
            # Any non-retry fetch starts a new retry cycle.
            self._cancel_retry(entry)
        pending = self._begin(entry, reason=reason, attempt=attempt)
        return self._spawn(self._background_fetch(entry, pending, reason=reason))

    async def _background_fetch(
        self, entry: CacheEntry, pending: PendingOperation, *, reason: str
    ) -> None:
        try:
            await asyncio.shield(pending.future)
        except asyncio.CancelledError:
            raise
        except Exception as error:  # noqa: BLE001
            # Already recorded on the entry and delivered to subscribers.
            logger.debug(
                "Background %s fetch for key '%s' failed: %r", reason, entry.key, error
            )

    def _begin(self, entry: CacheEntry, *, reason: str, attempt: int) -> PendingOperation:
        """
        Join the coalesced fetch for the entry's key, starting one when absent.

        The join happens before any suspension point, so the entry counts the
        fetch as in flight from the moment it is dispatched until its outcome
        settles or the coalescer sweeps it.
        """
        fetch = entry.fetch
        if fetch is None:
            raise UnknownKeyError(f"No fetch registered for key '{entry.key}'")
        pending = self._coalescer.join(
            entry.key,
            lambda: self._execute(entry, fetch, reason=reason, attempt=attempt),
        )
        token = next(self._tokens)
        entry.fetches[token] = pending
        pending.future.add_done_callback(
            lambda _future: self._settle(entry, token)
        )
        self._notify(entry)
        return pending

    def _settle(self, entry: CacheEntry, token: int) -> None:
        entry.fetches.pop(token, None)
        self._notify(entry)

    async def _execute(
        self, entry: CacheEntry, fetch: Fetcher, *, reason: str, attempt: int
    ) -> Any:
        tag: FetchTag = (self._clock(), next(self._sequence))
        try:
            value = await resolve(fetch)
        except Exception as error:
            self._metrics.incr(
                "cache_fetch_total", tags={"outcome": "failure", "reason": reason}
            )
            self._apply_failure(entry, tag, error, attempt=attempt)
            raise
        self._metrics.incr(
            "cache_fetch_total", tags={"outcome": "success", "reason": reason}
        )
        self._apply_success(entry, tag, value)
        return value

    def _is_stale_completion(self, entry: CacheEntry, tag: FetchTag) -> bool:
        # Discarded completions leave the dedupe window untouched.
        if entry.applied_tag is not None and tag <= entry.applied_tag:
            self._metrics.incr("cache_fetch_discarded_total")
            logger.debug(
                "Discarded completion for key '%s' started at %.3f (applied: %.3f)",
                entry.key,
                tag[0],
                entry.applied_tag[0],
            )
            return True
        entry.applied_tag = tag
        entry.completed_at_s = self._clock()
        return False

    def _apply_success(self, entry: CacheEntry, tag: FetchTag, value: Any) -> None:
        if self._is_stale_completion(entry, tag):
            return
        entry.data = value
        entry.error = None
        entry.retry_count = 0
        entry.fetched_at_s = entry.completed_at_s
        entry.state = "fresh"
        self._cancel_retry(entry)
        self._notify(entry)
        self._call_hook(entry.options.on_success, entry.key, value)

    def _apply_failure(
        self, entry: CacheEntry, tag: FetchTag, error: Exception, *, attempt: int
    ) -> None:
        if self._is_stale_completion(entry, tag):
            return
        entry.error = error
        entry.retry_count += 1
        entry.state = "error"
        self._notify(entry)
        self._call_hook(entry.options.on_error, entry.key, error)
        self._schedule_retry(entry, attempt=attempt)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule_retry(self, entry: CacheEntry, *, attempt: int) -> None:
        options = entry.options
        if not options.should_retry_on_error or self._closed:
            return
        if not entry.subscribers or self._entries.get(entry.key) is not entry:
            return
        if attempt >= options.error_retry_count:
            self._metrics.incr("cache_retry_exhausted_total")
            logger.info(
                "Retries exhausted for key '%s' after %d attempt(s)",
                entry.key,
                attempt,
            )
            return

        delay_s = backoff_delay(
            attempt,
            options.error_retry_interval_s,
            multiplier=options.error_retry_backoff,
            max_s=options.error_retry_max_s,
            jitter_s=options.error_retry_jitter_s,
        )
        self._cancel_retry(entry)
        self._metrics.incr("cache_retry_scheduled_total")
        logger.debug(
            "Scheduling retry %d for key '%s' in %.2fs", attempt + 1, entry.key, delay_s
        )
        entry.retry_task = self._spawn(
            self._retry_after(entry, delay_s=delay_s, attempt=attempt + 1)
        )

    async def _retry_after(self, entry: CacheEntry, *, delay_s: float, attempt: int) -> None:
        await asyncio.sleep(delay_s)
        if entry.retry_task is asyncio.current_task():
            entry.retry_task = None
        if self._closed or self._entries.get(entry.key) is not entry:
            return
        if not entry.subscribers:
            return
        self._dispatch(entry, reason="retry", attempt=attempt)

    def _cancel_retry(self, entry: CacheEntry) -> None:
        task = entry.retry_task
        entry.retry_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _ensure_refresh_timer(self, entry: CacheEntry) -> None:
        if self._closed or entry.options.refresh_interval_s <= 0:
            return
        if not entry.subscribers:
            return
        if entry.refresh_task is not None and not entry.refresh_task.done():
            return
        entry.refresh_task = self._spawn(self._refresh_loop(entry))

    def _cancel_refresh(self, entry: CacheEntry) -> None:
        task = entry.refresh_task
        entry.refresh_task = None
        if task is not None and not task.done():
            task.cancel()

    def _restart_refresh_timer(self, entry: CacheEntry) -> None:
        self._cancel_refresh(entry)
        self._ensure_refresh_timer(entry)

    async def _refresh_loop(self, entry: CacheEntry) -> None:
        interval_s = entry.options.refresh_interval_s
        while True:
            await asyncio.sleep(interval_s)
            if self._closed or self._entries.get(entry.key) is not entry:
                return
            if entry.state == "fresh":
                entry.state = "stale"
                self._notify(entry)
            self._dispatch_passive(entry, reason="interval")

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _notify(self, entry: CacheEntry) -> None:
        snapshot = entry.snapshot()
        if not _changed(entry.last_snapshot, snapshot):
            return
        entry.last_snapshot = snapshot
        for listener in list(entry.subscribers.values()):
            if listener is None:
                continue
            try:
                result = listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Listener for key '%s' failed", entry.key)
                continue
            if inspect.isawaitable(result):
                self._spawn(self._await_callback(result, entry.key, "listener"))

    def _call_hook(
        self,
        hook: Callable[[str, Any], Awaitable[None] | None] | None,
        key: str,
        value: Any,
    ) -> None:
        if hook is None:
            return
        try:
            result = hook(key, value)
        except Exception:  # noqa: BLE001
            logger.exception("Fetch hook for key '%s' failed", key)
            return
        if inspect.isawaitable(result):
            self._spawn(self._await_callback(result, key, "fetch hook"))

    async def _await_callback(self, result: Awaitable[Any], key: str, kind: str) -> None:
        try:
            await result
        except Exception:  # noqa: BLE001
            logger.exception("Async %s for key '%s' failed", kind, key)
