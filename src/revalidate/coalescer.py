"""
MIT License
Copyright (c) 2026 arpan404
See LICENSE file for full license text.

Single-flight request coalescer.

Concurrent callers of `run` with the same key share one execution of the
supplied operation and observe the same outcome. Entries that never settle
are swept after `CoalescingPolicy.timeout_s`, so a hung operation cannot pin
its key forever.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .contracts import CoalescingPolicy
from .metrics import CacheMetrics, NoOpCacheMetrics
from .utils import ensure_key, resolve

logger = logging.getLogger("revalidate.coalescer")

T = TypeVar("T")


@dataclass(slots=True)
class PendingOperation:
    """
    One in-flight operation shared by every caller of its key.

    Attributes:
        key: Coalescing key.
        future: Write-once outcome cell awaited by all attached callers.
        started_at_s: Clock time when the operation was registered.
        waiters: Number of callers attached so far, including the originator.
        evicted: Set once the entry was swept; its key no longer points here.
    """

    key: str
    future: asyncio.Future[Any]
    started_at_s: float
    waiters: int = 1
    evicted: bool = False


@dataclass(frozen=True, slots=True)
class CoalescerStats:
    """Counters describing coalescer activity since construction."""

    initiated: int
    coalesced: int
    evicted: int
    failed: int
    in_flight: int


class RequestCoalescer:
    """Deduplicate identical in-flight requests."""

    def __init__(
        self,
        policy: CoalescingPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: CacheMetrics | None = None,
    ) -> None:
        self._policy = policy or CoalescingPolicy()
        self._clock = clock
        self._metrics: CacheMetrics = metrics or NoOpCacheMetrics()
        self._pending: dict[str, PendingOperation] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._initiated = 0
        self._coalesced = 0
        self._evicted = 0
        self._failed = 0

    @property
    def policy(self) -> CoalescingPolicy:
        return self._policy

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation` once per key, sharing its outcome with concurrent callers.

        If an operation for `key` is already pending, `operation` is not
        invoked and the caller awaits the pending outcome instead. A failure
        is raised to every attached caller and the key is released
        immediately, so the next call starts fresh work.

        Cancelling one caller never cancels the shared operation.
        """
        ensure_key(key)
        if not self._policy.enabled:
            return await resolve(operation)
        pending = self.join(key, operation)
        return await asyncio.shield(pending.future)

    def join(
        self, key: str, operation: Callable[[], Awaitable[Any]]
    ) -> PendingOperation:
        """
        Attach to the pending operation for `key`, starting it when absent.

        Synchronous counterpart of `run` for callers that track the shared
        operation themselves: await `asyncio.shield(pending.future)` for the
        outcome and check `pending.evicted` to learn whether it was swept.
        With coalescing disabled every call starts its own unregistered
        operation.
        """
        ensure_key(key)
        if not self._policy.enabled:
            return self._start(key, operation, register=False)

        self._sweep_expired()
        # Lookup and insert stay free of suspension points.
        pending = self._pending.get(key)
        if pending is None:
            pending = self._start(key, operation)
        else:
            pending.waiters += 1
            self._coalesced += 1
            self._metrics.incr("coalescer_coalesced_total")
            logger.debug(
                "Coalescing request for key '%s' (%d waiters)", key, pending.waiters
            )
        return pending

    def pending_count(self) -> int:
        """Number of in-flight keys after sweeping expired entries."""
        self._sweep_expired()
        return len(self._pending)

    def sweep(self) -> int:
        """Evict expired entries now and return how many were dropped."""
        return self._sweep_expired()

    def is_pending(self, key: str) -> bool:
        self._sweep_expired()
        return key in self._pending

    def pending_age_s(self, key: str) -> float | None:
        """Age of the pending operation for `key`, or None when nothing is pending."""
        self._sweep_expired()
        pending = self._pending.get(key)
        if pending is None:
            return None
        return self._clock() - pending.started_at_s

    def stats(self) -> CoalescerStats:
        return CoalescerStats(
            initiated=self._initiated,
            coalesced=self._coalesced,
            evicted=self._evicted,
            failed=self._failed,
            in_flight=self.pending_count(),
        )

    async def close(self) -> None:
        """Cancel every outstanding operation, including swept ones."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def _start(
        self,
        key: str,
        operation: Callable[[], Awaitable[Any]],
        *,
        register: bool = True,
    ) -> PendingOperation:
        loop = asyncio.get_running_loop()
        pending = PendingOperation(
            key=key,
            future=loop.create_future(),
            started_at_s=self._clock(),
        )
        if register:
            self._pending[key] = pending
            self._initiated += 1
            self._metrics.incr("coalescer_initiated_total")
            logger.debug("Initiating operation for key '%s'", key)

        task = loop.create_task(self._execute(pending, operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return pending

    async def _execute(
        self, pending: PendingOperation, operation: Callable[[], Awaitable[Any]]
    ) -> None:
        future = pending.future
        try:
            result = await resolve(operation)
        except asyncio.CancelledError:
            self._release(pending)
            future.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            self._release(pending)
            self._failed += 1
            self._metrics.incr("coalescer_failed_total")
            if not future.done():
                future.set_exception(exc)
            return

        self._release(pending)
        if not future.done():
            future.set_result(result)
        if pending.waiters > 1:
            logger.debug(
                "Coalesced %d requests for key '%s'", pending.waiters, pending.key
            )

    def _release(self, pending: PendingOperation) -> None:
        # A swept operation must not drop the entry that replaced it.
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]

    def _sweep_expired(self) -> int:
        now = self._clock()
        timeout_s = self._policy.timeout_s
        expired = [
            pending
            for pending in self._pending.values()
            if now - pending.started_at_s >= timeout_s
        ]
        for pending in expired:
            del self._pending[pending.key]
            pending.evicted = True
            self._evicted += 1
            self._metrics.incr("coalescer_evicted_total")
            logger.warning(
                "Evicted pending operation for key '%s' after %.1fs without completion "
                "(waiters=%d)",
                pending.key,
                now - pending.started_at_s,
                pending.waiters,
            )
        return len(expired)
