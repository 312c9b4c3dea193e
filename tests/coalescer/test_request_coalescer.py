from __future__ import annotations

import asyncio

import pytest

from revalidate import CoalescingPolicy, InvalidKeyError, RequestCoalescer


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _RecordingMetrics:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}

    def incr(self, name, value=1, *, tags=None):
        _ = tags
        self.counts[name] = self.counts.get(name, 0) + value


def run_async(coro):
    return asyncio.run(coro)


def test_concurrent_callers_share_one_invocation():
    async def scenario() -> None:
        metrics = _RecordingMetrics()
        coalescer = RequestCoalescer(metrics=metrics)
        calls = 0

        async def fetch_a():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.1)
            return {"value": 42}

        results = await asyncio.gather(
            *(coalescer.run("A", fetch_a) for _ in range(5))
        )

        assert calls == 1
        assert results == [{"value": 42}] * 5
        assert all(item is results[0] for item in results)
        assert coalescer.pending_count() == 0

        stats = coalescer.stats()
        assert stats.initiated == 1
        assert stats.coalesced == 4
        assert stats.in_flight == 0
        assert metrics.counts["coalescer_initiated_total"] == 1
        assert metrics.counts["coalescer_coalesced_total"] == 4

    run_async(scenario())


def test_different_keys_run_independently():
    async def scenario() -> None:
        coalescer = RequestCoalescer()
        seen: list[str] = []

        def make(label: str):
            async def _op():
                seen.append(label)
                await asyncio.sleep(0.01)
                return label

            return _op

        out = await asyncio.gather(
            coalescer.run("rates:prop_1", make("a")),
            coalescer.run("rates:prop_2", make("b")),
        )
        assert out == ["a", "b"]
        assert sorted(seen) == ["a", "b"]

    run_async(scenario())


def test_failure_reaches_every_caller_and_releases_key():
    async def scenario() -> None:
        coalescer = RequestCoalescer()
        boom = RuntimeError("Failed to fetch status data")
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise boom

        results = await asyncio.gather(
            *(coalescer.run("status-summary", failing) for _ in range(3)),
            return_exceptions=True,
        )
        assert calls == 1
        assert all(item is boom for item in results)
        assert coalescer.pending_count() == 0
        assert coalescer.stats().failed == 1

        retried = 0

        async def recovered():
            nonlocal retried
            retried += 1
            return "ok"

        assert await coalescer.run("status-summary", recovered) == "ok"
        assert retried == 1

    run_async(scenario())


def test_hung_operation_is_swept_after_timeout():
    async def scenario() -> None:
        clock = _Clock()
        coalescer = RequestCoalescer(CoalescingPolicy(timeout_s=30.0), clock=clock)
        gates = [asyncio.Event(), asyncio.Event()]
        invocations = 0

        async def hung():
            nonlocal invocations
            index = invocations
            invocations += 1
            await gates[index].wait()
            return index

        first = asyncio.create_task(coalescer.run("A", hung))
        await asyncio.sleep(0.01)
        assert coalescer.pending_count() == 1

        clock.advance(29.0)
        assert coalescer.pending_count() == 1
        assert coalescer.pending_age_s("A") == pytest.approx(29.0)

        clock.advance(1.0)
        assert coalescer.pending_count() == 0
        assert invocations == 1

        second = asyncio.create_task(coalescer.run("A", hung))
        await asyncio.sleep(0.01)
        assert invocations == 2
        assert coalescer.pending_count() == 1

        # The swept operation finishing must not release the newer entry.
        gates[0].set()
        assert await first == 0
        assert coalescer.is_pending("A")

        gates[1].set()
        assert await second == 1
        assert coalescer.pending_count() == 0
        assert coalescer.stats().evicted == 1

    run_async(scenario())


def test_cancelled_caller_does_not_cancel_shared_operation():
    async def scenario() -> None:
        coalescer = RequestCoalescer()
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "ok"

        waiter_a = asyncio.create_task(coalescer.run("k", slow))
        waiter_b = asyncio.create_task(coalescer.run("k", slow))
        await asyncio.sleep(0.01)

        waiter_a.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter_a

        gate.set()
        assert await waiter_b == "ok"
        assert coalescer.pending_count() == 0

    run_async(scenario())


def test_disabled_policy_runs_every_call():
    async def scenario() -> None:
        coalescer = RequestCoalescer(CoalescingPolicy(enabled=False))
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        await asyncio.gather(coalescer.run("k", op), coalescer.run("k", op))
        assert calls == 2
        assert coalescer.stats().initiated == 0

    run_async(scenario())


def test_sync_operation_and_key_validation():
    async def scenario() -> None:
        coalescer = RequestCoalescer()
        assert await coalescer.run("plain", lambda: 5) == 5

        async def op():
            return 1

        with pytest.raises(InvalidKeyError):
            await coalescer.run("", op)
        with pytest.raises(InvalidKeyError):
            await coalescer.run("   ", op)

    run_async(scenario())


def test_close_cancels_outstanding_operations():
    async def scenario() -> None:
        coalescer = RequestCoalescer()
        gate = asyncio.Event()

        async def never():
            await gate.wait()

        waiter = asyncio.create_task(coalescer.run("k", never))
        await asyncio.sleep(0.01)
        await coalescer.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert coalescer.pending_count() == 0

    run_async(scenario())


def test_join_shares_operation_and_flags_swept_entries():
    async def scenario() -> None:
        clock = _Clock()
        coalescer = RequestCoalescer(CoalescingPolicy(timeout_s=30.0), clock=clock)
        gate = asyncio.Event()

        async def op():
            await gate.wait()
            return "done"

        first = coalescer.join("k", op)
        second = coalescer.join("k", op)
        assert first is second
        assert first.waiters == 2
        assert not first.evicted

        clock.advance(30.0)
        assert coalescer.sweep() == 1
        assert first.evicted

        replacement = coalescer.join("k", op)
        assert replacement is not first
        assert not replacement.evicted

        gate.set()
        assert await first.future == "done"
        assert await replacement.future == "done"
        assert coalescer.pending_count() == 0

    run_async(scenario())


def test_join_with_disabled_policy_starts_separate_operations():
    async def scenario() -> None:
        coalescer = RequestCoalescer(CoalescingPolicy(enabled=False))
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            return calls

        first = coalescer.join("k", op)
        second = coalescer.join("k", op)
        assert first is not second
        assert sorted([await first.future, await second.future]) == [1, 2]
        assert coalescer.pending_count() == 0
        assert coalescer.stats().initiated == 0

    run_async(scenario())
