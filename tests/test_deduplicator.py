"""Tests for in-flight request deduplication."""

import asyncio

import pytest

from catalog.services.deduplicator import RequestDeduplicator


class TestRequestDeduplicator:
    """Sharing, grace window and cancellation."""

    async def test_concurrent_callers_share_one_call(self) -> None:
        dedup = RequestDeduplicator(window=5.0)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return {"value": 42}

        results = await asyncio.gather(*(dedup.dedupe("k", fetch) for _ in range(5)))

        assert calls == 1
        assert all(r == {"value": 42} for r in results)
        stats = dedup.get_stats()
        assert stats.total == 1
        assert stats.deduplicated == 4
        await dedup.cancel_all()

    async def test_different_keys_are_independent(self) -> None:
        dedup = RequestDeduplicator(window=5.0)
        calls = []

        async def fetch(key):
            calls.append(key)
            return key

        await asyncio.gather(
            dedup.dedupe("a", lambda: fetch("a")),
            dedup.dedupe("b", lambda: fetch("b")),
        )

        assert sorted(calls) == ["a", "b"]
        await dedup.cancel_all()

    async def test_trailing_caller_reuses_result_within_window(self) -> None:
        dedup = RequestDeduplicator(window=5.0)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.dedupe("k", fetch) == 1
        assert await dedup.dedupe("k", fetch) == 1
        assert calls == 1
        assert dedup.get_in_flight_count() == 1
        await dedup.cancel_all()

    async def test_registration_expires_after_window(self) -> None:
        dedup = RequestDeduplicator(window=0.02)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.dedupe("k", fetch) == 1
        await asyncio.sleep(0.05)

        assert dedup.get_in_flight_count() == 0
        assert await dedup.dedupe("k", fetch) == 2
        await dedup.cancel_all()

    async def test_zero_window_removes_immediately(self) -> None:
        dedup = RequestDeduplicator(window=0)

        async def fetch():
            return "x"

        await dedup.dedupe("k", fetch)

        assert dedup.get_in_flight_count() == 0

    async def test_failure_is_shared_by_concurrent_callers(self) -> None:
        dedup = RequestDeduplicator(window=5.0)
        calls = 0

        async def fail():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("down")

        results = await asyncio.gather(
            dedup.dedupe("k", fail), dedup.dedupe("k", fail), return_exceptions=True
        )

        assert calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        await dedup.cancel_all()

    async def test_cancel_all_cancels_pending_requests(self) -> None:
        dedup = RequestDeduplicator(window=5.0)
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        waiter = asyncio.create_task(dedup.dedupe("k", slow))
        await started.wait()

        assert await dedup.cancel_all() == 1
        assert dedup.get_in_flight_count() == 0
        with pytest.raises(asyncio.CancelledError):
            await waiter
