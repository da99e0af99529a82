import asyncio

import pytest

from flowgate.locks import InMemoryRunLock


@pytest.mark.asyncio
async def test_inmemory_lock_serializes_same_run():
    lock = InMemoryRunLock()
    order = []

    async def worker(name):
        async with lock.acquire("run-1"):
            order.append(f"{name}-start")
            await asyncio.sleep(0.01)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))

    assert order in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )
    assert not lock.is_locked("run-1")


@pytest.mark.asyncio
async def test_inmemory_lock_allows_different_runs_concurrently():
    lock = InMemoryRunLock()

    async with lock.acquire("run-1"):
        assert lock.is_locked("run-1")
        async with lock.acquire("run-2"):
            assert lock.is_locked("run-2")

    assert not lock.is_locked("run-1")
    assert lock._locks == {}
