import asyncio

import pytest

from ucp_core.locks import KeyedLock
from ucp_core.saga import Saga, SagaFailed, SagaStep


async def test_saga_runs_steps_in_order():
    calls = []

    async def step(name):
        calls.append(name)
        return name.upper()

    saga = Saga("demo", [SagaStep("a", lambda: step("a")), SagaStep("b", lambda: step("b"))])
    results = await saga.run()

    assert calls == ["a", "b"]
    assert results == {"a": "A", "b": "B"}


async def test_failed_step_reports_cause_and_completed_steps():
    undone = []

    async def ok():
        return 1

    async def boom():
        raise RuntimeError("boom")

    async def undo(name):
        undone.append(name)

    saga = Saga("demo", [
        SagaStep("first", ok, compensate=lambda: undo("first")),
        SagaStep("second", ok),
        SagaStep("third", ok, compensate=lambda: undo("third")),
        SagaStep("fourth", boom),
    ])

    with pytest.raises(SagaFailed) as exc_info:
        await saga.run()

    failure = exc_info.value
    assert failure.step == "fourth"
    assert isinstance(failure.cause, RuntimeError)
    assert failure.completed == ["first", "second", "third"]
    assert undone == []

    await saga.compensate()
    assert undone == ["third", "first"]


async def test_compensation_continues_after_a_failure():
    undone = []

    async def ok():
        return None

    async def broken_undo():
        raise RuntimeError("cannot undo")

    async def undo():
        undone.append("first")

    async def boom():
        raise ValueError("boom")

    saga = Saga("demo", [
        SagaStep("first", ok, compensate=undo),
        SagaStep("second", ok, compensate=broken_undo),
        SagaStep("third", boom),
    ])
    with pytest.raises(SagaFailed):
        await saga.run()

    await saga.compensate()
    assert undone == ["first"]


async def test_keyed_lock_serializes_per_key_only():
    locks = KeyedLock()
    order = []

    async def worker(key, name, delay):
        async with locks.hold(key):
            order.append(f"{name}:start")
            await asyncio.sleep(delay)
            order.append(f"{name}:end")

    await asyncio.gather(worker("a", "a1", 0.02), worker("a", "a2", 0), worker("b", "b1", 0))

    assert order.index("a1:end") < order.index("a2:start")
    assert order.index("b1:start") < order.index("a1:end")
    assert len(locks) == 0


async def test_hold_many_takes_keys_in_sorted_order():
    locks = KeyedLock()

    async def take(keys):
        async with locks.hold_many(keys):
            await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(take(["x", "y"]), take(["y", "x"])), timeout=1)
    assert len(locks) == 0
