from __future__ import annotations

import asyncio

from nixpackpy.locks import KeyedLocks


def test_hold_serializes_same_key_and_forgets_it_afterwards() -> None:
    locks = KeyedLocks()
    trace: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold("env"):
            trace.append(f"{name}:in")
            assert len(locks) == 1
            await asyncio.sleep(0)
            trace.append(f"{name}:out")

    async def run() -> None:
        await asyncio.gather(*(worker(n) for n in ("a", "b", "c")))

    asyncio.run(run())

    # No two holders overlap, including across release -> wake-up handoffs.
    assert trace == ["a:in", "a:out", "b:in", "b:out", "c:in", "c:out"]
    assert len(locks) == 0
    assert "env" not in locks


def test_distinct_keys_do_not_block_each_other() -> None:
    locks = KeyedLocks()
    entered = []

    async def run() -> None:
        async with locks.hold(("env", "a.py")):
            async with locks.hold(("env", "b.py")):
                entered.append(len(locks))

    asyncio.run(run())
    assert entered == [2]
    assert len(locks) == 0


def test_entry_is_released_when_body_raises() -> None:
    locks = KeyedLocks()

    async def run() -> None:
        async with locks.hold("env"):
            raise RuntimeError("boom")

    try:
        asyncio.run(run())
    except RuntimeError:
        pass
    assert len(locks) == 0
