import asyncio

from ladder.cache import TTLCache


def test_invalidate_sessions_drops_only_matching_keys():
    async def run_test():
        cache = TTLCache(ttl_seconds=60)
        await cache.set(("s1", "singles"), "a")
        await cache.set(("s1", "doubles"), "b")
        await cache.set(("s2", "singles"), "c")
        await cache.invalidate_sessions(["s1", None])
        return [
            await cache.get(("s1", "singles")),
            await cache.get(("s1", "doubles")),
            await cache.get(("s2", "singles")),
        ]

    assert asyncio.run(run_test()) == [None, None, "c"]


def test_entries_expire():
    async def run_test():
        cache = TTLCache(ttl_seconds=60)
        await cache.set("k", "v", ttl_seconds=0)
        await cache.set("fresh", "v")
        return await cache.get("k"), await cache.get("fresh")

    assert asyncio.run(run_test()) == (None, "v")


def test_get_or_set_computes_once():
    calls = []

    async def factory():
        calls.append(1)
        return {"best": "A"}

    async def run_test():
        cache = TTLCache(ttl_seconds=60)
        first = await cache.get_or_set(("s1", "singles"), factory)
        second = await cache.get_or_set(("s1", "singles"), factory)
        return first, second

    first, second = asyncio.run(run_test())
    assert first == second == {"best": "A"}
    assert len(calls) == 1
