import asyncio

import pytest

from filedrop.core.cache import cache
from filedrop.core.cache_keys import CacheKeys
from filedrop.services.cloud_storage.rate_limited_cache import RateLimitedCache

WINDOW = 3600


class Clock:
    def __init__(self, now: float = 1_000 * WINDOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _loader(values):
    calls = {"count": 0}

    async def load():
        calls["count"] += 1
        return values[min(calls["count"], len(values)) - 1]

    return load, calls


async def _get(rl: RateLimitedCache, loader, *, max_attempts=3, fallback=None):
    return await rl.get_or_compute(
        "check:key",
        loader,
        success_ttl=300,
        failure_ttl=60,
        limit_key="check:limit",
        max_attempts=max_attempts,
        window_seconds=WINDOW,
        fallback=fallback,
    )


@pytest.mark.asyncio
async def test_fresh_value_is_reused_without_counting(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())
    load, calls = _loader([True])

    first = await _get(rl, load)
    second = await _get(rl, load)

    assert first.value is True and first.source == "computed"
    assert second.value is True and second.source == "cached"
    assert calls["count"] == 1
    assert await rl.attempts("check:limit", WINDOW) == 1


@pytest.mark.asyncio
async def test_success_and_failure_use_separate_ttls(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())
    ok, _ = _loader([True])
    await rl.get_or_compute("ok", ok, success_ttl=300, failure_ttl=60, limit_key="l1", max_attempts=5, window_seconds=WINDOW)
    bad, _ = _loader([False])
    await rl.get_or_compute("bad", bad, success_ttl=300, failure_ttl=60, limit_key="l2", max_attempts=5, window_seconds=WINDOW)

    assert dummy_cache.ttls[cache._make_key("ok")] == 300
    assert dummy_cache.ttls[cache._make_key("bad")] == 60
    assert dummy_cache.ttls[cache._make_key(CacheKeys.last_result("bad"))] == rl.last_result_ttl


@pytest.mark.asyncio
async def test_rate_limit_serves_last_known_value_after_expiry(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())
    load, calls = _loader([True, True, False])

    for _ in range(3):
        await _get(rl, load)
        # 模拟 TTL 过期：只删除正常缓存，保留 last-known
        await cache.delete("check:key")

    outcome = await _get(rl, load)

    assert calls["count"] == 3
    assert outcome.source == "stale"
    assert outcome.value is False
    assert await rl.can_attempt("check:limit", 3, WINDOW) is False


@pytest.mark.asyncio
async def test_rate_limit_uses_fallback_without_last_known(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())
    for _ in range(3):
        await cache.incr(CacheKeys.rate_limit_bucket("check:limit", int(Clock().now // WINDOW)))
    load, calls = _loader([True])

    async def fallback():
        return "from-record"

    outcome = await _get(rl, load, fallback=fallback)

    assert calls["count"] == 0
    assert outcome.source == "rate_limited"
    assert outcome.value == "from-record"


@pytest.mark.asyncio
async def test_sliding_window_weights_previous_bucket():
    clock = Clock()
    rl = RateLimitedCache(cache, clock=clock)
    for _ in range(4):
        assert await rl._acquire("limit", 10, WINDOW)

    clock.now += WINDOW  # 进入下一个窗口起点，上一窗口仍全额计入
    assert await rl.attempts("limit", WINDOW) == 4

    clock.now += WINDOW // 2  # 上一窗口只计一半
    assert await rl.attempts("limit", WINDOW) == 2

    clock.now += WINDOW  # 两个窗口之后全部滑出
    assert await rl.attempts("limit", WINDOW) == 0


@pytest.mark.asyncio
async def test_invalidate_and_reset_counter(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())
    load, calls = _loader([True])
    await _get(rl, load)

    await rl.invalidate("check:key")
    await rl.reset_counter("check:limit", WINDOW)

    assert await cache.get("check:key") is None
    assert await cache.get(CacheKeys.last_result("check:key")) is None
    assert await rl.attempts("check:limit", WINDOW) == 0
    assert (await _get(rl, load)).source == "computed"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_cache_outage_degrades_to_uncached_checks():
    cache._redis = None
    rl = RateLimitedCache(cache, clock=Clock())
    load, calls = _loader([True])

    for _ in range(5):
        outcome = await _get(rl, load, max_attempts=1)
        assert outcome.source == "computed"

    assert calls["count"] == 5


@pytest.mark.asyncio
async def test_loader_errors_are_not_cached(dummy_cache):
    rl = RateLimitedCache(cache, clock=Clock())

    async def broken():
        raise RuntimeError("probe crashed")

    with pytest.raises(RuntimeError):
        await _get(rl, broken)
    assert await cache.get("check:key") is None


@pytest.mark.asyncio
async def test_concurrent_checks_share_one_budget(dummy_cache, monkeypatch):
    rl = RateLimitedCache(cache, clock=Clock())
    original_get = dummy_cache.get

    async def yielding_get(key):
        # 让出事件循环，使并发请求在读缓存之后交错执行
        await asyncio.sleep(0)
        return await original_get(key)

    monkeypatch.setattr(dummy_cache, "get", yielding_get)
    calls = {"count": 0}

    async def slow_probe():
        calls["count"] += 1
        await asyncio.sleep(0)
        return True

    async def fallback():
        return "from-record"

    outcomes = await asyncio.gather(*(_get(rl, slow_probe, max_attempts=1, fallback=fallback) for _ in range(5)))

    assert calls["count"] == 1
    assert [o.source for o in outcomes].count("computed") == 1
    assert await rl.attempts("check:limit", WINDOW) == 1


@pytest.mark.asyncio
async def test_rejected_checks_do_not_consume_budget(dummy_cache):
    clock = Clock()
    rl = RateLimitedCache(cache, clock=clock)
    load, calls = _loader([True])
    await _get(rl, load, max_attempts=1)
    await cache.delete("check:key")

    for _ in range(3):
        assert (await _get(rl, load, max_attempts=1)).source == "stale"

    assert calls["count"] == 1
    assert await rl.attempts("check:limit", WINDOW) == 1
