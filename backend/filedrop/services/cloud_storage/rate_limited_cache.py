"""
带限流的“计算或复用”缓存

- 成功 / 失败结果使用各自独立的 TTL
- 昂贵检查受滑动窗口计数限制：超过上限时返回最近一次结果（忽略其 TTL），
  不再发起新的上游调用
- 滑动窗口由相邻两个固定窗口桶组成，计数使用 Redis INCR 原子自增
"""

import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from filedrop.core.cache import CacheService
from filedrop.core.cache import cache as default_cache
from filedrop.core.cache_keys import CacheKeys
from filedrop.core.config import settings
from filedrop.core.logging import logger

OutcomeSource = Literal["cached", "computed", "rate_limited", "stale"]


@dataclass(frozen=True)
class CheckOutcome:
    value: Any
    source: OutcomeSource

    @property
    def computed(self) -> bool:
        return self.source == "computed"


class RateLimitedCache:
    def __init__(
        self,
        cache: CacheService | None = None,
        *,
        last_result_ttl: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache or default_cache
        self.last_result_ttl = last_result_ttl or settings.HEALTH_LAST_RESULT_TTL
        self._clock = clock

    def _buckets(self, limit_key: str, window_seconds: int) -> tuple[str, str, float]:
        now = self._clock()
        index = int(now // window_seconds)
        elapsed_ratio = (now - index * window_seconds) / window_seconds
        return (
            CacheKeys.rate_limit_bucket(limit_key, index),
            CacheKeys.rate_limit_bucket(limit_key, index - 1),
            elapsed_ratio,
        )

    async def attempts(self, limit_key: str, window_seconds: int) -> int:
        """滑动窗口内的加权尝试次数（向上取整）"""
        current_key, previous_key, elapsed_ratio = self._buckets(limit_key, window_seconds)
        current = await self.cache.get_counter(current_key)
        previous = await self.cache.get_counter(previous_key)
        return math.ceil(previous * (1 - elapsed_ratio) + current)

    async def can_attempt(self, limit_key: str, max_attempts: int, window_seconds: int) -> bool:
        return await self.attempts(limit_key, window_seconds) < max_attempts

    async def _acquire(self, limit_key: str, max_attempts: int, window_seconds: int) -> bool:
        """
        先 INCR 占用额度，再以 INCR 的返回值判断是否超限。
        并发请求各自拿到不同的计数，超出上限者退还本次占用。
        """
        current_key, previous_key, elapsed_ratio = self._buckets(limit_key, window_seconds)
        # 桶需要在下一个窗口里继续作为 previous 参与加权
        current = await self.cache.incr(current_key, ttl=window_seconds * 2)
        if current <= 0:
            # Redis 不可用：不限流
            return True
        previous = await self.cache.get_counter(previous_key)
        if math.ceil(previous * (1 - elapsed_ratio) + current) <= max_attempts:
            return True
        await self.cache.incr(current_key, amount=-1)
        return False

    async def get_or_compute(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        *,
        success_ttl: int,
        failure_ttl: int,
        limit_key: str,
        max_attempts: int,
        window_seconds: int,
        fallback: Callable[[], Awaitable[Any]] | None = None,
    ) -> CheckOutcome:
        """
        读取新鲜缓存；未命中时在限流额度内执行 loader 并缓存结果。

        loader 抛出的异常不会被缓存，直接向上抛出。
        """
        cached = await self.cache.get(key)
        if cached is not None:
            return CheckOutcome(cached, "cached")

        if not await self._acquire(limit_key, max_attempts, window_seconds):
            last = await self.cache.get(CacheKeys.last_result(key))
            if last is not None:
                logger.info(f"rate_limited_check_served_stale key={key}")
                return CheckOutcome(last, "stale")
            value = await fallback() if fallback else None
            logger.info(f"rate_limited_check_fallback key={key} value={value}")
            return CheckOutcome(value, "rate_limited")

        value = await loader()
        ttl = success_ttl if value else failure_ttl
        await self.cache.set(key, value, ttl=ttl)
        await self.cache.set(CacheKeys.last_result(key), value, ttl=self.last_result_ttl)
        return CheckOutcome(value, "computed")

    async def invalidate(self, *keys: str, include_last: bool = True) -> None:
        targets = list(keys)
        if include_last:
            targets.extend(CacheKeys.last_result(k) for k in keys)
        await self.cache.delete(*targets)

    async def reset_counter(self, limit_key: str, window_seconds: int) -> None:
        current_key, previous_key, _ = self._buckets(limit_key, window_seconds)
        await self.cache.delete(current_key, previous_key)
