import pickle
from typing import Any

from redis.asyncio import Redis, from_url

from filedrop.core.config import settings
from filedrop.core.logging import logger


class CacheService:
    """
    Redis 缓存服务

    所有方法在 Redis 未初始化或调用失败时都不抛异常：
    读操作返回 None/0，写操作返回 False，调用方据此按“缓存未命中”处理。
    """
    def __init__(self):
        self._redis: Redis | None = None

    def init(self) -> None:
        """初始化 Redis 连接池"""
        if settings.REDIS_URL:
            self._redis = from_url(
                settings.REDIS_URL,
                encoding=settings.REDIS_ENCODING,
                decode_responses=False # 手动处理序列化，支持对象缓存
            )
            logger.info(f"Redis initialized at {settings.REDIS_URL}")
        else:
            logger.warning("REDIS_URL not set, cache will be disabled")

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self._redis:
            await self._redis.close()
            logger.info("Redis connection closed")

    @property
    def redis(self) -> Redis:
        if not self._redis:
            raise RuntimeError("CacheService not initialized. Call init() first.")
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{settings.CACHE_PREFIX}{key}"

    async def get(self, key: str) -> Any | None:
        """获取缓存值 (自动反序列化)"""
        if not self._redis: return None
        try:
            data = await self._redis.get(self._make_key(key))
            if data:
                return pickle.loads(data)
        except Exception as e:
            logger.error(f"Cache get error for key {key}: {e}")
        return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = settings.CACHE_DEFAULT_TTL,
        ex: int | None = None,
        nx: bool | None = None,
    ) -> bool:
        """设置缓存值 (自动序列化)

        支持 NX 语义，便于幂等键/短锁场景。
        """
        if not self._redis: return False
        try:
            data = pickle.dumps(value)
            expire = ex if ex is not None else ttl
            kwargs = {"ex": expire}
            if nx is not None:
                kwargs["nx"] = nx
            return bool(await self._redis.set(self._make_key(key), data, **kwargs))
        except Exception as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return False

    async def delete(self, *keys: str) -> bool:
        """删除缓存"""
        if not self._redis or not keys: return False
        try:
            await self._redis.delete(*(self._make_key(k) for k in keys))
            return True
        except Exception as e:
            logger.error(f"Cache delete error for keys {keys}: {e}")
            return False

    async def incr(self, key: str, ttl: int | None = None, amount: int = 1) -> int:
        """原子自增计数，首次创建时可设置过期时间"""
        if not self._redis:
            return 0
        try:
            full_key = self._make_key(key)
            val = await self._redis.incr(full_key, amount)
            if ttl and val == amount:
                # 仅在第一次创建时设置过期，避免覆盖外部主动设置的 TTL
                await self._redis.expire(full_key, ttl)
            return int(val)
        except Exception as e:
            logger.error(f"Cache incr error for key {key}: {e}")
            return 0

    async def get_counter(self, key: str) -> int:
        """读取 incr 写入的原始计数（未经 pickle 序列化）"""
        if not self._redis:
            return 0
        try:
            raw = await self._redis.get(self._make_key(key))
            return int(raw) if raw is not None else 0
        except Exception as e:
            logger.error(f"Cache counter read error for key {key}: {e}")
            return 0

# 单例实例
cache = CacheService()
