"""
测试全局配置

- 默认禁用真实 Redis / Celery 连接，统一使用内存 DummyRedis
- 数据库使用内存 SQLite (aiosqlite + StaticPool)，每个测试独立建表
- 云存储 Provider 客户端与任务队列使用内存替身，不访问网络
"""
from __future__ import annotations

import os

# 必须在导入 filedrop 之前设置，Settings 在导入时实例化
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("LOG_FILE_PATH", "")
os.environ.setdefault("LOG_ASYNC", "false")

from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from filedrop.core.cache import cache
from filedrop.core.config import settings
from filedrop.core.logging import logger
from filedrop.models import Base, StorageCredential
from filedrop.services.cloud_storage.clients.base import CloudStorageClient
from filedrop.services.cloud_storage.provider_registry import ProviderEntry, ProviderRegistry
from filedrop.utils.time_utils import Datetime

settings.REDIS_URL = ""


class DummyRedis:
    """
    轻量内存 Redis 替身，覆盖 CacheService 用到的方法：
    get/set/delete/incr/expire
    """

    def __init__(self):
        self.store: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value, ex=None, nx: bool | None = None):
        if nx and key in self.store:
            return False
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for k in keys:
            removed += 1 if self.store.pop(k, None) is not None else 0
            self.ttls.pop(k, None)
        return removed

    async def incr(self, key: str, amount: int = 1):
        current = self.store.get(key, 0)
        try:
            current_val = int(current)
        except Exception:
            current_val = 0
        new_val = current_val + amount
        self.store[key] = new_val
        return new_val

    async def expire(self, key: str, ttl):
        self.ttls[key] = ttl
        return True

    async def close(self):
        return None


class FakeStorageClient(CloudStorageClient):
    """
    可编程的 Provider 客户端替身

    token_result / probe_result / operation_results 的元素可以是返回值或异常实例。
    """

    def __init__(self, provider: str, *, token_result: Any = True, probe_result: Any = True):
        super().__init__(provider=provider, config={}, features={})
        self.token_result = token_result
        self.probe_result = probe_result
        self.operation_results: list[Any] = []
        self.refresh_calls = 0
        self.probe_calls = 0
        self.operation_calls = 0

    @staticmethod
    def _resolve(result: Any) -> Any:
        if isinstance(result, BaseException):
            raise result
        return result

    async def validate_and_refresh_credential(self, user_id: str) -> bool:
        self.refresh_calls += 1
        return self._resolve(self.token_result)

    async def test_connectivity(self, user_id: str) -> bool:
        self.probe_calls += 1
        return self._resolve(self.probe_result)

    async def execute_operation(self, operation: Any) -> Any:
        self.operation_calls += 1
        result = self.operation_results.pop(0) if self.operation_results else {"ok": True}
        return self._resolve(result)


class InMemoryJobQueue:
    def __init__(self):
        self.jobs: list[tuple[Any, int]] = []

    def enqueue(self, operation, delay_ms: int) -> None:
        self.jobs.append((operation, delay_ms))

    @property
    def delays(self) -> list[int]:
        return [delay for _, delay in self.jobs]


def provider_entry(name: str, *, configured: bool = True, display_name: str | None = None) -> ProviderEntry:
    return ProviderEntry(
        name=name,
        display_name=display_name or name,
        module="filedrop.services.cloud_storage.clients.oauth_http",
        class_name="OAuthHttpClient",
        enabled=True,
        required_config=["client_id"],
        features={"folder_creation": True},
        config={"client_id": "test-client"} if configured else {},
    )


@pytest.fixture(autouse=True)
def dummy_cache():
    """每个测试使用全新的内存 Redis"""
    redis = DummyRedis()
    cache._redis = redis
    yield redis
    cache._redis = None


@pytest.fixture
def log_messages():
    """收集 loguru 输出的消息文本"""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as sess:
        yield sess


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def make_client():
    return FakeStorageClient


@pytest.fixture
def make_registry():
    """
    make_registry({"google-drive": True, "amazon-s3": False}, default="google-drive", fallback=[...])
    值为 False 的 Provider 存在于注册表但未完成配置
    """

    def _make(
        providers: dict[str, bool],
        *,
        default: str | None = None,
        fallback: list[str] | None = None,
        fallback_enabled: bool = True,
        clients: dict[str, CloudStorageClient] | None = None,
    ) -> ProviderRegistry:
        registry = ProviderRegistry(
            entries=[provider_entry(name, configured=ok) for name, ok in providers.items()],
            default_provider=default or "",
            fallback_enabled=fallback_enabled,
            fallback_order=fallback if fallback is not None else list(providers),
        )
        for name, client in (clients or {}).items():
            registry.register_client(name, client)
        return registry

    return _make


@pytest.fixture
def add_credential(session):
    async def _add(
        user_id: str,
        provider: str,
        *,
        expires_in: timedelta | None = timedelta(hours=1),
        refresh_token: str | None = "refresh-token",
    ) -> StorageCredential:
        credential = StorageCredential(
            user_id=user_id,
            provider=provider,
            access_token="access-token",
            refresh_token=refresh_token,
            expires_at=Datetime.now() + expires_in if expires_in is not None else None,
            scopes=["drive.file"],
        )
        session.add(credential)
        await session.commit()
        return credential

    return _add
