from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.core.database import AsyncSessionLocal
from filedrop.models.storage_credential import StorageCredential
from filedrop.repositories.credential_repository import StorageCredentialRepository


class CloudStorageClient(ABC):
    """
    云存储 Provider 客户端接口

    每个外部调用都应自带超时；失败统一抛出 CloudStorageError（或底层网络异常），
    分类与重试由调用方负责。
    """

    required_config: tuple[str, ...] = ()

    def __init__(
        self,
        provider: str,
        config: dict[str, Any] | None = None,
        features: dict[str, Any] | None = None,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    ):
        self.provider = provider
        self.config = config or {}
        self.features = features or {}
        self.session_factory = session_factory

    async def get_credential(self, user_id: str) -> StorageCredential | None:
        async with self.session_factory() as session:
            return await StorageCredentialRepository(session).get(user_id, self.provider)

    def validate_configuration(self) -> list[str]:
        """返回配置错误列表，空列表表示配置完整"""
        return [
            f"Missing required configuration: {key}"
            for key in self.required_config
            if not self.config.get(key)
        ]

    @abstractmethod
    async def validate_and_refresh_credential(self, user_id: str) -> bool:
        """校验凭证，必要时刷新；无法获得可用凭证时返回 False"""

    @abstractmethod
    async def test_connectivity(self, user_id: str) -> bool:
        """用当前凭证对 Provider API 做一次轻量探测"""

    @abstractmethod
    async def execute_operation(self, operation: Any) -> Any:
        """执行一次存储操作（上传/删除等）"""
