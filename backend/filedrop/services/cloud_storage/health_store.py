from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.core.config import settings
from filedrop.core.logging import logger
from filedrop.models.health_record import ConsolidatedStatus, HealthRecord, RawStatus
from filedrop.repositories.credential_repository import StorageCredentialRepository
from filedrop.repositories.health_record_repository import HealthRecordRepository

from .error_types import ErrorClassification


class HealthRecordStore:
    """
    健康记录读写服务

    计数更新全部委托给仓库层的原子 UPDATE；本层负责阈值配置和状态迁移日志。
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        degraded_threshold: int | None = None,
        unhealthy_threshold: int | None = None,
    ):
        self.session = session
        self.repo = HealthRecordRepository(session)
        self.degraded_threshold = settings.HEALTH_DEGRADED_THRESHOLD if degraded_threshold is None else degraded_threshold
        self.unhealthy_threshold = settings.HEALTH_UNHEALTHY_THRESHOLD if unhealthy_threshold is None else unhealthy_threshold

    async def get(self, user_id: str, provider: str) -> HealthRecord | None:
        return await self.repo.get(user_id, provider)

    async def get_or_create(self, user_id: str, provider: str) -> HealthRecord:
        return await self.repo.get_or_create(user_id, provider)

    async def record_failure(
        self,
        user_id: str,
        provider: str,
        classification: ErrorClassification,
        error_context: dict[str, Any] | None = None,
    ) -> HealthRecord:
        record = await self.repo.record_failure(
            user_id,
            provider,
            error_kind=classification.kind.value,
            error_message=classification.user_message,
            error_context=error_context or classification.to_context(),
            requires_reconnection=classification.requires_reconnection,
            degraded_threshold=self.degraded_threshold,
            unhealthy_threshold=self.unhealthy_threshold,
        )
        if record.consecutive_failures in (self.degraded_threshold, self.unhealthy_threshold):
            logger.warning(
                f"cloud_storage_raw_status_changed user_id={user_id} provider={provider} "
                f"raw_status={RawStatus(record.raw_status).value} consecutive_failures={record.consecutive_failures}"
            )
        return record

    async def record_success(
        self,
        user_id: str,
        provider: str,
        provider_data: dict[str, Any] | None = None,
    ) -> HealthRecord:
        previous = await self.repo.get(user_id, provider)
        previous_failures = previous.consecutive_failures if previous else 0
        record = await self.repo.record_success(user_id, provider, provider_data=provider_data)
        if previous_failures:
            logger.info(
                f"cloud_storage_recovered user_id={user_id} provider={provider} "
                f"previous_failures={previous_failures}"
            )
        return record

    async def record_check_error(
        self,
        user_id: str,
        provider: str,
        classification: ErrorClassification,
    ) -> HealthRecord:
        """检查类失败：只记录错误信息，不计入作业失败次数"""
        fields: dict[str, Any] = {
            "last_error_kind": classification.kind.value,
            "last_error_message": classification.user_message,
            "last_error_context": classification.to_context(),
        }
        # requires_reconnection 只由 authentication_required 状态迁移设置
        return await self.repo.update_fields(user_id, provider, **fields)

    async def update_status(
        self,
        user_id: str,
        provider: str,
        status: ConsolidatedStatus,
        **fields: Any,
    ) -> HealthRecord:
        previous = await self.repo.get(user_id, provider)
        previous_status = previous.consolidated_status if previous else None
        record = await self.repo.update_fields(user_id, provider, consolidated_status=status, **fields)
        if previous_status != status:
            logger.info(
                f"cloud_storage_status_changed user_id={user_id} provider={provider} "
                f"from={previous_status.value if previous_status else None} to={status.value}"
            )
        return record

    async def update_fields(self, user_id: str, provider: str, **fields: Any) -> HealthRecord:
        return await self.repo.update_fields(user_id, provider, **fields)

    async def increment_token_refresh_failures(self, user_id: str, provider: str) -> int:
        return await self.repo.increment_token_refresh_failures(user_id, provider)

    async def reset_token_refresh_failures(self, user_id: str, provider: str) -> None:
        await self.repo.reset_token_refresh_failures(user_id, provider)

    async def list_unhealthy(self, provider: str | None = None) -> list[HealthRecord]:
        return await self.repo.list_unhealthy(provider)

    async def list_expiring_tokens(self, provider: str | None = None, hours: int | None = None) -> list[HealthRecord]:
        window = timedelta(hours=hours or settings.TOKEN_EXPIRING_WINDOW_HOURS)
        return await self.repo.list_expiring_tokens(provider, within=window)

    async def cleanup_stale(self, older_than: datetime) -> int:
        deleted = await self.repo.cleanup_stale(older_than)
        if deleted:
            logger.info(f"cloud_storage_health_records_cleaned count={deleted}")
        return deleted

    async def disconnect(self, user_id: str, provider: str) -> bool:
        """用户主动断开：删除凭证与健康记录"""
        credential_deleted = await StorageCredentialRepository(self.session).delete(user_id, provider)
        record_deleted = await self.repo.delete(user_id, provider)
        logger.info(f"cloud_storage_disconnected user_id={user_id} provider={provider}")
        return credential_deleted or record_deleted
