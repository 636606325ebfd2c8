from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from filedrop.models.health_record import ConsolidatedStatus, HealthRecord, RawStatus
from filedrop.utils.time_utils import Datetime

from .base import BaseRepository


class HealthRecordRepository(BaseRepository[HealthRecord]):
    """
    云存储健康记录仓库

    计数类字段（consecutive_failures / token_refresh_failures）只通过
    单条 UPDATE ... RETURNING 修改，并发 worker 之间不会丢失更新。
    """

    model = HealthRecord

    async def get(self, user_id: str, provider: str) -> HealthRecord | None:
        stmt = select(HealthRecord).where(
            HealthRecord.user_id == user_id,
            HealthRecord.provider == provider,
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_or_create(self, user_id: str, provider: str) -> HealthRecord:
        record = await self.get(user_id, provider)
        if record:
            return record
        try:
            return await self.create({"user_id": user_id, "provider": provider})
        except IntegrityError:
            # 并发首建：另一 worker 已插入，回滚后重新读取
            await self.session.rollback()
            record = await self.get(user_id, provider)
            if record is None:
                raise
            return record

    async def _update_returning(self, user_id: str, provider: str, values: dict[str, Any], commit: bool) -> HealthRecord | None:
        stmt = (
            update(HealthRecord)
            .where(
                HealthRecord.user_id == user_id,
                HealthRecord.provider == provider,
            )
            .values(**values)
            .returning(HealthRecord)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        record = result.scalars().first()
        await self.session.flush()
        if commit:
            await self.session.commit()
        return record

    async def record_failure(
        self,
        user_id: str,
        provider: str,
        *,
        error_kind: str,
        error_message: str | None,
        error_context: dict[str, Any] | None = None,
        requires_reconnection: bool = False,
        degraded_threshold: int = 1,
        unhealthy_threshold: int = 5,
        commit: bool = True,
    ) -> HealthRecord:
        """失败计数 +1，并在同一条 UPDATE 内按阈值推导 raw_status"""
        await self.get_or_create(user_id, provider)
        next_failures = HealthRecord.consecutive_failures + 1
        values: dict[str, Any] = {
            "consecutive_failures": next_failures,
            "raw_status": case(
                (next_failures >= unhealthy_threshold, RawStatus.UNHEALTHY.value),
                (next_failures >= degraded_threshold, RawStatus.DEGRADED.value),
                else_=RawStatus.HEALTHY.value,
            ),
            "last_error_kind": error_kind,
            "last_error_message": error_message,
            "last_error_context": error_context,
        }
        if requires_reconnection:
            values["requires_reconnection"] = True
        return await self._update_returning(user_id, provider, values, commit)

    async def record_success(
        self,
        user_id: str,
        provider: str,
        *,
        provider_data: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> HealthRecord:
        """任意一次成功立即清零失败计数并回到 healthy（无滞后）"""
        await self.get_or_create(user_id, provider)
        values: dict[str, Any] = {
            "consecutive_failures": 0,
            "raw_status": RawStatus.HEALTHY,
            "last_error_kind": None,
            "last_error_message": None,
            "last_error_context": None,
            "last_successful_operation_at": Datetime.now(),
            "requires_reconnection": False,
        }
        if provider_data is not None:
            values["provider_specific_data"] = provider_data
        return await self._update_returning(user_id, provider, values, commit)

    async def increment_token_refresh_failures(self, user_id: str, provider: str, commit: bool = True) -> int:
        await self.get_or_create(user_id, provider)
        record = await self._update_returning(
            user_id,
            provider,
            {
                "token_refresh_failures": HealthRecord.token_refresh_failures + 1,
                "last_token_refresh_attempt_at": Datetime.now(),
            },
            commit,
        )
        return record.token_refresh_failures if record else 0

    async def reset_token_refresh_failures(self, user_id: str, provider: str, commit: bool = True) -> None:
        await self.get_or_create(user_id, provider)
        await self._update_returning(
            user_id,
            provider,
            {
                "token_refresh_failures": 0,
                "last_token_refresh_attempt_at": Datetime.now(),
            },
            commit,
        )

    async def update_fields(self, user_id: str, provider: str, commit: bool = True, **fields: Any) -> HealthRecord:
        """非计数字段的覆盖写（last write wins）"""
        await self.get_or_create(user_id, provider)
        return await self._update_returning(user_id, provider, fields, commit)

    async def list_unhealthy(self, provider: str | None = None) -> list[HealthRecord]:
        stmt = select(HealthRecord).where(
            or_(
                HealthRecord.raw_status == RawStatus.UNHEALTHY,
                HealthRecord.consolidated_status.in_([
                    ConsolidatedStatus.AUTHENTICATION_REQUIRED,
                    ConsolidatedStatus.CONNECTION_ISSUES,
                ]),
            )
        )
        if provider:
            stmt = stmt.where(HealthRecord.provider == provider)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_expiring_tokens(self, provider: str | None = None, within: timedelta = timedelta(hours=24)) -> list[HealthRecord]:
        now = Datetime.now()
        stmt = select(HealthRecord).where(
            HealthRecord.token_expires_at.is_not(None),
            HealthRecord.token_expires_at >= now,
            HealthRecord.token_expires_at <= now + within,
        )
        if provider:
            stmt = stmt.where(HealthRecord.provider == provider)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def cleanup_stale(self, older_than: datetime, commit: bool = True) -> int:
        """删除长期处于 not_connected 的记录"""
        stmt = delete(HealthRecord).where(
            HealthRecord.consolidated_status == ConsolidatedStatus.NOT_CONNECTED,
            HealthRecord.updated_at < older_than,
        )
        result = await self.session.execute(stmt)
        if commit:
            await self.session.commit()
        return result.rowcount or 0

    async def delete(self, user_id: str, provider: str, commit: bool = True) -> bool:
        stmt = delete(HealthRecord).where(
            HealthRecord.user_id == user_id,
            HealthRecord.provider == provider,
        )
        result = await self.session.execute(stmt)
        if commit:
            await self.session.commit()
        return bool(result.rowcount)
