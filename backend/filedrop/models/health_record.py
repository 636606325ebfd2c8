import enum
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from filedrop.utils.time_utils import Datetime

from .base import Base, JSONBCompat, TimestampMixin, UUIDPrimaryKeyMixin


class RawStatus(str, enum.Enum):
    """按连续失败次数推导的作业级健康状态"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ConsolidatedStatus(str, enum.Enum):
    """凭证 + 实时连通性两路信号合并后的状态（展示给用户）"""
    HEALTHY = "healthy"
    AUTHENTICATION_REQUIRED = "authentication_required"
    CONNECTION_ISSUES = "connection_issues"
    NOT_CONNECTED = "not_connected"


STATUS_MESSAGES: dict[ConsolidatedStatus, str] = {
    ConsolidatedStatus.HEALTHY: "Connected and working properly",
    ConsolidatedStatus.AUTHENTICATION_REQUIRED: "Authentication required - please reconnect",
    ConsolidatedStatus.CONNECTION_ISSUES: "Experiencing connectivity issues",
    ConsolidatedStatus.NOT_CONNECTED: "Not connected",
}


def derive_raw_status(
    consecutive_failures: int,
    degraded_threshold: int,
    unhealthy_threshold: int,
) -> RawStatus:
    """连续失败次数 -> RawStatus；与仓库层 SQL CASE 保持同一规则"""
    if consecutive_failures >= unhealthy_threshold:
        return RawStatus.UNHEALTHY
    if consecutive_failures >= degraded_threshold:
        return RawStatus.DEGRADED
    return RawStatus.HEALTHY


class HealthRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    云存储连接健康记录（每个 user × provider 唯一一条）

    - raw_status: 仅由作业失败/成功计数驱动
    - consolidated_status: 仅由凭证校验 + 连通性探测驱动
    两者相互独立，一并展示，不做合并。
    """
    __tablename__ = "cloud_storage_health_record"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_cloud_storage_health_record_user_provider"),
        Index("ix_cloud_storage_health_record_provider_status", "provider", "consolidated_status"),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True, comment="用户 ID")
    provider: Mapped[str] = mapped_column(String(50), nullable=False, comment="Provider 名称")

    raw_status: Mapped[RawStatus] = mapped_column(
        SAEnum(RawStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RawStatus.HEALTHY,
        server_default=RawStatus.HEALTHY.value,
        comment="作业级状态: healthy/degraded/unhealthy",
    )
    consolidated_status: Mapped[ConsolidatedStatus | None] = mapped_column(
        SAEnum(ConsolidatedStatus, native_enum=False, length=30, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
        comment="合并状态，首次评估前为空",
    )

    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0", comment="连续失败次数")
    last_error_kind: Mapped[str | None] = mapped_column(String(40), nullable=True, comment="最近一次错误分类")
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True, comment="最近一次错误信息")
    last_error_context: Mapped[dict[str, Any] | None] = mapped_column(JSONBCompat, nullable=True, comment="最近一次错误上下文")

    token_refresh_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0", comment="Token 刷新连续失败次数")
    last_token_refresh_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="最近一次 Token 刷新尝试时间")
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="凭证过期时间（同步自凭证表）")

    last_successful_operation_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="最近一次成功操作时间")
    operational_test_result: Mapped[dict[str, Any] | None] = mapped_column(JSONBCompat, nullable=True, comment="最近一次连通性探测结果")
    requires_reconnection: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false", comment="是否需要用户重新授权")
    provider_specific_data: Mapped[dict[str, Any] | None] = mapped_column(JSONBCompat, nullable=True, comment="Provider 配额/元数据")

    def is_healthy(self) -> bool:
        return self.consolidated_status == ConsolidatedStatus.HEALTHY

    def is_degraded(self) -> bool:
        return self.raw_status == RawStatus.DEGRADED

    def is_unhealthy(self) -> bool:
        return self.raw_status == RawStatus.UNHEALTHY

    def is_token_expired(self) -> bool:
        return Datetime.is_past(self.token_expires_at)

    def is_token_expiring_soon(self, hours: int = 24) -> bool:
        return Datetime.is_within(self.token_expires_at, timedelta(hours=hours))

    def is_token_refresh_working(self) -> bool:
        return (self.token_refresh_failures or 0) == 0

    def status_message(self) -> str:
        if self.consolidated_status is None:
            return "Status unknown"
        return STATUS_MESSAGES[ConsolidatedStatus(self.consolidated_status)]

    def __repr__(self) -> str:
        return f"<HealthRecord(user_id={self.user_id}, provider={self.provider}, status={self.consolidated_status})>"
