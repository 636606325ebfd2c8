from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONBCompat, TimestampMixin, UUIDPrimaryKeyMixin

# 需要用户介入（重新授权/清理空间）的错误分类
USER_INTERVENTION_KINDS = frozenset({
    "token_expired",
    "invalid_credentials",
    "insufficient_permissions",
    "storage_quota_exceeded",
})


class FileUpload(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    上传记录

    云存储操作的目标实体：终态失败时写入分类后的错误供前端展示。
    """
    __tablename__ = "file_upload"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True, comment="上传者用户 ID")
    provider: Mapped[str | None] = mapped_column(String(50), nullable=True, comment="目标 Provider")
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False, comment="原始文件名")
    cloud_storage_error_type: Mapped[str | None] = mapped_column(String(40), nullable=True, comment="终态错误分类")
    cloud_storage_error_context: Mapped[dict[str, Any] | None] = mapped_column(JSONBCompat, nullable=True, comment="终态错误上下文")
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0", comment="已进行的重试次数")
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="最近一次处理时间")
    uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="成功上传到云存储的时间")

    def has_cloud_storage_error(self) -> bool:
        return self.cloud_storage_error_type is not None

    def requires_user_intervention(self) -> bool:
        return self.cloud_storage_error_type in USER_INTERVENTION_KINDS

    def __repr__(self) -> str:
        return f"<FileUpload(id={self.id}, filename={self.original_filename})>"
