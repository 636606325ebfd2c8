from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from filedrop.utils.time_utils import Datetime

from .base import Base, JSONBCompat, TimestampMixin, UUIDPrimaryKeyMixin


class StorageCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """用户在某个云存储 Provider 下保存的 OAuth 凭证"""
    __tablename__ = "cloud_storage_credential"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_cloud_storage_credential_user_provider"),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True, comment="用户 ID")
    provider: Mapped[str] = mapped_column(String(50), nullable=False, comment="Provider 名称")
    access_token: Mapped[str] = mapped_column(Text, nullable=False, comment="访问令牌")
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True, comment="刷新令牌，为空表示不可自动续期")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, comment="访问令牌过期时间")
    scopes: Mapped[list[str] | None] = mapped_column(JSONBCompat, nullable=True, comment="授权范围")
    extra: Mapped[dict[str, Any] | None] = mapped_column(JSONBCompat, nullable=True, comment="Provider 附加字段 (bucket/region 等)")

    def is_expired(self) -> bool:
        return Datetime.is_past(self.expires_at)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def __repr__(self) -> str:
        return f"<StorageCredential(user_id={self.user_id}, provider={self.provider})>"
