from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class UserStoragePreference(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """用户首选的云存储 Provider"""
    __tablename__ = "cloud_storage_user_preference"

    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, comment="用户 ID")
    provider: Mapped[str] = mapped_column(String(50), nullable=False, comment="首选 Provider 名称")

    def __repr__(self) -> str:
        return f"<UserStoragePreference(user_id={self.user_id}, provider={self.provider})>"
