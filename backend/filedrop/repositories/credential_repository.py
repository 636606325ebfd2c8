from datetime import datetime

from sqlalchemy import delete, select, update

from filedrop.models.storage_credential import StorageCredential

from .base import BaseRepository


class StorageCredentialRepository(BaseRepository[StorageCredential]):
    model = StorageCredential

    async def get(self, user_id: str, provider: str) -> StorageCredential | None:
        result = await self.session.execute(
            select(StorageCredential).where(
                StorageCredential.user_id == user_id,
                StorageCredential.provider == provider,
            )
        )
        return result.scalars().first()

    async def list_all(self, provider: str | None = None) -> list[StorageCredential]:
        stmt = select(StorageCredential).order_by(StorageCredential.user_id)
        if provider:
            stmt = stmt.where(StorageCredential.provider == provider)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> None:
        """刷新成功后持久化新令牌；refresh_token 为空时保留原值"""
        values = {"access_token": access_token, "expires_at": expires_at}
        if refresh_token:
            values["refresh_token"] = refresh_token
        await self.session.execute(
            update(StorageCredential)
            .where(
                StorageCredential.user_id == user_id,
                StorageCredential.provider == provider,
            )
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.commit()

    async def delete(self, user_id: str, provider: str) -> bool:
        result = await self.session.execute(
            delete(StorageCredential).where(
                StorageCredential.user_id == user_id,
                StorageCredential.provider == provider,
            )
        )
        await self.session.commit()
        return bool(result.rowcount)
