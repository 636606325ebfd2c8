from sqlalchemy import select

from filedrop.models.user_preference import UserStoragePreference

from .base import BaseRepository


class UserStoragePreferenceRepository(BaseRepository[UserStoragePreference]):
    model = UserStoragePreference

    async def get_provider(self, user_id: str) -> str | None:
        result = await self.session.execute(
            select(UserStoragePreference.provider).where(UserStoragePreference.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def set_provider(self, user_id: str, provider: str) -> UserStoragePreference:
        result = await self.session.execute(
            select(UserStoragePreference).where(UserStoragePreference.user_id == user_id)
        )
        pref = result.scalars().first()
        if pref is None:
            return await self.create({"user_id": user_id, "provider": provider})
        return await self.update(pref, {"provider": provider})
