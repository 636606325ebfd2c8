from typing import Any
from uuid import UUID

from sqlalchemy import update

from filedrop.models.file_upload import FileUpload
from filedrop.utils.time_utils import Datetime

from .base import BaseRepository


class FileUploadRepository(BaseRepository[FileUpload]):
    model = FileUpload

    async def record_error(
        self,
        upload_id: UUID,
        *,
        error_type: str,
        error_context: dict[str, Any],
        retry_attempts: int,
    ) -> bool:
        result = await self.session.execute(
            update(FileUpload)
            .where(FileUpload.id == upload_id)
            .values(
                cloud_storage_error_type=error_type,
                cloud_storage_error_context=error_context,
                retry_attempts=retry_attempts,
                last_processed_at=Datetime.now(),
            )
            .execution_options(synchronize_session="fetch")
        )
        await self.session.commit()
        return bool(result.rowcount)

    async def clear_error(self, upload_id: UUID, *, retry_attempts: int | None = None) -> bool:
        values: dict[str, Any] = {
            "cloud_storage_error_type": None,
            "cloud_storage_error_context": None,
            "last_processed_at": Datetime.now(),
            "uploaded_at": Datetime.now(),
        }
        if retry_attempts is not None:
            values["retry_attempts"] = retry_attempts
        result = await self.session.execute(
            update(FileUpload)
            .where(FileUpload.id == upload_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        await self.session.commit()
        return bool(result.rowcount)
