from .base import BaseRepository
from .credential_repository import StorageCredentialRepository
from .file_upload_repository import FileUploadRepository
from .health_record_repository import HealthRecordRepository
from .user_preference_repository import UserStoragePreferenceRepository

__all__ = [
    "BaseRepository",
    "FileUploadRepository",
    "HealthRecordRepository",
    "StorageCredentialRepository",
    "UserStoragePreferenceRepository",
]
