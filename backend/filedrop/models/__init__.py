from .base import Base, JSONBCompat
from .file_upload import FileUpload
from .health_record import ConsolidatedStatus, HealthRecord, RawStatus, derive_raw_status
from .storage_credential import StorageCredential
from .user_preference import UserStoragePreference

__all__ = [
    "Base",
    "ConsolidatedStatus",
    "FileUpload",
    "HealthRecord",
    "JSONBCompat",
    "RawStatus",
    "StorageCredential",
    "UserStoragePreference",
    "derive_raw_status",
]
