from .error_classifier import classify
from .error_messages import build_error_response
from .error_types import ErrorClassification, ErrorKind, Severity
from .errors import (
    CloudStorageError,
    NoHealthyProviderAvailableError,
    NoProviderAvailableError,
    ProviderNotConfiguredError,
)
from .health_evaluator import ConnectionHealthEvaluator
from .health_store import HealthRecordStore
from .provider_manager import ProviderHandle, ProviderManager
from .provider_registry import ProviderRegistry, get_provider_registry
from .rate_limited_cache import CheckOutcome, RateLimitedCache
from .retry_controller import (
    CeleryJobQueue,
    FileUploadErrorTarget,
    Retry,
    RetryController,
    RetryPolicy,
    RetryState,
    StorageOperation,
    Success,
    TerminalFailure,
)

__all__ = [
    "CeleryJobQueue",
    "CheckOutcome",
    "CloudStorageError",
    "ConnectionHealthEvaluator",
    "ErrorClassification",
    "ErrorKind",
    "FileUploadErrorTarget",
    "HealthRecordStore",
    "NoHealthyProviderAvailableError",
    "NoProviderAvailableError",
    "ProviderHandle",
    "ProviderManager",
    "ProviderNotConfiguredError",
    "ProviderRegistry",
    "RateLimitedCache",
    "Retry",
    "RetryController",
    "RetryPolicy",
    "RetryState",
    "Severity",
    "StorageOperation",
    "Success",
    "TerminalFailure",
    "build_error_response",
    "classify",
    "get_provider_registry",
]
