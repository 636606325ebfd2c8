import enum
from dataclasses import dataclass, field
from typing import Any


class ErrorKind(str, enum.Enum):
    """云存储错误分类（稳定契约，不随调用点变化）"""
    TOKEN_EXPIRED = "token_expired"
    INVALID_CREDENTIALS = "invalid_credentials"
    NETWORK_ERROR = "network_error"
    API_QUOTA_EXCEEDED = "api_quota_exceeded"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    STORAGE_QUOTA_EXCEEDED = "storage_quota_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN_ERROR = "unknown_error"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class KindContract:
    severity: Severity
    is_retryable: bool
    is_recoverable_by_user: bool
    requires_reconnection: bool
    # None 表示由 RetryPolicy.max_attempts 决定
    max_retries: int | None


KIND_CONTRACTS: dict[ErrorKind, KindContract] = {
    ErrorKind.TOKEN_EXPIRED: KindContract(Severity.HIGH, False, True, True, 0),
    ErrorKind.INVALID_CREDENTIALS: KindContract(Severity.HIGH, False, True, True, 0),
    ErrorKind.INSUFFICIENT_PERMISSIONS: KindContract(Severity.HIGH, False, True, True, 0),
    ErrorKind.STORAGE_QUOTA_EXCEEDED: KindContract(Severity.HIGH, False, True, False, 0),
    ErrorKind.NETWORK_ERROR: KindContract(Severity.MEDIUM, True, False, False, None),
    ErrorKind.SERVICE_UNAVAILABLE: KindContract(Severity.MEDIUM, True, False, False, None),
    ErrorKind.API_QUOTA_EXCEEDED: KindContract(Severity.MEDIUM, True, False, False, None),
    ErrorKind.UNKNOWN_ERROR: KindContract(Severity.MEDIUM, True, False, False, 1),
}


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    severity: Severity
    is_retryable: bool
    is_recoverable_by_user: bool
    requires_reconnection: bool
    user_message: str
    recovery_instructions: tuple[str, ...]
    max_retries: int | None = None
    retry_after: int | None = None
    technical_detail: dict[str, Any] = field(default_factory=dict)

    def to_context(self) -> dict[str, Any]:
        """写入目标实体 / 健康记录的错误上下文"""
        context: dict[str, Any] = {
            "error_kind": self.kind.value,
            "severity": self.severity.value,
            "user_message": self.user_message,
            "recovery_instructions": list(self.recovery_instructions),
        }
        if self.retry_after is not None:
            context["retry_after"] = self.retry_after
        if self.technical_detail:
            context["technical_detail"] = self.technical_detail
        return context
