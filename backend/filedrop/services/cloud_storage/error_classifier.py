"""
云存储错误分类器

在 Provider Client 边界把任意失败（异常 / HTTP 响应 / 字符串）一次性映射为 ErrorKind。
规则表按顺序匹配，命中即止：
1. Provider 原因码 (Google Drive reason / S3 error code)
2. HTTP 状态码
3. 异常类型（超时、连接、DNS、TLS）
4. 错误信息关键字
5. 兜底 unknown_error
"""

import errno
import socket
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from filedrop.core.logging import logger

from .error_messages import recovery_instructions, user_message
from .error_types import KIND_CONTRACTS, ErrorClassification, ErrorKind
from .errors import CloudStorageError

# Google Drive API `error.errors[].reason`
GOOGLE_REASON_KINDS: dict[str, ErrorKind] = {
    "authError": ErrorKind.TOKEN_EXPIRED,
    "unauthorized": ErrorKind.TOKEN_EXPIRED,
    "invalidCredentials": ErrorKind.INVALID_CREDENTIALS,
    "insufficientPermissions": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "appNotAuthorizedToFile": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "rateLimitExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "userRateLimitExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "sharingRateLimitExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "quotaExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "dailyLimitExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "storageQuotaExceeded": ErrorKind.STORAGE_QUOTA_EXCEEDED,
    "backendError": ErrorKind.SERVICE_UNAVAILABLE,
    "internalError": ErrorKind.SERVICE_UNAVAILABLE,
    "serviceUnavailable": ErrorKind.SERVICE_UNAVAILABLE,
}

# S3 `Error.Code`
S3_CODE_KINDS: dict[str, ErrorKind] = {
    "ExpiredToken": ErrorKind.TOKEN_EXPIRED,
    "TokenRefreshRequired": ErrorKind.TOKEN_EXPIRED,
    "InvalidAccessKeyId": ErrorKind.INVALID_CREDENTIALS,
    "SignatureDoesNotMatch": ErrorKind.INVALID_CREDENTIALS,
    "InvalidToken": ErrorKind.INVALID_CREDENTIALS,
    "AccessDenied": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "AllAccessDisabled": ErrorKind.INSUFFICIENT_PERMISSIONS,
    "SlowDown": ErrorKind.API_QUOTA_EXCEEDED,
    "Throttling": ErrorKind.API_QUOTA_EXCEEDED,
    "RequestLimitExceeded": ErrorKind.API_QUOTA_EXCEEDED,
    "ServiceUnavailable": ErrorKind.SERVICE_UNAVAILABLE,
    "InternalError": ErrorKind.SERVICE_UNAVAILABLE,
    "RequestTimeout": ErrorKind.NETWORK_ERROR,
    "QuotaExceeded": ErrorKind.STORAGE_QUOTA_EXCEEDED,
}

NETWORK_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ENETDOWN,
    errno.EPIPE,
})

NETWORK_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    ssl.SSLError,
    httpx.TimeoutException,
    httpx.NetworkError,
)

# 关键字按顺序匹配（全部小写）
MESSAGE_KEYWORDS: tuple[tuple[str, ErrorKind], ...] = (
    ("invalid_client", ErrorKind.INVALID_CREDENTIALS),
    ("invalid client", ErrorKind.INVALID_CREDENTIALS),
    ("invalid credentials", ErrorKind.INVALID_CREDENTIALS),
    ("invalid_grant", ErrorKind.TOKEN_EXPIRED),
    ("token expired", ErrorKind.TOKEN_EXPIRED),
    ("token has been expired", ErrorKind.TOKEN_EXPIRED),
    ("expired token", ErrorKind.TOKEN_EXPIRED),
    ("insufficient permission", ErrorKind.INSUFFICIENT_PERMISSIONS),
    ("storage full", ErrorKind.STORAGE_QUOTA_EXCEEDED),
    ("storage quota", ErrorKind.STORAGE_QUOTA_EXCEEDED),
    ("rate limit", ErrorKind.API_QUOTA_EXCEEDED),
    ("too many requests", ErrorKind.API_QUOTA_EXCEEDED),
    ("quota", ErrorKind.API_QUOTA_EXCEEDED),
    ("timed out", ErrorKind.NETWORK_ERROR),
    ("timeout", ErrorKind.NETWORK_ERROR),
    ("could not resolve host", ErrorKind.NETWORK_ERROR),
    ("name resolution", ErrorKind.NETWORK_ERROR),
    ("connection refused", ErrorKind.NETWORK_ERROR),
    ("connection reset", ErrorKind.NETWORK_ERROR),
    ("network unreachable", ErrorKind.NETWORK_ERROR),
    ("ssl", ErrorKind.NETWORK_ERROR),
    ("certificate", ErrorKind.NETWORK_ERROR),
    ("service unavailable", ErrorKind.SERVICE_UNAVAILABLE),
    ("temporarily unavailable", ErrorKind.SERVICE_UNAVAILABLE),
)

QUOTA_MARKERS = ("quota", "rate limit", "ratelimit", "too many requests")
CLIENT_CREDENTIAL_MARKERS = ("invalid_client", "invalid client", "client credentials", "invalid credentials")


@dataclass(frozen=True)
class ErrorFacts:
    """从原始错误中提取的可匹配特征"""
    exception: BaseException | None
    status_code: int | None
    reason: str | None
    code: str | None
    message: str
    retry_after: int | None

    @property
    def lowered(self) -> str:
        return self.message.lower()


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    resolve: Callable[[ErrorFacts], ErrorKind | None]


def _by_provider_reason(facts: ErrorFacts) -> ErrorKind | None:
    if facts.reason and facts.reason in GOOGLE_REASON_KINDS:
        return GOOGLE_REASON_KINDS[facts.reason]
    if facts.code and facts.code in S3_CODE_KINDS:
        return S3_CODE_KINDS[facts.code]
    return None


def _by_http_status(facts: ErrorFacts) -> ErrorKind | None:
    status = facts.status_code
    if status is None:
        return None
    text = facts.lowered
    if status == 401:
        if any(marker in text for marker in CLIENT_CREDENTIAL_MARKERS):
            return ErrorKind.INVALID_CREDENTIALS
        return ErrorKind.TOKEN_EXPIRED
    if status == 403:
        if "storage" in text and "quota" in text:
            return ErrorKind.STORAGE_QUOTA_EXCEEDED
        if any(marker in text for marker in QUOTA_MARKERS):
            return ErrorKind.API_QUOTA_EXCEEDED
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status == 429:
        return ErrorKind.API_QUOTA_EXCEEDED
    if status == 507:
        return ErrorKind.STORAGE_QUOTA_EXCEEDED
    if status in (500, 502, 503, 504):
        return ErrorKind.SERVICE_UNAVAILABLE
    if status == 408:
        return ErrorKind.NETWORK_ERROR
    return None


def _by_exception_type(facts: ErrorFacts) -> ErrorKind | None:
    exc = facts.exception
    if exc is None:
        return None
    if isinstance(exc, NETWORK_EXCEPTION_TYPES):
        return ErrorKind.NETWORK_ERROR
    if isinstance(exc, OSError) and exc.errno in NETWORK_ERRNOS:
        return ErrorKind.NETWORK_ERROR
    return None


def _by_message(facts: ErrorFacts) -> ErrorKind | None:
    text = facts.lowered
    if not text:
        return None
    for keyword, kind in MESSAGE_KEYWORDS:
        if keyword in text:
            return kind
    return None


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("provider_reason", _by_provider_reason),
    ClassificationRule("http_status", _by_http_status),
    ClassificationRule("exception_type", _by_exception_type),
    ClassificationRule("message_keyword", _by_message),
)


def _parse_retry_after(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return None


def _google_reason(body: Any) -> str | None:
    """{"error": {"errors": [{"reason": "..."}]}}"""
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        errors = error.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("reason")
        return error.get("status")
    if isinstance(error, str):
        return error
    return None


def extract_facts(raw_error: Any) -> ErrorFacts:
    if isinstance(raw_error, CloudStorageError):
        return ErrorFacts(
            exception=raw_error,
            status_code=raw_error.status_code,
            reason=raw_error.reason,
            code=raw_error.code,
            message=raw_error.message or "",
            retry_after=raw_error.retry_after,
        )
    if isinstance(raw_error, httpx.HTTPStatusError):
        response = raw_error.response
        try:
            body = response.json()
        except ValueError:
            body = None
        return ErrorFacts(
            exception=raw_error,
            status_code=response.status_code,
            reason=_google_reason(body),
            code=None,
            message=response.text or str(raw_error),
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if isinstance(raw_error, BaseException):
        return ErrorFacts(
            exception=raw_error,
            status_code=getattr(raw_error, "status_code", None),
            reason=getattr(raw_error, "reason", None) if isinstance(getattr(raw_error, "reason", None), str) else None,
            code=getattr(raw_error, "code", None) if isinstance(getattr(raw_error, "code", None), str) else None,
            message=str(raw_error),
            retry_after=None,
        )
    if isinstance(raw_error, dict):
        status = raw_error.get("status_code", raw_error.get("status"))
        return ErrorFacts(
            exception=None,
            status_code=int(status) if isinstance(status, (int, str)) and str(status).isdigit() else None,
            reason=raw_error.get("reason") or _google_reason(raw_error),
            code=raw_error.get("code") if isinstance(raw_error.get("code"), str) else None,
            message=str(raw_error.get("message") or ""),
            retry_after=_parse_retry_after(raw_error.get("retry_after")),
        )
    return ErrorFacts(
        exception=None,
        status_code=None,
        reason=None,
        code=None,
        message="" if raw_error is None else str(raw_error),
        retry_after=None,
    )


def build_classification(
    kind: ErrorKind,
    *,
    provider: str | None = None,
    retry_after: int | None = None,
    technical_detail: dict[str, Any] | None = None,
) -> ErrorClassification:
    contract = KIND_CONTRACTS[kind]
    return ErrorClassification(
        kind=kind,
        severity=contract.severity,
        is_retryable=contract.is_retryable,
        is_recoverable_by_user=contract.is_recoverable_by_user,
        requires_reconnection=contract.requires_reconnection,
        user_message=user_message(kind, provider),
        recovery_instructions=tuple(recovery_instructions(kind, provider)),
        max_retries=contract.max_retries,
        retry_after=retry_after if kind == ErrorKind.API_QUOTA_EXCEEDED else None,
        technical_detail=technical_detail or {},
    )


def classify(
    raw_error: Any,
    provider: str | None = None,
    context: dict[str, Any] | None = None,
) -> ErrorClassification:
    """
    将任意失败映射为 ErrorClassification。纯函数、无 I/O、不抛异常。
    """
    try:
        facts = extract_facts(raw_error)
        provider = provider or getattr(raw_error, "provider", None)
        kind = ErrorKind.UNKNOWN_ERROR
        matched_rule = None
        for rule in CLASSIFICATION_RULES:
            resolved = rule.resolve(facts)
            if resolved is not None:
                kind, matched_rule = resolved, rule.name
                break

        detail: dict[str, Any] = {
            "matched_rule": matched_rule,
            "error_type": type(raw_error).__name__,
            "message": facts.message[:500],
        }
        if facts.status_code is not None:
            detail["status_code"] = facts.status_code
        if facts.reason:
            detail["reason"] = facts.reason
        if facts.code:
            detail["code"] = facts.code
        if context:
            detail["context"] = context
        return build_classification(
            kind,
            provider=provider,
            retry_after=facts.retry_after,
            technical_detail=detail,
        )
    except Exception as exc:
        logger.warning(f"error_classification_failed error={exc}")
        return build_classification(ErrorKind.UNKNOWN_ERROR, provider=None)
