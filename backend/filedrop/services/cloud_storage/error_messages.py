"""
面向用户的错误文案

每种 ErrorKind 对应固定的一句提示和有序的恢复步骤；
文案变更时递增 MESSAGE_TEMPLATE_VERSION，前端据此判断缓存的提示是否过期。
"""

from typing import Any

from .error_types import ErrorClassification, ErrorKind

MESSAGE_TEMPLATE_VERSION = "2024.1"

PROVIDER_DISPLAY_NAMES = {
    "google-drive": "Google Drive",
    "amazon-s3": "Amazon S3",
    "azure-blob": "Azure Blob Storage",
    "microsoft-teams": "Microsoft Teams",
    "dropbox": "Dropbox",
    "onedrive": "OneDrive",
}

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.TOKEN_EXPIRED: "Your {provider} connection has expired. Please reconnect your account to continue.",
    ErrorKind.INVALID_CREDENTIALS: "Invalid {provider} credentials. Please check your configuration and reconnect your account.",
    ErrorKind.INSUFFICIENT_PERMISSIONS: "Insufficient {provider} permissions. Please reconnect your account and ensure you grant full access.",
    ErrorKind.API_QUOTA_EXCEEDED: "{provider} API limit reached. Your operations will resume automatically when the limit resets.",
    ErrorKind.STORAGE_QUOTA_EXCEEDED: "Your {provider} storage is full. Please free up space or upgrade your storage plan.",
    ErrorKind.NETWORK_ERROR: "Network connection issue prevented the {provider} operation. Please check your internet connection and try again.",
    ErrorKind.SERVICE_UNAVAILABLE: "{provider} is temporarily unavailable. Please try again in a few minutes.",
    ErrorKind.UNKNOWN_ERROR: "An unexpected error occurred with {provider}. Please try again or contact support if the problem persists.",
}

_RECONNECT_STEPS = [
    "Go to Settings → Cloud Storage",
    'Click "Reconnect {provider}"',
    "Complete the authorization process",
    "Retry your operation",
]

RECOVERY_INSTRUCTIONS: dict[ErrorKind, list[str]] = {
    ErrorKind.TOKEN_EXPIRED: _RECONNECT_STEPS,
    ErrorKind.INVALID_CREDENTIALS: _RECONNECT_STEPS,
    ErrorKind.INSUFFICIENT_PERMISSIONS: [
        "Go to Settings → Cloud Storage",
        'Click "Reconnect {provider}"',
        "Ensure you grant full access when prompted",
        "Check that you have the necessary permissions",
    ],
    ErrorKind.STORAGE_QUOTA_EXCEEDED: [
        "Free up space in your {provider} account",
        "Empty your {provider} trash",
        "Consider upgrading your {provider} storage plan",
        "Contact your administrator if using a business account",
    ],
    ErrorKind.API_QUOTA_EXCEEDED: [
        "Wait for the quota to reset (usually within an hour)",
        "Operations will resume automatically",
        "Consider spreading large operations across multiple days",
    ],
    ErrorKind.NETWORK_ERROR: [
        "Check your internet connection",
        "Try again in a few minutes",
        "Contact your network administrator if the problem persists",
    ],
    ErrorKind.SERVICE_UNAVAILABLE: [
        "Wait a few minutes and try again",
        "Check {provider} status page for service updates",
        "Operations will be retried automatically",
    ],
    ErrorKind.UNKNOWN_ERROR: [
        "Try the operation again",
        "Check your internet connection",
        "Contact support if the problem persists",
        "Include any error details when contacting support",
    ],
}


def provider_display_name(provider: str | None) -> str:
    if not provider:
        return "cloud storage"
    return PROVIDER_DISPLAY_NAMES.get(provider, provider.replace("-", " ").capitalize())


def user_message(kind: ErrorKind, provider: str | None = None) -> str:
    return USER_MESSAGES[kind].format(provider=provider_display_name(provider))


def recovery_instructions(kind: ErrorKind, provider: str | None = None) -> list[str]:
    name = provider_display_name(provider)
    return [step.format(provider=name) for step in RECOVERY_INSTRUCTIONS[kind]]


def build_error_response(
    classification: ErrorClassification,
    *,
    show_technical_details: bool = False,
    retry_after: int | None = None,
) -> dict[str, Any]:
    """
    组装给展示层的错误结构；technical_details 仅在诊断视图（管理员）中返回
    """
    response: dict[str, Any] = {
        "error_type": classification.kind.value,
        "severity": classification.severity.value,
        "message": classification.user_message,
        "instructions": list(classification.recovery_instructions),
        "is_retryable": classification.is_retryable,
        "requires_user_action": classification.is_recoverable_by_user,
        "requires_reconnection": classification.requires_reconnection,
        "template_version": MESSAGE_TEMPLATE_VERSION,
    }
    if show_technical_details and classification.technical_detail:
        response["technical_details"] = classification.technical_detail
    if retry_after is not None:
        response["retry_after"] = retry_after
    return response
