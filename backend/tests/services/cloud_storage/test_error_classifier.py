import errno
import socket
import ssl

import httpx
import pytest

from filedrop.services.cloud_storage.error_classifier import classify
from filedrop.services.cloud_storage.error_messages import MESSAGE_TEMPLATE_VERSION, build_error_response
from filedrop.services.cloud_storage.error_types import KIND_CONTRACTS, ErrorKind, Severity
from filedrop.services.cloud_storage.errors import CloudStorageError


def _http_error(status: int, body: dict | None = None, headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://www.googleapis.com/drive/v3/about")
    response = httpx.Response(status, json=body or {}, headers=headers, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (CloudStorageError("rate", status_code=429), ErrorKind.API_QUOTA_EXCEEDED),
        (CloudStorageError("unauthorized", status_code=401), ErrorKind.TOKEN_EXPIRED),
        (CloudStorageError("invalid_client: bad secret", status_code=401), ErrorKind.INVALID_CREDENTIALS),
        (CloudStorageError("forbidden", status_code=403), ErrorKind.INSUFFICIENT_PERMISSIONS),
        (CloudStorageError("User rate limit exceeded", status_code=403), ErrorKind.API_QUOTA_EXCEEDED),
        (CloudStorageError("boom", status_code=503), ErrorKind.SERVICE_UNAVAILABLE),
        (CloudStorageError("full", status_code=507), ErrorKind.STORAGE_QUOTA_EXCEEDED),
        (CloudStorageError("x", status_code=403, reason="storageQuotaExceeded"), ErrorKind.STORAGE_QUOTA_EXCEEDED),
        (CloudStorageError("x", status_code=403, reason="userRateLimitExceeded"), ErrorKind.API_QUOTA_EXCEEDED),
        (CloudStorageError("x", code="SignatureDoesNotMatch"), ErrorKind.INVALID_CREDENTIALS),
        (CloudStorageError("x", code="SlowDown"), ErrorKind.API_QUOTA_EXCEEDED),
        (CloudStorageError("x", code="AccessDenied"), ErrorKind.INSUFFICIENT_PERMISSIONS),
        (TimeoutError("read timed out"), ErrorKind.NETWORK_ERROR),
        (ConnectionRefusedError("refused"), ErrorKind.NETWORK_ERROR),
        (socket.gaierror("Name or service not known"), ErrorKind.NETWORK_ERROR),
        (ssl.SSLError("handshake failure"), ErrorKind.NETWORK_ERROR),
        (OSError(errno.EHOSTUNREACH, "No route to host"), ErrorKind.NETWORK_ERROR),
        (httpx.ConnectTimeout("connect timeout"), ErrorKind.NETWORK_ERROR),
        (RuntimeError("invalid_grant: Token has been expired or revoked."), ErrorKind.TOKEN_EXPIRED),
        (RuntimeError("Could not resolve host: www.googleapis.com"), ErrorKind.NETWORK_ERROR),
        (RuntimeError("something odd happened"), ErrorKind.UNKNOWN_ERROR),
        ({"status_code": 429, "message": "slow down"}, ErrorKind.API_QUOTA_EXCEEDED),
        ("storage full", ErrorKind.STORAGE_QUOTA_EXCEEDED),
        (None, ErrorKind.UNKNOWN_ERROR),
    ],
)
def test_classify_known_patterns(raw, expected):
    assert classify(raw, "google-drive").kind == expected


def test_classify_is_stable_across_calls():
    results = {
        (c.kind, c.is_retryable)
        for c in (classify(CloudStorageError("too many", status_code=429)) for _ in range(50))
    }
    assert results == {(ErrorKind.API_QUOTA_EXCEEDED, True)}


def test_contract_table_is_fixed_per_kind():
    assert set(KIND_CONTRACTS) == set(ErrorKind)
    token = classify(CloudStorageError("expired", status_code=401))
    assert token.severity == Severity.HIGH
    assert token.is_retryable is False
    assert token.is_recoverable_by_user is True
    assert token.requires_reconnection is True

    network = classify(TimeoutError())
    assert network.severity == Severity.MEDIUM
    assert network.is_retryable is True
    assert network.requires_reconnection is False

    unknown = classify(RuntimeError("???"))
    assert unknown.is_retryable is True
    assert unknown.max_retries == 1

    storage = classify(CloudStorageError("full", status_code=507))
    assert storage.is_recoverable_by_user is True
    assert storage.requires_reconnection is False


def test_google_reason_extracted_from_http_status_error():
    exc = _http_error(
        403,
        {"error": {"errors": [{"reason": "insufficientPermissions"}], "message": "Insufficient Permission"}},
    )
    result = classify(exc, "google-drive")
    assert result.kind == ErrorKind.INSUFFICIENT_PERMISSIONS
    assert result.technical_detail["reason"] == "insufficientPermissions"
    assert result.technical_detail["matched_rule"] == "provider_reason"


def test_retry_after_is_kept_for_quota_errors_only():
    quota = classify(_http_error(429, headers={"Retry-After": "120"}))
    assert quota.kind == ErrorKind.API_QUOTA_EXCEEDED
    assert quota.retry_after == 120

    unavailable = classify(CloudStorageError("down", status_code=503, retry_after=30))
    assert unavailable.retry_after is None


def test_messages_use_provider_display_name():
    result = classify(CloudStorageError("expired", status_code=401), "google-drive")
    assert result.user_message.startswith("Your Google Drive connection has expired")
    assert 'Click "Reconnect Google Drive"' in result.recovery_instructions

    s3 = classify(CloudStorageError("full", status_code=507), "amazon-s3")
    assert "Amazon S3" in s3.user_message

    custom = classify(TimeoutError(), "box-storage")
    assert "Box storage" in custom.user_message


def test_classifier_never_raises_on_hostile_input():
    class Weird(Exception):
        def __str__(self):
            raise ValueError("cannot render")

    result = classify(Weird())
    assert result.kind == ErrorKind.UNKNOWN_ERROR


def test_build_error_response_hides_technical_details_by_default():
    classification = classify(CloudStorageError("rate", status_code=429, retry_after=60), "google-drive")

    public = build_error_response(classification, retry_after=60)
    assert public["error_type"] == "api_quota_exceeded"
    assert public["is_retryable"] is True
    assert public["requires_user_action"] is False
    assert public["retry_after"] == 60
    assert public["template_version"] == MESSAGE_TEMPLATE_VERSION
    assert "technical_details" not in public

    admin = build_error_response(classification, show_technical_details=True)
    assert admin["technical_details"]["status_code"] == 429
