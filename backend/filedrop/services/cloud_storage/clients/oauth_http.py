from datetime import timedelta
from typing import Any

import httpx

from filedrop.core.logging import logger
from filedrop.repositories.credential_repository import StorageCredentialRepository
from filedrop.utils.time_utils import Datetime

from ..errors import CloudStorageError
from .base import CloudStorageClient


def _error_reason(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict):
        errors = error.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("reason"):
            return errors[0]["reason"]
        return error.get("status")
    if isinstance(error, str):
        # OAuth token 端点: {"error": "invalid_grant", "error_description": "..."}
        return error
    return body.get("code") if isinstance(body.get("code"), str) else None


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None


class OAuthHttpClient(CloudStorageClient):
    """
    基于配置的 OAuth + HTTP Provider 客户端

    config:
      token_endpoint / client_id / client_secret: 刷新令牌
      probe_url: 连通性探测地址（Bearer 访问）
      timeout: 单次请求超时（秒）
      refresh_margin_seconds: 距过期不足该值即提前刷新
      operation_handler: "module:function"，实际的字节级上传由外部实现
    """

    required_config = ("token_endpoint", "client_id", "client_secret", "probe_url")

    def __init__(self, *args, transport: httpx.AsyncBaseTransport | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.transport = transport

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout", 10.0))

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _raise_for_response(self, response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        raise CloudStorageError(
            f"{action} failed: {response.text[:300]}",
            status_code=response.status_code,
            reason=_error_reason(response),
            retry_after=_retry_after(response),
            provider=self.provider,
        )

    async def validate_and_refresh_credential(self, user_id: str) -> bool:
        credential = await self.get_credential(user_id)
        if credential is None:
            return False

        margin = timedelta(seconds=int(self.config.get("refresh_margin_seconds", 300)))
        expires_at = Datetime.ensure_aware(credential.expires_at)
        if expires_at is not None and expires_at > Datetime.now() + margin:
            return True
        if expires_at is None and credential.access_token:
            return True
        if not credential.refresh_token:
            logger.info(f"credential_refresh_unavailable user_id={user_id} provider={self.provider}")
            return False

        async with self._http_client() as client:
            response = await client.post(
                self.config["token_endpoint"],
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.config.get("client_id"),
                    "client_secret": self.config.get("client_secret"),
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        self._raise_for_response(response, "Token refresh")

        try:
            payload = response.json()
        except ValueError as exc:
            raise CloudStorageError("Token endpoint returned non-JSON data", provider=self.provider) from exc
        access_token = payload.get("access_token")
        if not access_token:
            raise CloudStorageError("Token endpoint response missing access_token", provider=self.provider)

        expires_in = payload.get("expires_in")
        new_expiry = Datetime.now() + timedelta(seconds=int(expires_in)) if expires_in else None
        async with self.session_factory() as session:
            await StorageCredentialRepository(session).update_tokens(
                user_id,
                self.provider,
                access_token=access_token,
                expires_at=new_expiry,
                refresh_token=payload.get("refresh_token"),
            )
        logger.info(f"credential_refreshed user_id={user_id} provider={self.provider}")
        return True

    async def test_connectivity(self, user_id: str) -> bool:
        credential = await self.get_credential(user_id)
        if credential is None:
            return False
        async with self._http_client() as client:
            response = await client.get(
                self.config["probe_url"],
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        self._raise_for_response(response, "Connectivity probe")
        return True

    async def execute_operation(self, operation: Any) -> Any:
        handler_path = self.config.get("operation_handler")
        if not handler_path:
            raise CloudStorageError(
                f"No operation handler configured for {self.provider}",
                code="OperationNotSupported",
                provider=self.provider,
            )
        module_name, _, func_name = handler_path.partition(":")
        module = __import__(module_name, fromlist=[func_name])
        handler = getattr(module, func_name)
        credential = await self.get_credential(operation.user_id)
        return await handler(self, operation, credential)
