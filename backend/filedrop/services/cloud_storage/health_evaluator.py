"""
云存储连接健康评估

evaluate() 依次检查：
1. 是否存在凭证            -> 否: not_connected
2. 凭证已过期且不可刷新    -> authentication_required
3. 校验/刷新凭证 (缓存+限流) -> 失败: authentication_required
4. 实时连通性探测 (缓存+限流) -> 失败: connection_issues，成功: healthy
结果写回 HealthRecord。检查失败是正常结果，不抛异常。
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.core.cache_keys import CacheKeys
from filedrop.core.config import settings
from filedrop.core.logging import logger
from filedrop.models.health_record import ConsolidatedStatus, HealthRecord, RawStatus
from filedrop.repositories.credential_repository import StorageCredentialRepository
from filedrop.utils.time_utils import Datetime

from .error_classifier import build_classification, classify
from .error_types import ErrorKind
from .health_store import HealthRecordStore
from .provider_registry import ProviderRegistry
from .rate_limited_cache import RateLimitedCache

CHECK_TOKEN_REFRESH = "token_refresh"
CHECK_CONNECTIVITY = "connectivity"


class ConnectionHealthEvaluator:
    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        *,
        cache: RateLimitedCache | None = None,
        store: HealthRecordStore | None = None,
    ):
        self.session = session
        self.registry = registry
        self.cache = cache or RateLimitedCache()
        self.store = store or HealthRecordStore(session)
        self.credentials = StorageCredentialRepository(session)

    def _check_limits(self) -> dict[str, int]:
        return {
            CHECK_TOKEN_REFRESH: settings.HEALTH_TOKEN_REFRESH_MAX_ATTEMPTS,
            CHECK_CONNECTIVITY: settings.HEALTH_CONNECTIVITY_MAX_ATTEMPTS,
        }

    # ===== 合并状态 =====

    async def evaluate(self, user_id: str, provider: str) -> ConsolidatedStatus:
        try:
            return await self._evaluate(user_id, provider)
        except Exception as exc:
            logger.exception(f"cloud_storage_evaluate_failed user_id={user_id} provider={provider} error={exc}")
            try:
                await self.session.rollback()
                await self.store.update_status(user_id, provider, ConsolidatedStatus.CONNECTION_ISSUES)
            except Exception as persist_exc:
                logger.error(f"cloud_storage_status_persist_failed user_id={user_id} provider={provider} error={persist_exc}")
            return ConsolidatedStatus.CONNECTION_ISSUES

    async def _evaluate(self, user_id: str, provider: str) -> ConsolidatedStatus:
        await self.store.get_or_create(user_id, provider)
        credential = await self.credentials.get(user_id, provider)

        if credential is None:
            await self.store.update_status(
                user_id,
                provider,
                ConsolidatedStatus.NOT_CONNECTED,
                requires_reconnection=False,
                token_expires_at=None,
            )
            return ConsolidatedStatus.NOT_CONNECTED

        token_fields = {"token_expires_at": credential.expires_at}

        if credential.is_expired() and not credential.can_refresh():
            classification = build_classification(ErrorKind.TOKEN_EXPIRED, provider=provider)
            await self.store.record_check_error(user_id, provider, classification)
            await self.store.update_status(
                user_id,
                provider,
                ConsolidatedStatus.AUTHENTICATION_REQUIRED,
                requires_reconnection=True,
                **token_fields,
            )
            return ConsolidatedStatus.AUTHENTICATION_REQUIRED

        if not await self.ensure_valid_credential(user_id, provider):
            await self.store.update_status(
                user_id,
                provider,
                ConsolidatedStatus.AUTHENTICATION_REQUIRED,
                requires_reconnection=True,
                **token_fields,
            )
            return ConsolidatedStatus.AUTHENTICATION_REQUIRED

        # 刷新可能更新了过期时间
        await self.session.refresh(credential)
        token_fields = {"token_expires_at": credential.expires_at}

        if not await self.test_live_connectivity(user_id, provider):
            await self.store.update_status(
                user_id,
                provider,
                ConsolidatedStatus.CONNECTION_ISSUES,
                requires_reconnection=False,
                **token_fields,
            )
            return ConsolidatedStatus.CONNECTION_ISSUES

        await self.store.update_status(
            user_id,
            provider,
            ConsolidatedStatus.HEALTHY,
            requires_reconnection=False,
            last_successful_operation_at=Datetime.now(),
            **token_fields,
        )
        return ConsolidatedStatus.HEALTHY

    # ===== 凭证检查 =====

    def _refresh_backoff_remaining(self, record: HealthRecord) -> float:
        failures = record.token_refresh_failures or 0
        if failures < settings.TOKEN_REFRESH_BACKOFF_MIN_FAILURES:
            return 0.0
        elapsed = Datetime.seconds_since(record.last_token_refresh_attempt_at)
        if elapsed is None:
            return 0.0
        wait = min(
            settings.TOKEN_REFRESH_BACKOFF_MAX,
            settings.TOKEN_REFRESH_BACKOFF_BASE * 2 ** (failures - 1),
        )
        return max(0.0, wait - elapsed)

    async def _refresh_credential(self, user_id: str, provider: str) -> bool:
        record = await self.store.get_or_create(user_id, provider)
        remaining = self._refresh_backoff_remaining(record)
        if remaining > 0:
            logger.info(
                f"token_refresh_backoff_active user_id={user_id} provider={provider} "
                f"failures={record.token_refresh_failures} retry_in={remaining:.0f}s"
            )
            await self.store.record_check_error(
                user_id,
                provider,
                build_classification(ErrorKind.SERVICE_UNAVAILABLE, provider=provider),
            )
            return False

        client = self.registry.create_client(provider)
        try:
            valid = bool(await client.validate_and_refresh_credential(user_id))
        except Exception as exc:
            classification = classify(exc, provider, {"check": CHECK_TOKEN_REFRESH})
            logger.warning(
                f"token_refresh_failed user_id={user_id} provider={provider} "
                f"kind={classification.kind.value} error={exc}"
            )
            await self.store.increment_token_refresh_failures(user_id, provider)
            await self.store.record_check_error(user_id, provider, classification)
            return False

        if valid:
            await self.store.reset_token_refresh_failures(user_id, provider)
            return True

        logger.info(f"token_refresh_rejected user_id={user_id} provider={provider}")
        await self.store.increment_token_refresh_failures(user_id, provider)
        await self.store.record_check_error(
            user_id,
            provider,
            build_classification(ErrorKind.TOKEN_EXPIRED, provider=provider),
        )
        return False

    async def ensure_valid_credential(self, user_id: str, provider: str) -> bool:
        async def loader() -> bool:
            return await self._refresh_credential(user_id, provider)

        async def fallback() -> bool:
            record = await self.store.get(user_id, provider)
            if record is None:
                return False
            return record.is_token_refresh_working() and not record.requires_reconnection

        outcome = await self.cache.get_or_compute(
            CacheKeys.token_valid(user_id, provider),
            loader,
            success_ttl=settings.HEALTH_TOKEN_VALID_TTL,
            failure_ttl=settings.HEALTH_TOKEN_INVALID_TTL,
            limit_key=CacheKeys.rate_limit(user_id, provider, CHECK_TOKEN_REFRESH),
            max_attempts=settings.HEALTH_TOKEN_REFRESH_MAX_ATTEMPTS,
            window_seconds=settings.HEALTH_RATE_LIMIT_WINDOW,
            fallback=fallback,
        )
        return bool(outcome.value)

    # ===== 连通性检查 =====

    async def _probe_connectivity(self, user_id: str, provider: str) -> bool:
        client = self.registry.create_client(provider)
        result: dict[str, Any] = {
            "success": False,
            "tested_at": Datetime.to_iso_string(Datetime.now()),
            "test_type": "api_connectivity",
        }
        try:
            result["success"] = bool(await client.test_connectivity(user_id))
            if not result["success"]:
                result["error"] = {"kind": ErrorKind.UNKNOWN_ERROR.value, "message": "Connectivity probe returned a negative result"}
        except Exception as exc:
            classification = classify(exc, provider, {"check": CHECK_CONNECTIVITY})
            logger.warning(
                f"connectivity_probe_failed user_id={user_id} provider={provider} "
                f"kind={classification.kind.value} error={exc}"
            )
            result["error"] = {"kind": classification.kind.value, "message": str(exc)[:500]}
            await self.store.record_check_error(user_id, provider, classification)

        await self.store.update_fields(user_id, provider, operational_test_result=result)
        return result["success"]

    async def test_live_connectivity(self, user_id: str, provider: str) -> bool:
        async def loader() -> bool:
            return await self._probe_connectivity(user_id, provider)

        async def fallback() -> bool:
            record = await self.store.get(user_id, provider)
            if record is None or not record.operational_test_result:
                return False
            return bool(record.operational_test_result.get("success", False))

        outcome = await self.cache.get_or_compute(
            CacheKeys.api_connectivity(user_id, provider),
            loader,
            success_ttl=settings.HEALTH_CONNECTIVITY_OK_TTL,
            failure_ttl=settings.HEALTH_CONNECTIVITY_FAIL_TTL,
            limit_key=CacheKeys.rate_limit(user_id, provider, CHECK_CONNECTIVITY),
            max_attempts=settings.HEALTH_CONNECTIVITY_MAX_ATTEMPTS,
            window_seconds=settings.HEALTH_RATE_LIMIT_WINDOW,
            fallback=fallback,
        )
        return bool(outcome.value)

    # ===== 缓存管理 =====

    async def clear_caches(self, user_id: str, provider: str) -> None:
        """手动“测试连接”/重新授权后调用，保证下一次评估不读旧结果"""
        await self.cache.invalidate(
            CacheKeys.token_valid(user_id, provider),
            CacheKeys.api_connectivity(user_id, provider),
        )
        for check_type in self._check_limits():
            await self.cache.reset_counter(
                CacheKeys.rate_limit(user_id, provider, check_type),
                settings.HEALTH_RATE_LIMIT_WINDOW,
            )
        logger.info(f"cloud_storage_caches_cleared user_id={user_id} provider={provider}")

    # ===== 对外只读视图 =====

    async def get_health_summary(self, user_id: str, provider: str) -> dict[str, Any]:
        record = await self.store.get(user_id, provider)
        if record is None or record.consolidated_status is None:
            await self.evaluate(user_id, provider)
            record = await self.store.get(user_id, provider)

        consolidated = ConsolidatedStatus(record.consolidated_status)
        raw = RawStatus(record.raw_status)
        is_healthy = record.is_healthy()
        return {
            "provider": provider,
            "consolidated_status": consolidated.value,
            "raw_status": raw.value,
            "is_healthy": is_healthy,
            "is_degraded": record.is_degraded(),
            "is_unhealthy": record.is_unhealthy(),
            "status_message": record.status_message(),
            "last_successful_operation": Datetime.to_iso_string(record.last_successful_operation_at),
            "consecutive_failures": record.consecutive_failures,
            "requires_reconnection": record.requires_reconnection,
            "token_expires_at": Datetime.to_iso_string(record.token_expires_at),
            # 健康状态下不提示 token 问题，避免误报
            "token_expired": (not is_healthy) and record.is_token_expired(),
            "token_expiring_soon": (not is_healthy) and record.is_token_expiring_soon(settings.TOKEN_EXPIRING_WINDOW_HOURS),
            "last_error_kind": record.last_error_kind,
            "last_error_message": record.last_error_message,
            "provider_specific_data": record.provider_specific_data,
            "token_refresh_working": record.is_token_refresh_working(),
            "last_token_refresh_attempt": Datetime.to_iso_string(record.last_token_refresh_attempt_at),
            "operational_test_result": record.operational_test_result,
        }

    async def get_all_providers_health(self, user_id: str) -> list[dict[str, Any]]:
        return [
            await self.get_health_summary(user_id, provider)
            for provider in self.registry.names()
        ]

    async def get_rate_limit_status(self, user_id: str, provider: str) -> dict[str, dict[str, Any]]:
        window = settings.HEALTH_RATE_LIMIT_WINDOW
        status: dict[str, dict[str, Any]] = {}
        for check_type, max_attempts in self._check_limits().items():
            limit_key = CacheKeys.rate_limit(user_id, provider, check_type)
            attempts = await self.cache.attempts(limit_key, window)
            status[check_type] = {
                "attempts": attempts,
                "max_attempts": max_attempts,
                "can_attempt": attempts < max_attempts,
                "window_seconds": window,
            }
        return status
