from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.core.logging import logger
from filedrop.models.health_record import ConsolidatedStatus, RawStatus
from filedrop.repositories.user_preference_repository import UserStoragePreferenceRepository

from .clients.base import CloudStorageClient
from .errors import NoHealthyProviderAvailableError, NoProviderAvailableError, ProviderNotConfiguredError
from .health_evaluator import ConnectionHealthEvaluator
from .provider_registry import ProviderRegistry

ResolvedVia = Literal["explicit", "preference", "default", "fallback"]

STATUS_SCORES: dict[ConsolidatedStatus, int] = {
    ConsolidatedStatus.HEALTHY: 100,
    ConsolidatedStatus.CONNECTION_ISSUES: 25,
    ConsolidatedStatus.AUTHENTICATION_REQUIRED: 0,
    ConsolidatedStatus.NOT_CONNECTED: 0,
}

RAW_STATUS_PENALTIES: dict[RawStatus, int] = {
    RawStatus.HEALTHY: 0,
    RawStatus.DEGRADED: 25,
    RawStatus.UNHEALTHY: 50,
}


@dataclass
class ProviderHandle:
    name: str
    display_name: str
    client: CloudStorageClient
    via: ResolvedVia
    features: dict[str, Any] = field(default_factory=dict)


class ProviderManager:
    """
    Provider 选择

    resolve(): 显式指定 > 用户偏好 > 默认 Provider > 回退顺序
    best_for_user(): 在 resolve() 基础上要求评估结果为 healthy
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: ProviderRegistry,
        evaluator: ConnectionHealthEvaluator | None = None,
    ):
        self.session = session
        self.registry = registry
        self.evaluator = evaluator or ConnectionHealthEvaluator(session, registry)
        self.preferences = UserStoragePreferenceRepository(session)

    def _handle(self, name: str, via: ResolvedVia) -> ProviderHandle:
        entry = self.registry.get(name)
        return ProviderHandle(
            name=name,
            display_name=entry.display_name,
            client=self.registry.create_client(name),
            via=via,
            features=dict(entry.features),
        )

    async def resolve(self, user_id: str | None = None, provider_name: str | None = None) -> ProviderHandle:
        if provider_name:
            if not self.registry.is_configured(provider_name):
                raise ProviderNotConfiguredError(provider_name)
            return self._handle(provider_name, "explicit")

        if user_id:
            preferred = await self.preferences.get_provider(user_id)
            if preferred and self.registry.is_configured(preferred):
                return self._handle(preferred, "preference")
            if preferred:
                logger.info(f"cloud_storage_preference_unavailable user_id={user_id} provider={preferred}")

        default = self.registry.default_provider
        if self.registry.is_configured(default):
            return self._handle(default, "default")

        if self.registry.fallback_enabled:
            for name in self.registry.fallback_order:
                if self.registry.is_configured(name):
                    logger.info(f"cloud_storage_provider_fallback default={default} chosen={name}")
                    return self._handle(name, "fallback")

        raise NoProviderAvailableError("No cloud storage provider is configured")

    def _candidate_order(self) -> list[str]:
        """回退顺序在前，其余已配置 Provider 按注册顺序追加"""
        ordered = [name for name in self.registry.fallback_order if self.registry.is_configured(name)]
        ordered.extend(name for name in self.registry.configured_names() if name not in ordered)
        return ordered

    async def best_for_user(self, user_id: str) -> ProviderHandle:
        tried: list[str] = []
        try:
            preferred = await self.resolve(user_id=user_id)
        except NoProviderAvailableError:
            raise NoHealthyProviderAvailableError(user_id, tried) from None

        status = await self.evaluator.evaluate(user_id, preferred.name)
        tried.append(preferred.name)
        if status == ConsolidatedStatus.HEALTHY:
            return preferred

        for name in self._candidate_order():
            if name in tried:
                continue
            status = await self.evaluator.evaluate(user_id, name)
            tried.append(name)
            if status == ConsolidatedStatus.HEALTHY:
                logger.info(
                    f"cloud_storage_healthy_fallback user_id={user_id} "
                    f"preferred={preferred.name} chosen={name}"
                )
                return self._handle(name, "fallback")

        raise NoHealthyProviderAvailableError(user_id, tried)

    async def switch_preference(self, user_id: str, provider_name: str) -> None:
        if self.registry.get(provider_name) is None or not self.registry.is_configured(provider_name):
            raise ProviderNotConfiguredError(provider_name)
        await self.preferences.set_provider(user_id, provider_name)
        logger.info(f"cloud_storage_preference_switched user_id={user_id} provider={provider_name}")

    def available_providers(self) -> list[dict[str, Any]]:
        return [
            {
                "name": entry.name,
                "display_name": entry.display_name,
                "enabled": entry.enabled,
                "configured": entry.configured,
                "features": dict(entry.features),
            }
            for entry in self.registry.entries()
        ]

    async def rank_providers(self, user_id: str) -> list[dict[str, Any]]:
        ranked = []
        for index, name in enumerate(self._candidate_order()):
            status = await self.evaluator.evaluate(user_id, name)
            record = await self.evaluator.store.get(user_id, name)
            raw = RawStatus(record.raw_status) if record else RawStatus.HEALTHY
            score = max(0, STATUS_SCORES[status] - RAW_STATUS_PENALTIES[raw])
            ranked.append({
                "provider": name,
                "score": score,
                "consolidated_status": status.value,
                "raw_status": raw.value,
                "_order": index,
            })
        ranked.sort(key=lambda item: (-item["score"], item["_order"]))
        for item in ranked:
            item.pop("_order")
        return ranked

    def validate_all_providers(self) -> dict[str, dict[str, Any]]:
        results: dict[str, dict[str, Any]] = {}
        for entry in self.registry.entries():
            errors: list[str] = []
            if not entry.enabled:
                errors.append("Provider is disabled")
            errors.extend(f"Missing required configuration: {key}" for key in entry.missing_config)
            try:
                client = self.registry.create_client(entry.name)
                errors.extend(e for e in client.validate_configuration() if e not in errors)
            except Exception as exc:
                errors.append(f"Client could not be created: {exc}")
            results[entry.name] = {
                "valid": not errors,
                "errors": errors,
                "features": dict(entry.features),
            }
        return results
