import asyncio
from datetime import timedelta
from typing import Any

from loguru import logger

from filedrop.core.cache import cache
from filedrop.core.celery_app import celery_app
from filedrop.core.config import settings
from filedrop.core.database import AsyncSessionLocal
from filedrop.repositories.credential_repository import StorageCredentialRepository
from filedrop.services.cloud_storage.health_evaluator import ConnectionHealthEvaluator
from filedrop.services.cloud_storage.health_store import HealthRecordStore
from filedrop.services.cloud_storage.provider_registry import get_provider_registry
from filedrop.services.cloud_storage.retry_controller import (
    CeleryJobQueue,
    FileUploadErrorTarget,
    Retry,
    RetryController,
    StorageOperation,
    Success,
)
from filedrop.utils.time_utils import Datetime


def _ensure_cache() -> None:
    # worker 进程不会经过应用启动流程，按需初始化 Redis
    if cache._redis is None:
        cache.init()


def _outcome_summary(outcome: Any) -> dict[str, Any]:
    if isinstance(outcome, Success):
        return {"status": "success", "attempt": outcome.state.attempt}
    if isinstance(outcome, Retry):
        return {"status": "retry", "delay_ms": outcome.delay_ms, "next_attempt": outcome.state.attempt}
    return {
        "status": "failed",
        "error_kind": outcome.classification.kind.value,
        "attempt": outcome.state.attempt,
    }


async def _run_operation(data: dict[str, Any]) -> dict[str, Any]:
    operation = StorageOperation.from_dict(data)
    registry = get_provider_registry()
    async with AsyncSessionLocal() as session:
        controller = RetryController(
            HealthRecordStore(session),
            CeleryJobQueue(),
            target=FileUploadErrorTarget(session),
        )

        async def executor(op: StorageOperation) -> Any:
            return await registry.create_client(op.provider).execute_operation(op)

        outcome = await controller.attempt(operation, executor)
    return _outcome_summary(outcome)


@celery_app.task(name="filedrop.tasks.cloud_storage.run_storage_operation")
def run_storage_operation(operation: dict[str, Any]) -> dict[str, Any]:
    """
    执行一次云存储操作；失败时由 RetryController 决定延迟重入队或终态失败
    """
    _ensure_cache()
    return asyncio.run(_run_operation(operation))


async def _check_connection(user_id: str, provider: str) -> str:
    async with AsyncSessionLocal() as session:
        evaluator = ConnectionHealthEvaluator(session, get_provider_registry())
        await evaluator.clear_caches(user_id, provider)
        status = await evaluator.evaluate(user_id, provider)
    return status.value


@celery_app.task(name="filedrop.tasks.cloud_storage.check_connection_health")
def check_connection_health(user_id: str, provider: str) -> str:
    """
    手动“测试连接”：先清空缓存与限流计数，再重新评估
    """
    _ensure_cache()
    return asyncio.run(_check_connection(user_id, provider))


async def _sweep() -> dict[str, int]:
    counts: dict[str, int] = {}
    async with AsyncSessionLocal() as session:
        registry = get_provider_registry()
        evaluator = ConnectionHealthEvaluator(session, registry)
        credentials = await StorageCredentialRepository(session).list_all()
        for credential in credentials:
            if registry.get(credential.provider) is None:
                continue
            status = await evaluator.evaluate(credential.user_id, credential.provider)
            counts[status.value] = counts.get(status.value, 0) + 1

        expiring = await evaluator.store.list_expiring_tokens()
        if expiring:
            logger.warning(f"cloud_storage_tokens_expiring count={len(expiring)}")
    return counts


@celery_app.task(name="filedrop.tasks.cloud_storage.sweep_connection_health")
def sweep_connection_health() -> dict[str, int] | str:
    """
    周期巡检：对所有已保存凭证做一次健康评估
    """
    logger.info("Starting sweep_connection_health...")
    _ensure_cache()
    try:
        counts = asyncio.run(_sweep())
        logger.info(f"sweep_connection_health completed counts={counts}")
        return counts
    except Exception as exc:
        logger.error(f"sweep_connection_health failed: {exc}")
        return f"Failed: {exc}"


async def _cleanup() -> int:
    cutoff = Datetime.now() - timedelta(days=settings.HEALTH_RECORD_RETENTION_DAYS)
    async with AsyncSessionLocal() as session:
        return await HealthRecordStore(session).cleanup_stale(cutoff)


@celery_app.task(name="filedrop.tasks.cloud_storage.cleanup_health_records")
def cleanup_health_records() -> int | str:
    """
    清理长期处于 not_connected 的健康记录
    """
    try:
        return asyncio.run(_cleanup())
    except Exception as exc:
        logger.error(f"cleanup_health_records failed: {exc}")
        return f"Failed: {exc}"
