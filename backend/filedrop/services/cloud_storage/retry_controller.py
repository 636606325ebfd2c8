"""
失败操作的重试控制

重试状态 (RetryState) 随任务载荷显式传递，不依赖队列自身的重试计数。
attempt 为 1 起始的执行序号：第 n 次执行失败时，已进行的重试次数为 n - 1，
小于该错误类型允许的重试上限时以 delay_for(n) 重新入队，否则记为终态失败。
"""

import random
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.core.celery_app import celery_app
from filedrop.core.config import settings
from filedrop.core.logging import logger
from filedrop.repositories.file_upload_repository import FileUploadRepository

from .error_classifier import classify
from .error_types import ErrorClassification, ErrorKind
from .health_store import HealthRecordStore

RUN_OPERATION_TASK = "filedrop.tasks.cloud_storage.run_storage_operation"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2
    max_delay_ms: int = 30000
    jitter: bool = False
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            jitter=settings.RETRY_JITTER,
        )

    @classmethod
    def quota_from_settings(cls) -> "RetryPolicy":
        """API 配额类错误使用更长的退避"""
        return replace(
            cls.from_settings(),
            base_delay_ms=settings.RETRY_QUOTA_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_QUOTA_MAX_DELAY_MS,
        )

    def delay_for(self, attempt: int, retry_after: int | None = None) -> int:
        """第 attempt 次执行失败后的等待毫秒数"""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        delay = min(self.max_delay_ms, self.base_delay_ms * self.backoff_multiplier ** (attempt - 1))
        if retry_after:
            delay = max(delay, retry_after * 1000)
        if self.jitter:
            delta = int(delay * self.jitter_ratio)
            delay += random.randint(-delta, delta)
        return max(0, int(delay))


@dataclass(frozen=True)
class RetryState:
    attempt: int = 1
    next_delay_ms: int | None = None
    last_error_kind: str | None = None

    @property
    def retries_made(self) -> int:
        return self.attempt - 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "next_delay_ms": self.next_delay_ms,
            "last_error_kind": self.last_error_kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryState":
        data = data or {}
        return cls(
            attempt=int(data.get("attempt", 1)),
            next_delay_ms=data.get("next_delay_ms"),
            last_error_kind=data.get("last_error_kind"),
        )


@dataclass(frozen=True)
class StorageOperation:
    user_id: str
    provider: str
    kind: str
    target_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    operation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_state: RetryState = field(default_factory=RetryState)

    def next_attempt(self, delay_ms: int, error_kind: ErrorKind) -> "StorageOperation":
        return replace(
            self,
            retry_state=RetryState(
                attempt=self.retry_state.attempt + 1,
                next_delay_ms=delay_ms,
                last_error_kind=error_kind.value,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "provider": self.provider,
            "kind": self.kind,
            "target_id": self.target_id,
            "payload": dict(self.payload),
            "retry_state": self.retry_state.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageOperation":
        return cls(
            operation_id=data.get("operation_id") or str(uuid.uuid4()),
            user_id=data["user_id"],
            provider=data["provider"],
            kind=data["kind"],
            target_id=data.get("target_id"),
            payload=dict(data.get("payload") or {}),
            retry_state=RetryState.from_dict(data.get("retry_state")),
        )


@dataclass(frozen=True)
class Success:
    result: Any
    state: RetryState


@dataclass(frozen=True)
class Retry:
    delay_ms: int
    state: RetryState


@dataclass(frozen=True)
class TerminalFailure:
    classification: ErrorClassification
    state: RetryState


Outcome = Success | Retry | TerminalFailure


class JobQueue(Protocol):
    def enqueue(self, operation: StorageOperation, delay_ms: int) -> None: ...


class ErrorTarget(Protocol):
    async def record_error(
        self,
        operation: StorageOperation,
        classification: ErrorClassification,
        error_context: dict[str, Any],
    ) -> None: ...

    async def clear_error(self, operation: StorageOperation) -> None: ...


class CeleryJobQueue:
    """通过 Celery countdown 实现延迟重新入队"""

    def __init__(self, queue: str | None = None):
        self.queue = queue or settings.CELERY_RETRY_QUEUE

    def enqueue(self, operation: StorageOperation, delay_ms: int) -> None:
        celery_app.send_task(
            RUN_OPERATION_TASK,
            args=[operation.to_dict()],
            countdown=delay_ms / 1000,
            queue=self.queue,
        )


class FileUploadErrorTarget:
    """把终态错误写到 FileUpload 上供展示层读取"""

    def __init__(self, session: AsyncSession):
        self.repo = FileUploadRepository(session)

    @staticmethod
    def _upload_id(operation: StorageOperation) -> UUID | None:
        if not operation.target_id:
            return None
        try:
            return UUID(str(operation.target_id))
        except ValueError:
            logger.warning(f"file_upload_target_invalid operation_id={operation.operation_id} target_id={operation.target_id}")
            return None

    async def record_error(
        self,
        operation: StorageOperation,
        classification: ErrorClassification,
        error_context: dict[str, Any],
    ) -> None:
        upload_id = self._upload_id(operation)
        if upload_id is None:
            return
        await self.repo.record_error(
            upload_id,
            error_type=classification.kind.value,
            error_context=error_context,
            retry_attempts=operation.retry_state.retries_made,
        )

    async def clear_error(self, operation: StorageOperation) -> None:
        upload_id = self._upload_id(operation)
        if upload_id is None:
            return
        await self.repo.clear_error(upload_id, retry_attempts=operation.retry_state.retries_made)


class RetryController:
    def __init__(
        self,
        store: HealthRecordStore,
        queue: JobQueue,
        *,
        classifier: Callable[..., ErrorClassification] = classify,
        policy: RetryPolicy | None = None,
        quota_policy: RetryPolicy | None = None,
        target: ErrorTarget | None = None,
    ):
        self.store = store
        self.queue = queue
        self.classifier = classifier
        self.policy = policy or RetryPolicy.from_settings()
        self.quota_policy = quota_policy or RetryPolicy.quota_from_settings()
        self.target = target

    def policy_for(self, kind: ErrorKind) -> RetryPolicy:
        if kind == ErrorKind.API_QUOTA_EXCEEDED:
            return self.quota_policy
        return self.policy

    def retry_limit(self, classification: ErrorClassification) -> int:
        if not classification.is_retryable:
            return 0
        limit = self.policy_for(classification.kind).max_attempts
        if classification.max_retries is not None:
            limit = min(limit, classification.max_retries)
        return limit

    async def attempt(
        self,
        operation: StorageOperation,
        executor: Callable[[StorageOperation], Awaitable[Any]],
        error_context: dict[str, Any] | None = None,
    ) -> Outcome:
        """执行一次操作；任何异常都在此处分类处理，不向外传播"""
        try:
            result = await executor(operation)
        except Exception as exc:
            return await self._handle_failure(operation, exc, error_context)

        try:
            await self.store.record_success(operation.user_id, operation.provider)
            if self.target:
                await self.target.clear_error(operation)
        except Exception as exc:
            logger.error(f"retry_success_bookkeeping_failed operation_id={operation.operation_id} error={exc}")
        if operation.retry_state.retries_made:
            logger.info(
                f"storage_operation_succeeded_after_retry operation_id={operation.operation_id} "
                f"attempt={operation.retry_state.attempt}"
            )
        return Success(result, operation.retry_state)

    async def _handle_failure(
        self,
        operation: StorageOperation,
        exc: Exception,
        error_context: dict[str, Any] | None,
    ) -> Outcome:
        state = operation.retry_state
        classification = self.classifier(
            exc,
            operation.provider,
            {**(error_context or {}), "operation_id": operation.operation_id, "attempt": state.attempt},
        )
        context = {
            **classification.to_context(),
            **(error_context or {}),
            "operation_id": operation.operation_id,
            "operation_kind": operation.kind,
            "attempt": state.attempt,
        }

        try:
            await self.store.record_failure(operation.user_id, operation.provider, classification, context)
        except Exception as store_exc:
            logger.error(f"retry_failure_bookkeeping_failed operation_id={operation.operation_id} error={store_exc}")

        if state.retries_made < self.retry_limit(classification):
            delay_ms = self.policy_for(classification.kind).delay_for(state.attempt, classification.retry_after)
            next_operation = operation.next_attempt(delay_ms, classification.kind)
            try:
                self.queue.enqueue(next_operation, delay_ms)
            except Exception as queue_exc:
                logger.error(f"retry_enqueue_failed operation_id={operation.operation_id} error={queue_exc}")
                context["enqueue_error"] = str(queue_exc)
            else:
                logger.info(
                    f"storage_operation_retry_scheduled operation_id={operation.operation_id} "
                    f"user_id={operation.user_id} provider={operation.provider} "
                    f"kind={classification.kind.value} attempt={state.attempt} delay_ms={delay_ms}"
                )
                return Retry(delay_ms, next_operation.retry_state)

        final_state = replace(state, next_delay_ms=None, last_error_kind=classification.kind.value)
        try:
            if self.target:
                await self.target.record_error(operation, classification, context)
        except Exception as target_exc:
            logger.error(f"retry_target_update_failed operation_id={operation.operation_id} error={target_exc}")
        logger.warning(
            f"storage_operation_failed_terminally operation_id={operation.operation_id} "
            f"user_id={operation.user_id} provider={operation.provider} "
            f"kind={classification.kind.value} attempts={state.attempt}"
        )
        return TerminalFailure(classification, final_state)
