from __future__ import annotations

from celery import Celery
from celery.schedules import crontab
from celery.signals import beat_init, worker_process_init

from filedrop.core.config import settings
from filedrop.core.logging import setup_logging

celery_app = Celery(
    "filedrop",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_default_queue=settings.CELERY_TASK_DEFAULT_QUEUE,
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # 任务可靠性：执行完成后再 ack，worker 异常退出时重新投递
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_send_sent_event=True,

    # 重试由 RetryController 显式管理 (RetryState 随任务载荷传递)，这里不开启 autoretry
    task_annotations={
        "*": {
            "rate_limit": "100/s",
        },
    },

    # 定时任务配置
    beat_schedule={
        "sweep-connection-health": {
            "task": "filedrop.tasks.cloud_storage.sweep_connection_health",
            "schedule": settings.HEALTH_SWEEP_INTERVAL_SECONDS,
            "options": {"expires": settings.HEALTH_SWEEP_INTERVAL_SECONDS * 0.8},
        },
        "cleanup-health-records-daily": {
            "task": "filedrop.tasks.cloud_storage.cleanup_health_records",
            "schedule": crontab(minute=30, hour=3),
            "options": {"expires": 3300},
        },
    },
    # 任务路由配置
    task_routes={
        "filedrop.tasks.cloud_storage.run_storage_operation": {"queue": settings.CELERY_RETRY_QUEUE},
        "filedrop.tasks.cloud_storage.*": {"queue": settings.CELERY_TASK_DEFAULT_QUEUE},
        "*": {"queue": settings.CELERY_TASK_DEFAULT_QUEUE},
    },
)

# 自动发现 filedrop.tasks 下的任务
celery_app.autodiscover_tasks(["filedrop"])


@worker_process_init.connect
def init_worker_logging(**kwargs):
    """
    在 Celery worker 进程初始化时配置应用日志。
    """
    setup_logging()


@beat_init.connect
def init_beat_logging(**kwargs):
    """
    在 Celery beat 进程初始化时配置应用日志。
    """
    setup_logging()
