# 使 Celery 自动发现任务模块
from filedrop.tasks import cloud_storage  # noqa: F401
