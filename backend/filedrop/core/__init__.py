from .cache import cache
from .celery_app import celery_app
from .config import settings
from .database import AsyncSessionLocal, engine
from .logging import logger, setup_logging

__all__ = [
    "AsyncSessionLocal",
    "cache",
    "celery_app",
    "engine",
    "logger",
    "settings",
    "setup_logging"
]
