from datetime import UTC, datetime, timedelta


class Datetime:
    """
    统一的时间处理工具类
    核心原则：
    1. 系统内部（数据库、逻辑处理）统一使用 UTC 时区
    2. 所有 datetime 对象必须带有时区信息 (Timezone-aware)
    """

    @staticmethod
    def now() -> datetime:
        """
        获取当前 UTC 时间（带时区信息）
        替代 datetime.now() 或 datetime.utcnow()
        """
        return datetime.now(UTC)

    @staticmethod
    def ensure_aware(dt: datetime | None) -> datetime | None:
        """
        将 naive datetime 视为 UTC（SQLite 读回的时间不带时区）
        """
        if dt is None:
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    @staticmethod
    def to_iso_string(dt: datetime | None) -> str | None:
        """转换为 ISO 8601 格式字符串 (e.g., 2023-01-01T12:00:00+00:00)"""
        if dt is None:
            return None
        return Datetime.ensure_aware(dt).isoformat()

    @staticmethod
    def from_iso_string(iso_string: str) -> datetime:
        """从 ISO 8601 字符串解析"""
        dt = datetime.fromisoformat(iso_string)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    @staticmethod
    def from_timestamp(timestamp: float) -> datetime:
        """从时间戳转换为 UTC 时间"""
        return datetime.fromtimestamp(timestamp, tz=UTC)

    @staticmethod
    def seconds_since(dt: datetime | None) -> float | None:
        """距今经过的秒数；dt 为空时返回 None"""
        if dt is None:
            return None
        return (Datetime.now() - Datetime.ensure_aware(dt)).total_seconds()

    @staticmethod
    def is_past(dt: datetime | None) -> bool:
        if dt is None:
            return False
        return Datetime.ensure_aware(dt) <= Datetime.now()

    @staticmethod
    def is_within(dt: datetime | None, delta: timedelta) -> bool:
        """dt 是否落在 [now, now + delta] 区间内"""
        if dt is None:
            return False
        aware = Datetime.ensure_aware(dt)
        now = Datetime.now()
        return now <= aware <= now + delta
