"""缓存 Key 注册表实现。

禁止在业务代码中硬编码 Redis Key，统一从此处生成，便于失效管理。
"""

from __future__ import annotations


class CacheKeys:
    prefix = "fd"

    # ===== 云存储健康检查 =====
    @classmethod
    def health_scope(cls, user_id: str, provider: str) -> str:
        """某用户 + provider 下所有健康检查相关 key 的公共前缀，用于整体失效。"""
        return f"{cls.prefix}:health:{user_id}:{provider}:"

    @classmethod
    def token_valid(cls, user_id: str, provider: str) -> str:
        """凭证校验/刷新结果缓存 key。"""
        return f"{cls.health_scope(user_id, provider)}token_valid"

    @classmethod
    def api_connectivity(cls, user_id: str, provider: str) -> str:
        """实时连通性探测结果缓存 key。"""
        return f"{cls.health_scope(user_id, provider)}api_connectivity"

    @classmethod
    def last_result(cls, check_key: str) -> str:
        """检查结果的“最近一次”副本，TTL 远长于正常缓存，供限流时回退。"""
        return f"{check_key}:last"

    @classmethod
    def rate_limit(cls, user_id: str, provider: str, check_type: str) -> str:
        """(user, provider, checkType) 的滑动窗口计数器前缀。"""
        return f"{cls.health_scope(user_id, provider)}rl:{check_type}"

    @classmethod
    def rate_limit_bucket(cls, limit_key: str, window_index: int) -> str:
        """滑动窗口中单个固定桶的计数 key。"""
        return f"{limit_key}:{window_index}"
