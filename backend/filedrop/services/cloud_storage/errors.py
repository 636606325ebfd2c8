class CloudStorageError(Exception):
    """Provider 调用失败（由各 Provider Client 归一化后抛出）"""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        code: str | None = None,
        retry_after: int | None = None,
        provider: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.code = code
        self.retry_after = retry_after
        self.provider = provider
        super().__init__(f"Cloud storage error: status={status_code}, reason={reason or code}, message={message}")


class ProviderNotConfiguredError(Exception):
    """显式指定的 Provider 不在注册表中或未完成配置"""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Cloud storage provider '{provider}' is not configured")


class NoProviderAvailableError(Exception):
    """默认 Provider 与回退列表均不可用"""

    pass


class NoHealthyProviderAvailableError(Exception):
    """所有已配置 Provider 的评估结果都不是 healthy"""

    def __init__(self, user_id: str, tried: list[str]):
        self.user_id = user_id
        self.tried = tried
        super().__init__(f"No healthy cloud storage provider for user {user_id} (tried: {', '.join(tried) or 'none'})")
