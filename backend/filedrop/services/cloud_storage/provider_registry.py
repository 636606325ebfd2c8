import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from filedrop.core.config import settings
from filedrop.core.logging import logger

from .clients.base import CloudStorageClient
from .errors import ProviderNotConfiguredError

CONFIG_DIR = Path(__file__).resolve().parents[2] / "core"


def _expand_env(value: Any) -> Any:
    """配置中的 ${VAR} 从环境变量展开"""
    if isinstance(value, str):
        expanded = os.path.expandvars(value)
        # 仍含未展开占位符的值（含拼接在 URL 中的）视为未配置
        return "" if "${" in expanded else expanded
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


@dataclass
class ProviderEntry:
    name: str
    display_name: str
    module: str
    class_name: str
    enabled: bool = True
    required_config: list[str] = field(default_factory=list)
    features: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def missing_config(self) -> list[str]:
        return [key for key in self.required_config if not self.config.get(key)]

    @property
    def configured(self) -> bool:
        return self.enabled and not self.missing_config


class ProviderRegistry:
    """
    云存储 Provider 注册表（YAML 配置驱动）

    默认 Provider / 回退顺序来自 settings，可在构造时覆盖。
    """

    def __init__(
        self,
        config_path: str | None = None,
        *,
        entries: list[ProviderEntry] | None = None,
        default_provider: str | None = None,
        fallback_enabled: bool | None = None,
        fallback_order: list[str] | None = None,
    ):
        path = Path(config_path or settings.CLOUD_STORAGE_PROVIDERS_FILE)
        self.config_path = path if path.is_absolute() else CONFIG_DIR / path
        self.default_provider = default_provider if default_provider is not None else settings.CLOUD_STORAGE_DEFAULT_PROVIDER
        self.fallback_enabled = settings.CLOUD_STORAGE_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled
        self.fallback_order = list(fallback_order if fallback_order is not None else settings.CLOUD_STORAGE_FALLBACK_ORDER)
        self._entries: dict[str, ProviderEntry] = {}
        self._clients: dict[str, CloudStorageClient] = {}
        self._loaded = False
        if entries is not None:
            for entry in entries:
                self._entries[entry.name] = entry
            self._loaded = True

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs) -> "ProviderRegistry":
        return cls(entries=cls._parse_entries(data), **kwargs)

    @staticmethod
    def _parse_entries(data: dict[str, Any]) -> list[ProviderEntry]:
        entries = []
        for raw in data.get("providers", []) or []:
            entries.append(ProviderEntry(
                name=raw["name"],
                display_name=raw.get("display_name", raw["name"]),
                module=raw.get("module", ""),
                class_name=raw.get("class_name", ""),
                enabled=raw.get("enabled", True),
                required_config=list(raw.get("required_config", [])),
                features=dict(raw.get("features", {}) or {}),
                config=_expand_env(dict(raw.get("config", {}) or {})),
            ))
        return entries

    def load(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        if not self.config_path.exists():
            logger.warning(f"Cloud storage provider config not found at {self.config_path}")
            return

        try:
            with open(self.config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            for entry in self._parse_entries(data):
                self._entries[entry.name] = entry
            logger.info(f"Loaded {len(self._entries)} cloud storage providers from config.")
        except Exception as e:
            logger.error(f"Failed to load cloud storage provider config: {e}")

    def get(self, name: str) -> ProviderEntry | None:
        self.load()
        return self._entries.get(name)

    def names(self) -> list[str]:
        self.load()
        return list(self._entries)

    def entries(self) -> list[ProviderEntry]:
        self.load()
        return list(self._entries.values())

    def is_configured(self, name: str | None) -> bool:
        if not name:
            return False
        entry = self.get(name)
        return bool(entry and entry.configured)

    def configured_names(self) -> list[str]:
        return [entry.name for entry in self.entries() if entry.configured]

    def get_client_class(self, entry: ProviderEntry) -> type[CloudStorageClient]:
        module = __import__(entry.module, fromlist=[entry.class_name])
        return getattr(module, entry.class_name)

    def register_client(self, name: str, client: CloudStorageClient) -> None:
        """直接注入客户端实例（自定义实现 / 测试替身）"""
        self._clients[name] = client

    def create_client(self, name: str) -> CloudStorageClient:
        if name in self._clients:
            return self._clients[name]
        entry = self.get(name)
        if entry is None:
            raise ProviderNotConfiguredError(name)
        client_class = self.get_client_class(entry)
        client = client_class(provider=name, config=entry.config, features=entry.features)
        self._clients[name] = client
        return client


_registry: ProviderRegistry | None = None


def get_provider_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry
