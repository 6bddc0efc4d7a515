"""API 密钥来源。

适配器只通过 SecretStore.get(key) 取密钥，取不到时抛 MissingCredentialError。
默认实现从配置（环境变量 / .env / config.yaml）读取，
宿主应用可以换成系统钥匙串等其他实现。
"""

from typing import Mapping, Optional, Protocol

from companion_core.config.settings import settings


class SecretStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...


class SettingsSecretStore:
    """从 Settings 对象的同名属性读取密钥，例如 openai_api_key。"""

    def __init__(self, cfg=settings):
        self._settings = cfg

    def get(self, key: str) -> Optional[str]:
        value = getattr(self._settings, key, None)
        return value or None


class StaticSecretStore:
    """固定映射，用于宿主已自行解析好密钥的场景。"""

    def __init__(self, secrets: Mapping[str, str]):
        self._secrets = dict(secrets)

    def get(self, key: str) -> Optional[str]:
        return self._secrets.get(key) or None
