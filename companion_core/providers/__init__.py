"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 适配器协议与 HTTP 公共实现 (base)。
- 维护 Provider 与模型目录 (registry)。
- 提供各厂商的具体实现 (openai_client、anthropic_client、mock_client)。
"""

from typing import Optional

from companion_core.config.settings import settings
from companion_core.domain.models import ProviderType
from companion_core.providers.anthropic_client import AnthropicAdapter
from companion_core.providers.base import ProviderAdapter
from companion_core.providers.mock_client import MockAdapter
from companion_core.providers.openai_client import OpenAIAdapter
from companion_core.providers.registry import MODEL_CATALOG, ProviderRegistry
from companion_core.providers.secrets import SecretStore, SettingsSecretStore
from companion_core.tokens import TokenEstimator


def create_adapter(
    provider: ProviderType,
    secret_store: SecretStore,
    cfg=settings,
    estimator: Optional[TokenEstimator] = None,
) -> ProviderAdapter:
    """根据 Provider 标识创建适配器实例。"""

    if provider == ProviderType.OPENAI:
        return OpenAIAdapter(secret_store, cfg, estimator)
    if provider == ProviderType.ANTHROPIC:
        return AnthropicAdapter(secret_store, cfg, estimator)
    if provider == ProviderType.MOCK:
        return MockAdapter(cfg)
    raise ValueError(f"Unsupported provider: {provider!r}")


def build_default_registry(
    secret_store: Optional[SecretStore] = None,
    cfg=settings,
    estimator: Optional[TokenEstimator] = None,
) -> ProviderRegistry:
    """注册全部内置适配器与模型目录。"""

    store = secret_store or SettingsSecretStore(cfg)
    adapters = {provider: create_adapter(provider, store, cfg, estimator) for provider in MODEL_CATALOG}
    return ProviderRegistry(
        adapters=adapters,
        catalog=MODEL_CATALOG,
        default_model_id=getattr(cfg, "default_model", None),
        default_provider=ProviderType(cfg.default_provider) if getattr(cfg, "default_provider", None) else None,
    )


__all__ = [
    "AnthropicAdapter",
    "MockAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "build_default_registry",
    "create_adapter",
]
