"""Provider 与模型目录。

本模块集中维护两张静态表：

- Provider 标识 → 适配器实例。
- Provider 标识 → 该 Provider 提供的 AIModel 列表。

注册表构造完成后只读（MappingProxyType），查找为 O(1)，
并发请求之间无需加锁。
"""

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from companion_core.domain.models import AIModel, ModelCapability, ProviderType
from companion_core.providers.base import ProviderAdapter


_CHAT = ModelCapability.CHAT
_TOOLS = ModelCapability.TOOL_USE
_VISION = ModelCapability.IMAGE_ANALYSIS


# OpenAI 模型目录
OPENAI_MODELS: Tuple[AIModel, ...] = (
    AIModel("gpt-3.5-turbo", "GPT-3.5 Turbo", ProviderType.OPENAI, 16385, frozenset({_CHAT})),
    AIModel("gpt-4", "GPT-4", ProviderType.OPENAI, 8192, frozenset({_CHAT, _TOOLS})),
    AIModel("gpt-4-turbo", "GPT-4 Turbo", ProviderType.OPENAI, 128000, frozenset({_CHAT, _TOOLS, _VISION})),
    AIModel("gpt-4o", "GPT-4o", ProviderType.OPENAI, 128000, frozenset({_CHAT, _TOOLS, _VISION})),
)

# Anthropic 模型目录
ANTHROPIC_MODELS: Tuple[AIModel, ...] = (
    AIModel("claude-3-opus-20240229", "Claude 3 Opus", ProviderType.ANTHROPIC, 200000, frozenset({_CHAT, _TOOLS, _VISION})),
    AIModel("claude-3-sonnet-20240229", "Claude 3 Sonnet", ProviderType.ANTHROPIC, 200000, frozenset({_CHAT, _TOOLS, _VISION})),
    AIModel("claude-3-haiku-20240307", "Claude 3 Haiku", ProviderType.ANTHROPIC, 200000, frozenset({_CHAT, _VISION})),
)

MOCK_MODELS: Tuple[AIModel, ...] = (
    AIModel("mock-model", "Mock Model", ProviderType.MOCK, 10000, frozenset({_CHAT})),
)

MODEL_CATALOG: Mapping[ProviderType, Tuple[AIModel, ...]] = MappingProxyType({
    ProviderType.OPENAI: OPENAI_MODELS,
    ProviderType.ANTHROPIC: ANTHROPIC_MODELS,
    ProviderType.MOCK: MOCK_MODELS,
})


class ProviderRegistry:
    """只读的 Provider / 模型注册表。"""

    def __init__(
        self,
        adapters: Mapping[ProviderType, ProviderAdapter],
        catalog: Mapping[ProviderType, Iterable[AIModel]] = MODEL_CATALOG,
        default_model_id: Optional[str] = None,
        default_provider: Optional[ProviderType] = None,
    ):
        self._adapters: Mapping[ProviderType, ProviderAdapter] = MappingProxyType(dict(adapters))
        self._catalog: Mapping[ProviderType, Tuple[AIModel, ...]] = MappingProxyType(
            {provider: tuple(models) for provider, models in catalog.items()}
        )
        by_id: Dict[str, AIModel] = {}
        for models in self._catalog.values():
            for model in models:
                by_id[model.id] = model
        self._models_by_id: Mapping[str, AIModel] = MappingProxyType(by_id)
        self._default_model_id = default_model_id
        self._default_provider = default_provider

    def get_adapter(self, provider: ProviderType) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider)

    def has_adapter(self, provider: ProviderType) -> bool:
        return provider in self._adapters

    def models_for(self, provider: ProviderType) -> Tuple[AIModel, ...]:
        return self._catalog.get(provider, ())

    def available_models(self) -> Tuple[AIModel, ...]:
        """所有模型，按 Provider 注册顺序排列。"""

        return tuple(model for models in self._catalog.values() for model in models)

    def get_model(self, model_id: str) -> AIModel:
        try:
            return self._models_by_id[model_id]
        except KeyError:
            raise KeyError(f"Unknown model: {model_id!r}") from None

    def default_model(self) -> AIModel:
        """配置的默认模型。

        default_model_id 不在目录中时取 default_provider 的第一个模型，
        两者都不可用时取整个目录的第一个模型。
        """

        if self._default_model_id and self._default_model_id in self._models_by_id:
            return self._models_by_id[self._default_model_id]
        if self._default_provider is not None and self.models_for(self._default_provider):
            return self.models_for(self._default_provider)[0]
        models = self.available_models()
        if not models:
            raise LookupError("Model catalog is empty")
        return models[0]
