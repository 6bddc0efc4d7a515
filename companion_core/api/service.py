"""对外 API 服务模块。

build_services 在启动时一次性构造全部组件并显式传递引用：
同一个 TokenEstimator 实例注入适配器和 ContextManager，
保证用量估算、上下文裁剪和摘要阈值对会话大小的判断一致。
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from companion_core.config.settings import settings
from companion_core.context.manager import ContextManager
from companion_core.domain.conversation import ConversationStore
from companion_core.domain.models import Message, RequestOptions
from companion_core.infrastructure.logging.logger import log_event, logger
from companion_core.infrastructure.storage.json_store import JsonConversationStore
from companion_core.providers import build_default_registry
from companion_core.providers.registry import ProviderRegistry
from companion_core.providers.secrets import SecretStore, SettingsSecretStore
from companion_core.routing.router import ChunkCallback, Router
from companion_core.tokens import TokenEstimator, create_estimator


@dataclass
class Services:
    estimator: TokenEstimator
    secrets: SecretStore
    registry: ProviderRegistry
    router: Router
    store: Optional[ConversationStore]
    context: ContextManager


def build_services(
    cfg=settings,
    secret_store: Optional[SecretStore] = None,
    store: Optional[ConversationStore] = None,
    persist: bool = True,
) -> Services:
    """构造全部服务。

    Args:
        cfg: 配置对象，默认使用模块级 settings。
        secret_store: 密钥来源，默认从配置读取。
        store: 会话存储，默认使用 storage_root 下的 JsonConversationStore。
        persist: 为 False 时不使用任何存储（纯内存会话）。
    """

    estimator = create_estimator(cfg.token_estimator)
    secrets = secret_store or SettingsSecretStore(cfg)
    registry = build_default_registry(secrets, cfg, estimator)
    router = Router(registry)
    if store is None and persist:
        store = JsonConversationStore(root=cfg.storage_root)
    context = ContextManager(router=router, estimator=estimator, cfg=cfg, store=store)
    context.load()
    logger.info(
        "Services ready",
        extra={"extra": {"estimator": estimator.name, "default_model": registry.default_model().id}},
    )
    return Services(
        estimator=estimator,
        secrets=secrets,
        registry=registry,
        router=router,
        store=store,
        context=context,
    )


async def send_chat(
    services: Services,
    text: str,
    conversation_id: Optional[str] = None,
    model_id: Optional[str] = None,
    stream: bool = False,
    on_chunk: Optional[ChunkCallback] = None,
) -> Dict[str, Any]:
    """完成一轮对话：追加用户消息 → 取上下文窗口 → 路由调用 → 追加助手回复。

    Returns:
        包含会话ID、标题、助手回复、实际使用的模型与用量的字典
    """

    context = services.context
    conv = context.current_conversation if conversation_id is None else context.set_current_conversation(conversation_id)
    model = services.registry.get_model(model_id) if model_id else services.registry.default_model()
    log_ctx = {"conversation_id": conv.id, "model": model.id}

    try:
        await context.add_message(Message(role="user", content=text), conv.id)
        window = await context.get_context_window_with_summary(model, conv.id)
        options = RequestOptions(model=model)
        if stream:
            response = await services.router.stream_message(window, options, on_chunk=on_chunk)
        else:
            response = await services.router.send_message(window, options)
        await context.add_message(response.message, conv.id)
    except Exception as e:
        log_event(logging.ERROR, f"Chat failed: {e}", log_ctx, error=str(e))
        raise

    usage = response.usage
    return {
        "conversation_id": conv.id,
        "title": conv.title,
        "assistant_message": {
            "id": response.message.id,
            "content": response.message.content,
            "created_at": response.message.timestamp.isoformat(),
        },
        "provider": response.provider.value if response.provider else None,
        "model": response.model_id,
        "is_fallback": response.is_fallback,
        "usage": {
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        } if usage else None,
    }
