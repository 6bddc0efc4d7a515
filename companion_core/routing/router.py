"""请求路由与一次性 fallback。

Router 是发送/流式调用的唯一入口：

1. 按 options.model.provider 从注册表取主适配器，取不到直接抛 ProviderNotFoundError。
2. 主适配器抛出 ProviderError 时，按固定优先级表选出一个备用模型，
   用完全相同的消息列表重发一次。
3. 备用也失败时，调用方看到的是主适配器的错误。

Router 本身不持有可变共享状态，并发请求互不影响；
每个请求的状态由一个 RequestTracker 记录并写入日志。
"""

import logging
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, Tuple, Union
from uuid import uuid4

from companion_core.domain.exceptions import (
    BusinessError,
    NoFallbackAvailableError,
    ProviderError,
    ProviderNotFoundError,
)
from companion_core.domain.models import (
    AIModel,
    Message,
    ProviderType,
    RequestOptions,
    Response,
    ResponseChunk,
)
from companion_core.infrastructure.logging.logger import log_event
from companion_core.providers.base import ProviderAdapter
from companion_core.providers.registry import ProviderRegistry


# 每个 Provider 失败后依次尝试的备用 Provider
FALLBACK_PRIORITY: Dict[ProviderType, Tuple[ProviderType, ...]] = {
    ProviderType.OPENAI: (ProviderType.ANTHROPIC, ProviderType.MOCK),
    ProviderType.ANTHROPIC: (ProviderType.OPENAI, ProviderType.MOCK),
    ProviderType.MOCK: (),
}

FALLBACK_NOTICE = "\n[Switching to fallback model: {name}]\n"

ChunkCallback = Callable[[ResponseChunk], Union[None, Awaitable[None]]]


class RequestState(str, Enum):
    NOT_STARTED = "not_started"
    PRIMARY_IN_FLIGHT = "primary_in_flight"
    FALLBACK_IN_FLIGHT = "fallback_in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    RequestState.NOT_STARTED: {RequestState.PRIMARY_IN_FLIGHT, RequestState.FAILED},
    RequestState.PRIMARY_IN_FLIGHT: {RequestState.COMPLETED, RequestState.FALLBACK_IN_FLIGHT, RequestState.FAILED},
    RequestState.FALLBACK_IN_FLIGHT: {RequestState.COMPLETED, RequestState.FAILED},
    RequestState.COMPLETED: set(),
    RequestState.FAILED: set(),
}


class RequestTracker:
    """单个请求的状态机，每次状态变化都记一条日志。"""

    def __init__(self, kind: str, model: AIModel):
        self.trace_id = f"tr-{uuid4().hex}"
        self.state = RequestState.NOT_STARTED
        self.log_ctx: Dict[str, object] = {
            "trace_id": self.trace_id,
            "kind": kind,
            "provider": model.provider.value,
            "model": model.id,
        }

    def advance(self, new_state: RequestState, **fields) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid request state transition: {self.state.value} -> {new_state.value}")
        previous = self.state
        self.state = new_state
        level = logging.WARNING if new_state == RequestState.FAILED else logging.INFO
        log_event(level, "Request state changed", self.log_ctx, previous=previous.value, state=new_state.value, **fields)

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.state]


class Router:
    """send / stream 的统一入口。"""

    def __init__(self, registry: ProviderRegistry):
        self._registry = registry

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ---- 非流式 ----

    async def send_message(self, messages: Sequence[Message], options: RequestOptions) -> Response:
        tracker = RequestTracker("send", options.model)
        primary = self._require_adapter(options.model.provider, tracker)
        tracker.advance(RequestState.PRIMARY_IN_FLIGHT)
        try:
            response = await primary.send(messages, options)
        except ProviderError as primary_error:
            fallback_model, fallback = self._prepare_fallback(options.model, primary_error, tracker)
            try:
                response = await fallback.send(messages, options.with_model(fallback_model))
            except BusinessError as fallback_error:
                self._fail_after_fallback(tracker, fallback_model, fallback_error)
                raise primary_error from fallback_error
            response.is_fallback = True
            tracker.advance(RequestState.COMPLETED, fallback_model=fallback_model.id)
            return response
        tracker.advance(RequestState.COMPLETED)
        return response

    # ---- 流式 ----

    async def iter_stream(self, messages: Sequence[Message], options: RequestOptions) -> AsyncIterator[ResponseChunk]:
        """按到达顺序产出 ResponseChunk。

        切换到备用模型时先产出一个提示块，再转发备用模型的流；
        主模型失败前已产出的块不会撤回。
        关闭本生成器即取消请求，底层连接随之释放，不再产出终止块。
        """

        tracker = RequestTracker("stream", options.model)
        primary = self._require_adapter(options.model.provider, tracker)
        tracker.advance(RequestState.PRIMARY_IN_FLIGHT)
        try:
            async with aclosing(primary.stream(messages, options)) as chunks:
                async for chunk in chunks:
                    yield chunk
        except ProviderError as primary_error:
            fallback_model, fallback = self._prepare_fallback(options.model, primary_error, tracker)
            yield ResponseChunk(content=FALLBACK_NOTICE.format(name=fallback_model.name))
            try:
                async with aclosing(fallback.stream(messages, options.with_model(fallback_model))) as chunks:
                    async for chunk in chunks:
                        if chunk.response is not None:
                            chunk.response.is_fallback = True
                        yield chunk
            except BusinessError as fallback_error:
                self._fail_after_fallback(tracker, fallback_model, fallback_error)
                raise primary_error from fallback_error
            tracker.advance(RequestState.COMPLETED, fallback_model=fallback_model.id)
            return
        tracker.advance(RequestState.COMPLETED)

    async def stream_message(
        self,
        messages: Sequence[Message],
        options: RequestOptions,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Response:
        """消费整个流，逐块回调 on_chunk，返回终止块携带的 Response。"""

        final: Optional[Response] = None
        async with aclosing(self.iter_stream(messages, options)) as chunks:
            async for chunk in chunks:
                if on_chunk is not None:
                    result = on_chunk(chunk)
                    if result is not None:
                        await result
                if chunk.is_complete:
                    final = chunk.response
        if final is None:
            raise RuntimeError("Stream ended without a terminal chunk")
        return final

    # ---- fallback ----

    def resolve_fallback(self, model: AIModel) -> AIModel:
        """按优先级表选出备用模型：第一个既有适配器又有目录模型的 Provider 的首个模型。"""

        for candidate in FALLBACK_PRIORITY.get(model.provider, ()):
            if candidate == model.provider or not self._registry.has_adapter(candidate):
                continue
            models = self._registry.models_for(candidate)
            if models:
                return models[0]
        raise NoFallbackAvailableError(provider=model.provider.value)

    def _require_adapter(self, provider: ProviderType, tracker: RequestTracker) -> ProviderAdapter:
        adapter = self._registry.get_adapter(provider)
        if adapter is None:
            tracker.advance(RequestState.FAILED, error_code="PROVIDER_NOT_FOUND")
            raise ProviderNotFoundError(provider=provider.value)
        return adapter

    def _prepare_fallback(
        self,
        model: AIModel,
        primary_error: ProviderError,
        tracker: RequestTracker,
    ) -> Tuple[AIModel, ProviderAdapter]:
        """记录主错误并选出备用；没有备用时重新抛出主错误。"""

        log_event(
            logging.WARNING,
            "Primary provider failed",
            tracker.log_ctx,
            error_code=primary_error.code,
            error=primary_error.message,
        )
        try:
            fallback_model = self.resolve_fallback(model)
        except NoFallbackAvailableError as e:
            tracker.advance(RequestState.FAILED, error_code=e.code)
            raise primary_error
        fallback = self._registry.get_adapter(fallback_model.provider)
        if fallback is None:
            tracker.advance(RequestState.FAILED, error_code="PROVIDER_NOT_FOUND")
            raise primary_error
        tracker.advance(
            RequestState.FALLBACK_IN_FLIGHT,
            fallback_provider=fallback_model.provider.value,
            fallback_model=fallback_model.id,
        )
        return fallback_model, fallback

    @staticmethod
    def _fail_after_fallback(tracker: RequestTracker, fallback_model: AIModel, error: BusinessError) -> None:
        tracker.advance(
            RequestState.FAILED,
            fallback_model=fallback_model.id,
            error_code=error.code,
            error=error.message,
        )
