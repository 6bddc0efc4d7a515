"""Mock Provider：不发网络请求，用于离线开发和作为最后一级 fallback。"""

import asyncio
import re
from typing import AsyncIterator, Sequence

from companion_core.config.settings import settings
from companion_core.domain.models import (
    FinishReason,
    Message,
    ProviderType,
    RequestOptions,
    Response,
    ResponseChunk,
    TokenUsage,
)


MOCK_USAGE = TokenUsage(prompt_tokens=50, completion_tokens=25, total_tokens=75)

_WORD_CHUNK = re.compile(r"\S+\s*|\s+")


class MockAdapter:
    """回显最后一条消息的固定回复。"""

    provider = ProviderType.MOCK

    def __init__(self, cfg=settings):
        self._settings = cfg

    @property
    def _latency(self) -> float:
        return float(getattr(self._settings, "mock_latency_seconds", 0.0) or 0.0)

    @staticmethod
    def _reply_text(messages: Sequence[Message], prefix: str) -> str:
        last = messages[-1].content if messages else ""
        return f"{prefix} You said: {last}"

    async def send(self, messages: Sequence[Message], options: RequestOptions) -> Response:
        if self._latency:
            await asyncio.sleep(self._latency)
        reply = Message(role="assistant", content=self._reply_text(messages, "This is a mock response for testing."))
        return Response(
            message=reply,
            usage=MOCK_USAGE,
            finish_reason=FinishReason.STOP,
            provider=self.provider,
            model_id=options.model.id,
        )

    async def stream(self, messages: Sequence[Message], options: RequestOptions) -> AsyncIterator[ResponseChunk]:
        text = self._reply_text(messages, "This is a mock streaming response for testing.")
        for piece in _WORD_CHUNK.findall(text):
            if self._latency:
                await asyncio.sleep(self._latency)
            yield ResponseChunk(content=piece)
        response = Response(
            message=Message(role="assistant", content=text),
            usage=MOCK_USAGE,
            finish_reason=FinishReason.STOP,
            provider=self.provider,
            model_id=options.model.id,
        )
        yield ResponseChunk(content="", is_complete=True, finish_reason=FinishReason.STOP, response=response)
