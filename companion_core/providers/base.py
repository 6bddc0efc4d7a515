"""Provider 抽象接口与 HTTP 适配器公共实现。

上层 Router 不直接依赖具体厂商的 HTTP 协议，而是依赖 ProviderAdapter 协议：

- 每个厂商实现一个适配器（如 OpenAIAdapter）。
- 负责：将统一的 Message 列表与 RequestOptions 转成具体 API 请求，
  并把响应 JSON（或流式帧）解析为 Response / ResponseChunk。

HttpProviderAdapter 收拢了各家共用的部分：取密钥、发请求、
HTTP 错误分类、逐行读取流式帧、缺失用量时本地估算。
子类只描述协议差异（URL、请求头、请求体、响应字段）。
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx

from companion_core.config.settings import settings
from companion_core.domain.exceptions import (
    HttpStatusError,
    InvalidResponseError,
    MissingCredentialError,
    NetworkError,
    ProviderApiError,
    RateLimitError,
)
from companion_core.domain.models import (
    FinishReason,
    Message,
    ProviderType,
    RequestOptions,
    Response,
    ResponseChunk,
    TokenUsage,
)
from companion_core.infrastructure.logging.logger import logger
from companion_core.providers.secrets import SecretStore
from companion_core.tokens import HeuristicTokenEstimator, TokenEstimator


class ProviderAdapter(Protocol):
    """Provider 适配器协议。

    实现者需要提供：
    - provider: Provider 标识，用于注册表查找与日志。
    - send: 执行一次非流式调用，返回统一的 Response。
    - stream: 执行一次流式调用，按到达顺序产出 ResponseChunk，
      最后恰好产出一个 is_complete=True 的终止块。
    """

    provider: ProviderType

    async def send(self, messages: Sequence[Message], options: RequestOptions) -> Response:
        ...

    def stream(self, messages: Sequence[Message], options: RequestOptions) -> AsyncIterator[ResponseChunk]:
        ...


@dataclass
class StreamDelta:
    """单个流式帧解析出的增量。"""

    text: Optional[str] = None
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None
    done: bool = False


def parse_usage(raw: Any) -> Optional[TokenUsage]:
    """解析 OpenAI 风格的 usage 字段，字段不全时返回 None。"""

    if not isinstance(raw, dict):
        return None
    try:
        prompt = int(raw["prompt_tokens"])
        completion = int(raw["completion_tokens"])
    except (KeyError, TypeError, ValueError):
        return None
    total = raw.get("total_tokens")
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(total) if isinstance(total, int) else prompt + completion,
    )


class HttpProviderAdapter:
    """基于 httpx.AsyncClient 的适配器基类。"""

    provider: ProviderType
    credential_key: str
    finish_aliases: Dict[str, FinishReason] = {}

    def __init__(self, secret_store: SecretStore, cfg=settings, estimator: Optional[TokenEstimator] = None):
        self._secrets = secret_store
        self._settings = cfg
        self._estimator = estimator or HeuristicTokenEstimator()

    # ---- 子类需实现的协议差异 ----

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _headers(self, api_key: str) -> Dict[str, str]:
        raise NotImplementedError

    def _build_payload(self, messages: Sequence[Message], options: RequestOptions, stream: bool) -> dict:
        raise NotImplementedError

    def _parse_response(self, data: Any, messages: Sequence[Message], options: RequestOptions) -> Response:
        raise NotImplementedError

    def _parse_stream_frame(self, data: Any) -> StreamDelta:
        raise NotImplementedError

    # ---- 非流式 ----

    async def send(self, messages: Sequence[Message], options: RequestOptions) -> Response:
        api_key = self._require_api_key()
        payload = self._build_payload(messages, options, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(self._endpoint(), json=payload, headers=self._headers(api_key))
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(provider=self.provider.value, detail=str(e))
        if not 200 <= resp.status_code < 300:
            self._raise_for_status(resp.status_code, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponseError(provider=self.provider.value, detail=str(e))
        return self._parse_response(data, messages, options)

    # ---- 流式 ----

    async def stream(self, messages: Sequence[Message], options: RequestOptions) -> AsyncIterator[ResponseChunk]:
        api_key = self._require_api_key()
        payload = self._build_payload(messages, options, stream=True)
        parts: List[str] = []
        finish_raw: Optional[str] = None
        usage: Optional[TokenUsage] = None
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._endpoint(),
                    json=payload,
                    headers=self._headers(api_key),
                ) as resp:
                    if not 200 <= resp.status_code < 300:
                        body = await resp.aread()
                        self._raise_for_status(resp.status_code, body.decode("utf-8", errors="replace"))
                    async for line in resp.aiter_lines():
                        data_str = self._frame_payload(line)
                        if data_str is None:
                            continue
                        if data_str == "[DONE]":
                            break
                        try:
                            frame = json.loads(data_str)
                        except json.JSONDecodeError:
                            logger.warning(
                                "Skipped malformed stream frame",
                                extra={"extra": {"provider": self.provider.value, "frame": data_str[:200]}},
                            )
                            continue
                        delta = self._parse_stream_frame(frame)
                        if delta.text:
                            parts.append(delta.text)
                            yield ResponseChunk(content=delta.text)
                        if delta.finish_reason:
                            finish_raw = delta.finish_reason
                        if delta.usage:
                            usage = delta.usage
                        if delta.done:
                            break
        except httpx.RequestError as e:
            raise NetworkError(provider=self.provider.value, detail=str(e))

        reply = Message(role="assistant", content="".join(parts))
        finish = FinishReason.parse(finish_raw, self.finish_aliases)
        response = Response(
            message=reply,
            usage=usage or self._estimate_usage(messages, options, reply),
            finish_reason=finish,
            provider=self.provider,
            model_id=options.model.id,
        )
        yield ResponseChunk(content="", is_complete=True, finish_reason=finish, response=response)

    # ---- 辅助方法 ----

    def _require_api_key(self) -> str:
        api_key = self._secrets.get(self.credential_key)
        if not api_key:
            raise MissingCredentialError(provider=self.provider.value, key=self.credential_key)
        return api_key

    def _raise_for_status(self, status: int, body: str) -> None:
        """非 2xx：优先使用响应体里的 error.message，其次按状态码分类。"""

        try:
            data = json.loads(body) if body else None
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                raise ProviderApiError(provider=self.provider.value, api_message=error["message"], http_status=status)
        if status == 429:
            # 限流错误交给 Router 做 fallback
            raise RateLimitError(provider=self.provider.value)
        raise HttpStatusError(provider=self.provider.value, status=status)

    @staticmethod
    def _frame_payload(line: str) -> Optional[str]:
        """取出一行 SSE 中的数据部分；空行、注释和 event: 行返回 None。"""

        s = line.strip()
        if not s or s.startswith(":") or s.startswith("event:"):
            return None
        if s.startswith("data:"):
            s = s[5:].strip()
        return s or None

    def _estimate_usage(self, messages: Sequence[Message], options: RequestOptions, reply: Message) -> TokenUsage:
        prompt_tokens = self._estimator.estimate_messages(messages)
        if options.system_prompt:
            prompt_tokens += self._estimator.estimate_message(Message(role="system", content=options.system_prompt))
        completion_tokens = self._estimator.estimate_message(reply)
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
