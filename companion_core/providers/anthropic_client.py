"""Anthropic 风格 Provider 适配器。

与 OpenAI 风格的差异：
- URL: {anthropic_base_url}/messages
- 认证: x-api-key 请求头，外加 anthropic-version 版本头。
- system 提示词是请求体顶层字段，不是一条消息；
  历史中的 system 消息（如会话摘要）也合并进该字段。
- max_tokens 必填，未指定时使用配置的默认值。
- 后端不返回可用的 token 用量，总是本地估算。
"""

from typing import Any, Dict, List, Sequence

from companion_core.domain.exceptions import InvalidResponseFormatError, ProviderApiError
from companion_core.domain.models import (
    FinishReason,
    Message,
    ProviderType,
    RequestOptions,
    Response,
)
from companion_core.providers.base import HttpProviderAdapter, StreamDelta


class AnthropicAdapter(HttpProviderAdapter):
    """Anthropic messages 适配器。"""

    provider = ProviderType.ANTHROPIC
    credential_key = "anthropic_api_key"
    finish_aliases = {
        "end_turn": FinishReason.STOP,
        "stop_sequence": FinishReason.STOP,
        "max_tokens": FinishReason.LENGTH,
        "tool_use": FinishReason.TOOL_CALLS,
        "refusal": FinishReason.CONTENT_FILTER,
    }

    def _endpoint(self) -> str:
        base = getattr(self._settings, "anthropic_base_url", None) or "https://api.anthropic.com/v1"
        return f"{base.rstrip('/')}/messages"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": getattr(self._settings, "anthropic_version", "2023-06-01"),
            "Content-Type": "application/json",
        }

    def _build_payload(self, messages: Sequence[Message], options: RequestOptions, stream: bool) -> dict:
        system_parts: List[str] = []
        if options.system_prompt:
            system_parts.append(options.system_prompt)
        msgs: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                system_parts.append(m.content)
                continue
            # 该后端只有 user / assistant 两种角色
            msgs.append({"role": "assistant" if m.role == "assistant" else "user", "content": m.content})

        payload: Dict[str, Any] = {
            "model": options.model.id,
            "messages": msgs,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens or getattr(self._settings, "anthropic_default_max_tokens", 1024),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if stream:
            payload["stream"] = True
        return payload

    def _parse_response(self, data: Any, messages: Sequence[Message], options: RequestOptions) -> Response:
        """解析 content[0].text / stop_reason。"""

        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, list) or not content or not isinstance(content[0], dict):
            raise InvalidResponseFormatError(provider=self.provider.value, detail="missing content")
        text = content[0].get("text")
        if not isinstance(text, str):
            raise InvalidResponseFormatError(provider=self.provider.value, detail="missing content[0].text")

        reply = Message(role="assistant", content=text)
        return Response(
            message=reply,
            usage=self._estimate_usage(messages, options, reply),
            finish_reason=FinishReason.parse(data.get("stop_reason"), self.finish_aliases),
            provider=self.provider,
            model_id=options.model.id,
        )

    def _parse_stream_frame(self, data: Any) -> StreamDelta:
        if not isinstance(data, dict):
            return StreamDelta()
        if data.get("type") == "error":
            error = data.get("error") or {}
            raise ProviderApiError(provider=self.provider.value, api_message=str(error.get("message") or error))

        delta = StreamDelta(done=data.get("type") == "message_stop")
        inner = data.get("delta")
        if isinstance(inner, dict):
            text = inner.get("text")
            if isinstance(text, str):
                delta.text = text
        stop = data.get("stop_reason")
        if not stop and isinstance(inner, dict):
            # message_delta 事件把 stop_reason 放在 delta 里
            stop = inner.get("stop_reason")
        if isinstance(stop, str) and stop:
            delta.finish_reason = stop
        return delta
