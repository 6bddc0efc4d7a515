"""OpenAI 风格 Provider 适配器。

- URL: {openai_base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- system_prompt 作为第一条 system 消息插入 messages。
- 流式响应为逐行的 `data: {...}`，以 `data: [DONE]` 结束。
"""

from typing import Any, Dict, List, Sequence

from companion_core.domain.exceptions import InvalidResponseFormatError
from companion_core.domain.models import (
    AITool,
    FinishReason,
    Message,
    ProviderType,
    RequestOptions,
    Response,
)
from companion_core.providers.base import HttpProviderAdapter, StreamDelta, parse_usage


class OpenAIAdapter(HttpProviderAdapter):
    """OpenAI chat/completions 适配器。"""

    provider = ProviderType.OPENAI
    credential_key = "openai_api_key"
    finish_aliases = {"function_call": FinishReason.TOOL_CALLS}

    def _endpoint(self) -> str:
        base = getattr(self._settings, "openai_base_url", None) or "https://api.openai.com/v1"
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, messages: Sequence[Message], options: RequestOptions, stream: bool) -> dict:
        msgs: List[Dict[str, Any]] = [{"role": m.role, "content": m.content} for m in messages]
        if options.system_prompt:
            msgs.insert(0, {"role": "system", "content": options.system_prompt})
        payload: Dict[str, Any] = {
            "model": options.model.id,
            "messages": msgs,
            "temperature": options.temperature,
        }
        if options.max_tokens is not None:
            payload["max_tokens"] = options.max_tokens
        if options.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in options.tools]
        if stream:
            payload["stream"] = True
        return payload

    @staticmethod
    def _serialize_tool(tool: AITool) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": dict(tool.parameters),
            },
        }

    def _parse_response(self, data: Any, messages: Sequence[Message], options: RequestOptions) -> Response:
        """解析 choices[0].message.content / usage / finish_reason。"""

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise InvalidResponseFormatError(provider=self.provider.value, detail="missing choices")
        first = choices[0]
        message = first.get("message")
        if not isinstance(message, dict):
            raise InvalidResponseFormatError(provider=self.provider.value, detail="missing choices[0].message")
        content = message.get("content")
        if content is not None and not isinstance(content, str):
            raise InvalidResponseFormatError(provider=self.provider.value, detail="content is not text")

        reply = Message(role="assistant", content=content or "")
        usage = parse_usage(data.get("usage")) or self._estimate_usage(messages, options, reply)
        return Response(
            message=reply,
            usage=usage,
            finish_reason=FinishReason.parse(first.get("finish_reason"), self.finish_aliases),
            provider=self.provider,
            model_id=options.model.id,
        )

    def _parse_stream_frame(self, data: Any) -> StreamDelta:
        if not isinstance(data, dict):
            return StreamDelta()
        delta = StreamDelta(usage=parse_usage(data.get("usage")))
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            first = choices[0]
            content = (first.get("delta") or {}).get("content")
            if isinstance(content, str):
                delta.text = content
            finish = first.get("finish_reason")
            if isinstance(finish, str) and finish:
                delta.finish_reason = finish
        return delta
