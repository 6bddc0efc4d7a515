"""统一的消息、模型与响应数据结构。

本模块定义了在不同 Provider 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant/tool），创建后不可变。
- AIModel: 模型目录中的一项（含上下文窗口大小）。
- RequestOptions: 一次请求的模型与生成参数。
- Response / ResponseChunk: 非流式结果与流式增量。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple
from uuid import uuid4


# 消息角色（与 OpenAI 的 role 字段一致）
Role = Literal["system", "user", "assistant", "tool"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return f"m-{uuid4().hex}"


@dataclass(frozen=True)
class Message:
    """一条对话消息，既可用于请求，也可用于响应。"""

    role: Role
    content: str
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)


class ProviderType(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    MOCK = "mock"


class ModelCapability(str, Enum):
    CHAT = "chat"
    IMAGE_GENERATION = "image_generation"
    IMAGE_ANALYSIS = "image_analysis"
    AUDIO_TRANSCRIPTION = "audio_transcription"
    TOOL_USE = "tool_use"


@dataclass(frozen=True)
class AIModel:
    """模型目录中的一个模型。

    - id: 厂商实际的模型 ID，直接写入请求体。
    - context_window: 单次请求可接受的最大 token 数。
    """

    id: str
    name: str
    provider: ProviderType
    context_window: int
    capabilities: FrozenSet[ModelCapability] = frozenset({ModelCapability.CHAT})


@dataclass(frozen=True)
class AITool:
    """可供模型调用的工具定义，parameters 为 JSON Schema。"""

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestOptions:
    model: AIModel
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    tools: Optional[Tuple[AITool, ...]] = None

    def with_model(self, model: AIModel) -> "RequestOptions":
        """保持其他参数不变，换成另一个模型（用于 fallback）。"""

        return replace(self, model=model)


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TOOL_CALLS = "tool_calls"
    ERROR = "error"

    @classmethod
    def parse(cls, raw: Optional[str], aliases: Optional[Dict[str, "FinishReason"]] = None) -> "FinishReason":
        """把厂商的结束原因字符串映射为统一枚举，未知值视为 STOP。"""

        if not raw:
            return cls.STOP
        if aliases and raw in aliases:
            return aliases[raw]
        try:
            return cls(raw)
        except ValueError:
            return cls.STOP


@dataclass
class Response:
    """一次对话调用的最终结果。

    - provider / model_id: 实际产出结果的 Provider 与模型（fallback 后可能与请求不同）。
    - is_fallback: 是否由备用 Provider 产出。
    """

    message: Message
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[FinishReason] = None
    provider: Optional[ProviderType] = None
    model_id: Optional[str] = None
    is_fallback: bool = False


@dataclass(frozen=True)
class ResponseChunk:
    """流式响应的一次增量。

    is_complete=True 的块是终止块，每个逻辑流恰好一个，
    终止块的 content 为空并携带最终 Response。
    """

    content: str
    is_complete: bool = False
    finish_reason: Optional[FinishReason] = None
    response: Optional[Response] = None
