"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

分三层：
- ProviderError: 适配器层错误，Router 会对其做一次 fallback。
- RouterError: 路由层错误，不再重试。
- ConversationError: 会话/摘要相关错误，多数由调用方在本地消化。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、trace_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


# ---- Provider 适配器层 ----


class ProviderError(BusinessError):
    """适配器层错误基类，均可触发 Router fallback。"""

    def __init__(self, code: str, message: str, http_status: int = 502, provider: Optional[str] = None, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)
        self.provider = provider


class MissingCredentialError(ProviderError):
    """密钥存储中找不到 API key。"""

    def __init__(self, provider: str, key: str):
        super().__init__(
            code="MISSING_API_KEY",
            message="API key is missing. Please add your API key in Settings.",
            http_status=401,
            provider=provider,
            key=key,
        )


class InvalidResponseError(ProviderError):
    """响应体无法解码为 JSON。"""

    def __init__(self, provider: str, detail: str = ""):
        message = "Invalid response from the server."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="INVALID_RESPONSE", message=message, provider=provider)


class InvalidResponseFormatError(ProviderError):
    """JSON 合法但缺少必需字段。"""

    def __init__(self, provider: str, detail: str = ""):
        message = "Invalid response format from the server."
        if detail:
            message = f"{message} ({detail})"
        super().__init__(code="INVALID_RESPONSE_FORMAT", message=message, provider=provider)


class HttpStatusError(ProviderError):
    """非 2xx 且响应体没有可读错误信息。"""

    def __init__(self, provider: str, status: int, code: str = "HTTP_ERROR"):
        super().__init__(code=code, message=f"HTTP error: {status}", http_status=status, provider=provider)
        self.status = status


class RateLimitError(HttpStatusError):
    """Provider 限流 (429)。"""

    def __init__(self, provider: str):
        super().__init__(provider=provider, status=429, code="RATE_LIMIT")


class ProviderApiError(ProviderError):
    """后端在响应体里返回了错误描述。"""

    def __init__(self, provider: str, api_message: str, http_status: int = 502):
        super().__init__(
            code="API_ERROR",
            message=f"API error: {api_message}",
            http_status=http_status,
            provider=provider,
        )
        self.api_message = api_message


class NetworkError(ProviderError):
    """网络层错误，例如连接失败、超时等。"""

    def __init__(self, provider: str, detail: str):
        super().__init__(code="NETWORK_ERROR", message=detail, http_status=503, provider=provider)


# ---- Router 层 ----


class RouterError(BusinessError):
    """路由层错误基类。"""


class ProviderNotFoundError(RouterError):
    def __init__(self, provider: str):
        super().__init__(code="PROVIDER_NOT_FOUND", message="AI provider not found", http_status=500, provider=provider)


class NoFallbackAvailableError(RouterError):
    def __init__(self, provider: str):
        super().__init__(
            code="NO_FALLBACK_AVAILABLE",
            message="No fallback AI provider available",
            http_status=503,
            provider=provider,
        )


# ---- 会话层 ----


class ConversationError(BusinessError):
    """会话与摘要相关错误基类。"""


class NoMessagesToSummarizeError(ConversationError):
    """没有可摘要的消息；调用方应视为 no-op。"""

    def __init__(self, conversation_id: str):
        super().__init__(
            code="NO_MESSAGES_TO_SUMMARIZE",
            message="No messages to summarize",
            conversation_id=conversation_id,
        )


class SummaryGenerationFailedError(ConversationError):
    def __init__(self, conversation_id: str):
        super().__init__(
            code="SUMMARY_GENERATION_FAILED",
            message="Failed to generate conversation summary",
            http_status=502,
            conversation_id=conversation_id,
        )


class ConversationNotFoundError(ConversationError):
    def __init__(self, conversation_id: str):
        super().__init__(
            code="CONVERSATION_NOT_FOUND",
            message=conversation_id,
            http_status=404,
            conversation_id=conversation_id,
        )
