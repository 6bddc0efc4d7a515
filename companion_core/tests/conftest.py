import json
from typing import Any, Dict, List, Optional, Sequence

import pytest

from companion_core.domain.models import AIModel, ModelCapability, ProviderType


class SettingsStub:
    openai_api_key = "sk-test-openai"
    openai_base_url = "https://api.openai.test/v1"
    anthropic_api_key = "sk-test-anthropic"
    anthropic_base_url = "https://api.anthropic.test/v1"
    anthropic_version = "2023-06-01"
    anthropic_default_max_tokens = 1024
    mock_latency_seconds = 0.0
    http_timeout = 1.0
    default_provider = "openai"
    default_model = "gpt-3.5-turbo"
    token_estimator = "heuristic"
    summary_trigger_ratio = 0.7
    summary_keep_recent = 5
    summary_max_tokens = 300
    title_max_tokens = 10
    title_max_length = 50


_INVALID_JSON = object()


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        text: Optional[str] = None,
        lines: Sequence[str] = (),
        invalid_json: bool = False,
    ):
        self.status_code = status_code
        self._payload = _INVALID_JSON if invalid_json else payload
        if text is None:
            text = "" if payload is None or invalid_json else json.dumps(payload)
        self._text = text
        self._lines = list(lines)

    @property
    def text(self) -> str:
        return self._text

    def json(self):
        if self._payload is _INVALID_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload

    async def aread(self) -> bytes:
        return self._text.encode("utf-8")

    async def aiter_lines(self):
        for line in self._lines:
            yield line


class FakeHttp:
    """替换 httpx.AsyncClient，记录请求并返回预置响应。"""

    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.client_kwargs: List[Dict[str, Any]] = []
        self.stream_closed = 0

    def client_class(self):
        http = self

        class _StreamContext:
            async def __aenter__(self):
                if http.error is not None:
                    raise http.error
                return http.response

            async def __aexit__(self, *a):
                http.stream_closed += 1
                return False

        class Client:
            def __init__(self, *a, **kw):
                http.client_kwargs.append(kw)

            async def __aenter__(self):
                return self

            async def __aexit__(self, *a):
                return False

            async def post(self, url, json=None, headers=None, **kw):
                http.calls.append({"method": "POST", "url": url, "json": json, "headers": headers})
                if http.error is not None:
                    raise http.error
                return http.response

            def stream(self, method, url, json=None, headers=None, **kw):
                http.calls.append({"method": method, "url": url, "json": json, "headers": headers, "stream": True})
                return _StreamContext()

        return Client


@pytest.fixture
def fake_http(monkeypatch):
    def install(response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> FakeHttp:
        http = FakeHttp(response=response, error=error)
        monkeypatch.setattr("httpx.AsyncClient", http.client_class())
        return http

    return install


@pytest.fixture
def cfg():
    return SettingsStub()


@pytest.fixture
def gpt35():
    return AIModel("gpt-3.5-turbo", "GPT-3.5 Turbo", ProviderType.OPENAI, 16385, frozenset({ModelCapability.CHAT}))


@pytest.fixture
def claude_haiku():
    return AIModel("claude-3-haiku-20240307", "Claude 3 Haiku", ProviderType.ANTHROPIC, 200000)


@pytest.fixture
def mock_model():
    return AIModel("mock-model", "Mock Model", ProviderType.MOCK, 10000)
