import pytest

from companion_core.domain.exceptions import InvalidResponseFormatError, MissingCredentialError, ProviderApiError
from companion_core.domain.models import FinishReason, Message, RequestOptions
from companion_core.providers.anthropic_client import AnthropicAdapter
from companion_core.providers.secrets import SettingsSecretStore, StaticSecretStore
from companion_core.tokens import HeuristicTokenEstimator

from conftest import FakeResponse


@pytest.mark.asyncio
async def test_anthropic_send_payload_and_headers(fake_http, cfg, claude_haiku):
    http = fake_http(FakeResponse(payload={"content": [{"type": "text", "text": "Hi!"}], "stop_reason": "end_turn"}))
    adapter = AnthropicAdapter(SettingsSecretStore(cfg), cfg)
    messages = [
        Message(role="system", content="Previous conversation summary:\n\nearlier"),
        Message(role="user", content="hello"),
        Message(role="assistant", content="hey"),
        Message(role="tool", content="42"),
    ]
    res = await adapter.send(messages, RequestOptions(model=claude_haiku, system_prompt="Be kind."))

    call = http.calls[0]
    assert call["url"] == "https://api.anthropic.test/v1/messages"
    assert call["headers"]["x-api-key"] == "sk-test-anthropic"
    assert call["headers"]["anthropic-version"] == "2023-06-01"
    body = call["json"]
    assert body["system"] == "Be kind.\n\nPrevious conversation summary:\n\nearlier"
    assert body["messages"] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hey"},
        {"role": "user", "content": "42"},
    ]
    assert body["max_tokens"] == 1024
    assert body["model"] == "claude-3-haiku-20240307"

    assert res.message.content == "Hi!"
    assert res.finish_reason == FinishReason.STOP


@pytest.mark.asyncio
async def test_anthropic_usage_is_estimated(fake_http, cfg, claude_haiku):
    fake_http(FakeResponse(payload={"content": [{"text": "abcd"}], "stop_reason": "max_tokens"}))
    adapter = AnthropicAdapter(SettingsSecretStore(cfg), cfg, HeuristicTokenEstimator())
    res = await adapter.send([Message(role="user", content="abcdefgh")], RequestOptions(model=claude_haiku, max_tokens=5))

    assert res.finish_reason == FinishReason.LENGTH
    assert res.usage.prompt_tokens == 6
    assert res.usage.completion_tokens == 5
    assert res.usage.total_tokens == 11


@pytest.mark.asyncio
async def test_anthropic_missing_content(fake_http, cfg, claude_haiku):
    fake_http(FakeResponse(payload={"content": [], "stop_reason": "end_turn"}))
    adapter = AnthropicAdapter(SettingsSecretStore(cfg), cfg)
    with pytest.raises(InvalidResponseFormatError):
        await adapter.send([Message(role="user", content="hi")], RequestOptions(model=claude_haiku))


@pytest.mark.asyncio
async def test_anthropic_missing_key(fake_http, cfg, claude_haiku):
    fake_http(FakeResponse(payload={}))
    adapter = AnthropicAdapter(StaticSecretStore({}), cfg)
    with pytest.raises(MissingCredentialError):
        await adapter.send([Message(role="user", content="hi")], RequestOptions(model=claude_haiku))


@pytest.mark.asyncio
async def test_anthropic_stream_events(fake_http, cfg, claude_haiku):
    lines = [
        "event: message_start",
        'data: {"type":"message_start","message":{"id":"msg_1"}}',
        "event: content_block_delta",
        'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hello"}}',
        'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":" world"}}',
        "data: {broken",
        'data: {"type":"message_delta","delta":{"stop_reason":"max_tokens"}}',
        'data: {"type":"message_stop"}',
    ]
    http = fake_http(FakeResponse(lines=lines))
    adapter = AnthropicAdapter(SettingsSecretStore(cfg), cfg)
    chunks = [c async for c in adapter.stream([Message(role="user", content="hi")], RequestOptions(model=claude_haiku))]

    assert [c.content for c in chunks[:-1]] == ["Hello", " world"]
    terminal = chunks[-1]
    assert terminal.is_complete
    assert terminal.finish_reason == FinishReason.LENGTH
    assert terminal.response.message.content == "Hello world"
    assert http.calls[0]["json"]["stream"] is True


@pytest.mark.asyncio
async def test_anthropic_stream_error_frame(fake_http, cfg, claude_haiku):
    lines = [
        'data: {"type":"content_block_delta","delta":{"text":"Hi"}}',
        'data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}',
    ]
    fake_http(FakeResponse(lines=lines))
    adapter = AnthropicAdapter(SettingsSecretStore(cfg), cfg)
    received = []
    with pytest.raises(ProviderApiError) as ei:
        async for chunk in adapter.stream([Message(role="user", content="hi")], RequestOptions(model=claude_haiku)):
            received.append(chunk.content)
    assert received == ["Hi"]
    assert ei.value.api_message == "Overloaded"
