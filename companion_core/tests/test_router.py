import re

import pytest

from companion_core.domain.exceptions import (
    HttpStatusError,
    MissingCredentialError,
    NoFallbackAvailableError,
    ProviderNotFoundError,
    RateLimitError,
)
from companion_core.domain.models import (
    FinishReason,
    Message,
    ProviderType,
    RequestOptions,
    Response,
    ResponseChunk,
)
from companion_core.providers.registry import ProviderRegistry
from companion_core.routing.router import FALLBACK_NOTICE, RequestState, RequestTracker, Router


class ScriptedAdapter:
    """按预设结果返回或抛错，记录每次调用。"""

    def __init__(self, provider, reply="ok", error=None, stream_error_after=None):
        self.provider = provider
        self.reply = reply
        self.error = error
        self.stream_error_after = stream_error_after
        self.calls = []
        self.stream_finalized = False

    def _response(self, options):
        return Response(
            message=Message(role="assistant", content=self.reply),
            finish_reason=FinishReason.STOP,
            provider=self.provider,
            model_id=options.model.id,
        )

    async def send(self, messages, options):
        self.calls.append((messages, options))
        if self.error is not None:
            raise self.error
        return self._response(options)

    async def stream(self, messages, options):
        self.calls.append((messages, options))
        if self.error is not None and self.stream_error_after is None:
            raise self.error
        try:
            for i, piece in enumerate(re.findall(r"\S+\s*", self.reply)):
                if self.stream_error_after is not None and i == self.stream_error_after:
                    raise self.error
                yield ResponseChunk(content=piece)
            response = self._response(options)
            yield ResponseChunk(content="", is_complete=True, finish_reason=FinishReason.STOP, response=response)
        finally:
            self.stream_finalized = True


def _router(**adapters):
    mapping = {ProviderType(name): adapter for name, adapter in adapters.items()}
    return Router(ProviderRegistry(mapping))


def _history():
    return [Message(role="user", content="hello")]


@pytest.mark.asyncio
async def test_primary_success_does_not_touch_fallback(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, reply="primary")
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC)
    router = _router(openai=openai, anthropic=anthropic)

    res = await router.send_message(_history(), RequestOptions(model=gpt35))
    assert res.message.content == "primary"
    assert not res.is_fallback
    assert len(openai.calls) == 1
    assert anthropic.calls == []


@pytest.mark.asyncio
async def test_failing_primary_falls_back_once(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, error=RateLimitError("openai"))
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC, reply="fallback")
    mock = ScriptedAdapter(ProviderType.MOCK)
    router = _router(openai=openai, anthropic=anthropic, mock=mock)
    history = _history()
    options = RequestOptions(model=gpt35, temperature=0.2, system_prompt="sys")

    res = await router.send_message(history, options)

    assert res.message.content == "fallback"
    assert res.is_fallback
    assert res.provider == ProviderType.ANTHROPIC
    assert len(openai.calls) == 1
    assert len(anthropic.calls) == 1
    assert mock.calls == []
    sent_messages, sent_options = anthropic.calls[0]
    assert sent_messages is history
    assert sent_options.model.id == "claude-3-opus-20240229"
    assert sent_options.temperature == 0.2
    assert sent_options.system_prompt == "sys"


@pytest.mark.asyncio
async def test_both_failing_surfaces_primary_error(gpt35):
    primary_error = MissingCredentialError("openai", "openai_api_key")
    openai = ScriptedAdapter(ProviderType.OPENAI, error=primary_error)
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC, error=HttpStatusError("anthropic", 500))
    router = _router(openai=openai, anthropic=anthropic)

    with pytest.raises(MissingCredentialError) as ei:
        await router.send_message(_history(), RequestOptions(model=gpt35))
    assert ei.value is primary_error
    assert len(openai.calls) == 1
    assert len(anthropic.calls) == 1


@pytest.mark.asyncio
async def test_anthropic_falls_back_to_openai(claude_haiku):
    openai = ScriptedAdapter(ProviderType.OPENAI, reply="from openai")
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC, error=HttpStatusError("anthropic", 503))
    router = _router(openai=openai, anthropic=anthropic)

    res = await router.send_message(_history(), RequestOptions(model=claude_haiku))
    assert res.message.content == "from openai"
    assert openai.calls[0][1].model.id == "gpt-3.5-turbo"


@pytest.mark.asyncio
async def test_mock_has_no_fallback(mock_model):
    error = HttpStatusError("mock", 500)
    mock = ScriptedAdapter(ProviderType.MOCK, error=error)
    openai = ScriptedAdapter(ProviderType.OPENAI)
    router = _router(mock=mock, openai=openai)

    with pytest.raises(HttpStatusError) as ei:
        await router.send_message(_history(), RequestOptions(model=mock_model))
    assert ei.value is error
    assert openai.calls == []
    with pytest.raises(NoFallbackAvailableError):
        router.resolve_fallback(mock_model)


@pytest.mark.asyncio
async def test_missing_primary_adapter_is_not_retried(gpt35):
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC)
    router = _router(anthropic=anthropic)

    with pytest.raises(ProviderNotFoundError):
        await router.send_message(_history(), RequestOptions(model=gpt35))
    assert anthropic.calls == []


def test_resolve_fallback_skips_providers_without_adapter(gpt35):
    router = _router(openai=ScriptedAdapter(ProviderType.OPENAI), mock=ScriptedAdapter(ProviderType.MOCK))
    assert router.resolve_fallback(gpt35).id == "mock-model"


@pytest.mark.asyncio
async def test_non_provider_errors_are_not_retried(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, error=RuntimeError("bug"))
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC)
    router = _router(openai=openai, anthropic=anthropic)

    with pytest.raises(RuntimeError):
        await router.send_message(_history(), RequestOptions(model=gpt35))
    assert anthropic.calls == []


@pytest.mark.asyncio
async def test_stream_fallback_emits_notice_then_fallback_chunks(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, error=RateLimitError("openai"))
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC, reply="Hello from Claude")
    router = _router(openai=openai, anthropic=anthropic)

    chunks = [c async for c in router.iter_stream(_history(), RequestOptions(model=gpt35))]

    assert chunks[0].content == "\n[Switching to fallback model: Claude 3 Opus]\n"
    assert chunks[0].content == FALLBACK_NOTICE.format(name="Claude 3 Opus")
    assert not chunks[0].is_complete
    terminal = chunks[-1]
    assert terminal.is_complete
    assert sum(1 for c in chunks if c.is_complete) == 1
    assert terminal.response.is_fallback
    assert "".join(c.content for c in chunks[1:-1]) == terminal.response.message.content
    assert len(openai.calls) == 1
    assert len(anthropic.calls) == 1


@pytest.mark.asyncio
async def test_stream_both_failing_surfaces_primary_error(gpt35):
    primary_error = RateLimitError("openai")
    openai = ScriptedAdapter(ProviderType.OPENAI, error=primary_error)
    anthropic = ScriptedAdapter(ProviderType.ANTHROPIC, reply="a b c", error=HttpStatusError("anthropic", 500), stream_error_after=1)
    router = _router(openai=openai, anthropic=anthropic)

    received = []
    with pytest.raises(RateLimitError) as ei:
        async for chunk in router.iter_stream(_history(), RequestOptions(model=gpt35)):
            received.append(chunk)
    assert ei.value is primary_error
    assert not any(c.is_complete for c in received)


@pytest.mark.asyncio
async def test_stream_message_invokes_callback_in_order(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, reply="one two three")
    router = _router(openai=openai)
    seen = []

    res = await router.stream_message(_history(), RequestOptions(model=gpt35), on_chunk=lambda c: seen.append(c.content))
    assert seen == ["one ", "two ", "three", ""]
    assert res.message.content == "one two three"
    assert not res.is_fallback


@pytest.mark.asyncio
async def test_stream_message_accepts_async_callback(gpt35):
    router = _router(openai=ScriptedAdapter(ProviderType.OPENAI, reply="a b"))
    seen = []

    async def on_chunk(chunk):
        seen.append(chunk.is_complete)

    await router.stream_message(_history(), RequestOptions(model=gpt35), on_chunk=on_chunk)
    assert seen == [False, False, True]


@pytest.mark.asyncio
async def test_stream_close_stops_delivery(gpt35):
    openai = ScriptedAdapter(ProviderType.OPENAI, reply="one two three")
    router = _router(openai=openai)

    agen = router.iter_stream(_history(), RequestOptions(model=gpt35))
    first = await agen.__anext__()
    await agen.aclose()

    assert first.content == "one "
    assert openai.stream_finalized


def test_request_tracker_rejects_moves_out_of_terminal_state(gpt35):
    tracker = RequestTracker("send", gpt35)
    tracker.advance(RequestState.PRIMARY_IN_FLIGHT)
    tracker.advance(RequestState.COMPLETED)
    assert tracker.finished
    with pytest.raises(RuntimeError):
        tracker.advance(RequestState.FALLBACK_IN_FLIGHT)
