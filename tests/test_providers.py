"""Tests for the provider layer: payload parsing, LiteLLM, mock provider and registry."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from litellm.exceptions import BadRequestError, ContextWindowExceededError, RateLimitError

from blockflow.config import EngineConfig
from blockflow.llm import litellm as litellm_module
from blockflow.llm.litellm import LiteLLMProvider, classify_exception
from blockflow.llm.mock import MockLLMProvider, text_payload, tool_call_payload
from blockflow.llm.provider import (
    ProviderError,
    ProviderErrorKind,
    ProviderRequest,
    Tool,
    parse_completion_payload,
    parse_tool_arguments,
)
from blockflow.llm.registry import ProviderRegistry
from blockflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)


async def _collect(events):
    return [event async for event in events]


class TestPayloadParsing:
    def test_text_payload(self):
        response = parse_completion_payload(text_payload("hi", 3, 4, model="gpt"))
        assert response.content == "hi"
        assert response.model == "gpt"
        assert response.total_tokens == 7
        assert response.stop_reason == "stop"
        assert response.empty is False

    def test_tool_call_payload(self):
        response = parse_completion_payload(tool_call_payload("lookup", {"id": 1}, call_id="c9"))
        tool_use = response.tool_calls[0]
        assert (tool_use.id, tool_use.name, tool_use.input) == ("c9", "lookup", {"id": 1})
        assert tool_use.parse_error is None

    def test_no_choices_is_empty(self):
        response = parse_completion_payload({"model": "m", "choices": []})
        assert response.empty is True
        assert response.content == ""

    @pytest.mark.parametrize(
        ("arguments", "expected", "has_error"),
        [
            ({"a": 1}, {"a": 1}, False),
            ('{"a": 1}', {"a": 1}, False),
            ("", {}, False),
            (None, {}, False),
            ("[1, 2]", {}, True),
            ("{broken", {}, True),
        ],
    )
    def test_parse_tool_arguments(self, arguments, expected, has_error):
        decoded, error = parse_tool_arguments(arguments)
        assert decoded == expected
        assert (error is not None) is has_error

    def test_reduced_request_drops_optional_fields(self):
        request = ProviderRequest(
            model="m",
            tool_choice="auto",
            response_format={"name": "x", "schema": {}},
            extra={"seed": 1},
            temperature=0.2,
        )
        reduced = request.reduced()
        assert reduced.tool_choice is None
        assert reduced.response_format is None
        assert reduced.extra == {}
        assert reduced.temperature == 0.2

    def test_system_prompt_is_prepended(self):
        request = ProviderRequest(
            model="m", system_prompt="Be brief", messages=[{"role": "user", "content": "hi"}]
        )
        assert request.to_messages()[0] == {"role": "system", "content": "Be brief"}


class TestLiteLLMProvider:
    def test_build_kwargs(self):
        provider = LiteLLMProvider(model="openai/gpt-4o", api_key="k", api_base="http://local")
        request = ProviderRequest(
            model="",
            messages=[{"role": "user", "content": "hi"}],
            tools=[Tool("lookup", "Look up", {"type": "object"})],
            tool_choice="auto",
            temperature=0.1,
            max_tokens=100,
            response_format={"name": "r", "schema": {"type": "object"}, "strict": True},
            extra={"seed": 7},
        )

        kwargs = provider.build_kwargs(request)

        assert kwargs["model"] == "openai/gpt-4o"
        assert kwargs["api_key"] == "k"
        assert kwargs["api_base"] == "http://local"
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 100
        assert kwargs["tools"][0]["function"]["name"] == "lookup"
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["response_format"]["type"] == "json_schema"
        assert kwargs["seed"] == 7

    def test_tool_choice_omitted_without_tools(self):
        kwargs = LiteLLMProvider().build_kwargs(ProviderRequest(model="m", tool_choice="auto"))
        assert "tool_choice" not in kwargs
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_complete(self, monkeypatch):
        acompletion = AsyncMock(return_value=text_payload("answer", model="openai/gpt-4o"))
        monkeypatch.setattr(litellm_module.litellm, "acompletion", acompletion)

        result = await LiteLLMProvider().complete(ProviderRequest(model="openai/gpt-4o"))

        assert result.content == "answer"
        assert result.total_tokens == 15
        acompletion.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_returns_structured_error(self, monkeypatch):
        acompletion = AsyncMock(
            side_effect=RateLimitError(message="slow down", llm_provider="openai", model="m")
        )
        monkeypatch.setattr(litellm_module.litellm, "acompletion", acompletion)

        result = await LiteLLMProvider().complete(ProviderRequest(model="m"))

        assert isinstance(result, ProviderError)
        assert result.kind == ProviderErrorKind.RATE_LIMIT
        assert result.retry_with_reduced_payload is False

    def test_classify_exception(self):
        context = ContextWindowExceededError(message="too long", model="m", llm_provider="openai")
        assert classify_exception(context).kind == ProviderErrorKind.CONTEXT_WINDOW

        bad = BadRequestError(message="invalid messages", model="m", llm_provider="openai")
        assert classify_exception(bad).kind == ProviderErrorKind.BAD_REQUEST

        unsupported = BadRequestError(
            message="response_format is not supported", model="m", llm_provider="openai"
        )
        assert classify_exception(unsupported).kind == ProviderErrorKind.UNSUPPORTED_FIELD

        assert classify_exception(RuntimeError("?")).kind == ProviderErrorKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_stream_assembles_events(self, monkeypatch):
        def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
            delta = SimpleNamespace(content=content, tool_calls=tool_calls)
            return SimpleNamespace(
                model="openai/gpt-4o",
                usage=usage,
                choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)],
            )

        def call_delta(index, call_id=None, name=None, arguments=None):
            return SimpleNamespace(
                index=index,
                id=call_id,
                function=SimpleNamespace(name=name, arguments=arguments),
            )

        async def chunks():
            yield chunk(content="Hel")
            yield chunk(content="lo")
            yield chunk(tool_calls=[call_delta(0, "c1", "lookup", '{"id"')])
            yield chunk(tool_calls=[call_delta(0, arguments=": 3}")], finish_reason="tool_calls")
            yield SimpleNamespace(
                model="openai/gpt-4o",
                usage=SimpleNamespace(prompt_tokens=9, completion_tokens=4),
                choices=[],
            )

        acompletion = AsyncMock(return_value=chunks())
        monkeypatch.setattr(litellm_module.litellm, "acompletion", acompletion)

        events = await _collect(LiteLLMProvider().stream(ProviderRequest(model="openai/gpt-4o")))

        deltas = [e for e in events if isinstance(e, TextDeltaEvent)]
        assert [d.content for d in deltas] == ["Hel", "lo"]
        assert deltas[-1].snapshot == "Hello"
        tool_event = next(e for e in events if isinstance(e, ToolCallEvent))
        assert tool_event.arguments == {"id": 3}
        assert isinstance(events[-2], TextEndEvent)
        finish = events[-1]
        assert isinstance(finish, FinishEvent)
        assert (finish.prompt_tokens, finish.completion_tokens) == (9, 4)
        assert finish.stop_reason == "tool_calls"
        assert acompletion.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_error_becomes_event(self, monkeypatch):
        acompletion = AsyncMock(
            side_effect=BadRequestError(message="nope", model="m", llm_provider="openai")
        )
        monkeypatch.setattr(litellm_module.litellm, "acompletion", acompletion)

        events = await _collect(LiteLLMProvider().stream(ProviderRequest(model="m")))

        assert len(events) == 1
        assert isinstance(events[0], StreamErrorEvent)
        assert events[0].kind == "bad_request"


class TestMockProvider:
    @pytest.mark.asyncio
    async def test_scripted_then_default(self):
        provider = MockLLMProvider(["first"], default_content="fallback")
        first = await provider.complete(ProviderRequest(model="m"))
        second = await provider.complete(ProviderRequest(model="m"))
        assert (first.content, second.content) == ("first", "fallback")
        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_stream_error(self):
        provider = MockLLMProvider([ProviderError(ProviderErrorKind.AUTH, "denied")])
        events = await _collect(provider.stream(ProviderRequest(model="m")))
        assert events == [StreamErrorEvent(error="denied", kind="auth")]


class TestProviderRegistry:
    def test_resolution_order(self):
        default = MockLLMProvider()
        openai = MockLLMProvider()
        anthropic = MockLLMProvider()
        registry = ProviderRegistry(default)
        registry.register("openai", openai)
        registry.register("anthropic", anthropic)

        assert registry.resolve("anthropic", "openai/gpt-4o") is anthropic
        assert registry.resolve(None, "openai/gpt-4o") is openai
        assert registry.resolve(None, "gpt-4o") is default
        assert registry.resolve("unknown", "") is default

    def test_no_provider_raises(self):
        with pytest.raises(LookupError):
            ProviderRegistry().resolve("openai", "gpt-4o")

    def test_from_config_uses_litellm(self, engine_config: EngineConfig):
        provider = ProviderRegistry.from_config(engine_config).resolve()
        assert isinstance(provider, LiteLLMProvider)
        assert provider.model == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_execute_provider_request_streams_when_asked(self):
        registry = ProviderRegistry(MockLLMProvider(["a b"]))
        request = ProviderRequest(model="m", stream=True)
        collected = await _collect(await registry.execute_provider_request(None, request))
        assert [e.content for e in collected if isinstance(e, TextDeltaEvent)] == ["a ", "b"]
