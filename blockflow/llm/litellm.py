"""LiteLLM-backed provider.

LiteLLM speaks the OpenAI chat-completions dialect for every backend, so one
provider covers any ``<provider>/<model>`` string. Exceptions raised by
litellm are mapped onto ``ProviderErrorKind`` and returned, never raised.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm
from litellm import exceptions as litellm_exceptions

from blockflow.llm.provider import (
    LLMProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderRequest,
    ProviderResult,
    parse_completion_payload,
    parse_tool_arguments,
)
from blockflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

# Most specific first: several of these subclass BadRequestError
_ERROR_KINDS: tuple[tuple[type[Exception], ProviderErrorKind], ...] = (
    (litellm_exceptions.ContextWindowExceededError, ProviderErrorKind.CONTEXT_WINDOW),
    (litellm_exceptions.UnsupportedParamsError, ProviderErrorKind.UNSUPPORTED_FIELD),
    (litellm_exceptions.BadRequestError, ProviderErrorKind.BAD_REQUEST),
    (litellm_exceptions.AuthenticationError, ProviderErrorKind.AUTH),
    (litellm_exceptions.RateLimitError, ProviderErrorKind.RATE_LIMIT),
    (litellm_exceptions.Timeout, ProviderErrorKind.UNAVAILABLE),
    (litellm_exceptions.APIConnectionError, ProviderErrorKind.UNAVAILABLE),
    (litellm_exceptions.ServiceUnavailableError, ProviderErrorKind.UNAVAILABLE),
    (litellm_exceptions.InternalServerError, ProviderErrorKind.UNAVAILABLE),
)

_UNSUPPORTED_FIELD_HINTS = ("response_format", "json_schema", "strict")


def classify_exception(error: Exception) -> ProviderError:
    """Map a litellm exception onto a structured ProviderError."""
    message = str(error)
    kind = ProviderErrorKind.UNKNOWN
    for exc_type, exc_kind in _ERROR_KINDS:
        if isinstance(error, exc_type):
            kind = exc_kind
            break
    if kind == ProviderErrorKind.BAD_REQUEST and any(
        hint in message for hint in _UNSUPPORTED_FIELD_HINTS
    ):
        kind = ProviderErrorKind.UNSUPPORTED_FIELD
    return ProviderError(
        kind=kind,
        message=message,
        status_code=getattr(error, "status_code", None),
    )


class LiteLLMProvider(LLMProvider):
    """Provider that routes every request through ``litellm.acompletion``."""

    def __init__(
        self,
        model: str = "openai/gpt-4o",
        api_key: str | None = None,
        api_base: str | None = None,
        logger: logging.Logger | None = None,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.extra_kwargs = extra_kwargs
        self.logger = logger or logging.getLogger(__name__)

    def build_kwargs(self, request: ProviderRequest) -> dict[str, Any]:
        """Translate a ProviderRequest into litellm.acompletion keyword arguments."""
        kwargs: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": request.to_messages(),
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        api_key = request.api_key or self.api_key
        if api_key:
            kwargs["api_key"] = api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if request.tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
            if request.tool_choice is not None:
                kwargs["tool_choice"] = request.tool_choice
        if request.response_format:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": request.response_format,
            }
        kwargs.update(self.extra_kwargs)
        kwargs.update(request.extra)
        return kwargs

    async def complete(self, request: ProviderRequest) -> ProviderResult:
        kwargs = self.build_kwargs(request)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            error = classify_exception(e)
            self.logger.warning("litellm call failed (%s): %s", error.kind, error.message)
            return error

        payload = response if isinstance(response, dict) else response.model_dump()
        parsed = parse_completion_payload(payload)
        parsed.raw = response
        return parsed

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        kwargs = self.build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            error = classify_exception(e)
            self.logger.warning("litellm stream failed (%s): %s", error.kind, error.message)
            yield StreamErrorEvent(error=error.message, kind=error.kind)
            return

        accumulated = ""
        tool_calls: dict[int, dict[str, str]] = {}
        input_tokens = output_tokens = 0
        stop_reason = ""
        model = request.model or self.model

        try:
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                    output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens
                model = getattr(chunk, "model", None) or model

                if not getattr(chunk, "choices", None):
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta.content:
                    accumulated += delta.content
                    yield TextDeltaEvent(content=delta.content, snapshot=accumulated)

                for call in getattr(delta, "tool_calls", None) or []:
                    partial = tool_calls.setdefault(
                        call.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if call.id:
                        partial["id"] = call.id
                    if call.function and call.function.name:
                        partial["name"] = call.function.name
                    if call.function and call.function.arguments:
                        partial["arguments"] += call.function.arguments

                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            error = classify_exception(e)
            self.logger.warning("litellm stream interrupted (%s): %s", error.kind, error.message)
            yield StreamErrorEvent(error=error.message, kind=error.kind)
            return

        for index, partial in sorted(tool_calls.items()):
            arguments, _ = parse_tool_arguments(partial["arguments"])
            yield ToolCallEvent(
                call_id=partial["id"] or f"call_{index}",
                name=partial["name"],
                arguments=arguments,
            )

        yield TextEndEvent(full_text=accumulated)
        yield FinishEvent(
            stop_reason=stop_reason,
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            model=model,
        )
