"""Mock LLM provider for testing and offline runs.

Responses are scripted up-front and consumed in order. Each scripted item may
be a raw OpenAI-shaped payload (normalised exactly like a real provider's),
a ProviderResponse, a ProviderError, or a plain string.
"""

import json
import re
from collections.abc import AsyncIterator
from typing import Any

from blockflow.llm.provider import (
    LLMProvider,
    ProviderError,
    ProviderRequest,
    ProviderResponse,
    ProviderResult,
    parse_completion_payload,
)
from blockflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

_WORDS = re.compile(r"\S+\s*|\s+")


def text_payload(
    content: str,
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
    model: str = "mock-model",
) -> dict[str, Any]:
    """Build a chat completion payload with plain text content."""
    return {
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def tool_call_payload(
    name: str,
    arguments: dict[str, Any] | str | None = None,
    call_id: str = "call_1",
    content: str = "",
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
    model: str = "mock-model",
) -> dict[str, Any]:
    """Build a chat completion payload requesting a single tool call."""
    raw_arguments = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    payload = text_payload(content, prompt_tokens, completion_tokens, model)
    payload["choices"][0]["message"]["tool_calls"] = [
        {
            "id": call_id,
            "type": "function",
            "function": {"name": name, "arguments": raw_arguments},
        }
    ]
    payload["choices"][0]["finish_reason"] = "tool_calls"
    return payload


class MockLLMProvider(LLMProvider):
    """
    Scripted provider.

    Once the script is exhausted every call returns ``default_content``.
    All requests are recorded in ``requests`` for assertions.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        default_content: str = "",
        model: str = "mock-model",
    ):
        self.responses = list(responses or [])
        self.default_content = default_content
        self.model = model
        self.requests: list[ProviderRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def _next(self, request: ProviderRequest) -> ProviderResult:
        if not self.responses:
            return ProviderResponse(content=self.default_content, model=request.model or self.model)
        item = self.responses.pop(0)
        if isinstance(item, (ProviderResponse, ProviderError)):
            return item
        if isinstance(item, str):
            return ProviderResponse(content=item, model=request.model or self.model)
        return parse_completion_payload(item)

    async def complete(self, request: ProviderRequest) -> ProviderResult:
        self.requests.append(request)
        return self._next(request)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        result = self._next(request)
        if isinstance(result, ProviderError):
            yield StreamErrorEvent(error=result.message, kind=result.kind)
            return

        snapshot = ""
        for piece in _WORDS.findall(result.content):
            snapshot += piece
            yield TextDeltaEvent(content=piece, snapshot=snapshot)
        for tool_use in result.tool_calls:
            yield ToolCallEvent(
                call_id=tool_use.id,
                name=tool_use.name,
                arguments=tool_use.input,
            )
        yield TextEndEvent(full_text=snapshot)
        yield FinishEvent(
            stop_reason=result.stop_reason or "stop",
            prompt_tokens=result.input_tokens,
            completion_tokens=result.output_tokens,
            model=result.model,
        )
