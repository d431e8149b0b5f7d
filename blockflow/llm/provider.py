"""LLM provider abstraction for pluggable LLM backends.

Provider calls return a result value instead of raising: either a
``ProviderResponse`` or a ``ProviderError`` whose ``kind`` the caller
switches on (the tool-call loop uses it to decide on a reduced-payload retry).
"""

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from blockflow.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)


@dataclass
class Tool:
    """A tool the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolUse:
    """A tool call requested by the LLM."""

    id: str
    name: str
    input: dict[str, Any]
    raw_arguments: str = ""
    parse_error: str | None = None


class ProviderErrorKind(StrEnum):
    """Structured classification of provider failures."""

    BAD_REQUEST = "bad_request"
    UNSUPPORTED_FIELD = "unsupported_field"
    CONTEXT_WINDOW = "context_window"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


@dataclass
class ProviderError:
    """A provider rejected or failed a request."""

    kind: ProviderErrorKind
    message: str
    status_code: int | None = None

    @property
    def retry_with_reduced_payload(self) -> bool:
        """Whether dropping optional fields might make the request acceptable."""
        return self.kind in (ProviderErrorKind.BAD_REQUEST, ProviderErrorKind.UNSUPPORTED_FIELD)


@dataclass
class ProviderResponse:
    """A successful provider round-trip."""

    content: str = ""
    model: str = ""
    tool_calls: list[ToolUse] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    empty: bool = False  # provider answered with no choices at all
    raw: Any = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


ProviderResult = ProviderResponse | ProviderError


@dataclass
class ProviderRequest:
    """Everything a provider needs for one round-trip."""

    model: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    system_prompt: str = ""
    tools: list[Tool] = field(default_factory=list)
    tool_choice: str | dict[str, Any] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    response_format: dict[str, Any] | None = None
    api_key: str | None = None
    stream: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_messages(self) -> list[dict[str, Any]]:
        """Full message list with the system prompt first."""
        if not self.system_prompt:
            return list(self.messages)
        return [{"role": "system", "content": self.system_prompt}, *self.messages]

    def reduced(self) -> "ProviderRequest":
        """Copy without the optional fields providers most often reject."""
        return replace(self, response_format=None, tool_choice=None, extra={})


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any LLM backend.

    Implementations should handle:
    - API authentication
    - Request/response formatting
    - Token counting
    - Mapping failures onto ProviderErrorKind
    """

    @abstractmethod
    async def complete(self, request: ProviderRequest) -> ProviderResult:
        """Run one round-trip and return a response or a structured error."""

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream a completion as an async iterator of StreamEvents.

        Default implementation wraps complete() with synthetic events.
        Subclasses SHOULD override for true streaming.
        """
        result = await self.complete(request)
        if isinstance(result, ProviderError):
            yield StreamErrorEvent(error=result.message, kind=result.kind)
            return
        if result.content:
            yield TextDeltaEvent(content=result.content, snapshot=result.content)
        for tool_use in result.tool_calls:
            yield ToolCallEvent(
                call_id=tool_use.id,
                name=tool_use.name,
                arguments=tool_use.input,
            )
        yield TextEndEvent(full_text=result.content)
        yield FinishEvent(
            stop_reason=result.stop_reason,
            prompt_tokens=result.input_tokens,
            completion_tokens=result.output_tokens,
            model=result.model,
        )


# ---------------------------------------------------------------------------
# Payload normalisation
# ---------------------------------------------------------------------------


def parse_tool_arguments(arguments: Any) -> tuple[dict[str, Any], str | None]:
    """Decode a tool call's arguments. Returns (arguments, parse_error)."""
    if isinstance(arguments, dict):
        return arguments, None
    if arguments is None or arguments == "":
        return {}, None
    try:
        decoded = json.loads(arguments)
    except (json.JSONDecodeError, TypeError) as e:
        return {}, f"Invalid tool arguments: {e}"
    if not isinstance(decoded, dict):
        return {}, "Tool arguments must be a JSON object"
    return decoded, None


def parse_completion_payload(payload: dict[str, Any]) -> ProviderResponse:
    """Normalise an OpenAI-shaped chat completion payload."""
    usage = payload.get("usage") or {}
    input_tokens = usage.get("prompt_tokens") or 0
    output_tokens = usage.get("completion_tokens") or 0
    model = payload.get("model") or ""

    choices = payload.get("choices") or []
    if not choices:
        return ProviderResponse(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            empty=True,
            raw=payload,
        )

    choice = choices[0]
    message = choice.get("message") or {}
    tool_calls = []
    for i, call in enumerate(message.get("tool_calls") or []):
        function = call.get("function") or {}
        raw_arguments = function.get("arguments")
        arguments, parse_error = parse_tool_arguments(raw_arguments)
        tool_calls.append(
            ToolUse(
                id=call.get("id") or f"call_{i}",
                name=function.get("name", ""),
                input=arguments,
                raw_arguments=raw_arguments if isinstance(raw_arguments, str) else "",
                parse_error=parse_error,
            )
        )

    return ProviderResponse(
        content=message.get("content") or "",
        model=model,
        tool_calls=tool_calls,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        stop_reason=choice.get("finish_reason") or "",
        raw=payload,
    )
