"""
Tool-call loop run inside agent blocks.

State machine::

    CALLING -> INSPECTING -> TOOL_EXECUTING -> CALLING ...
                          -> DONE

1. Send the accumulated messages to the provider (a ``model`` TimeSegment).
2. No tool calls in the response -> DONE with the response content. A
   response with no choices at all also ends the loop, keeping the last
   known content.
3. Forced tools are tracked across rounds: while some remain unused the next
   call forces the next one, then the choice loosens to "auto".
4. Each requested tool that the block declares and the registry knows is
   executed (a ``tool`` TimeSegment); its result is folded back as an
   assistant tool_calls message plus a tool message. Unknown tools are skipped.
5. At most ``max_iterations`` tool rounds; hitting the cap returns the last
   content with a warning.
6. A request the provider rejects as malformed is retried once with a
   reduced payload. The retry belongs to the same round-trip.
7. Tokens add up across round-trips; time is split into model time, tool
   time and first-response time.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

from blockflow.config import MAX_TOOL_ITERATIONS
from blockflow.errors import ExecutionCancelled, ProviderCallError
from blockflow.graph.blocks import AgentTool
from blockflow.llm.provider import (
    ProviderError,
    ProviderErrorKind,
    ProviderRequest,
    ProviderResponse,
    ProviderResult,
    Tool,
    ToolUse,
)
from blockflow.llm.registry import ProviderRegistry
from blockflow.llm.stream_events import FinishEvent, StreamErrorEvent, TextDeltaEvent
from blockflow.runner.tool_registry import ToolExecutionResult, ToolRegistry
from blockflow.runtime.log_schemas import (
    ProviderTiming,
    TimeSegment,
    TokenUsage,
    ToolCall,
    now_iso,
)

ChunkCallback = Callable[[str], Awaitable[None]]


class LoopState(StrEnum):
    CALLING = "calling"
    INSPECTING = "inspecting"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"


@dataclass
class ToolLoopResult:
    """Final content plus the accounting gathered across every round-trip."""

    content: str
    model: str
    tokens: TokenUsage
    tool_calls: list[ToolCall]
    timing: ProviderTiming
    iterations: int
    messages: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tool choice helpers
# ---------------------------------------------------------------------------


def force_tool(name: str) -> dict[str, Any]:
    return {"type": "function", "function": {"name": name}}


def normalize_tool_choice(tool_choice: str | dict[str, Any] | None) -> str | dict[str, Any] | None:
    """Accept ``"auto"``, ``"lookup"``, ``{"function": "lookup"}`` or the OpenAI shape."""
    if tool_choice is None or tool_choice == "":
        return None
    if isinstance(tool_choice, str):
        if tool_choice in ("auto", "none", "required"):
            return tool_choice
        return force_tool(tool_choice)
    function = tool_choice.get("function")
    if isinstance(function, str):
        return force_tool(function)
    if isinstance(function, dict) and function.get("name"):
        return force_tool(function["name"])
    if tool_choice.get("name"):
        return force_tool(tool_choice["name"])
    return tool_choice


def forced_tool_name(tool_choice: str | dict[str, Any] | None) -> str | None:
    normalized = normalize_tool_choice(tool_choice)
    if isinstance(normalized, dict):
        return (normalized.get("function") or {}).get("name")
    return None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def call_with_reduced_retry(
    providers: ProviderRegistry,
    provider_id: str | None,
    request: ProviderRequest,
    logger: logging.Logger,
) -> ProviderResult:
    """One round-trip; a malformed-request rejection is retried once with a reduced payload."""
    result = await providers.execute_provider_request(provider_id, request)
    if isinstance(result, ProviderError) and result.retry_with_reduced_payload:
        logger.warning(
            "Provider rejected request (%s): %s; retrying with reduced payload",
            result.kind,
            result.message,
        )
        result = await providers.execute_provider_request(provider_id, request.reduced())
    return result


def _stream_error(event: StreamErrorEvent) -> ProviderError:
    try:
        kind = ProviderErrorKind(event.kind)
    except ValueError:
        kind = ProviderErrorKind.UNKNOWN
    return ProviderError(kind=kind, message=event.error)


def _usage(response: ProviderResponse) -> TokenUsage:
    return TokenUsage(
        prompt=response.input_tokens,
        completion=response.output_tokens,
        total=response.total_tokens,
    )


# ---------------------------------------------------------------------------
# The loop
# ---------------------------------------------------------------------------


class ToolCallLoop:
    """Drives one agent block's conversation with its provider and tools."""

    def __init__(
        self,
        providers: ProviderRegistry,
        tool_registry: ToolRegistry,
        *,
        provider_id: str | None = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        logger: logging.Logger | None = None,
    ):
        self.providers = providers
        self.tool_registry = tool_registry
        self.provider_id = provider_id
        self.max_iterations = max_iterations
        self.logger = logger or logging.getLogger(__name__)
        self.state = LoopState.CALLING

    async def run(
        self,
        request: ProviderRequest,
        *,
        tools: list[AgentTool] | None = None,
        forced_tools: list[str] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ToolLoopResult:
        """
        Run the loop to completion.

        Args:
            request: Base request (model, system prompt, initial messages, options)
            tools: Tools the block exposes; the model may only call these
            forced_tools: Tool names the model must call, in order
            on_chunk: Receives content chunks when the block streams
            cancel_event: Checked before every provider round-trip and tool call

        Raises:
            ProviderCallError: the provider failed even after the reduced retry
            ExecutionCancelled: the run was cancelled
        """
        tools = tools or []
        tool_specs = {tool.name: tool for tool in tools}
        forced = list(forced_tools or [])
        used_forced: list[str] = []
        messages = list(request.messages)

        initial_choice = normalize_tool_choice(request.tool_choice)
        if initial_choice is None and forced:
            initial_choice = force_tool(forced[0])
        request = replace(
            request,
            messages=list(messages),
            tools=[Tool(t.name, t.description, t.parameters) for t in tools],
            tool_choice=initial_choice if tools else None,
        )

        started_at = now_iso()
        started = time.perf_counter()

        if on_chunk is not None and not tools:
            return await self._run_streaming(request, on_chunk, cancel_event, started_at, started)

        segments: list[TimeSegment] = []
        tool_calls: list[ToolCall] = []
        tokens = TokenUsage()
        model_time_ms = 0

        self._check_cancelled(cancel_event)
        response, segment = await self._call_provider(request, "Initial response")
        segments.append(segment)
        model_time_ms += segment.duration_ms
        first_response_time_ms = segment.duration_ms
        tokens += _usage(response)
        content = response.content
        model = response.model or request.model
        self._track_forced_usage(response, forced, used_forced)

        iterations = 0
        while iterations < self.max_iterations:
            self.state = LoopState.INSPECTING
            if response.empty:
                self.logger.error("Provider returned no choices; keeping last known content")
                break
            if not response.tool_calls:
                break

            self.state = LoopState.TOOL_EXECUTING
            for tool_use in response.tool_calls:
                self._check_cancelled(cancel_event)
                spec = tool_specs.get(tool_use.name)
                if spec is None or not self.tool_registry.has_tool(tool_use.name):
                    self.logger.warning("Skipping unknown tool '%s'", tool_use.name)
                    continue
                call, tool_segment = await self._execute_tool(tool_use, spec, messages)
                tool_calls.append(call)
                segments.append(tool_segment)

            next_choice = self._next_tool_choice(forced, used_forced, initial_choice)
            request = replace(request, messages=list(messages), tool_choice=next_choice)

            self.state = LoopState.CALLING
            self._check_cancelled(cancel_event)
            response, segment = await self._call_provider(
                request, f"Model response (iteration {iterations + 1})"
            )
            segments.append(segment)
            model_time_ms += segment.duration_ms
            tokens += _usage(response)
            if response.content:
                content = response.content
            model = response.model or model
            self._track_forced_usage(response, forced, used_forced)
            iterations += 1
        else:
            if response.tool_calls and not response.empty:
                self.logger.warning(
                    "Tool-call loop hit the iteration cap (%d); returning last content",
                    self.max_iterations,
                )

        self.state = LoopState.DONE
        if on_chunk is not None and content:
            await on_chunk(content)

        timing = ProviderTiming(
            start_time=started_at,
            end_time=now_iso(),
            duration_ms=_elapsed_ms(started),
            model_time_ms=model_time_ms,
            tools_time_ms=sum(s.duration_ms for s in segments if s.type == "tool"),
            first_response_time_ms=first_response_time_ms,
            iterations=iterations,
            time_segments=segments,
        )
        self.logger.info(
            "Tool-call loop finished: %d iterations, %d tool calls, %d tokens",
            iterations,
            len(tool_calls),
            tokens.total,
            extra={"tokens_used": tokens.total, "model": model, "iteration": iterations},
        )
        return ToolLoopResult(
            content=content,
            model=model,
            tokens=tokens,
            tool_calls=tool_calls,
            timing=timing,
            iterations=iterations,
            messages=messages,
        )

    # -------------------------------------------------------------------
    # Provider round-trips
    # -------------------------------------------------------------------

    async def _call_provider(
        self, request: ProviderRequest, name: str
    ) -> tuple[ProviderResponse, TimeSegment]:
        segment_start = now_iso()
        started = time.perf_counter()

        result = await call_with_reduced_retry(
            self.providers, self.provider_id, request, self.logger
        )

        segment = TimeSegment(
            type="model",
            name=name,
            start_time=segment_start,
            end_time=now_iso(),
            duration_ms=_elapsed_ms(started),
        )
        if isinstance(result, ProviderError):
            raise ProviderCallError(result)
        return result, segment

    async def _run_streaming(
        self,
        request: ProviderRequest,
        on_chunk: ChunkCallback,
        cancel_event: asyncio.Event | None,
        started_at: str,
        started: float,
    ) -> ToolLoopResult:
        self._check_cancelled(cancel_event)
        segment_start = now_iso()
        segment_started = time.perf_counter()

        content, model, tokens, first_chunk_ms, error = await self._consume_stream(
            replace(request, stream=True), on_chunk, cancel_event
        )
        if error is not None and not content and error.retry_with_reduced_payload:
            self.logger.warning(
                "Provider rejected stream (%s): %s; retrying with reduced payload",
                error.kind,
                error.message,
            )
            content, model, tokens, first_chunk_ms, error = await self._consume_stream(
                replace(request.reduced(), stream=True), on_chunk, cancel_event
            )
        if error is not None:
            raise ProviderCallError(error)

        segment = TimeSegment(
            type="model",
            name="Streaming response",
            start_time=segment_start,
            end_time=now_iso(),
            duration_ms=_elapsed_ms(segment_started),
        )
        self.state = LoopState.DONE
        return ToolLoopResult(
            content=content,
            model=model or request.model,
            tokens=tokens,
            tool_calls=[],
            timing=ProviderTiming(
                start_time=started_at,
                end_time=now_iso(),
                duration_ms=_elapsed_ms(started),
                model_time_ms=segment.duration_ms,
                first_response_time_ms=first_chunk_ms,
                iterations=0,
                time_segments=[segment],
            ),
            iterations=0,
            messages=list(request.messages),
        )

    async def _consume_stream(
        self,
        request: ProviderRequest,
        on_chunk: ChunkCallback,
        cancel_event: asyncio.Event | None,
    ) -> tuple[str, str, TokenUsage, int, ProviderError | None]:
        started = time.perf_counter()
        content = ""
        model = ""
        tokens = TokenUsage()
        first_chunk_ms = 0

        events = await self.providers.execute_provider_request(self.provider_id, request)
        async for event in events:
            if isinstance(event, TextDeltaEvent) and event.content:
                self._check_cancelled(cancel_event)
                if not content:
                    first_chunk_ms = _elapsed_ms(started)
                content += event.content
                await on_chunk(event.content)
            elif isinstance(event, FinishEvent):
                tokens = TokenUsage(
                    prompt=event.prompt_tokens,
                    completion=event.completion_tokens,
                    total=event.total_tokens,
                )
                model = event.model
            elif isinstance(event, StreamErrorEvent):
                return content, model, tokens, first_chunk_ms, _stream_error(event)
        return content, model, tokens, first_chunk_ms, None

    # -------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------

    async def _execute_tool(
        self,
        tool_use: ToolUse,
        spec: AgentTool,
        messages: list[dict[str, Any]],
    ) -> tuple[ToolCall, TimeSegment]:
        start_time = now_iso()
        started = time.perf_counter()

        if tool_use.parse_error:
            arguments: dict[str, Any] = {}
            result = ToolExecutionResult(success=False, error=tool_use.parse_error)
        else:
            arguments = {**spec.params, **tool_use.input}
            result = await self.tool_registry.execute_tool(tool_use.name, arguments, trusted=True)

        end_time = now_iso()
        duration_ms = _elapsed_ms(started)

        if result.success:
            payload = result.output
        else:
            self.logger.warning("Tool '%s' failed: %s", tool_use.name, result.error)
            payload = {"error": True, "message": result.error, "tool": tool_use.name}

        messages.append(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": tool_use.id,
                        "type": "function",
                        "function": {
                            "name": tool_use.name,
                            "arguments": tool_use.raw_arguments or json.dumps(tool_use.input),
                        },
                    }
                ],
            }
        )
        messages.append(
            {
                "role": "tool",
                "tool_call_id": tool_use.id,
                "content": json.dumps(payload, default=str),
            }
        )

        call = ToolCall(
            name=tool_use.name,
            arguments=arguments,
            start_time=start_time,
            end_time=end_time,
            duration_ms=duration_ms,
            result=payload,
            success=result.success,
            error=result.error,
        )
        segment = TimeSegment(
            type="tool",
            name=tool_use.name,
            start_time=start_time,
            end_time=end_time,
            duration_ms=duration_ms,
        )
        return call, segment

    # -------------------------------------------------------------------
    # Forced tools
    # -------------------------------------------------------------------

    @staticmethod
    def _track_forced_usage(
        response: ProviderResponse, forced: list[str], used_forced: list[str]
    ) -> None:
        for tool_use in response.tool_calls:
            if tool_use.name in forced and tool_use.name not in used_forced:
                used_forced.append(tool_use.name)

    @staticmethod
    def _next_tool_choice(
        forced: list[str],
        used_forced: list[str],
        initial_choice: str | dict[str, Any] | None,
    ) -> str | dict[str, Any] | None:
        if not forced:
            return initial_choice
        remaining = [name for name in forced if name not in used_forced]
        if remaining:
            return force_tool(remaining[0])
        return "auto"

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ExecutionCancelled("Execution cancelled")
