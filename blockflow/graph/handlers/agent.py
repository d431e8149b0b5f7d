"""
Agent blocks: one model conversation, optionally with tools.

The handler turns an AgentConfig into a ProviderRequest, hands it to the
tool-call loop and shapes the loop's result into the block output. When the
block is a selected output of a streaming run, content chunks go to the
run's stream channel as they are produced.

Chat-triggered blocks with a memory type read earlier turns of their
conversation from the agent memory and write the new turn back.
"""

import json
import logging
from typing import Any

import litellm

from blockflow.config import EngineConfig
from blockflow.graph.blocks import AgentConfig, AgentTool, SerializedBlock
from blockflow.graph.context import ExecutionContext
from blockflow.graph.handlers.base import BlockHandler
from blockflow.graph.memory import AgentMemory, MemoryMessage, memory_enabled, render_history
from blockflow.graph.references import stringify
from blockflow.graph.tool_loop import ToolCallLoop, forced_tool_name
from blockflow.llm.provider import ProviderRequest
from blockflow.llm.registry import ProviderRegistry
from blockflow.runner.tool_registry import ToolRegistry
from blockflow.runtime.log_schemas import TokenUsage


def parse_response_format(value: dict[str, Any] | str | None) -> dict[str, Any] | None:
    """
    Normalize a response format into ``{name, schema, strict}``.

    Accepts the wrapped form, a bare JSON schema, or either as a JSON string.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logging.getLogger(__name__).warning("Ignoring response format that is not valid JSON")
            return None
    if not isinstance(value, dict) or not value:
        return None
    if "schema" in value:
        return {"name": value.get("name", "response_schema"), "strict": True, **value}
    return {"name": "response_schema", "schema": value, "strict": True}


def _parse_structured_content(content: str) -> dict[str, Any] | None:
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text[4:] if text.startswith("json") else text
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def token_cost(model: str, tokens: TokenUsage) -> dict[str, float]:
    """USD cost of a call from litellm's price table; zeros for unpriced models."""
    try:
        prompt_cost, completion_cost = litellm.cost_per_token(
            model=model,
            prompt_tokens=tokens.prompt,
            completion_tokens=tokens.completion,
        )
    except Exception as e:
        logging.getLogger(__name__).debug("No pricing for model %s: %s", model, e)
        prompt_cost, completion_cost = 0.0, 0.0
    return {
        "input": prompt_cost,
        "output": completion_cost,
        "total": prompt_cost + completion_cost,
    }


def _last_user_text(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return stringify(message.get("content"))
    return ""


def _with_history(
    messages: list[dict[str, Any]], history: list[MemoryMessage]
) -> list[dict[str, Any]]:
    """Append remembered turns to the last user message, or prepend them as messages."""
    if not history:
        return messages
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].get("role") == "user":
            content = stringify(messages[i].get("content")) + render_history(history)
            return [*messages[:i], {**messages[i], "content": content}, *messages[i + 1 :]]
    return [turn.to_llm_dict() for turn in history] + messages


class AgentBlockHandler(BlockHandler):
    def __init__(
        self,
        providers: ProviderRegistry,
        tool_registry: ToolRegistry,
        config: EngineConfig | None = None,
        logger: logging.Logger | None = None,
        memory: AgentMemory | None = None,
    ):
        self.providers = providers
        self.tool_registry = tool_registry
        self.config = config or EngineConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.memory = memory

    async def execute(
        self, block: SerializedBlock, config: AgentConfig, ctx: ExecutionContext
    ) -> dict[str, Any]:
        tools = [t for t in config.tools if t.usage_control != "none"]
        forced = self._forced_tools(config, tools)
        response_format = parse_response_format(config.response_format)
        model = config.model or self.config.model
        messages = self._build_messages(config)
        system_prompt = config.system_prompt

        memory_key = None
        if (
            self.memory is not None
            and memory_enabled(config.memory_type)
            and ctx.trigger_type == "chat"
        ):
            memory_key = AgentMemory.conversation_key(
                config.conversation_id, ctx.workflow_id or ctx.execution_id
            )
            query = _last_user_text(messages)
            facts = await self.memory.facts_prompt(memory_key, query)
            if facts:
                system_prompt = f"{system_prompt}\n\n{facts}" if system_prompt else facts
            history = await self.memory.history(memory_key, query, model)
            messages = _with_history(messages, history)
            await self.memory.remember(memory_key, block.id, "user", query)

        request = ProviderRequest(
            model=model,
            messages=messages,
            system_prompt=system_prompt,
            tool_choice=config.tool_choice,
            temperature=(
                config.temperature if config.temperature is not None else self.config.temperature
            ),
            max_tokens=config.max_tokens or self.config.max_tokens,
            response_format=response_format,
            api_key=config.api_key or self.config.api_key,
        )

        loop = ToolCallLoop(
            self.providers,
            self.tool_registry,
            provider_id=config.provider,
            max_iterations=self.config.max_tool_iterations,
            logger=self.logger,
        )

        streaming = ctx.should_stream and ctx.is_block_selected(block.id)
        on_chunk = None
        if streaming:

            async def on_chunk(text: str) -> None:
                await ctx.stream.send(block.id, text)

        try:
            result = await loop.run(
                request,
                tools=tools,
                forced_tools=forced,
                on_chunk=on_chunk,
                cancel_event=ctx.cancel_event,
            )
        finally:
            if streaming:
                await ctx.stream.end_block(block.id)

        if memory_key is not None:
            await self.memory.remember(memory_key, block.id, "assistant", result.content)

        output: dict[str, Any] = {
            "content": result.content,
            "model": result.model,
            "tokens": result.tokens.model_dump(),
            "tool_calls": {
                "list": [call.model_dump() for call in result.tool_calls],
                "count": len(result.tool_calls),
            },
            "provider_timing": result.timing.model_dump(),
            "cost": token_cost(result.model or model, result.tokens),
        }
        if response_format is not None:
            structured = _parse_structured_content(result.content)
            if structured is None:
                self.logger.warning(
                    "Block '%s' requested structured output but content is not a JSON object",
                    block.display_name,
                )
            else:
                output.update(structured)
        return output

    @staticmethod
    def _build_messages(config: AgentConfig) -> list[dict[str, Any]]:
        if config.messages:
            return [dict(m) for m in config.messages]
        prompt = stringify(config.user_prompt)
        if not prompt:
            return []
        return [{"role": "user", "content": prompt}]

    @staticmethod
    def _forced_tools(config: AgentConfig, tools: list[AgentTool]) -> list[str]:
        forced = [t.name for t in tools if t.usage_control == "force"]
        explicit = forced_tool_name(config.tool_choice)
        if explicit and explicit not in forced:
            forced.insert(0, explicit)
        return forced
